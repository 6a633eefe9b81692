from pathlib import Path

import pytest

import main
from agents.config import ExplorationConfig, PoolConfig
from agents.explorer import ExplorationResult
from devices.pool import DevicePool

from fakes import FakeBackend, FakeClient, FakeLLM, make_png, reply, simple_screen


def test_build_engine_only_adds_fallback_when_configured():
    llm = FakeLLM({})
    engine = main.build_engine(llm, ExplorationConfig(app_id="x"))
    assert engine.fallback is None
    engine = main.build_engine(llm, ExplorationConfig(app_id="x", fallback_model="gemini-2.5-pro",
                                                     low_confidence_threshold=0.5))
    assert engine.fallback_configured
    assert engine.policy.low_confidence_threshold == 0.5


def test_build_llm_requires_a_key(monkeypatch):
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
    with pytest.raises(KeyError):
        main.build_llm()


def test_run_capture_leases_explores_and_releases(monkeypatch, tmp_path):
    backend = FakeBackend()
    pool = DevicePool(backend, PoolConfig(max_size=1, pre_create_count=0))
    seen = {}

    def fake_client(app_id, device_id=None, platform=None, debug_dir=None):
        seen["device_id"] = device_id
        seen["platform"] = platform
        return FakeClient([(make_png(1), simple_screen(1))], platform=platform)

    monkeypatch.setattr(main, "MaestroClient", fake_client)
    llm = FakeLLM({"primary": [reply("screenshot"), reply("done")]})
    config = ExplorationConfig(app_id="com.example.app", output_dir=str(tmp_path), max_steps=5,
                               launch_wait_s=0, primary_model="primary", min_screenshots=1)

    result = main.run_capture("com.example.app", pool, llm, config, job_id="job-1")

    assert result.success
    assert result.direct_captures == 1
    assert seen == {"device_id": "dev-1", "platform": "ios"}
    assert backend.uninstalled == [("dev-1", "com.example.app")]
    assert pool.stats()["idle"] == 1


def test_crashed_job_does_not_lose_sibling_results(monkeypatch, tmp_path):
    backend = FakeBackend()
    monkeypatch.setenv("OUTPUT_DIR", str(tmp_path))
    monkeypatch.setattr(main, "build_llm", lambda: FakeLLM({}))
    monkeypatch.setattr(main, "build_pool", lambda config: DevicePool(backend, config))

    def fake_capture(app_id, pool, llm, config=None, job_id=None):
        if app_id == "com.example.broken":
            raise OverflowError("cannot convert float infinity to integer")
        return ExplorationResult(success=True, screenshot_count=1, total_steps=3,
                                 screenshots=["screenshot-1.png"], duration_s=0.1)

    monkeypatch.setattr(main, "run_capture", fake_capture)
    run_dir, results = main.run_many(["com.example.app", "com.example.broken"],
                                     PoolConfig(max_size=2, pre_create_count=0))

    by_app = {r["appId"]: r for r in results}
    assert by_app["com.example.app"]["success"] is True
    assert by_app["com.example.broken"]["success"] is False
    assert "OverflowError" in by_app["com.example.broken"]["errors"][0]
    lines = (Path(run_dir) / "results.jsonl").read_text().splitlines()
    assert len(lines) == 2
