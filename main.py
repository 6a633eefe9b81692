"""
Entry point for autonomous app-store screenshot capture.

For each app id, a job leases one device from a shared pool, lets the
exploration agent drive the app, and writes deduplicated screenshots under
OUTPUT_DIR/<app id>/. Jobs run concurrently, bounded by the pool size.

High-level agent orchestration and tool registration are handled by
Google ADK (see screenshots_adk/agent.py).
"""

import json
import logging
import os
import sys
import uuid
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import List, Optional

from agents.config import ExplorationConfig, PoolConfig, bool_env, int_env, str_env
from agents.decision import DecisionEngine, EscalationPolicy, ModelDecider
from agents.explorer import ExplorationResult, Explorer
from agents.gemini_llm import GeminiLLM, ModelCallError
from agents.refinement import refine_exploration_log
from agents.screenshot_store import ScreenshotStore
from devices.backend import DeviceBackend, DeviceCommandError
from devices.emulator import AvdBackend
from devices.maestro import MaestroClient
from devices.pool import DevicePool, PoolError
from devices.simctl import SimctlBackend

logging.basicConfig(level=logging.INFO, format="%(message)s")
if bool_env("VERBOSE_LOGS", False):
    logging.getLogger().setLevel(logging.DEBUG)


def build_llm() -> GeminiLLM:
    api_key = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY")
    if not api_key:
        raise KeyError(
            'GEMINI_API_KEY is not set. Example:\n  export GEMINI_API_KEY="YOUR_KEY_HERE"\n'
        )
    model = str_env("GEMINI_MODEL", "gemini-2.0-flash")
    rpm = int_env("GEMINI_RPM", 15)
    logging.info(f"[LLM] Gemini model={model} rpm_limit={rpm}")
    return GeminiLLM(api_key=api_key, model_name=model, rpm_limit=rpm)


def build_backend(platform: Optional[str], pool_config: PoolConfig) -> DeviceBackend:
    if (platform or "ios") == "android":
        return AvdBackend(
            system_image=str_env("ANDROID_SYSTEM_IMAGE", "system-images;android-34;google_apis;x86_64"),
            device_profile=str_env("ANDROID_DEVICE_PROFILE", "pixel_7"),
        )
    return SimctlBackend(device_type=pool_config.device_type)


def build_pool(pool_config: Optional[PoolConfig] = None, platform: Optional[str] = None) -> DevicePool:
    pool_config = pool_config or PoolConfig.from_env()
    platform = platform or str_env("PLATFORM")
    return DevicePool(build_backend(platform, pool_config), pool_config)


def build_engine(llm, config: ExplorationConfig) -> DecisionEngine:
    fallback = ModelDecider(llm, config.fallback_model) if config.fallback_model else None
    return DecisionEngine(
        primary=ModelDecider(llm, config.primary_model),
        fallback=fallback,
        policy=EscalationPolicy(
            low_confidence_threshold=config.low_confidence_threshold,
            failure_escalation_threshold=config.failure_escalation_threshold,
        ),
    )


def run_capture(app_id: str, pool: DevicePool, llm, config: Optional[ExplorationConfig] = None,
                job_id: Optional[str] = None) -> ExplorationResult:
    """Lease a device, explore one app, release the device.

    AcquireTimeout / PoolClosed propagate: the job never got a device.
    """
    config = config or ExplorationConfig.from_env(app_id)
    config = replace(config, platform=config.platform or pool.platform)
    job_id = job_id or f"{app_id}-{uuid.uuid4().hex[:6]}"

    with pool.lease(job_id, cleanup_key=app_id) as handle:
        if config.app_path:
            logging.info(f"[JOB] {job_id}: installing {config.app_path}")
            pool.install_app(handle, config.app_path)
        client = MaestroClient(
            app_id,
            device_id=pool.automation_id(handle),
            platform=config.platform,
            debug_dir=config.debug_dir,
        )
        explorer = Explorer(client, build_engine(llm, config), ScreenshotStore(config.output_dir), config)
        return explorer.run()


def _maybe_refine(result: ExplorationResult, llm, config: ExplorationConfig) -> Optional[str]:
    if not result.log_path or not bool_env("REFINE_FLOWS", False):
        return None
    log = json.loads(Path(result.log_path).read_text(encoding="utf-8"))
    refined = refine_exploration_log(
        log,
        llm,
        model_name=config.fallback_model or config.primary_model,
        output_dir=str(Path(config.output_dir) / "refined-flows"),
    )
    for e in refined.errors:
        logging.warning(f"[REFINE] {config.app_id}: {e}")
    return refined.flow_path


def _job(app_id: str, pool: DevicePool, llm, base_output: str) -> dict:
    config = ExplorationConfig.from_env(app_id)
    config = replace(config, output_dir=str(Path(base_output) / app_id))
    if config.debug_dir:
        config = replace(config, debug_dir=str(Path(config.debug_dir) / app_id))
    try:
        result = run_capture(app_id, pool, llm, config)
    except (PoolError, DeviceCommandError) as e:
        logging.error(f"[JOB] {app_id}: {e}")
        return {"appId": app_id, "success": False, "screenshotCount": 0, "errors": [str(e)]}
    except Exception as e:
        # One crashed job must not take the other apps' results with it.
        logging.exception(f"[JOB] {app_id}: job crashed")
        return {"appId": app_id, "success": False, "screenshotCount": 0,
                "errors": [f"{type(e).__name__}: {e}"]}
    record = {"appId": app_id, **result.to_dict()}
    try:
        record["refinedFlow"] = _maybe_refine(result, llm, config)
    except (OSError, ValueError, ModelCallError) as e:
        logging.warning(f"[REFINE] {app_id}: {e}")
    return record


def run_many(app_ids: List[str], pool_config: Optional[PoolConfig] = None):
    """Run one capture job per app id on a shared pool and return (run_dir, results)."""
    logging.info("=== Screenshot Capture Run ===")
    logging.info(f"Time: {datetime.now().isoformat(timespec='seconds')}")

    llm = build_llm()
    pool_config = pool_config or PoolConfig.from_env()
    pool = build_pool(pool_config)

    base_output = str_env("OUTPUT_DIR", "./store-screenshots")
    run_dir = os.path.join(base_output, datetime.now().strftime("%Y%m%d_%H%M%S"))
    os.makedirs(run_dir, exist_ok=True)

    results = []
    try:
        pool.initialize()
        with ThreadPoolExecutor(max_workers=pool_config.max_size) as workers:
            futures = {workers.submit(_job, app_id, pool, llm, run_dir): app_id for app_id in app_ids}
            for fut in as_completed(futures):
                r = fut.result()
                logging.info(f"[JOB] {futures[fut]}: {r.get('screenshotCount', 0)} screenshot(s), success={r['success']}")
                results.append(r)
    finally:
        pool.shutdown()

    # Write a simple JSONL log for reporting + debugging.
    log_path = os.path.join(run_dir, "results.jsonl")
    with open(log_path, "w", encoding="utf-8") as f:
        for r in results:
            f.write(json.dumps(r, ensure_ascii=False) + "\n")

    logging.info(f"\nDone. Screenshots + results saved under: {run_dir}")
    return run_dir, results


def run_one(app_id: str):
    """Capture one app and return (run_dir, result)."""
    run_dir, results = run_many([app_id], PoolConfig.from_env())
    return run_dir, results[0] if results else None


def main():
    app_ids = [a for a in sys.argv[1:] if a.strip()]
    if not app_ids:
        app_ids = [a.strip() for a in (str_env("APP_IDS", "") or "").split(",") if a.strip()]
    if not app_ids:
        raise SystemExit("usage: python main.py <app id> [<app id> ...]   (or set APP_IDS)")
    run_many(app_ids)


if __name__ == "__main__":
    main()
