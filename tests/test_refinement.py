import json
from pathlib import Path

import yaml

from agents.gemini_llm import ModelCallError
from agents.refinement import refine_exploration_log, sanitize_flow_yaml, strip_fences, validate_flow

from fakes import FakeLLM

GOOD_FLOW = """appId: com.example.app
---
- launchApp
- tapOn: "Settings"
- takeScreenshot: screenshot-1
"""

LOG = {
    "appId": "com.example.app",
    "platform": "android",
    "steps": [
        {"step": 1, "outcome": "ok", "decision": {"action": "tapText", "params": {"text": "Settings"}}, "captured": True},
        {"step": 2, "outcome": "action-failed", "decision": {"action": "tap", "params": {"x": 5, "y": 5}}},
        {"step": 3, "outcome": "ok", "decision": {"action": "scroll", "params": {}}, "captured": False},
    ],
}


def test_strip_fences_and_sanitize():
    raw = "Here is the flow:\n```yaml\nappId: x\n---\n- launchApp\n- sleep: 500\n- wait\n- takeScreenshot: a\n```\n"
    flow = sanitize_flow_yaml(strip_fences(raw))
    assert flow.splitlines() == ["appId: x", "---", "- launchApp", "- takeScreenshot: a"]


def test_validate_accepts_a_runnable_flow():
    assert validate_flow(GOOD_FLOW) == []


def test_validate_reports_problems():
    assert "Missing YAML document separator (---)" in validate_flow("appId: x\n- launchApp\n")
    assert "No takeScreenshot commands found" in validate_flow("appId: x\n---\n- launchApp\n")
    assert "Unsupported maestro command: pause" in validate_flow("appId: x\n---\n- pause: 3\n- takeScreenshot: a\n")
    assert any("valid YAML" in e for e in validate_flow("appId: x\n---\n- [unclosed\n"))
    assert "Flow must start with an appId declaration" in validate_flow("---\n- takeScreenshot: a\n")


def test_refine_writes_sanitized_flow_and_metadata(tmp_path):
    fenced = "```yaml\n" + GOOD_FLOW.replace("- launchApp\n", "- launchApp\n- sleep: 1000\n") + "```"
    llm = FakeLLM({"refiner": [fenced]})
    result = refine_exploration_log(LOG, llm, model_name="refiner", output_dir=str(tmp_path))

    assert result.success, result.errors
    written = Path(result.flow_path).read_text()
    assert "sleep" not in written
    assert list(yaml.safe_load_all(written))[1][0] == "launchApp"
    meta = json.loads(Path(result.flow_path).with_suffix(".json").read_text())
    assert meta["originalSteps"] == 3
    assert meta["optimizedSteps"] == 3
    assert meta["screensCaptured"] == 1

    prompt = llm.calls[0]["user"]
    assert "Step 1: tapText" in prompt and "CAPTURED" in prompt
    assert "Step 2: tap" in prompt and "SKIP (action-failed)" in prompt


def test_refine_without_captures_does_not_call_model(tmp_path):
    llm = FakeLLM({"refiner": [GOOD_FLOW]})
    log = {"appId": "com.example.app", "steps": [{"step": 1, "outcome": "ok"}]}
    result = refine_exploration_log(log, llm, model_name="refiner", output_dir=str(tmp_path))
    assert not result.success
    assert llm.calls == []


def test_refine_model_failure_is_a_result(tmp_path):
    llm = FakeLLM({"refiner": [ModelCallError("quota exhausted")]})
    result = refine_exploration_log(LOG, llm, model_name="refiner", output_dir=str(tmp_path))
    assert not result.success
    assert "quota exhausted" in result.errors[0]
    assert list(tmp_path.iterdir()) == []


def test_refine_invalid_flow_is_not_saved(tmp_path):
    llm = FakeLLM({"refiner": ["appId: com.example.app\n---\n- launchApp\n"]})
    result = refine_exploration_log(LOG, llm, model_name="refiner", output_dir=str(tmp_path))
    assert not result.success
    assert "No takeScreenshot commands found" in result.errors
    assert result.flow_path is None
