"""
Turn an exploration log into a replayable Maestro flow.

Exploration is slow and non-deterministic; the refined flow is a short,
deterministic path to the same screens that can be rerun without a model.
"""

import json
import logging
import re
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional

import yaml

from agents.gemini_llm import ModelCallError
from agents.prompts import REFINEMENT_SYSTEM_PROMPT, refinement_user_prompt

# Maestro has no such commands; models keep emitting them anyway.
UNSUPPORTED_COMMANDS = ("sleep", "wait", "pause", "delay")

_FENCE_RE = re.compile(r"```(?:ya?ml)?\s*\n(.*?)```", re.DOTALL)


@dataclass
class RefinementResult:
    success: bool
    flow_yaml: str = ""
    flow_path: Optional[str] = None
    metadata: dict = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)


def strip_fences(text: str) -> str:
    m = _FENCE_RE.search(text or "")
    return (m.group(1) if m else (text or "")).strip()


def sanitize_flow_yaml(text: str) -> str:
    """Drop `- sleep: 500`-style lines for commands maestro doesn't support."""
    kept = []
    for line in text.splitlines():
        trimmed = line.strip()
        bad = next(
            (cmd for cmd in UNSUPPORTED_COMMANDS
             if trimmed == f"- {cmd}:" or trimmed.startswith(f"- {cmd}: ") or trimmed == f"- {cmd}"),
            None,
        )
        if bad:
            logging.info(f"[REFINE] stripped unsupported command: {trimmed}")
            continue
        kept.append(line)
    return "\n".join(kept)


def _command_names(commands) -> List[str]:
    names = []
    for c in commands or []:
        if isinstance(c, str):
            names.append(c)
        elif isinstance(c, dict):
            names.extend(str(k) for k in c)
    return names


def validate_flow(text: str) -> List[str]:
    """Return a list of problems; empty means the flow looks runnable."""
    errors = []
    if not text.lstrip().startswith("appId:"):
        errors.append("Flow must start with an appId declaration")
    if "\n---" not in text:
        errors.append("Missing YAML document separator (---)")

    try:
        docs = [d for d in yaml.safe_load_all(text) if d is not None]
    except yaml.YAMLError as e:
        errors.append(f"Flow is not valid YAML: {e}")
        return errors

    if not docs or not isinstance(docs[0], dict) or not docs[0].get("appId"):
        errors.append("First document must be a mapping with appId")
    commands = docs[1] if len(docs) > 1 else None
    if not isinstance(commands, list):
        errors.append("Second document must be a list of commands")
        return errors

    names = _command_names(commands)
    if "takeScreenshot" not in names:
        errors.append("No takeScreenshot commands found")
    for cmd in UNSUPPORTED_COMMANDS:
        if cmd in names:
            errors.append(f"Unsupported maestro command: {cmd}")
    return errors


def refine_exploration_log(
    log: dict,
    llm,
    model_name: Optional[str] = None,
    target_screenshots: Optional[int] = None,
    output_dir: str = "./refined-flows",
) -> RefinementResult:
    """Ask the model for a minimal flow, clean it up, validate and save it.

    Never raises for model or validation problems; they come back in
    `RefinementResult.errors`.
    """
    steps = log.get("steps") or []
    captured = sum(1 for s in steps if s.get("captured"))
    if target_screenshots is None:
        target_screenshots = captured

    flow_id = f"flow-{int(time.time() * 1000)}"
    metadata = {
        "flowId": flow_id,
        "appId": log.get("appId"),
        "generatedAt": datetime.now().isoformat(timespec="seconds"),
        "originalSteps": len(steps),
        "optimizedSteps": 0,
        "screensCaptured": min(target_screenshots, captured),
    }

    if captured == 0:
        return RefinementResult(success=False, metadata=metadata,
                                errors=["No captured screens in exploration log"])

    logging.info(f"[REFINE] {log.get('appId')}: refining {len(steps)} steps, {captured} captured screen(s)")
    try:
        raw = llm.generate(
            system_prompt=REFINEMENT_SYSTEM_PROMPT,
            user_prompt=refinement_user_prompt(log, target_screenshots),
            model_name=model_name,
        )
    except ModelCallError as e:
        return RefinementResult(success=False, metadata=metadata, errors=[f"Refinement model failed: {e}"])

    flow = sanitize_flow_yaml(strip_fences(raw))
    problems = validate_flow(flow)
    if problems:
        return RefinementResult(success=False, flow_yaml=flow, metadata=metadata, errors=problems)

    docs = [d for d in yaml.safe_load_all(flow) if d is not None]
    metadata["optimizedSteps"] = len(docs[1])

    out = Path(output_dir)
    errors = []
    flow_path = out / f"{flow_id}.yaml"
    try:
        out.mkdir(parents=True, exist_ok=True)
        flow_path.write_text(flow + "\n", encoding="utf-8")
        (out / f"{flow_id}.json").write_text(json.dumps(metadata, indent=2), encoding="utf-8")
    except OSError as e:
        errors.append(f"Failed to save flow: {e}")

    logging.info(f"[REFINE] {len(steps)} -> {metadata['optimizedSteps']} steps ({flow_path})")
    return RefinementResult(
        success=not errors,
        flow_yaml=flow,
        flow_path=str(flow_path) if not errors else None,
        metadata=metadata,
        errors=errors,
    )
