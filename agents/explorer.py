"""
Exploration orchestrator.

One Explorer drives one leased device for one app:

    launch -> [observe -> signature -> (stuck? recover) -> decide -> act]* -> top-up

Nothing inside the loop is fatal except a failed launch or an exhausted
stuck-recovery ladder; every other failure is logged, counted and fed back
into the next decision. The result always reports what was captured.
"""

from __future__ import annotations

import hashlib
import json
import logging
import math
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Deque, Dict, List, Optional, Tuple

from agents.actions import DecisionParseError
from agents.config import ExplorationConfig
from agents.decision import DecisionContext, DecisionEngine
from agents.executor import ActionExecutor
from agents.gemini_llm import ModelCallError
from agents.hierarchy import ParsedHierarchy, parse_hierarchy, to_element_list
from agents.screenshot_store import ScreenshotStore, content_hash
from agents.set_of_mark import annotate
from devices.maestro import InvalidActionForUI, MaestroCommandError

SIGNATURE_ELEMENTS = 12
SIGNATURE_GRID = 10
RECENT_ERRORS = 5
RECENT_OUTCOMES = 10
HISTORY_LIMIT = 20
OBSERVE_RETRY_S = 1.0
RECOVERY_SETTLE_S = 1.0
# (x%, y%) tapped by the corner_taps rung: top-right close buttons, then top-left back buttons.
CORNER_TAPS = ((92, 6), (8, 6))


def _quantize(value: float) -> int:
    return int(math.floor(value / SIGNATURE_GRID + 0.5) * SIGNATURE_GRID)


def _element_key(el) -> Tuple[str, int, int]:
    if el.bounds is None:
        return (el.label or "", -1, -1)
    return (el.label or "", _quantize(el.bounds.center_x), _quantize(el.bounds.center_y))


def screen_signature(parsed: ParsedHierarchy) -> str:
    """Jitter-tolerant identity of a screen.

    Positions are rounded to the nearest 10 units and the element tuples are
    sorted, so a few pixels of movement or a different traversal order still
    hash to the same screen.
    """
    payload = {
        "platform": parsed.platform,
        "total": parsed.total_count,
        "interactive": len(parsed.interactive_elements),
        "semantics": parsed.semantics_coverage // 20,
        "text": sorted(_element_key(el) for el in parsed.text_elements[:SIGNATURE_ELEMENTS]),
        "tap": sorted(_element_key(el) for el in parsed.interactive_elements[:SIGNATURE_ELEMENTS]),
    }
    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def candidate_score(parsed: ParsedHierarchy) -> int:
    return (
        min(len(parsed.interactive_elements), 8) * 2
        + min(len(parsed.text_elements), 8)
        + parsed.semantics_coverage // 20
    )


@dataclass
class FallbackCandidate:
    image_hash: str
    image: bytes = field(repr=False)
    hierarchy: ParsedHierarchy = field(repr=False)
    score: int
    step: int
    signature: str


def _rank(candidate: FallbackCandidate):
    return (-candidate.score, candidate.step)


@dataclass
class ExplorationState:
    screen_history: List[str] = field(default_factory=list)
    last_actions: List[str] = field(default_factory=list)
    recent_errors: Deque[str] = field(default_factory=lambda: deque(maxlen=RECENT_ERRORS))
    consecutive_tap_text_failures: int = 0
    consecutive_action_failures: int = 0
    # True = the action ran without error
    recent_outcomes: Deque[bool] = field(default_factory=lambda: deque(maxlen=RECENT_OUTCOMES))
    fallback_candidates: Dict[str, FallbackCandidate] = field(default_factory=dict)
    same_screen_count: int = 0
    last_signature: Optional[str] = None
    action_failures: Dict[str, int] = field(default_factory=dict)
    ladder_position: int = 0
    recovery_episodes: int = 0
    direct_captures: int = 0
    fallback_captures: int = 0
    step_log: List[dict] = field(default_factory=list)

    def observe_signature(self, signature: str) -> int:
        if signature == self.last_signature:
            self.same_screen_count += 1
        else:
            self.same_screen_count = 0
            self.ladder_position = 0
            self.last_signature = signature
        return self.same_screen_count

    def push_action(self, description: str):
        self.last_actions.append(description)
        del self.last_actions[:-HISTORY_LIMIT]

    def push_screen(self, label: str):
        if self.screen_history and self.screen_history[-1] == label:
            return
        self.screen_history.append(label)
        del self.screen_history[:-HISTORY_LIMIT]

    def record_success(self, action_name: str):
        self.consecutive_action_failures = 0
        if action_name == "tapText":
            self.consecutive_tap_text_failures = 0
        self.recent_outcomes.append(True)

    def record_failure(self, action_name: str, message: str):
        self.consecutive_action_failures += 1
        if action_name == "tapText":
            self.consecutive_tap_text_failures += 1
        self.action_failures[action_name] = self.action_failures.get(action_name, 0) + 1
        self.recent_errors.append(message)
        self.recent_outcomes.append(False)

    def add_candidate(self, candidate: FallbackCandidate, capacity: int) -> bool:
        if candidate.image_hash in self.fallback_candidates:
            return False
        self.fallback_candidates[candidate.image_hash] = candidate
        if len(self.fallback_candidates) > capacity:
            keep = sorted(self.fallback_candidates.values(), key=_rank)[:capacity]
            self.fallback_candidates = {c.image_hash: c for c in keep}
        return candidate.image_hash in self.fallback_candidates

    def ranked_candidates(self) -> List[FallbackCandidate]:
        return sorted(self.fallback_candidates.values(), key=_rank)


@dataclass
class ExplorationResult:
    success: bool
    screenshot_count: int
    total_steps: int
    screenshots: List[str]
    duration_s: float
    errors: List[str] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)
    direct_captures: int = 0
    fallback_captures: int = 0
    log_path: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "screenshotCount": self.screenshot_count,
            "totalSteps": self.total_steps,
            "screenshots": self.screenshots,
            "durationS": round(self.duration_s, 2),
            "errors": self.errors,
            "notes": self.notes,
            "directCaptures": self.direct_captures,
            "fallbackCaptures": self.fallback_captures,
            "logPath": self.log_path,
        }


class _Observation:
    __slots__ = ("image", "parsed", "annotated")

    def __init__(self, image: bytes, parsed: ParsedHierarchy, annotated: bytes):
        self.image = image
        self.parsed = parsed
        self.annotated = annotated


class Explorer:
    def __init__(
        self,
        client,
        engine: DecisionEngine,
        store: ScreenshotStore,
        config: ExplorationConfig,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.engine = engine
        self.store = store
        self.config = config
        self.sleep = sleep
        self.executor = ActionExecutor(client, sleep=sleep)
        self.state = ExplorationState()
        self.platform = config.platform or getattr(client, "platform", None) or "unknown"
        self.errors: List[str] = []
        self.notes: List[str] = []

    # Main loop

    def run(self) -> ExplorationResult:
        started = time.time()
        logging.info(f"[EXPLORE] {self.config.app_id}: up to {self.config.max_steps} steps, "
                     f"{self.config.max_screenshots} screenshots ({self.platform})")

        try:
            self.client.launch()
        except MaestroCommandError as e:
            self.errors.append(f"Launch failed: {e}")
            logging.error(f"[EXPLORE] launch failed: {e}")
            return self._result(started, steps=0)
        self.sleep(self.config.launch_wait_s)

        steps = 0
        for step in range(1, self.config.max_steps + 1):
            if self.store.count() >= self.config.max_screenshots:
                self.notes.append(f"Screenshot budget of {self.config.max_screenshots} reached")
                break
            steps = step
            if not self._step(step):
                break
        else:
            if self.config.max_steps > 0:
                self.notes.append(f"Step budget of {self.config.max_steps} exhausted")

        self._top_up()
        return self._result(started, steps=steps)

    def _step(self, step: int) -> bool:
        """Run one loop iteration. Returns False when the session should end."""
        entry = {"step": step}
        self.state.step_log.append(entry)

        obs = self._observe(step)
        if obs is None:
            entry["outcome"] = "observe-failed"
            self.sleep(OBSERVE_RETRY_S)
            return True

        parsed = obs.parsed
        if self.platform == "unknown" and parsed.platform != "unknown":
            self.platform = parsed.platform
        signature = screen_signature(parsed)
        entry["signature"] = signature[:12]
        self.state.push_screen(self._screen_label(parsed, signature))
        self._register_candidate(obs, signature, step)

        same = self.state.observe_signature(signature)
        if same >= self.config.stuck_threshold(self.platform):
            self.state.same_screen_count = 0
            entry["outcome"] = "recovery"
            if not self._recover(step, entry):
                self.notes.append(
                    f"Ended at step {step}: stuck on the same screen and every recovery attempt failed"
                )
                return False
            return True

        try:
            action = self.engine.decide(self._context(step, obs))
        except (ModelCallError, DecisionParseError) as e:
            message = f"Step {step}: decision failed: {e}"
            logging.warning(f"[EXPLORE] {message}")
            self.state.recent_errors.append(message)
            self.errors.append(message)
            entry["outcome"] = "decision-failed"
            return True

        entry["decision"] = action.to_log()
        logging.info(f"[EXPLORE] step {step}: {action.describe()} "
                     f"({action.model_used}, conf {action.confidence:.2f}) {action.reasoning}")

        if action.action == "done":
            if action.should_screenshot:
                entry["captured"] = self._capture(obs.image, parsed, step)
            entry["outcome"] = "done"
            self.notes.append(f"Model finished exploring at step {step}")
            return False

        if action.action == "screenshot":
            entry["captured"] = self._capture(obs.image, parsed, step)
            self.state.push_action(action.describe())
            entry["outcome"] = "screenshot"
            return True

        try:
            self.executor.execute(action, parsed)
        except (MaestroCommandError, InvalidActionForUI) as e:
            message = f"{action.describe()} failed: {e}"
            logging.warning(f"[EXPLORE] step {step}: {message}")
            self.state.record_failure(action.action, message)
            self.state.push_action(f"{action.describe()} (failed)")
            entry["outcome"] = "action-failed"
            entry["error"] = str(e)
            return True

        self.state.record_success(action.action)
        self.state.push_action(action.describe())
        entry["outcome"] = "ok"

        if action.should_screenshot:
            entry["captured"] = self._capture_now(step)
        return True

    # Observe

    def _observe(self, step: int) -> Optional[_Observation]:
        try:
            image = self.client.screenshot(step)
            parsed = parse_hierarchy(self.client.hierarchy())
        except MaestroCommandError as e:
            message = f"Step {step}: observation failed: {e}"
            logging.warning(f"[EXPLORE] {message}")
            self.errors.append(message)
            return None

        try:
            annotated = annotate(image, parsed)
        except (OSError, ValueError) as e:
            logging.warning(f"[EXPLORE] step {step}: annotation failed, sending raw screenshot: {e}")
            annotated = image

        if self.config.debug_dir:
            debug_dir = Path(self.config.debug_dir)
            try:
                debug_dir.mkdir(parents=True, exist_ok=True)
                (debug_dir / f"step-{step:03d}-annotated.png").write_bytes(annotated)
            except OSError as e:
                logging.warning(f"[EXPLORE] step {step}: could not write debug image: {e}")

        return _Observation(image, parsed, annotated)

    @staticmethod
    def _screen_label(parsed: ParsedHierarchy, signature: str) -> str:
        title = next((el.text for el in parsed.text_elements if el.text), None)
        if title:
            return f"{title[:24]} ({signature[:6]})"
        return signature[:6]

    def _register_candidate(self, obs: _Observation, signature: str, step: int):
        if obs.parsed.total_count == 0:
            return
        candidate = FallbackCandidate(
            image_hash=content_hash(obs.image),
            image=obs.image,
            hierarchy=obs.parsed,
            score=candidate_score(obs.parsed),
            step=step,
            signature=signature,
        )
        capacity = max(12, 8 * self.config.max_screenshots)
        self.state.add_candidate(candidate, capacity)

    def _context(self, step: int, obs: _Observation) -> DecisionContext:
        return DecisionContext(
            step=step,
            platform=self.platform,
            element_list=to_element_list(obs.parsed),
            image_png=obs.annotated,
            screenshots_taken=self.store.count(),
            max_screenshots=self.config.max_screenshots,
            screen_history=list(self.state.screen_history),
            last_actions=list(self.state.last_actions),
            stuck_count=self.state.same_screen_count,
            tap_text_failures=self.state.consecutive_tap_text_failures,
            semantics_coverage=obs.parsed.semantics_coverage,
            recent_errors=list(self.state.recent_errors),
            consecutive_action_failures=self.state.consecutive_action_failures,
            recent_outcomes=list(self.state.recent_outcomes),
        )

    # Capture

    def _capture(self, image: bytes, parsed: Optional[ParsedHierarchy], step: int) -> bool:
        if self.store.count() >= self.config.max_screenshots:
            return False
        if self.store.is_duplicate(image):
            logging.info(f"[EXPLORE] step {step}: duplicate screenshot skipped")
            return False
        self.store.save(image, parsed)
        self.state.direct_captures += 1
        return True

    def _capture_now(self, step: int) -> bool:
        """Capture after an action that asked for a screenshot."""
        try:
            image = self.client.screenshot()
        except MaestroCommandError as e:
            message = f"Step {step}: screenshot failed: {e}"
            logging.warning(f"[EXPLORE] {message}")
            self.errors.append(message)
            return False
        try:
            parsed = parse_hierarchy(self.client.hierarchy())
        except MaestroCommandError as e:
            logging.debug(f"[EXPLORE] step {step}: no hierarchy for capture: {e}")
            parsed = None
        return self._capture(image, parsed, step)

    # Stuck recovery

    def _recover(self, step: int, entry: dict) -> bool:
        """Run one stuck episode. Returns False when nothing could be done."""
        ladder = list(self.config.recovery_ladder)
        self.state.recovery_episodes += 1
        attempts = []
        if ladder:
            start = min(self.state.ladder_position, len(ladder) - 1)
            for rung in ladder[start:start + self.config.max_recovery_attempts]:
                attempts.append(rung)
                try:
                    self._run_rung(rung)
                except MaestroCommandError as e:
                    message = f"Recovery {rung} failed: {e}"
                    logging.warning(f"[EXPLORE] step {step}: {message}")
                    self.state.recent_errors.append(message)
                    continue
                self.state.ladder_position = start + 1
                entry["recovery"] = attempts
                logging.info(f"[EXPLORE] step {step}: stuck, recovered with {rung}")
                self.state.push_action(f"recover:{rung}")
                return True

        for name, fn in (("back", self.client.back), ("back_gesture", self.client.back_gesture)):
            attempts.append(name)
            try:
                fn()
            except MaestroCommandError as e:
                message = f"Recovery {name} failed: {e}"
                logging.warning(f"[EXPLORE] step {step}: {message}")
                self.state.recent_errors.append(message)
                continue
            self.sleep(RECOVERY_SETTLE_S)
            entry["recovery"] = attempts
            self.state.push_action(f"recover:{name}")
            return True

        entry["recovery"] = attempts
        return False

    def _run_rung(self, rung: str):
        if rung == "edge_swipe":
            self.client.back_gesture()
        elif rung == "corner_taps":
            for x, y in CORNER_TAPS:
                self.client.tap(x, y)
                self.sleep(RECOVERY_SETTLE_S / 2)
        elif rung == "relaunch":
            self.client.launch()
            self.sleep(self.config.launch_wait_s)
            return
        else:
            raise ValueError(f"Unknown recovery rung: {rung}")
        self.sleep(RECOVERY_SETTLE_S)

    # Top-up + result

    def _top_up(self):
        target = self.config.minimum_target(self.platform)
        if self.state.direct_captures >= target:
            return
        added = 0
        for candidate in self.state.ranked_candidates():
            if self.store.count() >= target:
                break
            if self.store.is_duplicate(candidate.image):
                continue
            self.store.save(candidate.image, candidate.hierarchy)
            self.state.fallback_captures += 1
            added += 1
        if self.store.count() >= target:
            self.notes.append(
                f"Only {self.state.direct_captures} direct capture(s); added {added} fallback "
                f"screenshot(s) to reach the minimum of {target}"
            )
        else:
            self.notes.append(
                f"Only {self.store.count()} of {target} minimum screenshots; fallback candidates exhausted"
            )

    def _write_log(self) -> Optional[str]:
        path = self.store.output_dir / "exploration-log.json"
        payload = {
            "appId": self.config.app_id,
            "platform": self.platform,
            "steps": self.state.step_log,
            "screenshots": self.store.get_all(),
        }
        try:
            path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        except OSError as e:
            logging.warning(f"[EXPLORE] could not write exploration log: {e}")
            return None
        return str(path)

    def _result(self, started: float, steps: int) -> ExplorationResult:
        count = self.store.count()
        result = ExplorationResult(
            success=count > 0,
            screenshot_count=count,
            total_steps=steps,
            screenshots=self.store.get_all(),
            duration_s=time.time() - started,
            errors=list(self.errors),
            notes=list(self.notes),
            direct_captures=self.state.direct_captures,
            fallback_captures=self.state.fallback_captures,
            log_path=self._write_log(),
        )
        logging.info(f"[EXPLORE] {self.config.app_id}: {count} screenshot(s) in {steps} step(s)")
        return result
