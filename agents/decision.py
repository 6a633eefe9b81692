"""
Decision engine: one model proposes the next action, a policy decides
whether a second (fallback) model should review it.

Flow per step:
  1. primary model -> AgentAction (strict JSON parse, closed vocabulary)
  2. EscalationPolicy.reasons(action, context)
  3. reasons + fallback configured -> fallback model reviews and wins
     (unless the fallback call itself fails, then the primary decision stands)
"""

from __future__ import annotations

import json
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Sequence, Tuple

from agents.actions import AgentAction, DecisionParseError, build_command
from agents.gemini_llm import ModelCallError
from agents.prompts import (
    escalation_system_prompt,
    exploration_system_prompt,
    exploration_user_prompt,
)

DEFAULT_CONFIDENCE = 0.75

# Actions that can silently do the wrong thing, so they need more certainty.
RISKY_ACTIONS = frozenset({"tap", "tapText", "swipe", "openLink", "inputText"})
HIGH_CONFIDENCE_BAR = 0.82
FAILURE_RATE_THRESHOLD = 0.5


def normalize_confidence(value: Any, default: float = DEFAULT_CONFIDENCE) -> float:
    """Coerce a model-reported confidence into [0, 1]. Never raises."""
    if isinstance(value, bool) or value is None:
        return default
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return default
    if not isinstance(value, (int, float)) or math.isnan(value):
        return default
    return max(0.0, min(1.0, float(value)))


def _flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() == "true"
    return value is True


def extract_json_object(text: str) -> Dict[str, Any]:
    s = (text or "").strip()
    if not s:
        raise DecisionParseError("Model returned empty response.")

    # Fast-path: try to parse entire string.
    try:
        obj = json.loads(s)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass

    decoder = json.JSONDecoder()
    for idx, ch in enumerate(s):
        if ch != "{":
            continue
        try:
            obj, _ = decoder.raw_decode(s[idx:])
        except json.JSONDecodeError:
            continue
        if isinstance(obj, dict):
            return obj

    raise DecisionParseError(f"No JSON object in model response. Raw: {s[:400]}")


def parse_agent_action(text: str, model_id: str = "") -> AgentAction:
    obj = extract_json_object(text)
    command = build_command(obj.get("action"), obj.get("params"))
    reasoning = obj.get("reasoning")
    return AgentAction(
        command=command,
        reasoning=reasoning if isinstance(reasoning, str) else "",
        should_screenshot=_flag(obj.get("shouldScreenshot")),
        confidence=normalize_confidence(obj.get("confidence")),
        model_used=model_id,
        raw=obj,
    )


@dataclass
class DecisionContext:
    """Everything a model needs to pick the next action for one observation."""

    step: int = 0
    platform: str = "unknown"
    element_list: str = ""
    image_png: Optional[bytes] = None
    screenshots_taken: int = 0
    max_screenshots: int = 10
    screen_history: Sequence[str] = ()
    last_actions: Sequence[str] = ()
    stuck_count: int = 0
    tap_text_failures: int = 0
    semantics_coverage: int = 100
    recent_errors: Sequence[str] = ()
    consecutive_action_failures: int = 0
    # True = the action ran without error
    recent_outcomes: Sequence[bool] = field(default_factory=tuple)

    @property
    def recent_failure_rate(self) -> Optional[float]:
        outcomes = list(self.recent_outcomes)
        if not outcomes:
            return None
        return sum(1 for ok in outcomes if not ok) / len(outcomes)


class ModelDecider:
    """One model, one call, one strictly parsed action."""

    def __init__(self, llm, model_id: str):
        self.llm = llm
        self.model_id = model_id

    def decide(self, system_prompt: str, user_prompt: str, image_png: Optional[bytes] = None,
               history: Optional[List[Dict]] = None) -> Tuple[AgentAction, str]:
        raw = self.llm.generate(
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            image_png=image_png,
            history=history,
            model_name=self.model_id,
        )
        return parse_agent_action(raw, self.model_id), raw


class EscalationPolicy:
    def __init__(self, low_confidence_threshold: float = 0.68, failure_escalation_threshold: int = 2):
        self.low_confidence_threshold = max(0.0, min(1.0, float(low_confidence_threshold)))
        self.failure_escalation_threshold = max(1, int(failure_escalation_threshold))

    def reasons(self, action: AgentAction, ctx: DecisionContext) -> List[str]:
        reasons = []
        if action.confidence < self.low_confidence_threshold:
            reasons.append(
                f"low confidence {action.confidence:.2f} < {self.low_confidence_threshold:.2f}"
            )
        if ctx.consecutive_action_failures >= self.failure_escalation_threshold:
            reasons.append(f"{ctx.consecutive_action_failures} consecutive action failures")
        rate = ctx.recent_failure_rate
        if rate is not None and rate >= FAILURE_RATE_THRESHOLD:
            reasons.append(f"recent failure rate {round(rate * 100)}%")
        if action.action == "tapText" and ctx.tap_text_failures > 0:
            reasons.append(f"tapText after {ctx.tap_text_failures} tapText failure(s)")
        if action.action in RISKY_ACTIONS and action.confidence < HIGH_CONFIDENCE_BAR:
            reasons.append(
                f"risky action {action.action} with confidence {action.confidence:.2f} < {HIGH_CONFIDENCE_BAR}"
            )
        return reasons


class DecisionEngine:
    def __init__(
        self,
        primary: ModelDecider,
        fallback: Optional[ModelDecider] = None,
        policy: Optional[EscalationPolicy] = None,
        history_turns: int = 8,
    ):
        self.primary = primary
        self.fallback = fallback
        self.policy = policy or EscalationPolicy()
        # One entry per exchange: (user turn, model turn)
        self._history: Deque[Tuple[Dict, Dict]] = deque(maxlen=max(0, history_turns))
        self._warned_no_fallback = False

    @property
    def fallback_configured(self) -> bool:
        return self.fallback is not None and bool(self.fallback.model_id) \
            and self.fallback.model_id != self.primary.model_id

    def history(self) -> List[Dict]:
        contents = []
        for user_turn, model_turn in self._history:
            contents.append(user_turn)
            contents.append(model_turn)
        return contents

    def _record(self, user_prompt: str, reply: str):
        # Images stay out of the window; only the current turn carries one.
        self._history.append((
            {"role": "user", "parts": [{"text": user_prompt}]},
            {"role": "model", "parts": [{"text": reply}]},
        ))

    def decide(self, ctx: DecisionContext) -> AgentAction:
        """Raises ModelCallError / DecisionParseError when the primary model fails."""
        system_prompt = exploration_system_prompt(ctx)
        user_prompt = exploration_user_prompt(ctx)
        history = self.history()

        action, raw = self.primary.decide(system_prompt, user_prompt, ctx.image_png, history)
        reasons = self.policy.reasons(action, ctx)
        if not reasons:
            self._record(user_prompt, raw)
            return action

        if not self.fallback_configured:
            if not self._warned_no_fallback:
                logging.warning("[DECIDE] escalation wanted but no fallback model configured; using primary decisions")
                self._warned_no_fallback = True
            logging.debug(f"[DECIDE] escalation skipped: {'; '.join(reasons)}")
            self._record(user_prompt, raw)
            return action

        logging.info(f"[DECIDE] escalating {action.describe()} to {self.fallback.model_id}: {'; '.join(reasons)}")
        try:
            reviewed, fb_raw = self.fallback.decide(
                escalation_system_prompt(ctx, action, reasons), user_prompt, ctx.image_png, history
            )
        except (ModelCallError, DecisionParseError) as e:
            logging.warning(f"[DECIDE] fallback model failed, keeping primary decision: {e}")
            self._record(user_prompt, raw)
            return action

        reviewed.escalation_reason = "; ".join(reasons)
        self._record(user_prompt, fb_raw)
        return reviewed
