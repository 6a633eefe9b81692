"""
Typed action vocabulary.

The model answers with {"action": "...", "params": {...}}. Each action name
maps to one small frozen dataclass that validates its own params, so the
executor never has to poke at an untyped dict.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional, Union


class DecisionParseError(ValueError):
    """The model reply could not be turned into an action."""


class InvalidActionParams(DecisionParseError):
    """The action name is known but its params are missing or ill-typed."""


def _number(params: Dict[str, Any], key: str, action: str) -> float:
    v = params.get(key)
    # bool is an int subclass; "true" is never a coordinate.
    if isinstance(v, bool) or v is None:
        raise InvalidActionParams(f"{action}: missing numeric '{key}'")
    if isinstance(v, str):
        try:
            v = float(v.strip().rstrip("%"))
        except ValueError:
            raise InvalidActionParams(f"{action}: '{key}' is not a number: {v!r}")
    if not isinstance(v, (int, float)):
        raise InvalidActionParams(f"{action}: '{key}' is not a number: {v!r}")
    try:
        v = float(v)
    except OverflowError:
        raise InvalidActionParams(f"{action}: '{key}' is out of range")
    if not math.isfinite(v):
        raise InvalidActionParams(f"{action}: '{key}' is not a finite number: {v!r}")
    return v


def _coord(params: Dict[str, Any], key: str, action: str) -> float:
    v = _number(params, key, action)
    if not 0.0 <= v <= 100.0:
        raise InvalidActionParams(f"{action}: '{key}' must be a screen percentage 0-100, got {v}")
    return v


def _text(params: Dict[str, Any], key: str, action: str) -> str:
    v = params.get(key)
    if not isinstance(v, str) or not v.strip():
        raise InvalidActionParams(f"{action}: missing text '{key}'")
    return v


def _int(params: Dict[str, Any], key: str, action: str, default: Optional[int] = None) -> int:
    if params.get(key) is None and default is not None:
        return default
    v = _number(params, key, action)
    if v != int(v) or v < 0:
        raise InvalidActionParams(f"{action}: '{key}' must be a non-negative integer, got {v}")
    return int(v)


def _fmt(v: float) -> str:
    return str(int(v)) if float(v).is_integer() else f"{v:g}"


@dataclass(frozen=True)
class Tap:
    name: ClassVar[str] = "tap"
    x: float
    y: float

    @classmethod
    def from_params(cls, p):
        return cls(_coord(p, "x", cls.name), _coord(p, "y", cls.name))

    def describe(self):
        return f"tap({_fmt(self.x)},{_fmt(self.y)})"


@dataclass(frozen=True)
class TapText:
    name: ClassVar[str] = "tapText"
    text: str

    @classmethod
    def from_params(cls, p):
        return cls(_text(p, "text", cls.name))

    def describe(self):
        return f'tapText("{self.text}")'


@dataclass(frozen=True)
class TapElementById:
    name: ClassVar[str] = "tapElementById"
    element_id: int

    @classmethod
    def from_params(cls, p):
        key = "id" if p.get("id") is not None else "elementId"
        return cls(_int(p, key, cls.name))

    def describe(self):
        return f"tapElementById({self.element_id})"


@dataclass(frozen=True)
class TapResourceId:
    name: ClassVar[str] = "tapResourceId"
    resource_id: str

    @classmethod
    def from_params(cls, p):
        key = "resourceId" if p.get("resourceId") is not None else "id"
        return cls(_text(p, key, cls.name))

    def describe(self):
        return f'tapResourceId("{self.resource_id}")'


@dataclass(frozen=True)
class DoubleTap:
    name: ClassVar[str] = "doubleTap"
    x: float
    y: float

    @classmethod
    def from_params(cls, p):
        return cls(_coord(p, "x", cls.name), _coord(p, "y", cls.name))

    def describe(self):
        return f"doubleTap({_fmt(self.x)},{_fmt(self.y)})"


@dataclass(frozen=True)
class LongPress:
    """Either a text target or a point; text wins when both are given."""

    name: ClassVar[str] = "longPress"
    text: Optional[str] = None
    x: Optional[float] = None
    y: Optional[float] = None

    @classmethod
    def from_params(cls, p):
        if isinstance(p.get("text"), str) and p["text"].strip():
            return cls(text=p["text"])
        return cls(x=_coord(p, "x", cls.name), y=_coord(p, "y", cls.name))

    def describe(self):
        if self.text is not None:
            return f'longPress("{self.text}")'
        return f"longPress({_fmt(self.x)},{_fmt(self.y)})"


@dataclass(frozen=True)
class Scroll:
    name: ClassVar[str] = "scroll"

    @classmethod
    def from_params(cls, p):
        return cls()

    def describe(self):
        return "scroll"


@dataclass(frozen=True)
class Swipe:
    name: ClassVar[str] = "swipe"
    start_x: float
    start_y: float
    end_x: float
    end_y: float

    @classmethod
    def from_params(cls, p):
        return cls(
            _coord(p, "startX", cls.name),
            _coord(p, "startY", cls.name),
            _coord(p, "endX", cls.name),
            _coord(p, "endY", cls.name),
        )

    def describe(self):
        return (
            f"swipe({_fmt(self.start_x)},{_fmt(self.start_y)}"
            f"->{_fmt(self.end_x)},{_fmt(self.end_y)})"
        )


@dataclass(frozen=True)
class InputText:
    name: ClassVar[str] = "inputText"
    text: str

    @classmethod
    def from_params(cls, p):
        v = p.get("text")
        if not isinstance(v, str) or not v:
            raise InvalidActionParams(f"{cls.name}: missing text 'text'")
        return cls(v)

    def describe(self):
        return f'inputText("{self.text}")'


@dataclass(frozen=True)
class EraseText:
    name: ClassVar[str] = "eraseText"
    chars: int = 50

    @classmethod
    def from_params(cls, p):
        return cls(_int(p, "chars", cls.name, default=50))

    def describe(self):
        return f"eraseText({self.chars})"


@dataclass(frozen=True)
class HideKeyboard:
    name: ClassVar[str] = "hideKeyboard"

    @classmethod
    def from_params(cls, p):
        return cls()

    def describe(self):
        return "hideKeyboard"


@dataclass(frozen=True)
class Back:
    name: ClassVar[str] = "back"

    @classmethod
    def from_params(cls, p):
        return cls()

    def describe(self):
        return "back"


@dataclass(frozen=True)
class OpenLink:
    name: ClassVar[str] = "openLink"
    url: str

    @classmethod
    def from_params(cls, p):
        return cls(_text(p, "url", cls.name))

    def describe(self):
        return f'openLink("{self.url}")'


@dataclass(frozen=True)
class PressKey:
    name: ClassVar[str] = "pressKey"
    key: str

    @classmethod
    def from_params(cls, p):
        return cls(_text(p, "key", cls.name))

    def describe(self):
        return f"pressKey({self.key})"


@dataclass(frozen=True)
class Screenshot:
    name: ClassVar[str] = "screenshot"

    @classmethod
    def from_params(cls, p):
        return cls()

    def describe(self):
        return "screenshot"


@dataclass(frozen=True)
class Wait:
    name: ClassVar[str] = "wait"
    timeout_ms: int = 3000

    @classmethod
    def from_params(cls, p):
        return cls(_int(p, "timeout", cls.name, default=3000))

    def describe(self):
        return f"wait({self.timeout_ms}ms)"


@dataclass(frozen=True)
class Done:
    name: ClassVar[str] = "done"

    @classmethod
    def from_params(cls, p):
        return cls()

    def describe(self):
        return "done"


Command = Union[
    Tap, TapText, TapElementById, TapResourceId, DoubleTap, LongPress, Scroll,
    Swipe, InputText, EraseText, HideKeyboard, Back, OpenLink, PressKey,
    Screenshot, Wait, Done,
]

ACTION_TYPES = {
    cls.name: cls
    for cls in (
        Tap, TapText, TapElementById, TapResourceId, DoubleTap, LongPress, Scroll,
        Swipe, InputText, EraseText, HideKeyboard, Back, OpenLink, PressKey,
        Screenshot, Wait, Done,
    )
}

# Actions that visibly change the screen when they succeed.
NAVIGATION_ACTIONS = {
    "tap", "tapText", "tapElementById", "tapResourceId", "doubleTap",
    "longPress", "scroll", "swipe", "back", "openLink",
}


def build_command(action: Any, params: Any) -> Command:
    if not isinstance(action, str) or action not in ACTION_TYPES:
        raise DecisionParseError(f"Unknown action: {action!r}")
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise InvalidActionParams(f"{action}: params must be an object, got {type(params).__name__}")
    return ACTION_TYPES[action].from_params(params)


@dataclass
class AgentAction:
    command: Command
    reasoning: str = ""
    should_screenshot: bool = False
    confidence: float = 0.75
    model_used: str = ""
    escalation_reason: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def action(self) -> str:
        return self.command.name

    @property
    def params(self) -> Dict[str, Any]:
        return dict(self.raw.get("params") or {})

    def describe(self) -> str:
        return self.command.describe()

    def to_log(self) -> Dict[str, Any]:
        return {
            "action": self.action,
            "params": self.params,
            "reasoning": self.reasoning,
            "shouldScreenshot": self.should_screenshot,
            "confidence": self.confidence,
            "modelUsed": self.model_used,
            "escalationReason": self.escalation_reason,
        }
