"""
Maestro UI hierarchy parsing.

`maestro hierarchy` returns a nested tree of nodes (`attributes` + `children`)
for both iOS and Android. We flatten it once per observation into a list of
UIElements with sequential ids. Those ids are what the model sees on the
annotated screenshot and what `tapElementById` resolves, so they are only
valid for the snapshot they came from.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

# Elements smaller than this (px^2) are too small to tap reliably.
MIN_INTERACTIVE_AREA = 100

DEFAULT_SCREEN_SIZE = (1080, 1920)

TYPE_MAPPING = {
    "android.widget.Button": "button",
    "android.widget.ImageButton": "button",
    "android.widget.EditText": "input",
    "android.widget.TextView": "text",
    "android.widget.ImageView": "image",
    "android.widget.CheckBox": "checkbox",
    "android.widget.RadioButton": "radio",
    "android.widget.Switch": "switch",
    "android.widget.ToggleButton": "toggle",
    "android.widget.Spinner": "select",
    "android.widget.SeekBar": "slider",
    "android.widget.ProgressBar": "progress",
    "android.widget.ScrollView": "scroll",
    "android.widget.ListView": "list",
    "android.widget.RecyclerView": "list",
    "android.view.View": "view",
    "android.view.ViewGroup": "container",
    "android.widget.FrameLayout": "container",
    "android.widget.LinearLayout": "container",
    "android.widget.RelativeLayout": "container",
    "androidx.constraintlayout.widget.ConstraintLayout": "container",
    "androidx.recyclerview.widget.RecyclerView": "list",
    "androidx.appcompat.widget.AppCompatButton": "button",
    "androidx.appcompat.widget.AppCompatEditText": "input",
    "androidx.appcompat.widget.AppCompatTextView": "text",
    "androidx.appcompat.widget.AppCompatImageView": "image",
    "com.google.android.material.button.MaterialButton": "button",
    "com.google.android.material.textfield.TextInputEditText": "input",
}

# Checked in order against the simple class name when there is no direct mapping.
_TYPE_HINTS = (
    ("button", "button"),
    ("text", "text"),
    ("image", "image"),
    ("edit", "input"),
    ("input", "input"),
    ("check", "checkbox"),
    ("switch", "switch"),
    ("scroll", "scroll"),
    ("list", "list"),
    ("recycler", "list"),
    ("layout", "container"),
    ("view", "view"),
)

_BOUNDS_RE = re.compile(r"\[(-?\d+),(-?\d+)\]\[(-?\d+),(-?\d+)\]")


@dataclass(frozen=True)
class Bounds:
    x: int
    y: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return self.x2 - self.x

    @property
    def height(self) -> int:
        return self.y2 - self.y

    @property
    def center_x(self) -> float:
        return self.x + self.width / 2

    @property
    def center_y(self) -> float:
        return self.y + self.height / 2

    @property
    def area(self) -> int:
        return max(0, self.width) * max(0, self.height)


@dataclass(frozen=True)
class ElementStates:
    clickable: bool = False
    enabled: bool = False
    focused: bool = False
    checked: bool = False
    selected: bool = False
    scrollable: bool = False
    password: bool = False


@dataclass(frozen=True)
class UIElement:
    id: int
    type: str
    text: Optional[str]
    resource_id: Optional[str]
    accessibility_label: Optional[str]
    hint_text: Optional[str]
    bounds: Optional[Bounds]
    states: ElementStates
    depth: int = 0
    parent_id: int = -1

    @property
    def has_semantics(self) -> bool:
        return bool(self.text or self.resource_id or self.accessibility_label)

    @property
    def is_interactive(self) -> bool:
        return (
            self.states.clickable
            and self.states.enabled
            and self.bounds is not None
            and self.bounds.area > MIN_INTERACTIVE_AREA
        )

    @property
    def label(self) -> Optional[str]:
        if self.text:
            return self.text
        if self.accessibility_label:
            return self.accessibility_label
        if self.resource_id:
            return "#" + self.resource_id.split("/")[-1]
        return None


@dataclass
class ParsedHierarchy:
    platform: str
    elements: Dict[int, UIElement]
    element_list: List[UIElement]
    interactive_elements: List[UIElement]
    text_elements: List[UIElement]
    screen_bounds: Optional[Bounds]
    total_count: int
    semantics_coverage: int
    max_depth: int = 0

    def screen_size(self) -> Tuple[int, int]:
        if self.screen_bounds is not None and self.screen_bounds.width > 0 and self.screen_bounds.height > 0:
            return self.screen_bounds.width, self.screen_bounds.height
        return DEFAULT_SCREEN_SIZE

    def to_percent(self, x: float, y: float) -> Tuple[float, float]:
        width, height = self.screen_size()
        return x / width * 100.0, y / height * 100.0


def parse_bounds(raw: Any) -> Optional[Bounds]:
    """Accepts "[x1,y1][x2,y2]" or {"x","y","width","height"}."""
    if not raw:
        return None
    if isinstance(raw, dict):
        try:
            x, y = int(raw["x"]), int(raw["y"])
            return Bounds(x, y, x + int(raw["width"]), y + int(raw["height"]))
        except (KeyError, TypeError, ValueError):
            return None
    m = _BOUNDS_RE.search(str(raw))
    if not m:
        return None
    x1, y1, x2, y2 = map(int, m.groups())
    return Bounds(x1, y1, x2, y2)


def map_type(class_name: Optional[str]) -> str:
    if not class_name:
        return "unknown"
    if class_name in TYPE_MAPPING:
        return TYPE_MAPPING[class_name]
    simple = class_name.split(".")[-1].lower()
    for hint, mapped in _TYPE_HINTS:
        if hint in simple:
            return mapped
    return simple


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _flag(*values: Any) -> bool:
    for v in values:
        if isinstance(v, bool):
            if v:
                return True
        elif isinstance(v, str) and v.strip().lower() == "true":
            return True
    return False


def detect_platform(root: dict) -> str:
    stack = [root]
    while stack:
        node = stack.pop()
        if not isinstance(node, dict):
            continue
        attrs = node.get("attributes") or {}
        if str(attrs.get("class") or "").startswith("android.") or attrs.get("package"):
            return "android"
        if "accessibilityText" in attrs or "title" in attrs:
            return "ios"
        stack.extend(reversed(node.get("children") or []))
    return "unknown"


def _parse_node(node: dict, element_id: int, depth: int, parent_id: int) -> UIElement:
    attrs = node.get("attributes") or {}
    bounds = parse_bounds(attrs.get("bounds") or node.get("bounds"))
    el_type = map_type(attrs.get("class"))

    # Priority: text > accessibilityText > title > value
    text = (
        _clean(attrs.get("text"))
        or _clean(attrs.get("accessibilityText"))
        or _clean(attrs.get("title"))
        or _clean(attrs.get("value"))
    )
    label = _clean(attrs.get("content-desc")) or _clean(attrs.get("accessibilityText"))

    clickable = _flag(node.get("clickable"), attrs.get("clickable")) or (
        el_type == "button" and bounds is not None and bounds.area > MIN_INTERACTIVE_AREA
    )

    return UIElement(
        id=element_id,
        type=el_type,
        text=text,
        resource_id=_clean(attrs.get("resource-id")),
        accessibility_label=label,
        hint_text=_clean(attrs.get("hintText")),
        bounds=bounds,
        states=ElementStates(
            clickable=clickable,
            enabled=_flag(node.get("enabled"), attrs.get("enabled")),
            focused=_flag(node.get("focused"), attrs.get("focused")),
            checked=_flag(node.get("checked"), attrs.get("checked")),
            selected=_flag(node.get("selected"), attrs.get("selected")),
            scrollable=_flag(attrs.get("scrollable")),
            password=_flag(attrs.get("password")),
        ),
        depth=depth,
        parent_id=parent_id,
    )


def empty_hierarchy() -> ParsedHierarchy:
    return ParsedHierarchy(
        platform="unknown",
        elements={},
        element_list=[],
        interactive_elements=[],
        text_elements=[],
        screen_bounds=None,
        total_count=0,
        semantics_coverage=0,
        max_depth=0,
    )


def parse_hierarchy(raw: Any) -> ParsedHierarchy:
    """Flatten a raw maestro tree into a ParsedHierarchy.

    Pre-order traversal with an explicit stack, so very deep trees don't hit
    the recursion limit and the id order is stable for a given input.
    """
    if not isinstance(raw, dict) or not raw:
        return empty_hierarchy()

    element_list: List[UIElement] = []
    stack: List[Tuple[dict, int, int]] = [(raw, 0, -1)]
    while stack:
        node, depth, parent_id = stack.pop()
        element = _parse_node(node, len(element_list), depth, parent_id)
        element_list.append(element)
        children = [c for c in (node.get("children") or []) if isinstance(c, dict)]
        for child in reversed(children):
            stack.append((child, depth + 1, element.id))

    labelled = sum(1 for el in element_list if el.has_semantics)
    coverage = int(round(labelled / len(element_list) * 100))

    return ParsedHierarchy(
        platform=detect_platform(raw),
        elements={el.id: el for el in element_list},
        element_list=element_list,
        interactive_elements=[el for el in element_list if el.is_interactive],
        text_elements=[el for el in element_list if el.text is not None],
        screen_bounds=element_list[0].bounds,
        total_count=len(element_list),
        semantics_coverage=coverage,
        max_depth=max(el.depth for el in element_list),
    )


def find_by_resource_id(hierarchy: ParsedHierarchy, resource_id: str) -> Optional[UIElement]:
    rid = (resource_id or "").strip()
    for el in hierarchy.element_list:
        if el.resource_id == rid:
            return el
    # Models often drop the "package:id/" prefix.
    for el in hierarchy.element_list:
        if el.resource_id and el.resource_id.split("/")[-1] == rid:
            return el
    return None


def find_by_text(hierarchy: ParsedHierarchy, text: str, exact: bool = False) -> List[UIElement]:
    needle = (text or "").lower()
    found = []
    for el in hierarchy.element_list:
        if not el.text:
            continue
        if (exact and el.text == text) or (not exact and needle in el.text.lower()):
            found.append(el)
    return found


def enumerate_elements(hierarchy: ParsedHierarchy, max_elements: int = 30) -> List[UIElement]:
    """Interactive elements first, then text-only ones, capped at max_elements."""
    interactive = [el for el in hierarchy.interactive_elements if el.bounds is not None]
    interactive_ids = {el.id for el in interactive}
    text_only = [
        el for el in hierarchy.text_elements
        if el.id not in interactive_ids and el.bounds is not None and el.bounds.area > 0
    ]
    return (interactive + text_only)[:max(0, max_elements)]


def to_element_list(hierarchy: ParsedHierarchy, max_elements: int = 30, include_coordinates: bool = True) -> str:
    lines = []
    for el in enumerate_elements(hierarchy, max_elements):
        parts = [f"[{el.id}]", el.type]
        if el.text:
            parts.append(f'"{el.text[:40]}{"..." if len(el.text) > 40 else ""}"')
        elif el.accessibility_label:
            parts.append(f"({el.accessibility_label[:40]})")
        elif el.resource_id:
            parts.append(f"#{el.resource_id.split('/')[-1]}")
        if not el.is_interactive:
            parts.append("text-only")
        if include_coordinates:
            x_pct, y_pct = hierarchy.to_percent(el.bounds.center_x, el.bounds.center_y)
            parts.append(f"@({round(x_pct)}%,{round(y_pct)}%)")
        lines.append(" ".join(parts))
    return "\n".join(lines)
