import json
import logging
import re
import shutil
import subprocess
import tempfile
import time
from pathlib import Path
from typing import Any, List, Optional

import yaml

from agents.hierarchy import ParsedHierarchy
from devices.backend import TOOL_TEXT_KW, truncate

# Name of the maestro executable (assumes maestro is on PATH)
MAESTRO = "maestro"

FLOW_DIAGNOSTIC_CHARS = 200
SCREENSHOT_DIAGNOSTIC_CHARS = 300


class MaestroCommandError(RuntimeError):
    """A maestro invocation exited non-zero or produced unusable output."""


class MaestroTimeout(MaestroCommandError):
    pass


class InvalidActionForUI(Exception):
    """Raised when the requested action is not valid for the current UI."""


class ElementNotFound(InvalidActionForUI):
    pass


class ElementHasNoBounds(InvalidActionForUI):
    pass


class ElementNotClickable(InvalidActionForUI):
    pass


class ElementDisabled(InvalidActionForUI):
    pass


def _pct(value: float) -> int:
    return int(round(max(0.0, min(100.0, float(value)))))


class MaestroClient:
    """Thin wrapper around the maestro CLI for one leased device.

    Same rule as the device backends: this class only *does* things.
    Every primitive is one single-step flow run with a timeout; it never
    decides anything and never retries.
    """

    def __init__(
        self,
        app_id: str,
        device_id: Optional[str] = None,
        platform: str = "unknown",
        timeout_s: float = 30.0,
        debug_dir: Optional[str] = None,
    ):
        self.app_id = app_id
        self.device_id = device_id
        self.platform = platform
        self.timeout_s = timeout_s
        self.debug_dir = Path(debug_dir) if debug_dir else None

    def _base_cmd(self) -> List[str]:
        cmd = [MAESTRO]
        if self.device_id:
            cmd += ["--device", self.device_id]
        return cmd

    def flow_yaml(self, command: Any) -> str:
        """Build the flow document: an appId header, then a one-step command list."""
        return yaml.safe_dump_all(
            [{"appId": self.app_id}, [command]],
            default_flow_style=False,
            sort_keys=False,
        )

    def _invoke(self, cmd: List[str], timeout: float, cwd: Optional[str] = None) -> subprocess.CompletedProcess:
        logging.debug(f"[MAESTRO] {' '.join(cmd)}")
        try:
            return subprocess.run(cmd, capture_output=True, timeout=timeout, cwd=cwd, **TOOL_TEXT_KW)
        except subprocess.TimeoutExpired as e:
            raise MaestroTimeout(f"Maestro timed out after {timeout}s: {' '.join(cmd[-2:])}") from e
        except FileNotFoundError as e:
            raise MaestroCommandError(f"Tool not found: {cmd[0]}") from e

    def _run_flow(self, command: Any, timeout: Optional[float] = None, cwd: Optional[str] = None):
        with tempfile.TemporaryDirectory(prefix="maestro-flow-") as tmp:
            flow_path = Path(tmp) / "flow.yaml"
            flow_path.write_text(self.flow_yaml(command), encoding="utf-8")
            proc = self._invoke(self._base_cmd() + ["test", str(flow_path)], timeout or self.timeout_s, cwd=cwd)
        if proc.returncode != 0:
            output = proc.stdout or proc.stderr or ""
            raise MaestroCommandError(
                f"Maestro command failed: {truncate(output, FLOW_DIAGNOSTIC_CHARS)}"
            )

    # App lifecycle

    def launch(self):
        self._run_flow("launchApp")

    # Taps and gestures. Coordinates are screen percentages (0-100).

    def tap(self, x: float, y: float):
        self._run_flow({"tapOn": {"point": f"{_pct(x)}%,{_pct(y)}%"}})

    def tap_text(self, text: str):
        self._run_flow({"tapOn": {"text": text}})

    def double_tap(self, x: float, y: float):
        self._run_flow({"doubleTapOn": {"point": f"{_pct(x)}%,{_pct(y)}%"}})

    def long_press(self, x: float, y: float):
        self._run_flow({"longPressOn": {"point": f"{_pct(x)}%,{_pct(y)}%"}})

    def long_press_text(self, text: str):
        self._run_flow({"longPressOn": {"text": text}})

    def scroll(self):
        self._run_flow("scroll")

    def swipe(self, start_x: float, start_y: float, end_x: float, end_y: float):
        self._run_flow({
            "swipe": {
                "start": f"{_pct(start_x)}%, {_pct(start_y)}%",
                "end": f"{_pct(end_x)}%, {_pct(end_y)}%",
            }
        })

    def back_gesture(self):
        """Edge swipe from the left; the only generic 'back' on iOS."""
        self.swipe(1, 50, 80, 50)

    # Text + keys

    def input_text(self, text: str):
        self._run_flow({"inputText": text})

    def erase_text(self, chars: int = 50):
        self._run_flow({"eraseText": int(chars)})

    def hide_keyboard(self):
        self._run_flow("hideKeyboard")

    def back(self):
        self._run_flow("back")

    def press_key(self, key: str):
        self._run_flow({"pressKey": key})

    def open_link(self, url: str):
        self._run_flow({"openLink": url})

    def wait_for_animation(self, timeout_ms: int = 3000):
        self._run_flow(
            {"waitForAnimationToEnd": {"timeout": int(timeout_ms)}},
            timeout=self.timeout_s + timeout_ms / 1000.0,
        )

    # Screens + UI hierarchy

    def screenshot(self, step: Optional[int] = None) -> bytes:
        """Capture the screen as PNG bytes.

        With a debug dir and a step number, a copy is kept as
        step-NNN-before.png so a run can be audited afterwards.
        """
        name = f"screen-{int(time.time() * 1000)}"
        with tempfile.TemporaryDirectory(prefix="maestro-eval-") as tmp:
            try:
                self._run_flow({"takeScreenshot": str(Path(tmp) / name)}, timeout=15, cwd=tmp)
            except MaestroCommandError as e:
                raise MaestroCommandError(
                    f"Screenshot failed: {truncate(str(e), SCREENSHOT_DIAGNOSTIC_CHARS)}"
                ) from e
            shot = Path(tmp) / f"{name}.png"
            if not shot.exists():
                raise MaestroCommandError(f"Screenshot not found at {shot}")
            if self.debug_dir is not None and step is not None:
                self.debug_dir.mkdir(parents=True, exist_ok=True)
                shutil.copyfile(shot, self.debug_dir / f"step-{step:03d}-before.png")
            return shot.read_bytes()

    def hierarchy(self) -> dict:
        proc = self._invoke(self._base_cmd() + ["hierarchy"], timeout=10)
        if proc.returncode != 0:
            raise MaestroCommandError(
                f"Hierarchy failed: {truncate(proc.stderr or proc.stdout or '', SCREENSHOT_DIAGNOSTIC_CHARS)}"
            )
        # maestro prints log lines around the JSON tree.
        m = re.search(r"\{.*\}", proc.stdout or "", re.DOTALL)
        if not m:
            raise MaestroCommandError("Hierarchy failed: no JSON found in output")
        try:
            return json.loads(m.group(0))
        except json.JSONDecodeError as e:
            raise MaestroCommandError(f"Hierarchy failed: {truncate(str(e))}") from e

    # Element targeting

    def tap_element_by_id(self, element_id: int, hierarchy: ParsedHierarchy):
        """Tap the center of an element from the *caller's* snapshot.

        Ids are only meaningful within the observation they came from, so the
        snapshot is always passed in rather than re-fetched.
        """
        element = hierarchy.elements.get(element_id)
        if element is None:
            raise ElementNotFound(f"Element {element_id} not found in hierarchy")
        if element.bounds is None:
            raise ElementHasNoBounds(f"Element {element_id} has no bounds")
        if not element.states.clickable:
            raise ElementNotClickable(f"Element {element_id} is not clickable")
        if not element.states.enabled:
            raise ElementDisabled(f"Element {element_id} is not enabled")

        x_pct, y_pct = hierarchy.to_percent(element.bounds.center_x, element.bounds.center_y)
        self.tap(x_pct, y_pct)
