import logging
import time
from typing import Callable, Optional

from agents.actions import (
    AgentAction,
    Back,
    DoubleTap,
    EraseText,
    HideKeyboard,
    InputText,
    LongPress,
    OpenLink,
    PressKey,
    Scroll,
    Swipe,
    Tap,
    TapElementById,
    TapResourceId,
    TapText,
    Wait,
)
from agents.hierarchy import ParsedHierarchy, find_by_resource_id
from devices.maestro import ElementNotFound, MaestroCommandError

# Seconds to let the UI settle after a successful action.
SETTLE_DELAYS = {
    "tap": 1.5,
    "tapText": 1.5,
    "tapElementById": 1.5,
    "tapResourceId": 1.5,
    "scroll": 1.0,
    "swipe": 1.0,
    "doubleTap": 1.0,
    "longPress": 1.0,
    "back": 1.0,
    "inputText": 0.5,
    "eraseText": 0.5,
    "hideKeyboard": 0.5,
    "pressKey": 0.5,
    "openLink": 2.0,
}


class ActionExecutor:
    """Takes a decided action and performs it on the device.

    Important: the executor does NOT decide what to do next and does not
    retry. A failure is raised to the caller, which counts it.
    `screenshot` and `done` are control actions and are handled by the caller.
    """

    def __init__(self, client, sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.sleep = sleep

    def execute(self, action: AgentAction, hierarchy: Optional[ParsedHierarchy] = None):
        cmd = action.command
        logging.debug(f"[EXEC] {cmd.describe()}")

        if isinstance(cmd, Tap):
            self.client.tap(cmd.x, cmd.y)
        elif isinstance(cmd, TapText):
            self.client.tap_text(cmd.text)
        elif isinstance(cmd, TapElementById):
            if hierarchy is None:
                raise ElementNotFound(f"Element {cmd.element_id} not found: no hierarchy for this step")
            self.client.tap_element_by_id(cmd.element_id, hierarchy)
        elif isinstance(cmd, TapResourceId):
            element = find_by_resource_id(hierarchy, cmd.resource_id) if hierarchy is not None else None
            if element is None:
                raise ElementNotFound(f"No element with resource id {cmd.resource_id}")
            self.client.tap_element_by_id(element.id, hierarchy)
        elif isinstance(cmd, DoubleTap):
            self.client.double_tap(cmd.x, cmd.y)
        elif isinstance(cmd, LongPress):
            if cmd.text is not None:
                self.client.long_press_text(cmd.text)
            else:
                self.client.long_press(cmd.x, cmd.y)
        elif isinstance(cmd, Scroll):
            self.client.scroll()
        elif isinstance(cmd, Swipe):
            self.client.swipe(cmd.start_x, cmd.start_y, cmd.end_x, cmd.end_y)
        elif isinstance(cmd, InputText):
            self.client.input_text(cmd.text)
        elif isinstance(cmd, EraseText):
            self.client.erase_text(cmd.chars)
        elif isinstance(cmd, HideKeyboard):
            self.client.hide_keyboard()
        elif isinstance(cmd, Back):
            self.back()
        elif isinstance(cmd, OpenLink):
            self.client.open_link(cmd.url)
        elif isinstance(cmd, PressKey):
            self.client.press_key(cmd.key)
        elif isinstance(cmd, Wait):
            self.client.wait_for_animation(cmd.timeout_ms)
        else:
            return

        self.settle(action.action)

    def back(self):
        """`back` is Android-only in maestro; iOS falls back to the edge swipe."""
        try:
            self.client.back()
        except MaestroCommandError as e:
            logging.info(f"[EXEC] back failed ({e}); trying edge swipe")
            self.client.back_gesture()

    def settle(self, action_name: str):
        delay = SETTLE_DELAYS.get(action_name, 0.0)
        if delay > 0:
            self.sleep(delay)
