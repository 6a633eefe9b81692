import io
import json
import threading

from PIL import Image

from devices.backend import DeviceBackend, DeviceCommandError


def make_png(seed: int, size=(60, 120)) -> bytes:
    img = Image.new("RGB", size, ((seed * 37) % 256, (seed * 91) % 256, (seed * 53) % 256))
    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()


def node(text=None, bounds=(0, 0, 100, 100), clickable=False, enabled=True,
         cls="android.widget.TextView", rid=None, desc=None, children=()):
    attrs = {
        "class": cls,
        "bounds": "[%d,%d][%d,%d]" % bounds,
        "enabled": "true" if enabled else "false",
        "clickable": "true" if clickable else "false",
    }
    if text is not None:
        attrs["text"] = text
    if rid is not None:
        attrs["resource-id"] = rid
    if desc is not None:
        attrs["content-desc"] = desc
    return {"attributes": attrs, "children": list(children)}


def button(text, bounds, **kw):
    return node(text=text, bounds=bounds, clickable=True, cls="android.widget.Button", **kw)


def screen(*children, size=(1080, 1920)):
    return node(cls="android.widget.FrameLayout", bounds=(0, 0, size[0], size[1]), children=children)


def simple_screen(i: int) -> dict:
    """A distinct screen per index: a title plus two buttons."""
    return screen(
        node(text=f"Screen {i}", bounds=(40, 100, 1040, 200)),
        button(f"Open {i}", (40, 400, 540, 520)),
        button("Settings", (560, 400, 1040, 520)),
    )


def reply(action, params=None, confidence=0.9, screenshot=False, reasoning="because"):
    return json.dumps({
        "action": action,
        "params": params or {},
        "reasoning": reasoning,
        "shouldScreenshot": screenshot,
        "confidence": confidence,
    })


class FakeBackend(DeviceBackend):
    platform = "ios"

    def __init__(self, orphans=()):
        super().__init__()
        self._lock = threading.Lock()
        self._n = 0
        self.alive = set()
        self.unhealthy = set()
        self.orphans = list(orphans)
        self.deleted = []
        self.uninstalled = []
        self.erased = []
        self.installed = []
        self.fail_create = False
        self.fail_uninstall = False

    def create(self, name):
        if self.fail_create:
            raise DeviceCommandError("simctl create exited 1: no runtime")
        with self._lock:
            self._n += 1
            handle = f"dev-{self._n}"
            self.alive.add(handle)
        return handle

    def is_healthy(self, handle):
        return handle in self.alive and handle not in self.unhealthy

    def install(self, handle, app_path):
        self.installed.append((handle, app_path))

    def uninstall(self, handle, app_id):
        if self.fail_uninstall:
            raise DeviceCommandError("uninstall failed")
        self.uninstalled.append((handle, app_id))

    def erase(self, handle):
        self.erased.append(handle)

    def delete(self, handle):
        with self._lock:
            self.alive.discard(handle)
            self.orphans = [o for o in self.orphans if o[0] != handle]
            self.deleted.append(handle)

    def list_devices(self):
        with self._lock:
            return list(self.orphans) + [(h, f"iPhone-pool-{h}") for h in sorted(self.alive)]


class FakeClient:
    """Scripted automation client.

    `screens` is a list of (png bytes, raw hierarchy). Successful navigation
    actions move to the next screen; `fail` maps a method name to the
    exception it should raise.
    """

    def __init__(self, screens, platform="android", fail=None):
        self.screens = list(screens)
        self.platform = platform
        self.fail = dict(fail or {})
        self.index = 0
        self.calls = []

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        err = self.fail.get(name)
        if err is not None:
            raise err

    def _advance(self):
        self.index = min(self.index + 1, len(self.screens) - 1)

    def names(self):
        return [c[0] for c in self.calls]

    def count(self, name):
        return self.names().count(name)

    def launch(self):
        self._call("launch")

    def screenshot(self, step=None):
        self._call("screenshot")
        return self.screens[self.index][0]

    def hierarchy(self):
        self._call("hierarchy")
        return self.screens[self.index][1]

    def tap(self, x, y):
        self._call("tap", x, y)
        self._advance()

    def tap_text(self, text):
        self._call("tap_text", text)
        self._advance()

    def tap_element_by_id(self, element_id, hierarchy):
        self._call("tap_element_by_id", element_id)
        self._advance()

    def double_tap(self, x, y):
        self._call("double_tap", x, y)

    def long_press(self, x, y):
        self._call("long_press", x, y)

    def long_press_text(self, text):
        self._call("long_press_text", text)

    def scroll(self):
        self._call("scroll")
        self._advance()

    def swipe(self, start_x, start_y, end_x, end_y):
        self._call("swipe", start_x, start_y, end_x, end_y)
        self._advance()

    def back_gesture(self):
        self._call("back_gesture")

    def input_text(self, text):
        self._call("input_text", text)

    def erase_text(self, chars=50):
        self._call("erase_text", chars)

    def hide_keyboard(self):
        self._call("hide_keyboard")

    def back(self):
        self._call("back")

    def press_key(self, key):
        self._call("press_key", key)

    def open_link(self, url):
        self._call("open_link", url)

    def wait_for_animation(self, timeout_ms=3000):
        self._call("wait_for_animation", timeout_ms)


class FakeLLM:
    """Replies per model name; the last scripted reply repeats forever."""

    def __init__(self, replies):
        self.replies = {k: list(v) for k, v in replies.items()}
        self.calls = []

    def generate(self, system_prompt, user_prompt, image_png=None, history=None, model_name=None):
        self.calls.append({
            "model": model_name,
            "system": system_prompt,
            "user": user_prompt,
            "image": image_png,
            "history": list(history or []),
        })
        queue = self.replies[model_name]
        r = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(r, Exception):
            raise r
        return r

    def calls_for(self, model_name):
        return [c for c in self.calls if c["model"] == model_name]
