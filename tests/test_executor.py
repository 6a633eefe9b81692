import pytest

from agents.decision import parse_agent_action
from agents.executor import ActionExecutor
from agents.hierarchy import parse_hierarchy
from devices.maestro import ElementNotFound, MaestroCommandError

from fakes import FakeClient, button, make_png, reply, screen


def _executor(**client_kw):
    client = FakeClient([(make_png(0), screen())], **client_kw)
    sleeps = []
    return ActionExecutor(client, sleep=sleeps.append), client, sleeps


def _act(name, params=None):
    return parse_agent_action(reply(name, params), "m")


@pytest.mark.parametrize("name, params, call, delay", [
    ("tap", {"x": 10, "y": 20}, ("tap", 10.0, 20.0), 1.5),
    ("tapText", {"text": "Go"}, ("tap_text", "Go"), 1.5),
    ("doubleTap", {"x": 1, "y": 2}, ("double_tap", 1.0, 2.0), 1.0),
    ("longPress", {"text": "Row"}, ("long_press_text", "Row"), 1.0),
    ("scroll", {}, ("scroll",), 1.0),
    ("swipe", {"startX": 1, "startY": 50, "endX": 80, "endY": 50}, ("swipe", 1.0, 50.0, 80.0, 50.0), 1.0),
    ("inputText", {"text": "hello"}, ("input_text", "hello"), 0.5),
    ("eraseText", {"chars": 5}, ("erase_text", 5), 0.5),
    ("hideKeyboard", {}, ("hide_keyboard",), 0.5),
    ("pressKey", {"key": "enter"}, ("press_key", "enter"), 0.5),
    ("openLink", {"url": "app://x"}, ("open_link", "app://x"), 2.0),
])
def test_dispatch_and_settle_delay(name, params, call, delay):
    executor, client, sleeps = _executor()
    executor.execute(_act(name, params))
    assert client.calls == [call]
    assert sleeps == [delay]


def test_wait_has_no_extra_settle():
    executor, client, sleeps = _executor()
    executor.execute(_act("wait", {"timeout": 500}))
    assert client.calls == [("wait_for_animation", 500)]
    assert sleeps == []


def test_control_actions_do_nothing():
    executor, client, sleeps = _executor()
    executor.execute(_act("screenshot"))
    executor.execute(_act("done"))
    assert client.calls == [] and sleeps == []


def test_back_falls_back_to_edge_swipe():
    executor, client, sleeps = _executor(fail={"back": MaestroCommandError("back is Android only")})
    executor.execute(_act("back"))
    assert client.names() == ["back", "back_gesture"]


def test_failure_propagates_without_settle():
    executor, client, sleeps = _executor(fail={"tap_text": MaestroCommandError("Element not found")})
    with pytest.raises(MaestroCommandError):
        executor.execute(_act("tapText", {"text": "Missing"}))
    assert sleeps == []


def test_tap_resource_id_resolves_against_snapshot():
    parsed = parse_hierarchy(screen(button("Save", (0, 0, 200, 200), rid="com.example:id/save")))
    executor, client, sleeps = _executor()
    executor.execute(_act("tapResourceId", {"resourceId": "save"}), parsed)
    assert client.calls == [("tap_element_by_id", 1)]
    with pytest.raises(ElementNotFound):
        executor.execute(_act("tapResourceId", {"resourceId": "missing"}), parsed)
