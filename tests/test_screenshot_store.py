from pathlib import Path

from agents.hierarchy import parse_hierarchy
from agents.screenshot_store import ScreenshotStore, content_hash, structural_hash

from fakes import make_png, node, screen


def test_save_then_is_duplicate(tmp_path):
    store = ScreenshotStore(str(tmp_path))
    image = make_png(1)
    assert not store.is_duplicate(image)
    record = store.save(image)
    assert store.is_duplicate(image)
    assert Path(record.path).name == "screenshot-1.png"
    assert Path(record.path).read_bytes() == image
    assert record.image_hash == content_hash(image)


def test_single_byte_difference_is_not_a_duplicate(tmp_path):
    store = ScreenshotStore(str(tmp_path))
    image = make_png(2)
    store.save(image)
    changed = image[:-1] + bytes([(image[-1] + 1) % 256])
    assert content_hash(changed) != content_hash(image)
    assert not store.is_duplicate(changed)


def test_names_increment_and_accessors(tmp_path):
    store = ScreenshotStore(str(tmp_path / "out"))
    for i in range(3):
        store.save(make_png(i))
    assert store.count() == 3
    assert [Path(p).name for p in store.get_all()] == ["screenshot-1.png", "screenshot-2.png", "screenshot-3.png"]
    assert len(store.records()) == 3


def test_structural_hash_normalizes_text():
    a = parse_hierarchy(screen(node(text="Hello   World"), node(text="Second")))
    b = parse_hierarchy(screen(node(text="hello world"), node(text=" SECOND ")))
    c = parse_hierarchy(screen(node(text="hello world")))
    assert structural_hash(a) == structural_hash(b)
    assert structural_hash(a) != structural_hash(c)
    assert structural_hash(None) == structural_hash(parse_hierarchy({}))
