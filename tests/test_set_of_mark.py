import io

from PIL import Image

from agents.hierarchy import parse_hierarchy
from agents.set_of_mark import annotate

from fakes import button, node, screen


def _png(size, color=(255, 255, 255)):
    out = io.BytesIO()
    Image.new("RGB", size, color).save(out, format="PNG")
    return out.getvalue()


def test_annotate_draws_scaled_boxes_on_a_copy():
    # Hierarchy is 1000x2000, screenshot is 200x400: everything scales by 0.2.
    parsed = parse_hierarchy(screen(
        button("Go", (100, 1000, 500, 1800)),
        node(text="Just text", bounds=(600, 100, 900, 200)),
        size=(1000, 2000),
    ))
    original = _png((200, 400))
    marked = annotate(original, parsed)

    assert marked != original
    img = Image.open(io.BytesIO(marked)).convert("RGB")
    assert img.size == (200, 400)
    # Left edge of the button box at x=20..24, below the id label.
    assert img.getpixel((22, 330)) == (255, 0, 0)
    # The text-only element isn't boxed.
    assert img.getpixel((150, 30)) == (255, 255, 255)
    assert Image.open(io.BytesIO(original)).convert("RGB").getpixel((22, 330)) == (255, 255, 255)


def test_annotate_with_no_interactive_elements_keeps_pixels():
    parsed = parse_hierarchy(screen(node(text="Hello", bounds=(0, 0, 100, 100)), size=(200, 400)))
    original = _png((200, 400), color=(10, 20, 30))
    img = Image.open(io.BytesIO(annotate(original, parsed))).convert("RGB")
    assert img.getpixel((5, 5)) == (10, 20, 30)
