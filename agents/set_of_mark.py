import io
from typing import Optional

from PIL import Image, ImageDraw, ImageFont

from agents.hierarchy import ParsedHierarchy, enumerate_elements

BOX_COLOR = (255, 0, 0)
BOX_WIDTH = 5
LABEL_BG = (0, 0, 0)
LABEL_FG = (255, 255, 255)
LABEL_PADDING = 6
FONT_SIZE = 28


def _font(size: int):
    # load_default(size=...) needs Pillow >= 10.1; it ships its own TrueType font.
    return ImageFont.load_default(size=size)


def annotate(image_bytes: bytes, parsed: ParsedHierarchy, max_elements: int = 30,
             scale: Optional[float] = None) -> bytes:
    """Draw set-of-mark boxes and id labels on a copy of the screenshot.

    Only interactive elements from `enumerate_elements` are marked, so the
    ids on the image line up with the element list sent to the model.
    Hierarchy coordinates are in device points on iOS, so they're scaled to
    the screenshot's pixel size. Returns new PNG bytes.
    """
    with Image.open(io.BytesIO(image_bytes)) as src:
        img = src.convert("RGB")

    if scale is None:
        screen_w, _ = parsed.screen_size()
        scale = img.width / float(screen_w) if screen_w else 1.0

    draw = ImageDraw.Draw(img)
    font = _font(FONT_SIZE)

    for el in enumerate_elements(parsed, max_elements):
        if not el.is_interactive:
            continue
        b = el.bounds
        x1, y1 = int(b.x * scale), int(b.y * scale)
        x2, y2 = int(b.x2 * scale), int(b.y2 * scale)
        draw.rectangle([x1, y1, x2, y2], outline=BOX_COLOR, width=BOX_WIDTH)

        label = str(el.id)
        left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
        tx, ty = x1 + LABEL_PADDING, y1 + LABEL_PADDING
        draw.rectangle(
            [tx - LABEL_PADDING, ty - LABEL_PADDING,
             tx + (right - left) + LABEL_PADDING, ty + (bottom - top) + LABEL_PADDING],
            fill=LABEL_BG,
        )
        draw.text((tx - left, ty - top), label, fill=LABEL_FG, font=font)

    out = io.BytesIO()
    img.save(out, format="PNG")
    return out.getvalue()
