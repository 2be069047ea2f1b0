import io
from typing import Dict

from PIL import Image, ImageDraw, ImageFont

from .render import Color


MIN_FONT_SIZE = 8


class FontDecodeError(RuntimeError):
    pass


def single_line(text: str) -> str:
    """Line breaks become spaces; a text layer is always drawn as one line."""
    return text.replace("\r\n", " ").replace("\r", " ").replace("\n", " ")


class FontFace:
    """
    A decoded font shared by every text object of one render job.

    Pillow needs a separate FreeType instance per pixel size, so instances are
    cached by size for the lifetime of the face.
    """

    def __init__(self, font_bytes: bytes) -> None:
        if not font_bytes:
            raise FontDecodeError("Failed to load font: no font data")
        self.font_bytes = font_bytes
        self._sizes: Dict[int, ImageFont.FreeTypeFont] = {}
        # Decode eagerly so a broken font fails the job before any drawing.
        self.at(MIN_FONT_SIZE)

    def at(self, size: int) -> ImageFont.FreeTypeFont:
        size = max(1, int(size))
        font = self._sizes.get(size)
        if font is None:
            try:
                font = ImageFont.truetype(io.BytesIO(self.font_bytes), size=size)
            except OSError as exc:
                raise FontDecodeError(f"Failed to load font: {exc}") from exc
            self._sizes[size] = font
        return font


def measure_width(face: FontFace, text: str, size: int) -> float:
    """
    Sum of per-character horizontal advances at `size` pixels.

    Characters are measured one by one so kerning pairs never shrink the
    result; there is no line breaking.
    """
    font = face.at(size)
    return sum(font.getlength(ch) for ch in single_line(text))


def fit_to_width(
    face: FontFace,
    text: str,
    max_size: int,
    box_width: float,
    min_size: int = MIN_FONT_SIZE,
) -> int:
    """
    Largest size, stepping down by 1 from `max_size`, whose measured width fits
    in `box_width`. Falls back to `min_size` when nothing above it fits.
    """
    size = int(max_size)
    while size > min_size:
        if measure_width(face, text, size) <= box_width:
            return size
        size -= 1
    return min_size


def render_text(
    face: FontFace,
    text: str,
    size: int,
    color: Color,
    width: int,
    height: int,
) -> Image.Image:
    """
    Rasterize one line of `text` at (0, 0) into a transparent (width, height)
    buffer. Glyphs beyond the box are cut off.
    """
    r, g, b, a = color
    layer = Image.new("RGBA", (width, height), (r, g, b, 0))

    # Coverage goes into the alpha channel only, so antialiased edges keep
    # the fill color instead of fading towards black.
    mask = Image.new("L", (width, height), 0)
    ImageDraw.Draw(mask).text((0, 0), single_line(text), font=face.at(size), fill=a)
    layer.putalpha(mask)
    return layer
