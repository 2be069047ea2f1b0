import math
from typing import Tuple

import numpy as np
from PIL import Image


Color = Tuple[int, int, int, int]

WHITE: Color = (255, 255, 255, 255)
BLACK: Color = (0, 0, 0, 255)
TRANSPARENT: Color = (0, 0, 0, 0)


def parse_hex_color(value, default: Color = WHITE) -> Color:
    """
    Parse hex color strings like '#FF0000', 'FF0000' or '#FF000080' into an
    RGBA tuple. Anything malformed falls back to `default`.
    """
    if not isinstance(value, str):
        return default

    s = value.strip().lstrip("#")
    if len(s) not in (6, 8):
        return default
    try:
        r = int(s[0:2], 16)
        g = int(s[2:4], 16)
        b = int(s[4:6], 16)
        a = int(s[6:8], 16) if len(s) == 8 else 255
    except ValueError:
        return default
    return (r, g, b, a)


def new_canvas(width: int, height: int, color: Color) -> np.ndarray:
    """Allocate an H x W x 4 uint8 canvas filled with `color`."""
    canvas = np.empty((height, width, 4), dtype=np.uint8)
    canvas[:, :] = color
    return canvas


def resize_exact(img: Image.Image, width: int, height: int) -> Image.Image:
    """
    Stretch to exactly (width, height); aspect ratio is not preserved.
    """
    img = img.convert("RGBA")
    if width <= 0 or height <= 0:
        return Image.new("RGBA", (max(width, 0), max(height, 0)), TRANSPARENT)
    return img.resize((width, height), Image.LANCZOS)


def fit_size(src_width: int, src_height: int, width: int, height: int) -> Tuple[int, int]:
    img_ratio = src_width / src_height
    target_ratio = width / height

    if img_ratio > target_ratio:
        # Wider than the box: fit to width
        return width, max(1, int(width / img_ratio))
    return max(1, int(height * img_ratio)), height


def resize_fit(img: Image.Image, width: int, height: int) -> Image.Image:
    """
    Resize preserving aspect ratio and place the result at the top-left of a
    transparent (width, height) buffer.

    The fitted image is deliberately not centered: the editor that authors
    templates anchors fitted heroes to the top-left of their bounding box.
    """
    img = img.convert("RGBA")
    box = Image.new("RGBA", (max(width, 0), max(height, 0)), TRANSPARENT)
    if width <= 0 or height <= 0 or img.width == 0 or img.height == 0:
        return box

    render_w, render_h = fit_size(img.width, img.height, width, height)
    fitted = img.resize((render_w, render_h), Image.LANCZOS)
    box.paste(fitted, (0, 0))
    return box


def rotated_extent(width: int, height: int, angle: float) -> Tuple[int, int]:
    """Axis-aligned size of a (width, height) box rotated by `angle` degrees."""
    radians = math.radians(angle)
    cos = abs(math.cos(radians))
    sin = abs(math.sin(radians))
    return (
        math.ceil(width * cos + height * sin),
        math.ceil(width * sin + height * cos),
    )


def rotate(img: Image.Image, angle: float) -> Image.Image:
    """
    Rotate clockwise by `angle` degrees about the image center, expanding the
    canvas first so no corner of the rotated content is clipped.
    """
    if angle == 0:
        return img.copy()

    img = img.convert("RGBA")
    extent_w, extent_h = rotated_extent(img.width, img.height, angle)
    new_w = max(extent_w, img.width)
    new_h = max(extent_h, img.height)

    expanded = Image.new("RGBA", (new_w, new_h), TRANSPARENT)
    expanded.paste(img, ((new_w - img.width) // 2, (new_h - img.height) // 2))

    # PIL turns counter-clockwise for positive angles
    return expanded.rotate(
        -angle,
        resample=Image.BILINEAR,
        fillcolor=TRANSPARENT,
    )


def place_rotated(x: int, y: int, width: int, height: int, rotated: Image.Image) -> Tuple[int, int]:
    """
    Top-left for `rotated` so its center lands on the center of the original,
    unrotated (x, y, width, height) box.
    """
    center_x = x + width // 2
    center_y = y + height // 2
    return center_x - rotated.width // 2, center_y - rotated.height // 2


def blend(canvas: np.ndarray, source: Image.Image, x: int, y: int, opacity: float) -> None:
    """
    Alpha-over `source` onto `canvas` in place with its top-left at (x, y).

    Integer arithmetic truncates at every step:
    eff = src_a * round(opacity * 255) // 255, channels are mixed as
    (src * eff + dst * (255 - eff)) // 255 and alpha becomes max(eff, dst_a).
    Pixels falling outside the canvas are dropped.
    """
    canvas_h, canvas_w = canvas.shape[:2]
    src_w, src_h = source.size

    x0, y0 = max(x, 0), max(y, 0)
    x1, y1 = min(x + src_w, canvas_w), min(y + src_h, canvas_h)
    if x0 >= x1 or y0 >= y1:
        return

    alpha_mult = int(round(min(max(opacity, 0.0), 1.0) * 255))
    if alpha_mult == 0:
        return

    src = np.asarray(source.convert("RGBA"), dtype=np.uint32)
    src = src[y0 - y:y1 - y, x0 - x:x1 - x]
    dst = canvas[y0:y1, x0:x1]

    eff = src[..., 3] * alpha_mult // 255
    mask = eff > 0
    if not mask.any():
        return

    eff3 = eff[..., None]
    rgb = (src[..., :3] * eff3 + dst[..., :3].astype(np.uint32) * (255 - eff3)) // 255
    alpha = np.maximum(eff, dst[..., 3])

    dst[..., :3][mask] = rgb[mask].astype(np.uint8)
    dst[..., 3][mask] = alpha[mask].astype(np.uint8)


def draw_layer(
    canvas: np.ndarray,
    layer: Image.Image,
    x: int,
    y: int,
    width: int,
    height: int,
    rotation: float,
    opacity: float,
) -> None:
    """
    Rotate `layer` (already sized to the object's box) when needed and blend it
    so the rotation happens around the box center.
    """
    if rotation != 0:
        layer = rotate(layer, rotation)
        x, y = place_rotated(x, y, width, height, layer)
    blend(canvas, layer, x, y, opacity)


def to_image(canvas: np.ndarray) -> Image.Image:
    return Image.fromarray(canvas)
