import base64
import io
import logging
from pathlib import Path
from typing import Optional

import numpy as np
from PIL import Image

from .models import CanvasObject, DataTable, JobOutcome, RenderJob
from .render import (
    BLACK,
    WHITE,
    draw_layer,
    new_canvas,
    parse_hex_color,
    resize_exact,
    resize_fit,
    to_image,
)
from .text import MIN_FONT_SIZE, FontDecodeError, FontFace, fit_to_width, render_text


logger = logging.getLogger(__name__)

OUTPUT_SUFFIX = "_infographic.png"


class RenderError(RuntimeError):
    pass


def output_name(image_path: str) -> str:
    stem = Path(image_path).stem or "output"
    return f"{stem}{OUTPUT_SUFFIX}"


def resolve_text(obj: CanvasObject, table: DataTable, image_path: str) -> str:
    """
    Text shown by a text layer for one image: the table cell for
    (image_path, obj.key) when present, otherwise the layer's own content.

    Rows are looked up by the exact path string the batch was given.
    """
    value = None
    if obj.key:
        value = (table.get(image_path) or {}).get(obj.key)
    if value is None:
        value = obj.content
    return value or ""


def render_infographic(job: RenderJob) -> Path:
    """
    Compose one infographic for `job.source` and write it as PNG.

    Missing auxiliary images and unknown layer types are skipped. A broken
    font, an unreadable hero image or a failed write raise RenderError.
    """
    source = job.source
    scene = job.scene
    frame = scene.frame

    try:
        face = FontFace(scene.font_bytes)
    except FontDecodeError as exc:
        raise RenderError(str(exc)) from exc

    r, g, b, _ = parse_hex_color(frame.background_color, WHITE)
    canvas = new_canvas(frame.width, frame.height, (r, g, b, 255))

    try:
        hero = _open_image(source.path)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        raise RenderError(f"Failed to load {source.name}: {exc}") from exc

    for obj in scene.objects:
        if obj.type in ("background", "image"):
            _draw_image(canvas, obj)
        elif obj.type == "hero":
            _draw_hero(canvas, obj, hero)
        elif obj.type == "text":
            _draw_text(canvas, obj, face, resolve_text(obj, scene.table, source.path))

    output_file = job.output_dir / output_name(source.path)
    try:
        to_image(canvas).save(output_file, format="PNG")
    except (OSError, ValueError) as exc:
        raise RenderError(f"Failed to save {output_file.name}: {exc}") from exc

    logger.debug("Rendered %s -> %s", source.name, output_file)
    return output_file


def run_render_job(job: RenderJob) -> JobOutcome:
    """Worker entry point; must stay importable at module level for pickling."""
    try:
        output_file = render_infographic(job)
    except RenderError as exc:
        return JobOutcome(name=job.source.name, error=str(exc))
    return JobOutcome(name=job.source.name, output_path=str(output_file))


def _box(obj: CanvasObject):
    return int(obj.x), int(obj.y), int(obj.width), int(obj.height)


def _draw_image(canvas: np.ndarray, obj: CanvasObject) -> None:
    x, y, width, height = _box(obj)
    if width <= 0 or height <= 0:
        return

    ref = obj.original_path or obj.src
    if not ref:
        return
    try:
        img = _open_image(ref)
    except (OSError, ValueError, Image.DecompressionBombError) as exc:
        logger.warning("Skipping %s layer %r: %s", obj.type, obj.name or obj.id, exc)
        return

    layer = resize_exact(img, width, height)
    draw_layer(canvas, layer, x, y, width, height, obj.rotation, obj.opacity)


def _draw_hero(canvas: np.ndarray, obj: CanvasObject, hero: Image.Image) -> None:
    x, y, width, height = _box(obj)
    if width <= 0 or height <= 0:
        return

    layer = resize_fit(hero, width, height)
    draw_layer(canvas, layer, x, y, width, height, obj.rotation, obj.opacity)


def _draw_text(canvas: np.ndarray, obj: CanvasObject, face: FontFace, text: str) -> None:
    x, y, width, height = _box(obj)
    if not text or width <= 0 or height <= 0:
        return

    size = fit_to_width(face, text, obj.font_size, width, MIN_FONT_SIZE)
    color = parse_hex_color(obj.fill, BLACK)
    layer = render_text(face, text, size, color, width, height)
    draw_layer(canvas, layer, x, y, width, height, obj.rotation, obj.opacity)


def _open_image(ref: str) -> Image.Image:
    data: Optional[bytes] = None
    if ref.startswith("data:"):
        # data:image/png;base64,....
        _, _, payload = ref.partition(",")
        data = base64.b64decode(payload, validate=True)

    img = Image.open(io.BytesIO(data) if data is not None else ref)
    img.load()
    return img
