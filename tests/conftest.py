"""
Shared fixtures: a usable font and small generated images on disk.
"""

from pathlib import Path
from typing import Callable, Tuple

import pytest
from PIL import Image

from infographics.fonts import FontUnavailableError, resolve_font_bytes
from infographics.models import CanvasObject, Frame, ImageSource, RenderJob, Scene
from infographics.text import FontFace


@pytest.fixture(scope="session")
def font_bytes() -> bytes:
    try:
        return resolve_font_bytes()
    except FontUnavailableError:
        pytest.skip("no font available on this system")


@pytest.fixture(scope="session")
def face(font_bytes: bytes) -> FontFace:
    return FontFace(font_bytes)


@pytest.fixture
def make_image(tmp_path: Path) -> Callable[..., Path]:
    def _make(
        name: str,
        size: Tuple[int, int] = (64, 48),
        color=(255, 0, 0),
        fmt: str = "PNG",
    ) -> Path:
        path = tmp_path / name
        mode = "RGBA" if len(color) == 4 else "RGB"
        Image.new(mode, size, color).save(path, format=fmt)
        return path

    return _make


@pytest.fixture
def make_job(tmp_path: Path, font_bytes: bytes) -> Callable[..., RenderJob]:
    def _make(
        image_path: Path,
        objects=(),
        table=None,
        frame: Frame = Frame(200, 100, "#FFFFFF"),
        output_dir: Path = None,
    ) -> RenderJob:
        scene = Scene.build(
            frame=frame,
            objects=[
                obj if isinstance(obj, CanvasObject) else CanvasObject.from_dict(obj)
                for obj in objects
            ],
            table=table or {},
            font_bytes=font_bytes,
        )
        out = output_dir or tmp_path / "out"
        out.mkdir(parents=True, exist_ok=True)
        return RenderJob(
            source=ImageSource(path=str(image_path), name=Path(image_path).name),
            scene=scene,
            output_dir=out,
        )

    return _make
