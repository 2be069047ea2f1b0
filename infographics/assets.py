from dataclasses import dataclass
from pathlib import Path
from typing import List

from .models import ImageSource
from .scheduler import logical_cores, resolve_parallelism

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}


@dataclass(frozen=True)
class CpuInfo:
    logical_cores: int
    recommended: int


def list_images_in_directory(directory: Path) -> List[ImageSource]:
    """
    Images directly inside `directory` (no recursion), sorted by file name
    ignoring case.
    """
    if not directory.is_dir():
        raise NotADirectoryError(f"Not a valid directory: {directory}")

    images = [
        ImageSource(path=str(path), name=path.name)
        for path in directory.iterdir()
        if path.is_file() and path.suffix.lower() in IMAGE_EXTENSIONS
    ]
    images.sort(key=lambda img: img.name.lower())
    return images


def get_cpu_info() -> CpuInfo:
    cores = logical_cores()
    return CpuInfo(logical_cores=cores, recommended=resolve_parallelism(None, cores))
