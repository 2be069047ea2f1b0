import math
from collections.abc import Mapping as MappingABC
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Tuple


OUTPUT_DIR = "infographics"

DataTable = Mapping[str, Mapping[str, str]]


class FrozenMapping(MappingABC):
    """
    Read-only mapping over a private dict copy. Unlike MappingProxyType it
    pickles, so it can travel to worker processes inside a Scene.
    """

    def __init__(self, data: Mapping[str, Any]) -> None:
        self._data = dict(data)

    def __getitem__(self, key: str) -> Any:
        return self._data[key]

    def __iter__(self):
        return iter(self._data)

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"FrozenMapping({self._data!r})"


def safe_file_name(name: str) -> str:
    """Keep only letters, digits, '-', '_' and spaces so `name` is one path component."""
    return "".join(ch for ch in name if ch.isalnum() or ch in "-_ ")


def _pick(data: Mapping[str, Any], *keys: str, default: Any = None) -> Any:
    # Editors emit camelCase, hand-written requests tend to use snake_case.
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return default


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if math.isfinite(number) else default


def _to_int(value: Any, default: int = 0) -> int:
    return int(_to_float(value, float(default)))


def _to_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


@dataclass(frozen=True)
class Frame:
    width: int
    height: int
    background_color: str = "#FFFFFF"

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Frame":
        width = _to_int(data.get("width"))
        height = _to_int(data.get("height"))
        if width <= 0 or height <= 0:
            raise ValueError(f"Frame size must be positive, got {width}x{height}")
        return cls(
            width=width,
            height=height,
            background_color=str(_pick(data, "backgroundColor", "background_color", default="#FFFFFF")),
        )


@dataclass(frozen=True)
class CanvasObject:
    """
    One layer of the scene. Draw order is the position in the object list.

    Text layers use `content`, `key`, the font fields, `fill` and `align`;
    image layers use `src` / `original_path`. `font_family`, `font_weight` and
    `align` are carried for round-tripping templates; every text layer renders
    with the batch font, left-aligned.
    """

    id: str
    type: str
    x: float = 0.0
    y: float = 0.0
    width: float = 0.0
    height: float = 0.0
    rotation: float = 0.0
    opacity: float = 1.0
    visible: bool = True
    name: str = ""
    # Text-specific
    content: Optional[str] = None
    key: Optional[str] = None
    font_family: Optional[str] = None
    font_size: int = 32
    font_weight: Optional[str] = None
    fill: Optional[str] = None
    align: Optional[str] = None
    # Image-specific
    src: Optional[str] = None
    original_path: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CanvasObject":
        opacity = _to_float(data.get("opacity"), 1.0)
        return cls(
            id=str(data.get("id", "")),
            type=str(data.get("type", "")),
            x=_to_float(data.get("x")),
            y=_to_float(data.get("y")),
            width=max(0.0, _to_float(data.get("width"))),
            height=max(0.0, _to_float(data.get("height"))),
            rotation=_to_float(data.get("rotation")),
            opacity=min(max(opacity, 0.0), 1.0),
            visible=bool(data.get("visible", True)),
            name=str(data.get("name", "")),
            content=_to_str(data.get("content")),
            key=_to_str(data.get("key")),
            font_family=_to_str(_pick(data, "fontFamily", "font_family")),
            font_size=_to_int(_pick(data, "fontSize", "font_size"), 32),
            font_weight=_to_str(_pick(data, "fontWeight", "font_weight")),
            fill=_to_str(data.get("fill")),
            align=_to_str(data.get("align")),
            src=_to_str(data.get("src")),
            original_path=_to_str(_pick(data, "originalPath", "original_path")),
        )


@dataclass(frozen=True)
class ImageSource:
    path: str
    name: str

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ImageSource":
        path = str(data["path"])
        return cls(path=path, name=str(data.get("name") or Path(path).name))


@dataclass(frozen=True)
class Scene:
    """
    Read-only snapshot shared by every job of a batch.

    `objects` holds only the visible layers, filtered once when the snapshot
    is built.
    """

    frame: Frame
    objects: Tuple[CanvasObject, ...]
    table: DataTable
    font_bytes: bytes

    @classmethod
    def build(
        cls,
        frame: Frame,
        objects: List[CanvasObject],
        table: DataTable,
        font_bytes: bytes,
    ) -> "Scene":
        return cls(
            frame=frame,
            objects=tuple(obj for obj in objects if obj.visible),
            table=FrozenMapping({path: FrozenMapping(row) for path, row in table.items()}),
            font_bytes=font_bytes,
        )


@dataclass(frozen=True)
class RenderJob:
    source: ImageSource
    scene: Scene
    output_dir: Path


@dataclass(frozen=True)
class JobOutcome:
    name: str
    output_path: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    current_file: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerateResult:
    success: bool
    generated_files: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class GenerateRequest:
    output_root: Path
    frame: Frame
    objects: List[CanvasObject]
    table: Dict[str, Dict[str, str]]
    selected_images: List[ImageSource]
    template_name: Optional[str] = None
    parallelism: Optional[int] = None

    @property
    def output_dir(self) -> Path:
        subdir = safe_file_name(self.template_name or "").strip()
        if subdir:
            return self.output_root / subdir
        return self.output_root

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "GenerateRequest":
        output_root = _pick(data, "outputRoot", "output_root")
        if output_root is None:
            working_dir = _pick(data, "workingDirectory", "working_directory")
            if working_dir is None:
                raise ValueError("Request needs either outputRoot or workingDirectory")
            output_root = Path(working_dir) / OUTPUT_DIR

        parallelism = _pick(data, "parallelism")
        table = _pick(data, "tableData", "table_data", "table", default={})

        return cls(
            output_root=Path(output_root),
            frame=Frame.from_dict(data["frame"]),
            objects=[CanvasObject.from_dict(obj) for obj in data.get("objects", [])],
            table={
                str(path): {str(k): str(v) for k, v in (row or {}).items() if v is not None}
                for path, row in table.items()
            },
            selected_images=[
                ImageSource.from_dict(img)
                for img in _pick(data, "selectedImages", "selected_images", default=[])
            ],
            template_name=_to_str(_pick(data, "templateName", "template_name", "templateSubdir")),
            parallelism=None if parallelism is None else _to_int(parallelism),
        )
