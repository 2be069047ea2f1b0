import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from .fonts import resolve_font_bytes
from .models import GenerateRequest, GenerateResult, ImageSource, RenderJob, Scene
from .scheduler import BatchScheduler, ExecutorFactory, ProgressCallback, resolve_parallelism


logger = logging.getLogger(__name__)


def load_request(path: Path) -> GenerateRequest:
    with path.open("r", encoding="utf-8") as f:
        data = json.load(f)
    return GenerateRequest.from_dict(data)


def request_from_template(
    template: Dict[str, Any],
    images: List[ImageSource],
    output_root: Path,
    parallelism: Optional[int] = None,
) -> GenerateRequest:
    """
    Build a request from a saved template (frame, objects, tableData) and the
    images to render it for. Output goes into a subdirectory named after the
    template.
    """
    return GenerateRequest.from_dict(
        {
            "outputRoot": str(output_root),
            "frame": template["frame"],
            "objects": template.get("objects", []),
            "tableData": template.get("tableData") or {},
            "selectedImages": [{"path": img.path, "name": img.name} for img in images],
            "templateName": template.get("name"),
            "parallelism": parallelism,
        }
    )


class InfographicPipeline:
    """
    Orchestrates one batch:
    - create the output directory (nested under the template name if any)
    - pick the batch font; without one nothing is rendered
    - snapshot frame, visible layers, table and font into a shared Scene
    - render every selected image through the BatchScheduler
    """

    def __init__(
        self,
        request: GenerateRequest,
        preferred_font: Optional[str] = None,
        executor_factory: Optional[ExecutorFactory] = None,
    ) -> None:
        self.request = request
        self.preferred_font = preferred_font
        self.executor_factory = executor_factory

    def run(self, on_progress: Optional[ProgressCallback] = None) -> GenerateResult:
        request = self.request
        output_dir = request.output_dir
        output_dir.mkdir(parents=True, exist_ok=True)

        # Raises FontUnavailableError before any job is queued.
        font_bytes = resolve_font_bytes(self.preferred_font)

        scene = Scene.build(
            frame=request.frame,
            objects=request.objects,
            table=request.table,
            font_bytes=font_bytes,
        )
        jobs = [
            RenderJob(source=source, scene=scene, output_dir=output_dir)
            for source in request.selected_images
        ]

        parallelism = resolve_parallelism(request.parallelism)
        logger.info(
            "Rendering %d image(s) into %s with parallelism %d",
            len(jobs),
            output_dir,
            parallelism,
        )

        scheduler_kwargs = {}
        if self.executor_factory is not None:
            scheduler_kwargs["executor_factory"] = self.executor_factory
        scheduler = BatchScheduler(parallelism, **scheduler_kwargs)
        return scheduler.run(jobs, on_progress=on_progress)
