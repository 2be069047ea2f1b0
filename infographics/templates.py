import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List

from .models import safe_file_name


logger = logging.getLogger(__name__)

TEMPLATES_DIR = ".infographics-templates"


@dataclass(frozen=True)
class TemplateInfo:
    name: str
    path: str
    created_at: str


def save_template(working_directory: Path, name: str, template_data: str) -> Path:
    """
    Write `template_data` (a JSON document) to
    <working_directory>/.infographics-templates/<name>.json.

    The name is reduced to letters, digits, '-', '_' and spaces before it is
    used as a file name.
    """
    safe_name = safe_file_name(name)
    if not safe_name:
        raise ValueError("Invalid template name")

    templates_path = working_directory / TEMPLATES_DIR
    templates_path.mkdir(parents=True, exist_ok=True)

    file_path = templates_path / f"{safe_name}.json"
    file_path.write_text(template_data, encoding="utf-8")
    return file_path


def load_template(template_path: Path) -> Dict[str, Any]:
    if not template_path.exists():
        raise FileNotFoundError(f"Template file not found: {template_path}")
    with template_path.open("r", encoding="utf-8") as f:
        return json.load(f)


def list_templates(working_directory: Path) -> List[TemplateInfo]:
    """Saved templates, newest first. Unparseable files are skipped."""
    templates_path = working_directory / TEMPLATES_DIR
    if not templates_path.exists():
        return []

    templates: List[TemplateInfo] = []
    for file_path in templates_path.glob("*.json"):
        if not file_path.is_file():
            continue
        try:
            data = json.loads(file_path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Skipping template %s: %s", file_path.name, exc)
            continue
        if not isinstance(data, dict):
            continue

        name = data.get("name")
        created_at = data.get("createdAt")
        templates.append(
            TemplateInfo(
                name=name if isinstance(name, str) else file_path.stem,
                path=str(file_path),
                created_at=created_at if isinstance(created_at, str) else "",
            )
        )

    templates.sort(key=lambda t: t.created_at, reverse=True)
    return templates


def delete_template(template_path: Path) -> None:
    if not template_path.exists():
        raise FileNotFoundError(f"Template file not found: {template_path}")
    template_path.unlink()
