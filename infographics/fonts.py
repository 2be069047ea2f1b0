import io
import logging
import shutil
import subprocess
from pathlib import Path
from typing import Dict, List, Optional

from PIL import ImageFont


logger = logging.getLogger(__name__)

FALLBACK_CHAIN = ("Arial", "Helvetica", "")

FALLBACK_FAMILIES = ["Arial", "Helvetica", "Times New Roman", "Georgia", "Monaco"]

# Well-known locations used when fontconfig is not installed.
SYSTEM_FONTS: Dict[str, List[str]] = {
    "arial": [
        "/System/Library/Fonts/Supplemental/Arial.ttf",
        "/Library/Fonts/Arial.ttf",
        "C:/Windows/Fonts/arial.ttf",
    ],
    "helvetica": [
        "/System/Library/Fonts/Helvetica.ttc",
        "/System/Library/Fonts/HelveticaNeue.ttc",
    ],
    "": [
        "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
        "/usr/share/fonts/truetype/liberation/LiberationSans-Regular.ttf",
        "/System/Library/Fonts/Helvetica.ttc",
        "C:/Windows/Fonts/arial.ttf",
        "C:/Windows/Fonts/calibri.ttf",
    ],
}


class FontUnavailableError(RuntimeError):
    pass


def list_system_fonts() -> List[str]:
    """
    Family names known to fontconfig, sorted and deduplicated. Hidden families
    (leading '.') are dropped. Falls back to a short static list.
    """
    output = _run_fontconfig(["fc-list", ":", "family"])
    if output is None:
        return list(FALLBACK_FAMILIES)

    families = set()
    for line in output.splitlines():
        # Localized names come comma-separated; the first one is canonical.
        name = line.split(",")[0].strip()
        if name and not name.startswith("."):
            families.add(name)
    return sorted(families) or list(FALLBACK_FAMILIES)


def load_font_bytes(family: str) -> Optional[bytes]:
    """
    Raw bytes of the best match for `family`; an empty family means the
    platform's default sans-serif. Returns None when nothing usable is found.
    """
    for path in _candidate_paths(family):
        try:
            data = path.read_bytes()
            # Bitmap fonts and other formats FreeType cannot scale are useless here.
            ImageFont.truetype(io.BytesIO(data), size=12)
        except OSError as exc:
            logger.debug("Skipping font %s: %s", path, exc)
            continue
        return data

    if not family:
        return _bundled_font_bytes()
    return None


def resolve_font_bytes(preferred: Optional[str] = None) -> bytes:
    """
    Walk the fallback chain (preferred family first, then Arial, Helvetica and
    the default sans) and return the first font found.
    """
    chain = [preferred] if preferred else []
    chain.extend(FALLBACK_CHAIN)

    for family in chain:
        data = load_font_bytes(family)
        if data:
            logger.info("Using font %r", family or "default sans")
            return data
    raise FontUnavailableError("No system fonts available")


def _candidate_paths(family: str) -> List[Path]:
    paths: List[Path] = []

    matched = _run_fontconfig(["fc-match", "-f", "%{file}", family or "sans-serif"])
    if matched:
        paths.append(Path(matched.strip()))

    for candidate in SYSTEM_FONTS.get(family.lower(), []):
        path = Path(candidate)
        if path.exists() and path not in paths:
            paths.append(path)
    return paths


def _run_fontconfig(args: List[str]) -> Optional[str]:
    if shutil.which(args[0]) is None:
        return None
    try:
        result = subprocess.run(
            args,
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("%s failed: %s", args[0], exc)
        return None
    return result.stdout


def _bundled_font_bytes() -> Optional[bytes]:
    # Pillow ships a FreeType font for load_default(size=...) when built with
    # FreeType support; the plain bitmap fallback has no bytes to share.
    try:
        font = ImageFont.load_default(size=16)
    except (OSError, TypeError):
        return None
    return getattr(font, "font_bytes", None)
