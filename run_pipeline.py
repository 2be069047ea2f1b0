import argparse
import json
import logging
import os
import sys
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

from infographics.assets import list_images_in_directory
from infographics.core import InfographicPipeline, load_request, request_from_template
from infographics.fonts import FontUnavailableError
from infographics.models import ProgressEvent
from infographics.templates import load_template


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Render one infographic per image from a scene template."
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument(
        "--request",
        type=Path,
        help="Path to a generate-request JSON file (frame, objects, tableData, selectedImages).",
    )
    source.add_argument(
        "--template",
        type=Path,
        help="Path to a saved template JSON file; use together with --images.",
    )
    parser.add_argument(
        "--images",
        type=Path,
        help="Folder of source images to render the template for.",
    )
    parser.add_argument(
        "--output-root",
        type=Path,
        default=None,
        help="Root folder for generated infographics (default: from the request, or ./outputs).",
    )
    parser.add_argument(
        "--parallelism",
        type=int,
        default=_env_int("INFOGRAPHICS_PARALLELISM"),
        help="Images rendered at once (default: half the logical cores).",
    )
    parser.add_argument(
        "--font",
        default=os.environ.get("INFOGRAPHICS_FONT"),
        help="Preferred font family, tried before Arial / Helvetica / default sans.",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Print the final result as JSON.",
    )
    args = parser.parse_args()
    if args.template is not None and args.images is None:
        parser.error("--template requires --images")
    return args


def main() -> int:
    # Load environment variables from a local .env file if present
    # (e.g. INFOGRAPHICS_PARALLELISM=4).
    load_dotenv()

    logging.basicConfig(
        level=os.environ.get("INFOGRAPHICS_LOG_LEVEL", "WARNING").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args = parse_args()

    if args.request is not None:
        request = load_request(args.request)
        if args.output_root is not None:
            request.output_root = args.output_root
        if args.parallelism is not None:
            request.parallelism = args.parallelism
    else:
        template = load_template(args.template)
        images = list_images_in_directory(args.images)
        request = request_from_template(
            template,
            images,
            output_root=args.output_root or Path("outputs"),
            parallelism=args.parallelism,
        )

    print(f"🖼️  Rendering {len(request.selected_images)} image(s) into {request.output_dir}")

    pipeline = InfographicPipeline(request, preferred_font=args.font)
    try:
        result = pipeline.run(on_progress=_print_progress)
    except FontUnavailableError as exc:
        print(f"⚠️  {exc}", file=sys.stderr)
        return 2

    if args.json:
        print(json.dumps(result.to_dict(), indent=2, ensure_ascii=False))
    else:
        print(f"✨ Generated {len(result.generated_files)} file(s)")
        for error in result.errors:
            print(f"⚠️  {error}")

    return 0 if result.success else 1


def _print_progress(event: ProgressEvent) -> None:
    print(f"[{event.current}/{event.total}] {event.current_file}")


def _env_int(name: str) -> Optional[int]:
    value = os.environ.get(name)
    if not value:
        return None
    try:
        return int(value)
    except ValueError:
        return None


if __name__ == "__main__":
    sys.exit(main())
