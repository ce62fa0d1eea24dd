from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .asset_storage import AssetStorage
from .collection_store import JsonCollectionStore
from .config import Settings, configure_logging
from .framing import FramingConfig, frame_camera, prepare_model
from .loaders import ModelSource, default_registry
from .scene import Camera
from .seed import seed_sample_catalog
from .snapshot import SnapshotRenderer

logger = logging.getLogger(__name__)


def _serve(args: argparse.Namespace, settings: Settings) -> int:
    from .main import run

    overrides = {}
    if args.host:
        overrides["host"] = args.host
    if args.port:
        overrides["port"] = args.port
    run(replace(settings, **overrides))
    return 0


def _seed(args: argparse.Namespace, settings: Settings) -> int:
    assets = AssetStorage(public_dir=settings.public_dir)
    settings.data_dir.mkdir(parents=True, exist_ok=True)
    records = seed_sample_catalog(
        JsonCollectionStore(settings.models_file),
        JsonCollectionStore(settings.backgrounds_file),
        assets,
        force=args.force,
    )
    if records:
        print(f"Seeded {len(records)} sample models into {settings.models_file}")
    else:
        print(f"{settings.models_file} already exists; use --force to overwrite")
    return 0


async def _render_preview(model_path: Path, out_path: Path, fmt: Optional[str], width: int, height: int) -> Path:
    source = ModelSource.from_path(model_path, fmt=fmt)
    result = await default_registry().load(source)
    if not result.ok:
        raise result.error
    model = result.value
    config = FramingConfig()
    prepare_model(model.object, source.format, config)
    camera = Camera()
    framing = frame_camera(model.object, camera, config)
    camera.apply(framing.pose)
    renderer = SnapshotRenderer(out_path, width=width, height=height)
    return renderer.render(model.object, camera)


def _preview(args: argparse.Namespace, settings: Settings) -> int:
    try:
        path = asyncio.run(_render_preview(Path(args.model), Path(args.out), args.format, args.width, args.height))
    except (OSError, RuntimeError) as exc:
        print(f"Preview failed: {exc}", file=sys.stderr)
        return 1
    print(f"Wrote {path}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="showcase", description="3D model showcase server and tools")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the catalog HTTP server")
    serve.add_argument("--host", default=None)
    serve.add_argument("--port", type=int, default=None)
    serve.set_defaults(func=_serve)

    seed = sub.add_parser("seed", help="Write the sample cube catalog")
    seed.add_argument("--force", action="store_true", help="Overwrite an existing models.json")
    seed.set_defaults(func=_seed)

    preview = sub.add_parser("preview", help="Load a model file and render a framed PNG snapshot")
    preview.add_argument("model", help="Path to a model file")
    preview.add_argument("--out", default="preview.png")
    preview.add_argument("--format", default=None, help="Override the format inferred from the file extension")
    preview.add_argument("--width", type=int, default=800)
    preview.add_argument("--height", type=int, default=450)
    preview.set_defaults(func=_preview)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    return args.func(args, settings)


if __name__ == "__main__":
    sys.exit(main())
