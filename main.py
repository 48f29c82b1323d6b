#!/usr/bin/env python3
"""
Verimark command line.

Runs the API server, prepares the database, and exposes the placement
detector and QR compositor for manual checks on local files.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()

from verimark.exceptions import QrEmbeddingError
from verimark.models import Placement
from verimark.services.placement_resolver import PlacementResolver, create_default_placement
from verimark.services.qr_embedder import QrEmbedder
from verimark.services.qr_generator import generate_qr_buffer
from verimark.utils.logging_config import get_logger, setup_logging

logger = get_logger(__name__)


def run_serve(args) -> int:
    import uvicorn

    uvicorn.run("verimark.api:app", host=args.host, port=args.port, reload=args.reload)
    return 0


def run_init_db(args) -> int:
    from verimark.db.database import init_db

    init_db()
    print("Database initialized")
    return 0


def run_detect(args) -> int:
    image_bytes = Path(args.image).read_bytes()
    result = asyncio.run(
        PlacementResolver().resolve_all(
            image_bytes, placeholder_color=args.color, text_marker=args.marker
        )
    )
    if result.image_dimensions is None:
        print(f"Error: {result.error}", file=sys.stderr)
        return 1

    if not result.placements:
        default = create_default_placement(result.image_dimensions, args.qr_size)
        if default is not None:
            result.placements.append(default)
            result.methods.append("default")
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def run_compose(args) -> int:
    design_bytes = Path(args.design).read_bytes()
    qr_bytes = generate_qr_buffer(args.hash, args.product_id)
    placement = Placement(x=args.x, y=args.y, width=args.width, height=args.height)

    embedder = QrEmbedder()
    try:
        composite = embedder.embed_qr_on_design(
            design_bytes, qr_bytes, placement, args.product_id
        )
    except QrEmbeddingError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    if args.serial or args.batch:
        composite = embedder.add_metadata_overlay(
            composite,
            serial_number=args.serial,
            batch_number=args.batch,
            product_id=args.product_id,
        )

    Path(args.output).write_bytes(composite)
    print(f"Wrote {args.output}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Verimark product QR tooling",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the API
  python main.py serve --port 8000

  # Find a green placeholder block in a banner
  python main.py detect banner.png --color "#00FF00"

  # Composite one product's QR onto a banner
  python main.py compose banner.png --hash abc123 --product-id P-1 \\
      --x 400 --y 400 --width 200 --height 200 -o out.png
        """,
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Set logging level (default: LOG_LEVEL or INFO)",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP API")
    serve.add_argument("--host", default="0.0.0.0")
    serve.add_argument("--port", type=int, default=8000)
    serve.add_argument("--reload", action="store_true")
    serve.set_defaults(func=run_serve)

    init_db = subparsers.add_parser("init-db", help="Create database tables")
    init_db.set_defaults(func=run_init_db)

    detect = subparsers.add_parser("detect", help="Detect QR placement in an image")
    detect.add_argument("image")
    detect.add_argument("--color", help="Placeholder color, e.g. #00FF00")
    detect.add_argument("--marker", help="Text marker, e.g. QR_HERE")
    detect.add_argument("--qr-size", type=int, default=None, help="Default placement size")
    detect.set_defaults(func=run_detect)

    compose = subparsers.add_parser("compose", help="Embed one QR code on a design")
    compose.add_argument("design")
    compose.add_argument("--hash", required=True)
    compose.add_argument("--product-id", required=True)
    compose.add_argument("--x", type=int, required=True)
    compose.add_argument("--y", type=int, required=True)
    compose.add_argument("--width", type=int, required=True)
    compose.add_argument("--height", type=int, required=True)
    compose.add_argument("--serial", help="Serial number label")
    compose.add_argument("--batch", help="Batch number label")
    compose.add_argument("-o", "--output", required=True)
    compose.set_defaults(func=run_compose)

    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(log_level=args.log_level)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
