"""CLI entry point for the Odonto protocol service.

Usage:
    python -m odonto.main validate payload.json                   # resin request
    python -m odonto.main validate payload.json --kind cementation
    python -m odonto.main serve                                   # start the API
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

from odonto.validation import (
    validate_analyze_photos_data,
    validate_cementation_request,
    validate_evaluation_data,
)

logger = logging.getLogger(__name__)

_VALIDATORS = {
    "resin": validate_evaluation_data,
    "cementation": validate_cementation_request,
    "photos": validate_analyze_photos_data,
}


def _configure_logging(debug: bool = False) -> None:
    """Set up logging: WARNING by default, DEBUG when --debug is passed."""
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.WARNING,
        format="%(asctime)s %(levelname)-8s %(name)s — %(message)s",
    )
    logging.getLogger("odonto").setLevel(logging.DEBUG if debug else logging.INFO)


def _validate(path: Path, kind: str) -> int:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        print(f"Cannot read {path}: {exc}", file=sys.stderr)
        return 2

    result = _VALIDATORS[kind](payload)
    print(json.dumps(result.model_dump(mode="json"), ensure_ascii=False, indent=2))
    return 0 if result.success else 1


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Odonto protocol service")
    parser.add_argument("--debug", action="store_true", help="Verbose logging")
    commands = parser.add_subparsers(dest="command", required=True)

    validate = commands.add_parser("validate", help="Validate a request payload from a JSON file")
    validate.add_argument("path", type=Path)
    validate.add_argument("--kind", choices=sorted(_VALIDATORS), default="resin")

    commands.add_parser("serve", help="Start the API server")

    args = parser.parse_args(argv)
    _configure_logging(debug=args.debug)

    if args.command == "validate":
        return _validate(args.path, args.kind)

    from odonto.server import run  # noqa: PLC0415 (loads the full config)

    run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
