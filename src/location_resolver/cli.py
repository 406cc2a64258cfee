"""Command-line interface for the location resolver."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import replace
from pathlib import Path
from typing import Any

from .config import Settings, load_dotenv_if_present
from .engine import MatchingEngine
from .exif import PillowExifExtractor
from .reconciler import LocationReconciler
from .reference import InMemoryReferenceStore
from .selection import CascadingSelectionController


def _read_text_file(path: Path) -> str:
    return path.read_text(encoding="utf-8")


def cli() -> None:
    """Entry point for the `location-resolver` console script.

        location-resolver --csv locations.csv --text "Genteng, Surabaya"
    """
    raise SystemExit(main())


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description=(
            "Resolve an Indonesian location (address text, coordinates or photo EXIF) "
            "to province/regency/district codes using a CSV reference."
        )
    )
    parser.add_argument(
        "--csv",
        default=None,
        help=(
            "Path to the location CSV (Kemendagri-like format). "
            "Defaults to $LOCATION_RESOLVER_CSV."
        ),
    )

    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--text", help="Address text to resolve.")
    source.add_argument("--text-file", help="Read address text from a file.")
    source.add_argument(
        "--lat",
        type=float,
        help="Latitude of a device/manual position (requires --lon).",
    )
    source.add_argument("--photo", help="Photo whose EXIF GPS should be resolved.")

    parser.add_argument("--lon", type=float, default=None, help="Longitude (with --lat).")
    parser.add_argument(
        "--fuzzy-threshold",
        type=float,
        default=None,
        help="Minimum fuzzy score (0..100). Higher is stricter. Default: 88.",
    )
    parser.add_argument(
        "--offline",
        action="store_true",
        help="Do not call the geocoding service (text input still works).",
    )
    parser.add_argument(
        "--jsonl",
        "--compact-json",
        action="store_true",
        help=(
            "Print output as a single-line JSON (JSONL-style). Useful for logging or large batches."
        ),
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


async def _run(args: argparse.Namespace, settings: Settings) -> dict[str, Any]:
    store = InMemoryReferenceStore.from_csv(settings.csv_path)
    gateway = None if args.offline else settings.build_gateway()

    engine = MatchingEngine(store, gateway, threshold=settings.fuzzy_threshold)
    selection = CascadingSelectionController(store)
    reconciler = LocationReconciler(
        engine,
        selection,
        exif_extractor=PillowExifExtractor(),
        geocode_timeout=settings.geocode_timeout,
    )

    if args.photo:
        await reconciler.ingest_photo(Path(args.photo))
    elif args.lat is not None:
        await reconciler.edit_coordinates(args.lat, args.lon)
    else:
        text = args.text
        if text is None:
            text = _read_text_file(Path(args.text_file))
        await reconciler.edit_address(text)

    match = reconciler.last_match
    return {
        "resolved": reconciler.resolved.to_dict(),
        "status": reconciler.status.to_dict(),
        "match": match.to_dict() if match else None,
    }


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
    )

    if args.lat is not None and args.lon is None:
        parser.error("--lat requires --lon")
    if args.lon is not None and args.lat is None:
        parser.error("--lon requires --lat")
    if args.photo and not Path(args.photo).is_file():
        parser.error(f"--photo: no such file: {args.photo}")

    load_dotenv_if_present()
    try:
        settings = Settings.from_env()
        if args.fuzzy_threshold is not None:
            if args.fuzzy_threshold < 0 or args.fuzzy_threshold > 100:
                raise SystemExit("--fuzzy-threshold must be in range [0, 100]")
            settings = replace(settings, fuzzy_threshold=args.fuzzy_threshold)
    except RuntimeError as e:
        raise SystemExit(str(e)) from e

    if args.csv:
        settings = replace(settings, csv_path=args.csv)
    if not settings.csv_path:
        raise SystemExit("--csv is required (or set LOCATION_RESOLVER_CSV)")

    try:
        out = asyncio.run(_run(args, settings))
    except (ValueError, OSError) as e:
        raise SystemExit(str(e)) from e

    if args.jsonl:
        print(json.dumps(out, ensure_ascii=False))
    else:
        print(json.dumps(out, ensure_ascii=False, indent=2))

    return 0


if __name__ == "__main__":
    raise SystemExit(main())
