from __future__ import annotations

import argparse
import json
from pathlib import Path

from backend.app.main import create_app

DEFAULT_OUTPUT_PATH = Path("openapi") / "openapi.json"


def _parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Write the sync API OpenAPI schema to disk.")
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT_PATH,
        help=f"Schema file path (default: {DEFAULT_OUTPUT_PATH}).",
    )
    return parser.parse_args()


def main() -> None:
    args = _parse_args()
    schema_path: Path = args.output
    schema_path.parent.mkdir(parents=True, exist_ok=True)
    schema = create_app().openapi()
    schema_path.write_text(json.dumps(schema, indent=2, sort_keys=True), encoding="utf-8")
    print(f"Wrote OpenAPI schema to {schema_path} ({len(schema.get('paths', {}))} paths)")


if __name__ == "__main__":
    main()
