"""CLI entrypoint for merging numbered chunk files into one file per family."""

from __future__ import annotations

import argparse
import json
import logging

from dfrimport.sink import OutputWriteError, combine_outputs

LOGGER = logging.getLogger(__name__)


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Combine chunked Parquet outputs of an import run")
    parser.add_argument("--path", required=True, help="Directory holding the chunk files")
    parser.add_argument("--remove", action="store_true", help="Delete chunk files after combining")
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    try:
        combined = combine_outputs(args.path, remove=args.remove)
    except (OutputWriteError, ValueError) as exc:
        LOGGER.error("Combining outputs failed: %s", exc)
        return 2

    print(json.dumps({"path": args.path, "combined": [str(path) for path in combined]}, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
