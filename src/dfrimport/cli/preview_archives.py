"""CLI entrypoint for counting archive entries by kind without extracting."""

from __future__ import annotations

import argparse
import json

from dfrimport.archive import ArchiveIndex, ArchiveOpenError


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description="Count entries of JSTOR/DfR zip archives by document kind")
    parser.add_argument("--archive", action="append", required=True, help="Zip archive to preview (repeatable)")
    args = parser.parse_args(argv)

    index = ArchiveIndex(args.archive)
    payload: dict[str, dict[str, int]] = {}
    try:
        for archive_path in index.archive_paths:
            counts = index.preview_archive(archive_path)
            payload[archive_path] = {kind.value: count for kind, count in sorted(counts.items())}
    except ArchiveOpenError as exc:
        print(json.dumps({"error": str(exc)}, ensure_ascii=True, indent=2))
        return 2

    print(json.dumps(payload, ensure_ascii=True, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
