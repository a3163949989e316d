"""CLI command for chunked import of JSTOR/DfR zip archives."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path

from dotenv import load_dotenv

from dfrimport.archive import ArchiveOpenError
from dfrimport.config import ImportSettings
from dfrimport.extractors import build_default_spec
from dfrimport.models import DocumentKind, FlushEvent
from dfrimport.runner import import_archives
from dfrimport.sink import OutputWriteError


load_dotenv()

LOGGER = logging.getLogger(__name__)

_NGRAM_CHOICES = [kind.value for kind in DocumentKind if kind.is_ngram]


def _read_files_to_import(path: Path) -> list[str]:
    lines = path.read_text(encoding="utf-8").splitlines()
    return [line.strip() for line in lines if line.strip()]


def _log_flush(event: FlushEvent) -> None:
    LOGGER.info(
        "%s/%s chunk %d: %d rows (%d entries seen)",
        event.kind.value,
        event.extractor,
        event.chunk_index,
        event.rows,
        event.entries_seen,
    )


def _parse_args(argv: list[str] | None, settings: ImportSettings) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Import JSTOR/DfR zip archives into chunked Parquet files")
    parser.add_argument("--archive", action="append", required=True, help="Zip archive to import (repeatable)")
    parser.add_argument("--out-file", required=True, help="File name prefix for every output file")
    parser.add_argument("--out-dir", default=str(settings.output_dir), help="Directory for output files")
    parser.add_argument("--chunk-size", type=int, default=settings.chunk_size, help="Entries per output file")
    parser.add_argument("--parallelism", type=int, default=settings.parallelism, help="Extraction worker count")
    parser.add_argument(
        "--files-to-import",
        default=None,
        help="Text file with one file-name stem per line; only these entries are imported",
    )
    parser.add_argument("--authors", action="store_true", help="Collect chapter authors for books")
    parser.add_argument("--ngrams", nargs="*", default=[], choices=_NGRAM_CHOICES, help="N-gram kinds to import")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    settings = ImportSettings.from_env()
    args = _parse_args(argv, settings)

    files_to_import = _read_files_to_import(Path(args.files_to_import)) if args.files_to_import else None
    spec = build_default_spec(authors=args.authors, ngrams=args.ngrams)
    output_prefix = Path(args.out_dir) / args.out_file

    try:
        result = import_archives(
            args.archive,
            spec,
            output_prefix,
            files_to_import=files_to_import,
            chunk_size=args.chunk_size,
            parallelism=args.parallelism,
            on_flush=_log_flush,
        )
    except (ArchiveOpenError, OutputWriteError) as exc:
        LOGGER.error("Import aborted: %s", exc)
        return 2

    print(json.dumps(result.to_dict(), ensure_ascii=True, indent=2))
    return 0 if not result.failures else 1


if __name__ == "__main__":
    raise SystemExit(main())
