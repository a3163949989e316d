"""Parquet output for flushed chunks, failure logs and typed re-import.

Every chunk becomes one Parquet file named
``{prefix}_{kind}_{extractor}-{index}.parquet``. The declared column types are
stored in the file footer so that a re-import never has to infer them from
content: a chunk whose integer column holds only placeholder rows still comes
back as ``int64`` with nulls.
"""

from __future__ import annotations

from collections import defaultdict
from dataclasses import dataclass, field
from functools import lru_cache
import json
import logging
import os
from pathlib import Path
import re
from typing import Iterable, Sequence
import uuid

import pyarrow as pa
import pyarrow.parquet as pq

from dfrimport.models import Chunk, ColumnType, Columns, EntryFailure

logger = logging.getLogger(__name__)

COLUMN_TYPES_KEY = b"dfrimport.column_types"
KIND_KEY = b"dfrimport.kind"
EXTRACTOR_KEY = b"dfrimport.extractor"
CHUNK_INDEX_KEY = b"dfrimport.chunk_index"

_PART_RE = re.compile(r"^(?P<family>.+)-(?P<index>\d+)\.parquet$")

_ARROW_TYPES: dict[ColumnType, pa.DataType] = {
    ColumnType.STRING: pa.string(),
    ColumnType.INTEGER: pa.int64(),
    ColumnType.FLOAT: pa.float64(),
    ColumnType.BOOLEAN: pa.bool_(),
    ColumnType.STRING_LIST: pa.list_(pa.string()),
}

FAILURE_COLUMNS: Columns = (
    ("archive_path", ColumnType.STRING),
    ("entry_name", ColumnType.STRING),
    ("kind", ColumnType.STRING),
    ("extractor", ColumnType.STRING),
    ("reason", ColumnType.STRING),
)


@dataclass(slots=True)
class OutputWriteError(Exception):
    """A flushed chunk could not be persisted."""

    path: Path
    message: str
    written_files: list[Path] = field(default_factory=list)

    def __str__(self) -> str:
        return f"{self.message} (path={self.path})"


@lru_cache(maxsize=None)
def arrow_schema(columns: Columns) -> pa.Schema:
    """Arrow schema for declared columns, with the declaration kept in metadata."""

    declared = {name: column_type.value for name, column_type in columns}
    return pa.schema(
        [pa.field(name, _ARROW_TYPES[column_type]) for name, column_type in columns],
        metadata={COLUMN_TYPES_KEY: json.dumps(declared).encode("utf-8")},
    )


def declared_columns(schema: pa.Schema) -> Columns | None:
    """Recover the declared column types stored by ``arrow_schema``."""

    metadata = schema.metadata or {}
    raw = metadata.get(COLUMN_TYPES_KEY)
    if raw is None:
        return None
    declared = json.loads(raw.decode("utf-8"))
    return tuple((name, ColumnType(value)) for name, value in declared.items())


def _atomic_write(table: pa.Table, path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f"{path.name}.tmp.{uuid.uuid4().hex}")
    try:
        pq.write_table(table, str(tmp_path), compression="zstd")
        with open(tmp_path, "rb") as handle:
            os.fsync(handle.fileno())
        tmp_path.replace(path)
    except Exception:
        tmp_path.unlink(missing_ok=True)
        raise


class ParquetChunkSink:
    """Write chunks for one run under a shared output prefix."""

    def __init__(self, output_prefix: str | Path) -> None:
        prefix = Path(output_prefix)
        if not prefix.name:
            raise ValueError("output_prefix must name a file prefix, not a directory")
        self._prefix = prefix

    @property
    def output_prefix(self) -> Path:
        return self._prefix

    def path_for(self, kind: str, extractor: str, index: int) -> Path:
        return self._prefix.with_name(f"{self._prefix.name}_{kind}_{extractor}-{index}.parquet")

    @property
    def failure_log_path(self) -> Path:
        return self._prefix.with_name(f"{self._prefix.name}_failures.parquet")

    def write(self, chunk: Chunk) -> Path:
        path = self.path_for(chunk.kind.value, chunk.extractor, chunk.index)
        schema = arrow_schema(chunk.columns)
        schema = schema.with_metadata(
            {
                **schema.metadata,
                KIND_KEY: chunk.kind.value.encode("utf-8"),
                EXTRACTOR_KEY: chunk.extractor.encode("utf-8"),
                CHUNK_INDEX_KEY: str(chunk.index).encode("utf-8"),
            }
        )
        try:
            table = pa.Table.from_pydict(chunk.to_columns(), schema=schema)
        except (pa.ArrowInvalid, pa.ArrowTypeError) as exc:
            raise ValueError(
                f"Chunk {chunk.kind.value}/{chunk.extractor}-{chunk.index} does not match its declared types: {exc}"
            ) from exc
        self._write_table(table, path)
        logger.debug("Wrote %d rows to %s", table.num_rows, path)
        return path

    def write_failures(self, failures: Sequence[EntryFailure]) -> Path:
        path = self.failure_log_path
        rows = [failure.to_dict() for failure in failures]
        table = pa.Table.from_pylist(rows, schema=arrow_schema(FAILURE_COLUMNS))
        self._write_table(table, path)
        return path

    def _write_table(self, table: pa.Table, path: Path) -> None:
        try:
            _atomic_write(table, path)
        except OSError as exc:
            raise OutputWriteError(path, f"Failed to write output file: {exc}") from exc


def read_typed(path: str | Path) -> pa.Table:
    """Read one output file back with its declared column types."""

    table = pq.read_table(str(path))
    columns = declared_columns(table.schema)
    if columns is None:
        return table
    return table.cast(arrow_schema(columns).with_metadata(table.schema.metadata))


def re_import(paths: Iterable[str | Path]) -> pa.Table:
    """Concatenate output files of one kind and extractor into one typed table."""

    sources = [Path(path) for path in paths]
    if not sources:
        raise ValueError("No files given to re-import")

    tables = [read_typed(path) for path in sources]
    expected = declared_columns(tables[0].schema)
    for path, table in zip(sources[1:], tables[1:]):
        if declared_columns(table.schema) != expected:
            raise ValueError(f"File {path} declares different columns than {sources[0]}")

    schema = arrow_schema(expected) if expected is not None else tables[0].schema
    return pa.concat_tables([table.cast(schema) for table in tables])


def combine_outputs(directory: str | Path, *, remove: bool = False) -> list[Path]:
    """Merge numbered chunk files of each family into a single file.

    A family is every ``{prefix}_{kind}_{extractor}-N.parquet`` sharing the
    part before ``-N``; parts are concatenated in numeric chunk order.
    """

    root = Path(directory)
    families: dict[str, list[tuple[int, Path]]] = defaultdict(list)
    for path in sorted(root.glob("*.parquet")):
        match = _PART_RE.match(path.name)
        if match is None:
            continue
        families[match.group("family")].append((int(match.group("index")), path))

    combined: list[Path] = []
    for family, parts in sorted(families.items()):
        ordered = [path for _, path in sorted(parts)]
        table = re_import(ordered)
        target = root / f"{family}.parquet"
        try:
            _atomic_write(table, target)
        except OSError as exc:
            raise OutputWriteError(target, f"Failed to write combined file: {exc}") from exc
        logger.info("Combined %d files into %s", len(ordered), target)
        combined.append(target)
        if remove:
            for path in ordered:
                path.unlink()
    return combined
