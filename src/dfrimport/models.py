"""Canonical data structures shared by the archive index, runner and sink."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path, PurePosixPath
import re
from typing import Any

_NGRAM_SUFFIX_RE = re.compile(r"-ngram\d+$", re.IGNORECASE)


class DocumentKind(str, Enum):
    """Structural category of an archive entry."""

    BOOK = "book"
    CHAPTER = "chapter"
    JOURNAL_ARTICLE = "journal_article"
    REPORT = "report"
    NGRAM1 = "ngram1"
    NGRAM2 = "ngram2"
    NGRAM3 = "ngram3"
    UNKNOWN = "unknown"

    @property
    def is_ngram(self) -> bool:
        return self in {DocumentKind.NGRAM1, DocumentKind.NGRAM2, DocumentKind.NGRAM3}

    @property
    def is_document(self) -> bool:
        return not self.is_ngram and self is not DocumentKind.UNKNOWN


class ColumnType(str, Enum):
    """Declared type of one output column."""

    STRING = "string"
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    STRING_LIST = "list<string>"


Columns = tuple[tuple[str, ColumnType], ...]


def file_stem(entry_name: str) -> str:
    """Join key shared by metadata and n-gram files of one document."""

    stem = PurePosixPath(entry_name.replace("\\", "/")).stem
    return _NGRAM_SUFFIX_RE.sub("", stem)


@dataclass(frozen=True, slots=True)
class ArchiveEntry:
    """One member file inside a zip container."""

    archive_path: str
    entry_name: str
    kind: DocumentKind

    @property
    def file_name(self) -> str:
        return file_stem(self.entry_name)


@dataclass(frozen=True, slots=True)
class EntryFailure:
    """An entry that could not be read or extracted."""

    archive_path: str
    entry_name: str
    kind: DocumentKind
    extractor: str | None
    reason: str

    def to_dict(self) -> dict[str, str | None]:
        return {
            "archive_path": self.archive_path,
            "entry_name": self.entry_name,
            "kind": self.kind.value,
            "extractor": self.extractor,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class ExtractedRecord:
    """Rows produced by one extractor for one entry, or a placeholder."""

    file_name: str
    rows: tuple[dict[str, Any], ...]
    failed: bool = False


@dataclass(frozen=True, slots=True)
class Chunk:
    """A flushed, immutable batch of records of one kind and extractor."""

    kind: DocumentKind
    extractor: str
    index: int
    columns: Columns
    records: tuple[ExtractedRecord, ...]

    @property
    def column_names(self) -> list[str]:
        return [name for name, _ in self.columns]

    @property
    def row_count(self) -> int:
        return sum(len(record.rows) for record in self.records)

    def to_columns(self) -> dict[str, list[Any]]:
        """Columnar view of every row in record order."""

        out: dict[str, list[Any]] = {name: [] for name in self.column_names}
        for record in self.records:
            for row in record.rows:
                for name in out:
                    out[name].append(row.get(name))
        return out


@dataclass(frozen=True, slots=True)
class FlushEvent:
    """Progress notification emitted once per written chunk."""

    kind: DocumentKind
    extractor: str
    chunk_index: int
    entries: int
    rows: int
    path: Path
    entries_seen: int


@dataclass(slots=True)
class ImportResult:
    """Terminal summary of one batch run."""

    total_entries: int = 0
    skipped_unknown: int = 0
    skipped_unhandled: int = 0
    succeeded: dict[str, int] = field(default_factory=dict)
    failed: dict[str, int] = field(default_factory=dict)
    failures: list[EntryFailure] = field(default_factory=list)
    written_files: list[Path] = field(default_factory=list)
    failure_log: Path | None = None
    cancelled: bool = False
    discarded_entries: int = 0
    duration_ms: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "total_entries": self.total_entries,
            "skipped_unknown": self.skipped_unknown,
            "skipped_unhandled": self.skipped_unhandled,
            "succeeded": dict(self.succeeded),
            "failed": dict(self.failed),
            "failures": [failure.to_dict() for failure in self.failures],
            "written_files": [str(path) for path in self.written_files],
            "failure_log": str(self.failure_log) if self.failure_log is not None else None,
            "cancelled": self.cancelled,
            "discarded_entries": self.discarded_entries,
            "duration_ms": self.duration_ms,
        }
