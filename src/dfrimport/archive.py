"""Zip archive enumeration, entry classification and member reads."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass
import logging
from pathlib import Path, PurePosixPath
import threading
from typing import Iterable, Iterator, Sequence
from zipfile import BadZipFile, ZipFile, is_zipfile
import zlib

from dfrimport.models import ArchiveEntry, DocumentKind, file_stem

logger = logging.getLogger(__name__)

# Checked in order against every path component; first prefix match wins.
DEFAULT_KIND_RULES: tuple[tuple[str, DocumentKind], ...] = (
    ("ngram1", DocumentKind.NGRAM1),
    ("ngram2", DocumentKind.NGRAM2),
    ("ngram3", DocumentKind.NGRAM3),
    ("journal-article", DocumentKind.JOURNAL_ARTICLE),
    ("book-chapter", DocumentKind.BOOK),
    ("research-report", DocumentKind.REPORT),
    ("chapter", DocumentKind.CHAPTER),
    ("book", DocumentKind.BOOK),
)


@dataclass(slots=True)
class ArchiveOpenError(Exception):
    """Archive is missing or not a readable zip container."""

    path: str
    message: str

    def __str__(self) -> str:
        return f"{self.message} (archive={self.path})"


@dataclass(slots=True)
class EntryReadError(Exception):
    """One member of an otherwise valid archive could not be read."""

    entry: ArchiveEntry
    message: str

    def __str__(self) -> str:
        return f"{self.message} (archive={self.entry.archive_path}, entry={self.entry.entry_name})"


def classify_entry(
    entry_name: str,
    rules: Sequence[tuple[str, DocumentKind]] = DEFAULT_KIND_RULES,
) -> DocumentKind:
    """Derive the document kind from the member path alone."""

    for component in PurePosixPath(entry_name.replace("\\", "/")).parts:
        lowered = component.lower()
        for prefix, kind in rules:
            if lowered.startswith(prefix):
                return kind
    return DocumentKind.UNKNOWN


def _is_directory(name: str) -> bool:
    return name.endswith("/")


class ArchiveIndex:
    """Enumerate classified entries across one or more zip archives."""

    def __init__(
        self,
        archive_paths: Iterable[str | Path],
        files_to_import: Iterable[str] | None = None,
        *,
        rules: Sequence[tuple[str, DocumentKind]] = DEFAULT_KIND_RULES,
    ) -> None:
        self._archive_paths = [str(path) for path in archive_paths]
        if not self._archive_paths:
            raise ValueError("At least one archive path is required")
        self._allow_list = frozenset(files_to_import) if files_to_import is not None else None
        self._rules = tuple(rules)
        self.unknown_count = 0

    @property
    def archive_paths(self) -> list[str]:
        return list(self._archive_paths)

    def iter_entries(self) -> Iterator[ArchiveEntry]:
        """Lazily yield dispatchable entries; every archive is checked first."""

        for path in self._archive_paths:
            self._check_archive(path)

        self.unknown_count = 0
        for path in self._archive_paths:
            with self._open(path) as archive:
                names = [name for name in archive.namelist() if not _is_directory(name)]
            for name in names:
                kind = classify_entry(name, self._rules)
                if kind is DocumentKind.UNKNOWN:
                    self.unknown_count += 1
                    logger.debug("Skipping unclassified entry %s in %s", name, path)
                    continue
                if self._allow_list is not None and file_stem(name) not in self._allow_list:
                    continue
                yield ArchiveEntry(archive_path=path, entry_name=name, kind=kind)

    def __iter__(self) -> Iterator[ArchiveEntry]:
        return self.iter_entries()

    def preview(self) -> Counter[DocumentKind]:
        """Count members by kind from the central directory only."""

        counts: Counter[DocumentKind] = Counter()
        for path in self._archive_paths:
            counts.update(self.preview_archive(path))
        return counts

    def preview_archive(self, path: str | Path) -> Counter[DocumentKind]:
        archive_path = str(path)
        self._check_archive(archive_path)
        with self._open(archive_path) as archive:
            names = [name for name in archive.namelist() if not _is_directory(name)]
        counts: Counter[DocumentKind] = Counter()
        for name in names:
            if self._allow_list is not None and file_stem(name) not in self._allow_list:
                continue
            counts[classify_entry(name, self._rules)] += 1
        return counts

    def _check_archive(self, path: str) -> None:
        source = Path(path)
        if not source.is_file():
            raise ArchiveOpenError(path, "Archive does not exist")
        if not is_zipfile(source):
            raise ArchiveOpenError(path, "Archive is not a zip file")

    def _open(self, path: str) -> ZipFile:
        try:
            return ZipFile(path, "r")
        except (BadZipFile, OSError) as exc:
            raise ArchiveOpenError(path, f"Failed to open archive: {exc}") from exc


class ArchiveReader:
    """Keep one open handle per archive and read member bytes on demand."""

    def __init__(self) -> None:
        self._archives: dict[str, ZipFile] = {}
        self._lock = threading.Lock()

    def __enter__(self) -> "ArchiveReader":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def close(self) -> None:
        with self._lock:
            archives = list(self._archives.values())
            self._archives.clear()
        for archive in archives:
            archive.close()

    def read(self, entry: ArchiveEntry) -> bytes:
        archive = self._archive_for(entry.archive_path)
        try:
            return archive.read(entry.entry_name)
        except KeyError as exc:
            raise EntryReadError(entry, "Entry not present in archive") from exc
        except (BadZipFile, zlib.error, OSError, EOFError, NotImplementedError) as exc:
            raise EntryReadError(entry, f"Failed to read entry: {exc}") from exc

    def _archive_for(self, path: str) -> ZipFile:
        with self._lock:
            archive = self._archives.get(path)
            if archive is None:
                try:
                    archive = ZipFile(path, "r")
                except (BadZipFile, OSError) as exc:
                    raise ArchiveOpenError(path, f"Failed to open archive: {exc}") from exc
                self._archives[path] = archive
            return archive
