"""Chunked, failure-isolating import of JSTOR/DfR zip archives."""

from .archive import ArchiveIndex, ArchiveOpenError, ArchiveReader, EntryReadError, classify_entry, file_stem
from .extractors import ExtractionError, ExtractionSpec, Extractor, build_default_spec
from .models import ArchiveEntry, ColumnType, DocumentKind, EntryFailure, FlushEvent, ImportResult
from .runner import BatchRunner, import_archives, run_import
from .sink import OutputWriteError, ParquetChunkSink, combine_outputs, re_import, read_typed
from .validation import ShapeMismatch, validate_record

__all__ = [
    "ArchiveEntry",
    "ArchiveIndex",
    "ArchiveOpenError",
    "ArchiveReader",
    "BatchRunner",
    "ColumnType",
    "DocumentKind",
    "EntryFailure",
    "EntryReadError",
    "ExtractionError",
    "ExtractionSpec",
    "Extractor",
    "FlushEvent",
    "ImportResult",
    "OutputWriteError",
    "ParquetChunkSink",
    "ShapeMismatch",
    "build_default_spec",
    "classify_entry",
    "combine_outputs",
    "file_stem",
    "import_archives",
    "re_import",
    "read_typed",
    "run_import",
    "validate_record",
]
