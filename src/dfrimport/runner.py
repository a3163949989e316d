"""Batch orchestration: read, extract, accumulate and flush archive entries.

Entries are extracted on a bounded thread pool but consumed strictly in
enumeration order, so chunk membership and row order never depend on the
worker count. All chunk state lives on the calling thread; workers only read
their own entry and run the extractors over it.

Cancellation is observed right before an outcome is consumed. Outcomes that
were extracted ahead of that point are dropped unseen, and chunks still open
when the run stops are not written, so a cancelled run leaves only complete
chunks on disk.
"""

from __future__ import annotations

from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
import logging
from pathlib import Path
import threading
import time
from typing import Any, Callable, Iterable, Iterator, Mapping

import pyarrow as pa

from dfrimport.accumulator import ChunkAccumulator
from dfrimport.archive import ArchiveIndex, ArchiveReader, EntryReadError
from dfrimport.config import DEFAULT_CHUNK_SIZE
from dfrimport.extractors.base import ExtractionError, ExtractionSpec, Extractor
from dfrimport.models import (
    ArchiveEntry,
    Chunk,
    DocumentKind,
    EntryFailure,
    ExtractedRecord,
    FlushEvent,
    ImportResult,
)
from dfrimport.sink import OutputWriteError, ParquetChunkSink, arrow_schema
from dfrimport.validation import ShapeMismatch, expand_rows, missing_row, validate_chunk, validate_record

logger = logging.getLogger(__name__)

FlushObserver = Callable[[FlushEvent], None]


@dataclass(slots=True)
class _EntryOutcome:
    entry: ArchiveEntry
    records: list[tuple[Extractor, ExtractedRecord]]
    failures: list[EntryFailure]


@dataclass(slots=True)
class _BatchState:
    chunk_size: int
    result: ImportResult = field(default_factory=ImportResult)
    accumulators: dict[tuple[DocumentKind, str], ChunkAccumulator] = field(default_factory=dict)

    def accumulator(self, kind: DocumentKind, extractor: Extractor) -> ChunkAccumulator:
        key = (kind, extractor.name)
        accumulator = self.accumulators.get(key)
        if accumulator is None:
            accumulator = ChunkAccumulator(kind, extractor.name, extractor.output_columns, self.chunk_size)
            self.accumulators[key] = accumulator
        return accumulator


def apply_extractor(extractor: Extractor, raw: bytes, file_name: str) -> list[dict[str, Any]]:
    """Run one extractor and return its validated rows over the declared columns."""

    try:
        record = extractor.func(raw)
    except ExtractionError:
        raise
    except Exception as exc:
        raise ExtractionError(f"{type(exc).__name__}: {exc}") from exc

    if not isinstance(record, Mapping):
        raise ExtractionError(f"Extractor returned {type(record).__name__}, expected a mapping")

    declared = {name for name, _ in extractor.columns}
    values = {name: value for name, value in record.items() if name != "file_name"}
    unexpected = sorted(set(values) - declared)
    if unexpected:
        raise ExtractionError(f"Extractor returned undeclared columns: {', '.join(unexpected)}")

    row_count = validate_record(values, extractor.list_columns)
    values["file_name"] = file_name
    rows = expand_rows(values, extractor.output_columns, row_count)

    # Every cell must convert to its declared Arrow type.
    try:
        pa.Table.from_pylist(rows, schema=arrow_schema(extractor.output_columns))
    except (pa.ArrowInvalid, pa.ArrowTypeError) as exc:
        raise ExtractionError(f"Extractor output does not match declared column types: {exc}") from exc
    return rows


class BatchRunner:
    """Drive one import run over a sequence of archive entries."""

    def __init__(
        self,
        spec: ExtractionSpec,
        *,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        parallelism: int = 1,
        on_flush: FlushObserver | None = None,
        sink_factory: Callable[[str | Path], ParquetChunkSink] = ParquetChunkSink,
    ) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if parallelism <= 0:
            raise ValueError("parallelism must be positive")
        self._spec = spec
        self._chunk_size = chunk_size
        self._parallelism = parallelism
        self._on_flush = on_flush
        self._sink_factory = sink_factory

    def run(
        self,
        entries: Iterable[ArchiveEntry],
        output_prefix: str | Path,
        *,
        cancel_event: threading.Event | None = None,
    ) -> ImportResult:
        started = time.perf_counter()
        sink = self._sink_factory(output_prefix)
        state = _BatchState(chunk_size=self._chunk_size)

        try:
            with ArchiveReader() as reader:
                dispatchable = self._dispatchable(entries, state, cancel_event)
                if self._parallelism == 1:
                    for entry in dispatchable:
                        outcome = self._extract_entry(reader, entry)
                        if self._cancel_requested(cancel_event, state):
                            break
                        self._consume(outcome, state, sink)
                else:
                    self._run_parallel(dispatchable, reader, state, sink, cancel_event)

            if state.result.cancelled:
                self._discard_open_chunks(state)
            else:
                for accumulator in state.accumulators.values():
                    chunk = accumulator.flush()
                    if chunk is not None:
                        self._flush(chunk, state, sink)

            if state.result.failures:
                state.result.failure_log = sink.write_failures(state.result.failures)
        except OutputWriteError as exc:
            exc.written_files = list(state.result.written_files)
            logger.error("Aborting import, %d files already written: %s", len(exc.written_files), exc)
            raise

        result = state.result
        result.duration_ms = int((time.perf_counter() - started) * 1000)
        logger.info(
            "Import %s: %d entries, %d failures, %d files written",
            "cancelled" if result.cancelled else "finished",
            result.total_entries,
            len(result.failures),
            len(result.written_files),
        )
        return result

    @staticmethod
    def _cancel_requested(cancel_event: threading.Event | None, state: _BatchState) -> bool:
        if cancel_event is None or not cancel_event.is_set():
            return False
        if not state.result.cancelled:
            state.result.cancelled = True
            logger.info("Cancellation requested, no further entries are consumed")
        return True

    def _dispatchable(
        self,
        entries: Iterable[ArchiveEntry],
        state: _BatchState,
        cancel_event: threading.Event | None,
    ) -> Iterator[ArchiveEntry]:
        iterator = iter(entries)
        while not self._cancel_requested(cancel_event, state):
            entry = next(iterator, None)
            if entry is None:
                return
            yield entry

    def _run_parallel(
        self,
        entries: Iterator[ArchiveEntry],
        reader: ArchiveReader,
        state: _BatchState,
        sink: ParquetChunkSink,
        cancel_event: threading.Event | None,
    ) -> None:
        window = self._parallelism * 2
        pending: deque[Future[_EntryOutcome]] = deque()
        with ThreadPoolExecutor(max_workers=self._parallelism, thread_name_prefix="dfrimport") as executor:
            try:
                for entry in entries:
                    pending.append(executor.submit(self._extract_entry, reader, entry))
                    if len(pending) >= window and not self._consume_next(pending, state, sink, cancel_event):
                        break
                while pending and self._consume_next(pending, state, sink, cancel_event):
                    pass
            finally:
                for future in pending:
                    future.cancel()

    def _consume_next(
        self,
        pending: deque[Future[_EntryOutcome]],
        state: _BatchState,
        sink: ParquetChunkSink,
        cancel_event: threading.Event | None,
    ) -> bool:
        outcome = pending.popleft().result()
        if self._cancel_requested(cancel_event, state):
            return False
        self._consume(outcome, state, sink)
        return True

    def _extract_entry(self, reader: ArchiveReader, entry: ArchiveEntry) -> _EntryOutcome:
        extractors = self._spec.handlers(entry.kind)
        if not extractors:
            return _EntryOutcome(entry=entry, records=[], failures=[])
        file_name = entry.file_name

        try:
            raw = reader.read(entry)
        except EntryReadError as exc:
            logger.warning("Could not read %s from %s: %s", entry.entry_name, entry.archive_path, exc.message)
            return _EntryOutcome(
                entry=entry,
                records=[(extractor, self._placeholder(extractor, file_name)) for extractor in extractors],
                failures=[
                    EntryFailure(entry.archive_path, entry.entry_name, entry.kind, None, exc.message),
                ],
            )

        records: list[tuple[Extractor, ExtractedRecord]] = []
        failures: list[EntryFailure] = []
        for extractor in extractors:
            try:
                rows = apply_extractor(extractor, raw, file_name)
            except (ExtractionError, ShapeMismatch) as exc:
                logger.warning(
                    "Extractor %s failed for %s in %s: %s",
                    extractor.name,
                    entry.entry_name,
                    entry.archive_path,
                    exc,
                )
                failures.append(
                    EntryFailure(entry.archive_path, entry.entry_name, entry.kind, extractor.name, str(exc))
                )
                records.append((extractor, self._placeholder(extractor, file_name)))
                continue
            records.append((extractor, ExtractedRecord(file_name=file_name, rows=tuple(rows))))
        return _EntryOutcome(entry=entry, records=records, failures=failures)

    @staticmethod
    def _placeholder(extractor: Extractor, file_name: str) -> ExtractedRecord:
        return ExtractedRecord(
            file_name=file_name,
            rows=(missing_row(extractor.output_columns, file_name),),
            failed=True,
        )

    def _consume(self, outcome: _EntryOutcome, state: _BatchState, sink: ParquetChunkSink) -> None:
        kind = outcome.entry.kind
        if kind is DocumentKind.UNKNOWN:
            state.result.skipped_unknown += 1
            return
        state.result.total_entries += 1
        if not self._spec.handles(kind):
            state.result.skipped_unhandled += 1
            return

        counts = state.result.failed if outcome.failures else state.result.succeeded
        counts[kind.value] = counts.get(kind.value, 0) + 1
        state.result.failures.extend(outcome.failures)

        for extractor, record in outcome.records:
            accumulator = state.accumulator(kind, extractor)
            accumulator.push(record)
            chunk = accumulator.flush_if_full()
            if chunk is not None:
                self._flush(chunk, state, sink)

    def _discard_open_chunks(self, state: _BatchState) -> None:
        # Every extractor of a kind sees the same entries, so its buffers fill in step.
        open_entries: dict[DocumentKind, int] = {}
        for accumulator in state.accumulators.values():
            open_entries[accumulator.kind] = max(open_entries.get(accumulator.kind, 0), accumulator.pending)
        state.result.discarded_entries = sum(open_entries.values())
        if state.result.discarded_entries:
            logger.warning(
                "Cancelled run leaves %d entries of unfinished chunks unwritten",
                state.result.discarded_entries,
            )

    def _flush(self, chunk: Chunk, state: _BatchState, sink: ParquetChunkSink) -> None:
        validate_chunk(chunk)
        path = sink.write(chunk)
        state.result.written_files.append(path)
        logger.info(
            "Wrote chunk %d of %s/%s (%d entries, %d rows) to %s",
            chunk.index,
            chunk.kind.value,
            chunk.extractor,
            len(chunk.records),
            chunk.row_count,
            path,
        )
        if self._on_flush is not None:
            self._on_flush(
                FlushEvent(
                    kind=chunk.kind,
                    extractor=chunk.extractor,
                    chunk_index=chunk.index,
                    entries=len(chunk.records),
                    rows=chunk.row_count,
                    path=path,
                    entries_seen=state.result.total_entries,
                )
            )


def run_import(
    entries: Iterable[ArchiveEntry],
    spec: ExtractionSpec,
    chunk_size: int,
    output_prefix: str | Path,
    parallelism: int = 1,
    *,
    on_flush: FlushObserver | None = None,
    cancel_event: threading.Event | None = None,
) -> ImportResult:
    runner = BatchRunner(spec, chunk_size=chunk_size, parallelism=parallelism, on_flush=on_flush)
    return runner.run(entries, output_prefix, cancel_event=cancel_event)


def import_archives(
    archive_paths: Iterable[str | Path],
    spec: ExtractionSpec,
    output_prefix: str | Path,
    *,
    files_to_import: Iterable[str] | None = None,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
    parallelism: int = 1,
    on_flush: FlushObserver | None = None,
    cancel_event: threading.Event | None = None,
) -> ImportResult:
    """Enumerate archives and import every handled entry in one run."""

    index = ArchiveIndex(archive_paths, files_to_import)
    result = run_import(
        index.iter_entries(),
        spec,
        chunk_size,
        output_prefix,
        parallelism,
        on_flush=on_flush,
        cancel_event=cancel_event,
    )
    result.skipped_unknown += index.unknown_count
    return result
