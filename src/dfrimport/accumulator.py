"""Count-based chunk buffering per document kind and extractor."""

from __future__ import annotations

from dfrimport.models import Chunk, Columns, DocumentKind, ExtractedRecord
from dfrimport.validation import missing_row


class ChunkAccumulator:
    """Append-only buffer that emits a ``Chunk`` every ``chunk_size`` records."""

    def __init__(self, kind: DocumentKind, extractor: str, columns: Columns, chunk_size: int) -> None:
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        self._kind = kind
        self._extractor = extractor
        self._columns = columns
        self._chunk_size = chunk_size
        self._records: list[ExtractedRecord] = []
        self._next_index = 1

    @property
    def kind(self) -> DocumentKind:
        return self._kind

    @property
    def extractor(self) -> str:
        return self._extractor

    @property
    def pending(self) -> int:
        return len(self._records)

    @property
    def next_index(self) -> int:
        return self._next_index

    def push(self, record: ExtractedRecord) -> None:
        if not record.rows:
            record = ExtractedRecord(
                file_name=record.file_name,
                rows=(missing_row(self._columns, record.file_name),),
                failed=record.failed,
            )
        self._records.append(record)

    def flush_if_full(self) -> Chunk | None:
        if len(self._records) < self._chunk_size:
            return None
        return self.flush()

    def flush(self) -> Chunk | None:
        if not self._records:
            return None
        chunk = Chunk(
            kind=self._kind,
            extractor=self._extractor,
            index=self._next_index,
            columns=self._columns,
            records=tuple(self._records),
        )
        self._records = []
        self._next_index += 1
        return chunk
