"""Shape checks for extractor output before it reaches a chunk or the sink."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from dfrimport.models import Chunk, ColumnType


@dataclass(slots=True)
class ShapeMismatch(Exception):
    """Non-scalar columns of one record disagree on their length."""

    lengths: dict[str, int]

    def __str__(self) -> str:
        details = ", ".join(f"{name}={length}" for name, length in self.lengths.items())
        return f"Columns have mismatched lengths: {details}"


def _is_sequence(value: Any) -> bool:
    return isinstance(value, (list, tuple))


def _is_scalar(value: Any, *, list_column: bool) -> bool:
    if not _is_sequence(value):
        return True
    if list_column:
        # A flat list is a single list cell; a list of lists is a column of cells.
        return not any(_is_sequence(item) for item in value)
    return False


def validate_record(record: Mapping[str, Any], list_columns: frozenset[str] = frozenset()) -> int:
    """Return the row count of a record or raise ``ShapeMismatch``."""

    lengths = {
        name: len(value)
        for name, value in record.items()
        if not _is_scalar(value, list_column=name in list_columns)
    }
    if not lengths:
        return 1

    distinct = set(lengths.values())
    if len(distinct) > 1:
        raise ShapeMismatch(lengths)
    return distinct.pop()


def expand_rows(
    record: Mapping[str, Any],
    columns: Sequence[tuple[str, ColumnType]],
    row_count: int,
) -> list[dict[str, Any]]:
    """Broadcast a validated record into row dicts over the declared columns."""

    rows: list[dict[str, Any]] = [{} for _ in range(row_count)]
    for name, column_type in columns:
        value = record.get(name)
        if _is_scalar(value, list_column=column_type is ColumnType.STRING_LIST):
            cells = [value] * row_count
        else:
            cells = list(value)
        for row, cell in zip(rows, cells):
            row[name] = list(cell) if isinstance(cell, tuple) else cell
    return rows


def missing_row(columns: Sequence[tuple[str, ColumnType]], file_name: str) -> dict[str, Any]:
    """All-missing row that keeps only the join key."""

    row: dict[str, Any] = {name: None for name, _ in columns}
    row["file_name"] = file_name
    return row


def validate_chunk(chunk: Chunk) -> int:
    """Re-check the columnar shape of a chunk right before it is written."""

    columns = chunk.to_columns()
    row_count = validate_record(columns)
    if columns and row_count != chunk.row_count:
        raise ShapeMismatch({name: len(values) for name, values in columns.items()})

    expected = set(chunk.column_names)
    for record in chunk.records:
        for row in record.rows:
            if set(row) != expected:
                raise ValueError(
                    f"Row for {record.file_name} does not match chunk columns "
                    f"(chunk={chunk.kind.value}/{chunk.extractor}-{chunk.index})"
                )
    return row_count
