"""Reader for tab-separated n-gram count files."""

from __future__ import annotations

from dfrimport.extractors.base import ExtractionError, Extractor, Record
from dfrimport.models import ColumnType

NGRAM_COLUMNS = (
    ("ngram", ColumnType.STRING),
    ("n", ColumnType.INTEGER),
)


def get_ngram(raw: bytes) -> Record:
    """Parse ``ngram<TAB>count`` lines; an empty file yields one missing row."""

    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ExtractionError(f"N-gram file is not valid UTF-8: {exc}") from exc

    ngrams: list[str] = []
    counts: list[int] = []
    for line_no, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        ngram, sep, count = line.rstrip("\r").rpartition("\t")
        if not sep:
            raise ExtractionError(f"Line {line_no} has no tab-separated count")
        try:
            counts.append(int(count))
        except ValueError as exc:
            raise ExtractionError(f"Line {line_no} has a malformed count: {count!r}") from exc
        ngrams.append(ngram)

    if not ngrams:
        return {}
    return {"ngram": ngrams, "n": counts}


NGRAM_EXTRACTOR = Extractor(name="get_ngram", columns=NGRAM_COLUMNS, func=get_ngram)
