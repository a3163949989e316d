"""Book-level and chapter-level metadata from JSTOR book XML."""

from __future__ import annotations

from typing import Any

from lxml import etree

from dfrimport.extractors.base import (
    ExtractionError,
    Extractor,
    Record,
    extract_all,
    extract_child,
    extract_int,
    parse_xml,
    require_root,
)
from dfrimport.models import ColumnType

BOOK_COLUMNS = (
    ("book_id", ColumnType.STRING),
    ("discipline", ColumnType.STRING),
    ("book_title", ColumnType.STRING),
    ("book_subtitle", ColumnType.STRING),
    ("pub_day", ColumnType.INTEGER),
    ("pub_month", ColumnType.INTEGER),
    ("pub_year", ColumnType.INTEGER),
    ("isbn", ColumnType.STRING),
    ("publisher_name", ColumnType.STRING),
    ("publisher_location", ColumnType.STRING),
    ("n_pages", ColumnType.INTEGER),
    ("language", ColumnType.STRING),
)

CHAPTER_COLUMNS = (
    ("book_id", ColumnType.STRING),
    ("part_id", ColumnType.STRING),
    ("part_label", ColumnType.STRING),
    ("part_title", ColumnType.STRING),
    ("part_subtitle", ColumnType.STRING),
    ("authors", ColumnType.STRING_LIST),
    ("abstract", ColumnType.STRING),
    ("part_first_page", ColumnType.STRING),
)


def _book_meta(root: etree._Element) -> etree._Element:
    require_root(root, "book")
    meta = root.find("book-meta")
    if meta is None:
        raise ExtractionError("Book document has no <book-meta>")
    return meta


def _page_count(meta: etree._Element) -> int | None:
    raw = meta.xpath("string(.//counts/page-count/@count)")
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError as exc:
        raise ExtractionError(f"Malformed page count: {raw!r}") from exc


def get_book(raw: bytes) -> Record:
    """One row per book.

    Multiple disciplines or ISBNs are joined by ``"; "``. When a book lists
    more than one publication date the first one wins, which should be the
    oldest.
    """

    meta = _book_meta(parse_xml(raw))
    return {
        "book_id": extract_child(meta, ".//book-id"),
        "discipline": extract_all(meta, ".//subj-group[@subj-group-type='discipline']"),
        "book_title": extract_child(meta, ".//book-title"),
        "book_subtitle": extract_child(meta, ".//book-title-group/subtitle"),
        "pub_day": extract_int(meta, ".//day"),
        "pub_month": extract_int(meta, ".//month"),
        "pub_year": extract_int(meta, ".//year"),
        "isbn": extract_all(meta, "isbn"),
        "publisher_name": extract_child(meta, ".//publisher-name"),
        "publisher_location": extract_child(meta, ".//publisher-loc"),
        "n_pages": _page_count(meta),
        "language": extract_child(meta, ".//meta-value"),
    }


def _part_authors(part: etree._Element) -> list[str]:
    names: list[str] = []
    for contrib in part.xpath(".//contrib"):
        given = extract_child(contrib, ".//given-names")
        surname = extract_child(contrib, ".//surname")
        name = " ".join(piece for piece in (given, surname) if piece)
        if not name:
            name = extract_child(contrib, ".//string-name") or ""
        if name:
            names.append(name)
    return names


def _find_part(part: etree._Element, authors: bool) -> dict[str, Any]:
    return {
        "part_id": extract_child(part, "book-part-id"),
        "part_label": extract_child(part, ".//label"),
        "part_title": extract_child(part, ".//title"),
        "part_subtitle": extract_child(part, ".//title-group/subtitle"),
        "authors": _part_authors(part) if authors else None,
        "abstract": extract_child(part, ".//abstract"),
        "part_first_page": extract_child(part, ".//fpage"),
    }


def get_chapters(raw: bytes, authors: bool = False) -> Record:
    """One row per book part; a book without parts yields one missing row.

    Collecting authors walks every contributor of every part and is noticeably
    slower, so it is opt-in.
    """

    root = parse_xml(raw)
    _book_meta(root)
    parts = root.xpath("body/book-part/body/book-part/book-part-meta")
    book_id = extract_child(root, ".//book-id")

    if not parts:
        return {"book_id": book_id}

    found = [_find_part(part, authors) for part in parts]
    record: dict[str, Any] = {"book_id": book_id}
    for name, _ in CHAPTER_COLUMNS[1:]:
        record[name] = [part[name] for part in found]
    if not authors:
        # Broadcast: a list of missing author cells would read as one list cell.
        record["authors"] = None
    return record


def get_chapters_with_authors(raw: bytes) -> Record:
    return get_chapters(raw, authors=True)


BOOK_EXTRACTOR = Extractor(name="get_book", columns=BOOK_COLUMNS, func=get_book)
CHAPTERS_EXTRACTOR = Extractor(name="get_chapters", columns=CHAPTER_COLUMNS, func=get_chapters)
CHAPTERS_WITH_AUTHORS_EXTRACTOR = Extractor(
    name="get_chapters",
    columns=CHAPTER_COLUMNS,
    func=get_chapters_with_authors,
)

