"""Extraction spec, extractor contract and bundled JSTOR extractors."""

from typing import Iterable

from dfrimport.models import DocumentKind

from .article import ARTICLE_EXTRACTOR, AUTHORS_EXTRACTOR, get_article, get_authors
from .base import ExtractionError, ExtractionSpec, Extractor
from .book import (
    BOOK_EXTRACTOR,
    CHAPTERS_EXTRACTOR,
    CHAPTERS_WITH_AUTHORS_EXTRACTOR,
    get_book,
    get_chapters,
)
from .ngram import NGRAM_EXTRACTOR, get_ngram


def build_default_spec(
    *,
    authors: bool = False,
    ngrams: Iterable[DocumentKind | str] = (),
) -> ExtractionSpec:
    """Default extraction spec: articles with authors, books and reports with chapters."""
    chapters = CHAPTERS_WITH_AUTHORS_EXTRACTOR if authors else CHAPTERS_EXTRACTOR
    return ExtractionSpec(
        documents={
            DocumentKind.JOURNAL_ARTICLE: (ARTICLE_EXTRACTOR, AUTHORS_EXTRACTOR),
            DocumentKind.BOOK: (BOOK_EXTRACTOR, chapters),
            DocumentKind.REPORT: (BOOK_EXTRACTOR, chapters),
        },
        ngrams=ngrams,
    )


__all__ = [
    "ARTICLE_EXTRACTOR",
    "AUTHORS_EXTRACTOR",
    "BOOK_EXTRACTOR",
    "CHAPTERS_EXTRACTOR",
    "CHAPTERS_WITH_AUTHORS_EXTRACTOR",
    "NGRAM_EXTRACTOR",
    "ExtractionError",
    "ExtractionSpec",
    "Extractor",
    "build_default_spec",
    "get_article",
    "get_authors",
    "get_book",
    "get_chapters",
    "get_ngram",
]
