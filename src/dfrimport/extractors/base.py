"""Extractor contract, extraction spec and shared XML helpers."""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Sequence

from lxml import etree

from dfrimport.models import Columns, ColumnType, DocumentKind

Record = Mapping[str, Any]
ExtractorFunc = Callable[[bytes], Record]

FILE_NAME_COLUMN: tuple[str, ColumnType] = ("file_name", ColumnType.STRING)


@dataclass(slots=True)
class ExtractionError(Exception):
    """Extractor rejected the structure of a document."""

    message: str

    def __str__(self) -> str:
        return self.message


@dataclass(frozen=True, slots=True)
class Extractor:
    """A named pure function from raw entry bytes to one flat record."""

    name: str
    columns: Columns
    func: ExtractorFunc

    def __post_init__(self) -> None:
        if not self.name:
            raise ValueError("Extractor name cannot be empty")
        names = [column for column, _ in self.columns]
        if "file_name" in names:
            raise ValueError(f"Extractor {self.name} must not declare file_name")
        if len(set(names)) != len(names):
            raise ValueError(f"Extractor {self.name} declares duplicate columns")

    @property
    def output_columns(self) -> Columns:
        return (FILE_NAME_COLUMN, *self.columns)

    @property
    def list_columns(self) -> frozenset[str]:
        return frozenset(name for name, column_type in self.columns if column_type is ColumnType.STRING_LIST)


def _as_extractors(value: Extractor | Sequence[Extractor]) -> tuple[Extractor, ...]:
    if isinstance(value, Extractor):
        return (value,)
    return tuple(value)


class ExtractionSpec:
    """Immutable mapping from document kind to the extractors applied to it."""

    def __init__(
        self,
        documents: Mapping[DocumentKind | str, Extractor | Sequence[Extractor]] | None = None,
        ngrams: Iterable[DocumentKind | str] = (),
    ) -> None:
        from dfrimport.extractors.ngram import NGRAM_EXTRACTOR

        handlers: dict[DocumentKind, tuple[Extractor, ...]] = {}
        for raw_kind, value in (documents or {}).items():
            kind = DocumentKind(raw_kind)
            if not kind.is_document:
                raise ValueError(f"Document extractors cannot be registered for kind {kind.value}")
            extractors = _as_extractors(value)
            if not extractors:
                raise ValueError(f"No extractors given for kind {kind.value}")
            names = [extractor.name for extractor in extractors]
            if len(set(names)) != len(names):
                raise ValueError(f"Duplicate extractor names for kind {kind.value}: {names}")
            handlers[kind] = extractors

        for raw_kind in ngrams:
            kind = DocumentKind(raw_kind)
            if not kind.is_ngram:
                raise ValueError(f"{kind.value} is not an n-gram kind")
            handlers[kind] = (NGRAM_EXTRACTOR,)

        if not handlers:
            raise ValueError("Extraction spec needs at least one kind")
        self._handlers = MappingProxyType(handlers)

    @property
    def kinds(self) -> frozenset[DocumentKind]:
        return frozenset(self._handlers)

    def handles(self, kind: DocumentKind) -> bool:
        return kind in self._handlers

    def handlers(self, kind: DocumentKind) -> tuple[Extractor, ...]:
        return self._handlers.get(kind, ())

    def __repr__(self) -> str:
        parts = ", ".join(
            f"{kind.value}=[{', '.join(extractor.name for extractor in extractors)}]"
            for kind, extractors in self._handlers.items()
        )
        return f"ExtractionSpec({parts})"


def parse_xml(raw: bytes) -> etree._Element:
    """Parse document bytes with entity resolution and network access disabled."""

    parser = etree.XMLParser(resolve_entities=False, no_network=True, load_dtd=False, huge_tree=False)
    try:
        root = etree.fromstring(raw, parser=parser)
    except etree.XMLSyntaxError as exc:
        raise ExtractionError(f"Malformed XML: {exc}") from exc
    return root


def _node_text(node: object) -> str | None:
    if hasattr(node, "itertext"):
        text = " ".join(" ".join(node.itertext()).split())
    else:
        text = " ".join(str(node).split())
    return text or None


def extract_child(node: etree._Element, xpath: str) -> str | None:
    """Text of the first node matching ``xpath``, whitespace-collapsed."""

    for match in node.xpath(xpath):
        text = _node_text(match)
        if text:
            return text
    return None


def extract_all(node: etree._Element, xpath: str, sep: str = "; ") -> str | None:
    """Texts of every node matching ``xpath`` joined by ``sep``."""

    texts = [text for text in (_node_text(match) for match in node.xpath(xpath)) if text]
    return sep.join(texts) if texts else None


def extract_int(node: etree._Element, xpath: str) -> int | None:
    text = extract_child(node, xpath)
    if text is None:
        return None
    try:
        return int(text)
    except ValueError as exc:
        raise ExtractionError(f"Expected an integer at {xpath}, got {text!r}") from exc


def require_root(root: etree._Element, tag: str) -> None:
    if etree.QName(root).localname != tag:
        raise ExtractionError(f"Expected <{tag}> document, got <{etree.QName(root).localname}>")
