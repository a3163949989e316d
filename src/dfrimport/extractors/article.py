"""Journal article metadata and author lists from JSTOR article XML."""

from __future__ import annotations

from lxml import etree

from dfrimport.extractors.base import (
    ExtractionError,
    Extractor,
    Record,
    extract_child,
    extract_int,
    parse_xml,
    require_root,
)
from dfrimport.models import ColumnType

ARTICLE_COLUMNS = (
    ("journal_doi", ColumnType.STRING),
    ("journal_jcode", ColumnType.STRING),
    ("journal_pub_id", ColumnType.STRING),
    ("journal_title", ColumnType.STRING),
    ("article_doi", ColumnType.STRING),
    ("article_pub_id", ColumnType.STRING),
    ("article_jcode", ColumnType.STRING),
    ("article_type", ColumnType.STRING),
    ("article_title", ColumnType.STRING),
    ("volume", ColumnType.STRING),
    ("issue", ColumnType.STRING),
    ("language", ColumnType.STRING),
    ("pub_day", ColumnType.INTEGER),
    ("pub_month", ColumnType.INTEGER),
    ("pub_year", ColumnType.INTEGER),
    ("first_page", ColumnType.STRING),
    ("last_page", ColumnType.STRING),
    ("page_range", ColumnType.STRING),
)

AUTHOR_COLUMNS = (
    ("prefix", ColumnType.STRING),
    ("given_name", ColumnType.STRING),
    ("surname", ColumnType.STRING),
    ("string_name", ColumnType.STRING),
    ("suffix", ColumnType.STRING),
    ("author_number", ColumnType.INTEGER),
)


def _front(root: etree._Element) -> tuple[etree._Element, etree._Element]:
    require_root(root, "article")
    journal = root.find("front/journal-meta")
    article = root.find("front/article-meta")
    if journal is None or article is None:
        raise ExtractionError("Article document needs <journal-meta> and <article-meta>")
    return journal, article


def get_article(raw: bytes) -> Record:
    """One row per article; the first listed publication date wins."""

    root = parse_xml(raw)
    journal, article = _front(root)
    pub_date = article.find("pub-date")
    if pub_date is None:
        pub_date = article

    return {
        "journal_doi": extract_child(journal, "journal-id[@journal-id-type='doi']"),
        "journal_jcode": extract_child(journal, "journal-id[@journal-id-type='jstor']"),
        "journal_pub_id": extract_child(journal, "journal-id[@journal-id-type='publisher-id']"),
        "journal_title": extract_child(journal, ".//journal-title"),
        "article_doi": extract_child(article, "article-id[@pub-id-type='doi']"),
        "article_pub_id": extract_child(article, "article-id[@pub-id-type='publisher-id']"),
        "article_jcode": extract_child(article, "article-id[@pub-id-type='jstor']"),
        "article_type": root.get("article-type"),
        "article_title": extract_child(article, ".//article-title"),
        "volume": extract_child(article, "volume"),
        "issue": extract_child(article, "issue"),
        "language": extract_child(article, ".//meta-value"),
        "pub_day": extract_int(pub_date, "day"),
        "pub_month": extract_int(pub_date, "month"),
        "pub_year": extract_int(pub_date, "year"),
        "first_page": extract_child(article, "fpage"),
        "last_page": extract_child(article, "lpage"),
        "page_range": extract_child(article, "page-range"),
    }


def get_authors(raw: bytes) -> Record:
    """One row per contributor in document order; none yields one missing row."""

    _, article = _front(parse_xml(raw))
    contribs = article.xpath(".//contrib-group/contrib")
    if not contribs:
        return {}

    record: dict[str, list[object]] = {name: [] for name, _ in AUTHOR_COLUMNS}
    for number, contrib in enumerate(contribs, start=1):
        record["prefix"].append(extract_child(contrib, ".//prefix"))
        record["given_name"].append(extract_child(contrib, ".//given-names"))
        record["surname"].append(extract_child(contrib, ".//surname"))
        record["string_name"].append(extract_child(contrib, "string-name[not(*)]"))
        record["suffix"].append(extract_child(contrib, ".//suffix"))
        record["author_number"].append(number)
    return record


ARTICLE_EXTRACTOR = Extractor(name="get_article", columns=ARTICLE_COLUMNS, func=get_article)
AUTHORS_EXTRACTOR = Extractor(name="get_authors", columns=AUTHOR_COLUMNS, func=get_authors)
