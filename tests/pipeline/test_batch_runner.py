from __future__ import annotations

from pathlib import Path
import threading
from zipfile import ZIP_STORED, ZipFile

import pytest

from dfrimport.archive import ArchiveIndex, ArchiveOpenError
from dfrimport.extractors import (
    ARTICLE_EXTRACTOR,
    BOOK_EXTRACTOR,
    CHAPTERS_EXTRACTOR,
    ExtractionError,
    ExtractionSpec,
    Extractor,
)
from dfrimport.extractors.article import ARTICLE_COLUMNS, get_article
from dfrimport.models import ArchiveEntry, Chunk, ColumnType, DocumentKind, FlushEvent
from dfrimport.runner import BatchRunner, apply_extractor, import_archives, run_import
from dfrimport.sink import OutputWriteError, ParquetChunkSink, re_import, read_typed


def _article_xml(number: int) -> bytes:
    return (
        '<article article-type="research-article"><front>'
        "<journal-meta><journal-title>Journal of Tests</journal-title></journal-meta>"
        f"<article-meta><article-id pub-id-type=\"doi\">10.2307/{number}</article-id>"
        f"<title-group><article-title>Article {number}</article-title></title-group>"
        f"<pub-date><year>{1990 + number}</year></pub-date>"
        "</article-meta></front></article>"
    ).encode("utf-8")


def _book_xml(book_id: str, parts: int) -> bytes:
    body = "".join(
        f"<book-part><book-part-meta><book-part-id>{book_id}.{n}</book-part-id>"
        f"<title-group><title>Part {n}</title></title-group></book-part-meta></book-part>"
        for n in range(1, parts + 1)
    )
    return (
        f"<book><book-meta><book-id>{book_id}</book-id><book-title>{book_id}</book-title></book-meta>"
        f"<body><book-part><body>{body}</body></book-part></body></book>"
    ).encode("utf-8")


def _build_zip(path: Path, members: dict[str, bytes]) -> Path:
    with ZipFile(path, "w", compression=ZIP_STORED) as archive:
        for name, payload in members.items():
            archive.writestr(name, payload)
    return path


def _articles_zip(path: Path, count: int, broken: set[int] = frozenset()) -> Path:
    members = {}
    for number in range(1, count + 1):
        payload = b"<article><front>" if number in broken else _article_xml(number)
        members[f"metadata/journal-article-10.2307_{number}.xml"] = payload
    return _build_zip(path, members)


def _article_spec() -> ExtractionSpec:
    return ExtractionSpec(documents={DocumentKind.JOURNAL_ARTICLE: ARTICLE_EXTRACTOR})


def _outputs(prefix: Path, kind: str, extractor: str) -> list[Path]:
    paths = prefix.parent.glob(f"{prefix.name}_{kind}_{extractor}-*.parquet")
    return sorted(paths, key=lambda path: int(path.stem.rsplit("-", 1)[1]))


def test_failed_entry_keeps_row_alignment_and_batch_continues(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 5, broken={3})
    prefix = tmp_path / "out" / "run"

    result = import_archives([archive], _article_spec(), prefix, chunk_size=10)

    assert result.succeeded == {"journal_article": 4}
    assert result.failed == {"journal_article": 1}
    assert len(result.failures) == 1
    failure = result.failures[0]
    assert failure.entry_name == "metadata/journal-article-10.2307_3.xml"
    assert failure.extractor == "get_article"
    assert "Malformed XML" in failure.reason

    table = re_import(_outputs(prefix, "journal_article", "get_article"))
    rows = table.to_pylist()
    assert len(rows) == 5
    assert rows[2]["file_name"] == "journal-article-10.2307_3"
    assert all(value is None for name, value in rows[2].items() if name != "file_name")
    assert [row["pub_year"] for row in rows] == [1991, 1992, None, 1994, 1995]

    assert result.failure_log is not None
    failures = read_typed(result.failure_log).to_pylist()
    assert failures[0]["entry_name"] == "metadata/journal-article-10.2307_3.xml"
    assert failures[0]["kind"] == "journal_article"


def test_chunk_count_follows_chunk_size(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 7)
    prefix = tmp_path / "run"

    result = import_archives([archive], _article_spec(), prefix, chunk_size=3)

    files = _outputs(prefix, "journal_article", "get_article")
    assert [path.name for path in files] == [
        "run_journal_article_get_article-1.parquet",
        "run_journal_article_get_article-2.parquet",
        "run_journal_article_get_article-3.parquet",
    ]
    assert [read_typed(path).num_rows for path in files] == [3, 3, 1]
    assert result.written_files == files
    assert result.total_entries == 7
    assert result.failure_log is None


@pytest.mark.parametrize("parallelism", [1, 4])
def test_runs_are_byte_identical_across_repeats_and_worker_counts(tmp_path: Path, parallelism: int) -> None:
    members = {f"metadata/journal-article-{n}.xml": _article_xml(n) for n in range(1, 24)}
    members["metadata/journal-article-bad.xml"] = b"<article>"
    members.update({f"metadata/book-chapter-b{n}.xml": _book_xml(f"b{n}", n % 4) for n in range(1, 9)})
    archive = _build_zip(tmp_path / "mixed.zip", members)
    spec = ExtractionSpec(
        documents={
            DocumentKind.JOURNAL_ARTICLE: ARTICLE_EXTRACTOR,
            DocumentKind.BOOK: (BOOK_EXTRACTOR, CHAPTERS_EXTRACTOR),
        }
    )

    baseline = import_archives([archive], spec, tmp_path / "serial" / "run", chunk_size=5, parallelism=1)
    repeated = import_archives([archive], spec, tmp_path / "again" / "run", chunk_size=5, parallelism=parallelism)

    assert [path.name for path in baseline.written_files] == [path.name for path in repeated.written_files]
    for left, right in zip(baseline.written_files, repeated.written_files):
        assert left.read_bytes() == right.read_bytes()
    assert baseline.failures == repeated.failures


def test_allow_list_limits_dispatch_without_counting_failures(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 6, broken={5})
    prefix = tmp_path / "run"
    allowed = ["journal-article-10.2307_2", "journal-article-10.2307_4", "journal-article-10.2307_99"]

    result = import_archives([archive], _article_spec(), prefix, files_to_import=allowed, chunk_size=10)

    assert result.total_entries == 2
    assert result.failures == []
    table = re_import(_outputs(prefix, "journal_article", "get_article"))
    assert table.column("file_name").to_pylist() == ["journal-article-10.2307_2", "journal-article-10.2307_4"]


def test_unhandled_and_unknown_entries_are_skipped_silently(tmp_path: Path) -> None:
    archive = _build_zip(
        tmp_path / "mixed.zip",
        {
            "metadata/journal-article-1.xml": _article_xml(1),
            "metadata/book-chapter-b1.xml": _book_xml("b1", 1),
            "ngram1/journal-article-1-ngram1.txt": b"archive\t2\n",
            "manifest.txt": b"",
        },
    )
    prefix = tmp_path / "run"

    result = import_archives([archive], _article_spec(), prefix, chunk_size=10)

    assert result.total_entries == 3
    assert result.skipped_unhandled == 2
    assert result.skipped_unknown == 1
    assert result.failures == []
    assert [path.name for path in result.written_files] == ["run_journal_article_get_article-1.parquet"]


def test_multi_row_and_ngram_extractors_share_the_join_key(tmp_path: Path) -> None:
    archive = _build_zip(
        tmp_path / "books.zip",
        {
            "metadata/book-chapter-b1.xml": _book_xml("b1", 3),
            "metadata/book-chapter-b2.xml": _book_xml("b2", 0),
            "ngram1/book-chapter-b1-ngram1.txt": b"archive\t2\nimport\t5\n",
        },
    )
    spec = ExtractionSpec(documents={DocumentKind.BOOK: (BOOK_EXTRACTOR, CHAPTERS_EXTRACTOR)}, ngrams=["ngram1"])
    prefix = tmp_path / "run"

    result = import_archives([archive], spec, prefix, chunk_size=10)

    books = re_import(_outputs(prefix, "book", "get_book")).to_pylist()
    chapters = re_import(_outputs(prefix, "book", "get_chapters")).to_pylist()
    ngrams = re_import(_outputs(prefix, "ngram1", "get_ngram")).to_pylist()
    assert result.succeeded == {"book": 2, "ngram1": 1}
    assert [row["file_name"] for row in books] == ["book-chapter-b1", "book-chapter-b2"]
    assert [(row["file_name"], row["part_id"]) for row in chapters] == [
        ("book-chapter-b1", "b1.1"),
        ("book-chapter-b1", "b1.2"),
        ("book-chapter-b1", "b1.3"),
        ("book-chapter-b2", None),
    ]
    assert ngrams == [
        {"file_name": "book-chapter-b1", "ngram": "archive", "n": 2},
        {"file_name": "book-chapter-b1", "ngram": "import", "n": 5},
    ]


def test_unreadable_entry_becomes_failure_with_placeholder(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 3)
    data = archive.read_bytes()
    archive.write_bytes(data.replace(b"Article 2", b"Article X"))
    prefix = tmp_path / "run"

    result = import_archives([archive], _article_spec(), prefix, chunk_size=10)

    assert result.failed == {"journal_article": 1}
    assert result.failures[0].extractor is None
    assert result.failures[0].entry_name == "metadata/journal-article-10.2307_2.xml"
    rows = re_import(_outputs(prefix, "journal_article", "get_article")).to_pylist()
    assert [row["article_title"] for row in rows] == ["Article 1", None, "Article 3"]


def test_inconsistent_extractor_output_is_isolated_to_its_entry(tmp_path: Path) -> None:
    def lopsided(raw: bytes) -> dict[str, object]:
        if b"Article 2" in raw:
            return {"a": [1, 2], "b": [1]}
        return {"a": [1], "b": [2]}

    extractor = Extractor(
        name="lopsided",
        columns=(("a", ColumnType.INTEGER), ("b", ColumnType.INTEGER)),
        func=lopsided,
    )
    archive = _articles_zip(tmp_path / "batch.zip", 3)
    spec = ExtractionSpec(documents={DocumentKind.JOURNAL_ARTICLE: extractor})

    result = import_archives([archive], spec, tmp_path / "run", chunk_size=10)

    assert result.succeeded == {"journal_article": 2}
    assert len(result.failures) == 1
    assert "mismatched lengths" in result.failures[0].reason


def test_unexpected_extractor_exceptions_become_failures(tmp_path: Path) -> None:
    def explode(raw: bytes) -> dict[str, object]:
        raise KeyError("missing node")

    def undeclared(raw: bytes) -> dict[str, object]:
        return {"surprise": 1}

    spec = ExtractionSpec(
        documents={
            DocumentKind.JOURNAL_ARTICLE: [
                Extractor(name="explode", columns=(("a", ColumnType.STRING),), func=explode),
                Extractor(name="undeclared", columns=(("a", ColumnType.STRING),), func=undeclared),
            ]
        }
    )
    archive = _articles_zip(tmp_path / "batch.zip", 2)

    result = import_archives([archive], spec, tmp_path / "run", chunk_size=10)

    assert result.failed == {"journal_article": 2}
    assert [failure.extractor for failure in result.failures] == ["explode", "undeclared"] * 2
    assert "KeyError" in result.failures[0].reason
    assert "surprise" in result.failures[1].reason


@pytest.mark.parametrize("parallelism", [1, 4])
def test_value_of_wrong_type_fails_only_its_entry(tmp_path: Path, parallelism: int) -> None:
    def year(raw: bytes) -> dict[str, object]:
        return {"year": "n/a" if b"Article 2<" in raw else 2001}

    spec = ExtractionSpec(
        documents={
            DocumentKind.JOURNAL_ARTICLE: Extractor(name="year", columns=(("year", ColumnType.INTEGER),), func=year)
        }
    )
    archive = _articles_zip(tmp_path / "batch.zip", 3)
    prefix = tmp_path / "run"

    result = import_archives([archive], spec, prefix, chunk_size=10, parallelism=parallelism)

    assert result.succeeded == {"journal_article": 2}
    assert result.failed == {"journal_article": 1}
    assert result.failures[0].entry_name == "metadata/journal-article-10.2307_2.xml"
    assert "declared column types" in result.failures[0].reason
    rows = read_typed(_outputs(prefix, "journal_article", "year")[0]).to_pylist()
    assert [row["year"] for row in rows] == [2001, None, 2001]


def test_apply_extractor_rejects_cells_that_do_not_fit_declared_types() -> None:
    extractor = Extractor(
        name="pages",
        columns=(("pages", ColumnType.INTEGER), ("authors", ColumnType.STRING_LIST)),
        func=lambda raw: {"pages": 12, "authors": [["Ada"], [3]]},
    )

    with pytest.raises(ExtractionError, match="declared column types"):
        apply_extractor(extractor, b"", "doc-1")


def test_flush_observer_sees_every_chunk(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 5)
    events: list[FlushEvent] = []

    result = import_archives([archive], _article_spec(), tmp_path / "run", chunk_size=2, on_flush=events.append)

    assert [(event.chunk_index, event.entries, event.rows) for event in events] == [(1, 2, 2), (2, 2, 2), (3, 1, 1)]
    assert [event.path for event in events] == result.written_files
    assert events[-1].entries_seen == 5


def _cancel_at_chunk(cancel: threading.Event, chunk_index: int):
    def on_flush(event: FlushEvent) -> None:
        if event.chunk_index == chunk_index:
            cancel.set()

    return on_flush


@pytest.mark.parametrize("parallelism", [1, 4])
def test_cancellation_keeps_completed_chunks_only(tmp_path: Path, parallelism: int) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 10)
    prefix = tmp_path / "run"
    cancel = threading.Event()

    result = import_archives(
        [archive],
        _article_spec(),
        prefix,
        chunk_size=2,
        parallelism=parallelism,
        on_flush=_cancel_at_chunk(cancel, 2),
        cancel_event=cancel,
    )

    files = _outputs(prefix, "journal_article", "get_article")
    assert result.cancelled is True
    assert [path.name for path in files] == [
        "run_journal_article_get_article-1.parquet",
        "run_journal_article_get_article-2.parquet",
    ]
    assert result.written_files == files
    assert result.total_entries == 4
    assert result.discarded_entries == 0
    assert not list(tmp_path.glob("*.tmp.*"))


def test_cancelled_output_does_not_depend_on_worker_count(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 10)
    results = {}
    for parallelism in (1, 4):
        cancel = threading.Event()
        results[parallelism] = import_archives(
            [archive],
            _article_spec(),
            tmp_path / f"workers-{parallelism}" / "run",
            chunk_size=1,
            parallelism=parallelism,
            on_flush=_cancel_at_chunk(cancel, 2),
            cancel_event=cancel,
        )

    serial, pooled = results[1], results[4]
    assert [path.name for path in pooled.written_files] == [path.name for path in serial.written_files]
    assert len(serial.written_files) == 2
    for left, right in zip(serial.written_files, pooled.written_files):
        assert left.read_bytes() == right.read_bytes()
    assert pooled.total_entries == serial.total_entries == 2


def _cancelling_article_extractor(cancel: threading.Event, trigger: bytes) -> Extractor:
    def extract(raw: bytes) -> dict[str, object]:
        if trigger in raw:
            cancel.set()
        return get_article(raw)

    return Extractor(name="get_article", columns=ARTICLE_COLUMNS, func=extract)


def test_cancellation_between_chunk_boundaries_leaves_no_partial_chunk(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 10)
    prefix = tmp_path / "run"
    cancel = threading.Event()
    spec = ExtractionSpec(
        documents={DocumentKind.JOURNAL_ARTICLE: _cancelling_article_extractor(cancel, b"Article 6<")}
    )

    result = import_archives([archive], spec, prefix, chunk_size=2, cancel_event=cancel)

    files = _outputs(prefix, "journal_article", "get_article")
    assert result.cancelled is True
    assert [path.name for path in files] == [
        "run_journal_article_get_article-1.parquet",
        "run_journal_article_get_article-2.parquet",
    ]
    assert [read_typed(path).num_rows for path in files] == [2, 2]
    assert result.total_entries == 5
    assert result.discarded_entries == 1
    assert result.to_dict()["discarded_entries"] == 1


def test_pooled_cancellation_between_chunk_boundaries_writes_only_full_chunks(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 10)
    prefix = tmp_path / "run"
    cancel = threading.Event()
    spec = ExtractionSpec(
        documents={DocumentKind.JOURNAL_ARTICLE: _cancelling_article_extractor(cancel, b"Article 6<")}
    )

    result = import_archives([archive], spec, prefix, chunk_size=2, parallelism=4, cancel_event=cancel)

    files = _outputs(prefix, "journal_article", "get_article")
    assert result.cancelled is True
    assert result.total_entries <= 5
    assert {path.name for path in files} <= {
        "run_journal_article_get_article-1.parquet",
        "run_journal_article_get_article-2.parquet",
    }
    assert all(read_typed(path).num_rows == 2 for path in files)
    assert not list(tmp_path.glob("*.tmp.*"))


def test_cancelled_before_start_writes_nothing(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 3)
    cancel = threading.Event()
    cancel.set()

    result = import_archives([archive], _article_spec(), tmp_path / "run", chunk_size=2, cancel_event=cancel)

    assert result.cancelled is True
    assert result.total_entries == 0
    assert result.written_files == []


def test_missing_archive_aborts_before_any_output(tmp_path: Path) -> None:
    good = _articles_zip(tmp_path / "good.zip", 2)

    with pytest.raises(ArchiveOpenError):
        import_archives([good, tmp_path / "missing.zip"], _article_spec(), tmp_path / "run", chunk_size=1)

    assert not list(tmp_path.glob("run_*"))


def test_sink_failure_aborts_and_reports_written_files(tmp_path: Path) -> None:
    class FlakySink(ParquetChunkSink):
        def write(self, chunk: Chunk) -> Path:
            if chunk.index == 2:
                raise OutputWriteError(self.path_for(chunk.kind.value, chunk.extractor, chunk.index), "disk full")
            return super().write(chunk)

    archive = _articles_zip(tmp_path / "batch.zip", 6)
    entries = ArchiveIndex([archive]).iter_entries()
    runner = BatchRunner(_article_spec(), chunk_size=2, sink_factory=FlakySink)

    with pytest.raises(OutputWriteError) as raised:
        runner.run(entries, tmp_path / "run")

    assert [path.name for path in raised.value.written_files] == ["run_journal_article_get_article-1.parquet"]


def test_run_import_accepts_prebuilt_entries(tmp_path: Path) -> None:
    archive = _articles_zip(tmp_path / "batch.zip", 2)
    entries = [
        ArchiveEntry(str(archive), "metadata/journal-article-10.2307_2.xml", DocumentKind.JOURNAL_ARTICLE),
        ArchiveEntry(str(archive), "metadata/journal-article-10.2307_1.xml", DocumentKind.JOURNAL_ARTICLE),
        ArchiveEntry(str(archive), "stray.bin", DocumentKind.UNKNOWN),
    ]

    result = run_import(entries, _article_spec(), 10, tmp_path / "run", 2)

    rows = read_typed(result.written_files[0]).to_pylist()
    assert [row["article_doi"] for row in rows] == ["10.2307/2", "10.2307/1"]
    assert result.skipped_unknown == 1


def test_runner_validates_its_configuration() -> None:
    with pytest.raises(ValueError):
        BatchRunner(_article_spec(), chunk_size=0)
    with pytest.raises(ValueError):
        BatchRunner(_article_spec(), chunk_size=1, parallelism=0)


def test_extraction_error_reason_is_preserved(tmp_path: Path) -> None:
    def reject(raw: bytes) -> dict[str, object]:
        raise ExtractionError("missing <article-meta>")

    spec = ExtractionSpec(
        documents={DocumentKind.JOURNAL_ARTICLE: Extractor(name="reject", columns=(), func=reject)}
    )
    archive = _articles_zip(tmp_path / "batch.zip", 1)

    result = import_archives([archive], spec, tmp_path / "run", chunk_size=1)

    assert result.failures[0].reason == "missing <article-meta>"
    assert read_typed(result.written_files[0]).to_pylist() == [{"file_name": "journal-article-10.2307_1"}]
