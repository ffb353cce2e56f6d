import json
from pathlib import Path

from smart_office_pdf.models import DocumentKind, DuplicateFileAction, FileOutcome, FileStatus
from smart_office_pdf.report import build_summary, summary_lines, write_summary_json
from smart_office_pdf.stats import EngineStatistics


def make_stats() -> EngineStatistics:
    stats = EngineStatistics()
    stats.add_requested(DocumentKind.WORD, 4)
    stats.add_requested(DocumentKind.EXCEL, 1)
    stats.record(DocumentKind.WORD, Path("a.docx"), FileOutcome(FileStatus.SUCCEEDED))
    stats.record(
        DocumentKind.WORD,
        Path("b.docx"),
        FileOutcome(FileStatus.SUCCEEDED, action=DuplicateFileAction.OVERWRITE, is_new_file=False),
    )
    stats.record(DocumentKind.WORD, Path("c.docx"), FileOutcome(FileStatus.SKIPPED, "target exists"))
    stats.record(DocumentKind.WORD, Path("d.docx"), FileOutcome(FileStatus.CRASHED, "worker gone"))
    stats.record(DocumentKind.EXCEL, Path("e.xlsx"), FileOutcome(FileStatus.CANCELLED))
    return stats


def test_counters_follow_explicit_outcomes() -> None:
    c = make_stats().counters()
    word = c[DocumentKind.WORD]
    assert (word.total_seen, word.succeeded, word.failed, word.skipped, word.overwritten) == (4, 2, 1, 1, 1)
    assert c[DocumentKind.EXCEL].total_seen == 0


def test_unaccounted_files_are_anomalies_unless_cancelled() -> None:
    stats = make_stats()
    summary = build_summary(stats)
    assert summary.unaccounted == 1
    assert summary.anomalies and not summary.ok
    assert build_summary(stats, cancelled=True).anomalies == []


def test_reset_kind_keeps_requested_only() -> None:
    stats = make_stats()
    stats.reset_kind(DocumentKind.WORD)
    word = stats.counters()[DocumentKind.WORD]
    assert (word.requested, word.total_seen) == (4, 0)
    assert stats.failures() == []
    assert stats.converted_sources() == []


def test_summary_lines_and_json(tmp_path: Path) -> None:
    summary = build_summary(make_stats(), undoable=3)
    text = "\n".join(msg for _, msg in summary_lines(summary))
    assert "total=5" in text
    assert "failed=1 | Word 1" in text
    assert "d.docx: worker gone" in text
    assert "3 operation(s) can be undone" in text

    out = write_summary_json(summary, tmp_path / "s" / "summary.json")
    data = json.loads(out.read_text(encoding="utf-8"))
    assert data["totals"]["succeeded"] == 2
    assert data["kinds"]["word"]["overwritten"] == 1
    assert data["failures"] == [{"kind": "word", "path": "d.docx", "reason": "worker gone"}]
    assert data["undoable_operations"] == 3
    assert data["anomalies"]
