"""End-of-batch summary: counts per document kind, failures, anomalies."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

from .models import DocumentKind
from .stats import EngineStatistics, FailedFile, KindCounters


@dataclass(frozen=True)
class BatchSummary:
    counters: dict[DocumentKind, KindCounters]
    failures: list[FailedFile] = field(default_factory=list)
    cancelled: bool = False
    undoable: int = 0
    unavailable: tuple[DocumentKind, ...] = ()
    deleted_originals: int = 0

    def total(self, attr: str) -> int:
        return sum(getattr(c, attr) for c in self.counters.values())

    @property
    def unaccounted(self) -> int:
        """Files submitted but never given an outcome."""
        return self.total("requested") - self.total("total_seen")

    @property
    def anomalies(self) -> list[str]:
        if self.cancelled or self.unaccounted <= 0:
            return []
        return [f"{self.unaccounted} file(s) were submitted but never accounted for"]

    @property
    def ok(self) -> bool:
        return not self.cancelled and self.total("failed") == 0 and not self.anomalies

    def to_dict(self) -> dict[str, Any]:
        keys = ("requested", "total_seen", "succeeded", "failed", "skipped", "overwritten", "renamed")
        return {
            "kinds": {k.value: c.as_dict() for k, c in self.counters.items()},
            "totals": {k: self.total(k) for k in keys},
            "failures": [
                {"kind": f.kind.value, "path": str(f.path), "reason": f.reason} for f in self.failures
            ],
            "cancelled": self.cancelled,
            "undoable_operations": self.undoable,
            "unavailable_kinds": [k.value for k in self.unavailable],
            "deleted_originals": self.deleted_originals,
            "anomalies": self.anomalies,
        }


def build_summary(
    stats: EngineStatistics,
    *,
    cancelled: bool = False,
    undoable: int = 0,
    unavailable: tuple[DocumentKind, ...] = (),
    deleted_originals: int = 0,
) -> BatchSummary:
    return BatchSummary(
        counters=stats.counters(),
        failures=stats.failures(),
        cancelled=cancelled,
        undoable=undoable,
        unavailable=unavailable,
        deleted_originals=deleted_originals,
    )


def _by_kind(summary: BatchSummary, attr: str) -> str:
    parts = [f"{k.label} {getattr(c, attr)}" for k, c in summary.counters.items() if getattr(c, attr)]
    return f" | {' + '.join(parts)}" if parts else ""


def summary_lines(summary: BatchSummary, source_root: Path | None = None) -> list[tuple[str, str]]:
    """(level, message) pairs describing the batch, in display order."""
    out: list[tuple[str, str]] = [("INFO", "=" * 64)]
    out.append(("INFO", f"[SUMM ] total={summary.total('requested')}{_by_kind(summary, 'requested')}"))
    out.append(("INFO", f"[SUMM ] succeeded={summary.total('succeeded')}{_by_kind(summary, 'succeeded')}"))
    if summary.total("skipped"):
        out.append(
            ("WARNING", f"[SUMM ] skipped={summary.total('skipped')} (target exists){_by_kind(summary, 'skipped')}")
        )
    if summary.total("overwritten"):
        out.append(("WARNING", f"[SUMM ] overwritten={summary.total('overwritten')}{_by_kind(summary, 'overwritten')}"))
    if summary.total("renamed"):
        out.append(("INFO", f"[SUMM ] renamed={summary.total('renamed')}{_by_kind(summary, 'renamed')}"))
    if summary.deleted_originals:
        out.append(("INFO", f"[SUMM ] originals deleted={summary.deleted_originals}"))
    if summary.failures:
        out.append(("ERROR", f"[SUMM ] failed={len(summary.failures)}{_by_kind(summary, 'failed')}"))
        for i, f in enumerate(summary.failures, 1):
            shown = f.path
            if source_root is not None:
                try:
                    shown = f.path.relative_to(source_root)
                except ValueError:
                    pass
            out.append(("ERROR", f"   {i}. [{f.kind.label}] {shown}: {f.reason}"))
    for kind in summary.unavailable:
        out.append(("ERROR", f"[SUMM ] no usable backend for {kind.label}"))
    if summary.cancelled:
        out.append(("WARNING", "[SUMM ] cancelled by user"))
    for msg in summary.anomalies:
        out.append(("WARNING", f"[SUMM ] {msg}"))
    if summary.total("requested") == 0:
        out.append(("WARNING", "[SUMM ] no files to convert"))
    elif summary.ok:
        out.append(("INFO", "[SUMM ] all files converted"))
    if summary.undoable:
        out.append(("INFO", f"[SUMM ] {summary.undoable} operation(s) can be undone"))
    out.append(("INFO", "=" * 64))
    return out


def log_summary(summary: BatchSummary, log: Callable[..., None], source_root: Path | None = None) -> None:
    for level, msg in summary_lines(summary, source_root):
        log(msg, level)


def write_summary_json(summary: BatchSummary, path: str | Path) -> Path:
    p = Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(json.dumps(summary.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
    return p
