"""Per-document-kind counters for one batch."""

from __future__ import annotations

import threading
from dataclasses import dataclass, asdict
from pathlib import Path

from .models import DocumentKind, DuplicateFileAction, FileOutcome, FileStatus


@dataclass
class KindCounters:
    requested: int = 0
    total_seen: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    overwritten: int = 0
    renamed: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


@dataclass(frozen=True)
class FailedFile:
    kind: DocumentKind
    path: Path
    reason: str


class EngineStatistics:
    """Explicit success/failure/skip counters.

    ``total_seen`` only moves together with exactly one outcome counter, so
    ``total_seen == succeeded + failed + skipped`` holds at every point.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._counters: dict[DocumentKind, KindCounters] = {}
        self._failures: list[FailedFile] = []
        self._converted: list[Path] = []

    def reset(self) -> None:
        with self._lock:
            self._counters.clear()
            self._failures.clear()
            self._converted.clear()

    def reset_kind(self, kind: DocumentKind) -> None:
        """Forget one kind's outcomes (the kind is restarted on another backend)."""
        with self._lock:
            requested = self._counters.get(kind, KindCounters()).requested
            self._counters[kind] = KindCounters(requested=requested)
            self._failures = [f for f in self._failures if f.kind is not kind]
            self._converted = [p for p in self._converted if DocumentKind.for_path(p) is not kind]

    def add_requested(self, kind: DocumentKind, count: int) -> None:
        with self._lock:
            self._counters.setdefault(kind, KindCounters()).requested += count

    def record(self, kind: DocumentKind, source: Path, outcome: FileOutcome) -> None:
        with self._lock:
            c = self._counters.setdefault(kind, KindCounters())
            if outcome.status is FileStatus.SUCCEEDED:
                c.total_seen += 1
                c.succeeded += 1
                self._converted.append(Path(source))
                if not outcome.is_new_file:
                    if outcome.action is DuplicateFileAction.OVERWRITE:
                        c.overwritten += 1
                    elif outcome.action is DuplicateFileAction.RENAME:
                        c.renamed += 1
            elif outcome.status is FileStatus.SKIPPED:
                c.total_seen += 1
                c.skipped += 1
            elif outcome.status in (FileStatus.FAILED, FileStatus.CRASHED):
                c.total_seen += 1
                c.failed += 1
                self._failures.append(FailedFile(kind, Path(source), outcome.reason))
            # CANCELLED leaves the file unaccounted; the summary reports it

    def counters(self) -> dict[DocumentKind, KindCounters]:
        with self._lock:
            return {k: KindCounters(**v.as_dict()) for k, v in self._counters.items()}

    def failures(self) -> list[FailedFile]:
        with self._lock:
            return list(self._failures)

    def converted_sources(self) -> list[Path]:
        with self._lock:
            return list(self._converted)
