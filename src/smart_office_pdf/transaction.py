"""Append-only transaction log, session backups, and reverse-order undo.

Every mutation the engine commits to the destination tree is recorded here.
Destructive operations (overwrite, delete) are only recorded together with a
backup copy taken beforehand; undo replays the log newest-first and restores
those copies.
"""

from __future__ import annotations

import shutil
import threading
from collections import Counter
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .errors import BackupFailed, UndoEntryFailed
from .models import ConversionOperation, OperationKind, SessionContext


class TransactionLog:
    """Thread-safe, append-only sequence of committed operations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._ops: list[ConversionOperation] = []

    def record(self, op: ConversionOperation) -> None:
        with self._lock:
            self._ops.append(op)

    def snapshot(self) -> list[ConversionOperation]:
        with self._lock:
            return list(self._ops)

    def clear(self) -> None:
        with self._lock:
            self._ops.clear()

    def counts(self) -> Counter:
        with self._lock:
            return Counter(op.kind for op in self._ops)

    def __len__(self) -> int:
        with self._lock:
            return len(self._ops)


class BackupStore:
    """Pre-mutation copies kept under the session's temp backup directory."""

    def __init__(self, context: SessionContext) -> None:
        self.context = context
        self._lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self.context.backup_dir

    def create(self, original: Path) -> Path:
        """Copy ``original`` into the backup directory and return the copy's path.

        Raises ``BackupFailed`` on any I/O error; callers must then refuse the
        destructive action.
        """
        original = Path(original)
        try:
            with self._lock:
                self.root.mkdir(parents=True, exist_ok=True)
                backup = self.root / original.name
                n = 1
                while backup.exists():
                    stamp = datetime.now().strftime("%H%M%S_%f")
                    backup = self.root / f"{original.stem}_{stamp}_{n}{original.suffix}"
                    n += 1
                # reserve the name before releasing the lock
                backup.touch()
        except OSError as e:
            raise BackupFailed(f"cannot back up {original}: {e}") from e
        try:
            shutil.copy2(original, backup)
        except OSError as e:
            backup.unlink(missing_ok=True)
            raise BackupFailed(f"cannot back up {original}: {e}") from e
        return backup

    def discard(self, backup: Path) -> None:
        try:
            Path(backup).unlink(missing_ok=True)
        except OSError as e:
            self.context.log(f"[WARN ] cannot remove backup {backup}: {e}", "WARNING")

    def purge(self) -> None:
        if not self.root.exists():
            return
        try:
            shutil.rmtree(self.root)
            self.context.log(f"[clean] backup directory removed: {self.root}", "DEBUG")
        except OSError as e:
            self.context.log(f"[WARN ] cannot remove backup directory {self.root}: {e}", "WARNING")


@dataclass(frozen=True)
class UndoReport:
    undone: int = 0
    failed: int = 0

    def __iter__(self):
        return iter((self.undone, self.failed))


class UndoExecutor:
    """Replays a transaction log in reverse and purges it afterwards."""

    def __init__(self, log: TransactionLog, backups: BackupStore, context: SessionContext) -> None:
        self.log = log
        self.backups = backups
        self.context = context

    def _say(self, msg: str, level: str = "INFO") -> None:
        self.context.log(msg, level)

    def undo(self) -> UndoReport:
        ops = self.log.snapshot()
        if not ops:
            return UndoReport()
        counts = Counter(op.kind for op in ops)
        self._say(
            "[UNDO ] reverting: "
            f"created={counts[OperationKind.CREATE_FILE]} "
            f"overwritten={counts[OperationKind.OVERWRITE_FILE]} "
            f"deleted={counts[OperationKind.DELETE_FILE]} "
            f"dirs={counts[OperationKind.CREATE_DIRECTORY]}"
        )
        missing = sum(
            1
            for op in ops
            if op.kind in (OperationKind.OVERWRITE_FILE, OperationKind.DELETE_FILE)
            and not (op.backup_path and Path(op.backup_path).exists())
        )
        if missing:
            self._say(f"[WARN ] {missing} backup file(s) missing; those entries cannot be restored", "WARNING")

        undone = failed = 0
        for op in reversed(ops):
            try:
                if self._revert(op):
                    undone += 1
            except (UndoEntryFailed, OSError) as e:
                failed += 1
                self._say(f"[FAIL ] undo {op.kind.value} {op.target_path}: {e}", "ERROR")

        self.log.clear()
        self.backups.purge()
        level = "WARNING" if failed else "INFO"
        self._say(f"[UNDO ] done: undone={undone} failed={failed}", level)
        return UndoReport(undone, failed)

    def _revert(self, op: ConversionOperation) -> bool:
        """Reverse one entry. Returns True when something was actually undone."""
        target = Path(op.target_path)
        if op.kind is OperationKind.CREATE_FILE:
            if target.exists():
                target.unlink()
                self._say(f"[UNDO ] removed {target}", "DEBUG")
                return True
            return False
        if op.kind is OperationKind.OVERWRITE_FILE:
            self._require_backup(op)
            if target.exists():
                target.unlink()
            self._restore(op)
            self._say(f"[UNDO ] restored {target}", "DEBUG")
            return True
        if op.kind is OperationKind.CREATE_DIRECTORY:
            if not target.is_dir():
                return False
            if any(target.iterdir()):
                self._say(f"[info ] directory not empty, kept: {target}")
                return False
            target.rmdir()
            self._say(f"[UNDO ] removed empty directory {target}", "DEBUG")
            return True
        if op.kind is OperationKind.DELETE_FILE:
            target.parent.mkdir(parents=True, exist_ok=True)
            self._restore(op)
            self._say(f"[UNDO ] restored deleted file {target}", "DEBUG")
            return True
        raise UndoEntryFailed(f"unknown operation kind: {op.kind!r}")

    @staticmethod
    def _require_backup(op: ConversionOperation) -> Path:
        backup = Path(op.backup_path) if op.backup_path else None
        if backup is None or not backup.exists():
            raise UndoEntryFailed(f"backup missing for {op.target_path}")
        return backup

    def _restore(self, op: ConversionOperation) -> None:
        shutil.copy2(self._require_backup(op), op.target_path)
