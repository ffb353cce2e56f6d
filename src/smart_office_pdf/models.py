"""Plain data types shared by the engine, the undo machinery and the CLI."""

from __future__ import annotations

import tempfile
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable


class DocumentKind(str, Enum):
    WORD = "word"
    EXCEL = "excel"
    PPT = "ppt"

    @property
    def extensions(self) -> tuple[str, ...]:
        return _KIND_EXTENSIONS[self]

    @property
    def label(self) -> str:
        return _KIND_LABELS[self]

    @classmethod
    def for_path(cls, path: str | Path) -> "DocumentKind | None":
        """Classify a path by extension (case-insensitive); None when unsupported."""
        suffix = Path(path).suffix.lower()
        for kind, exts in _KIND_EXTENSIONS.items():
            if suffix in exts:
                return kind
        return None


_KIND_EXTENSIONS = {
    DocumentKind.WORD: (".doc", ".docx"),
    DocumentKind.EXCEL: (".xls", ".xlsx"),
    DocumentKind.PPT: (".ppt", ".pptx"),
}
_KIND_LABELS = {
    DocumentKind.WORD: "Word",
    DocumentKind.EXCEL: "Excel",
    DocumentKind.PPT: "PPT",
}


class DuplicateFileAction(str, Enum):
    SKIP = "skip"
    OVERWRITE = "overwrite"
    RENAME = "rename"


class OperationKind(str, Enum):
    CREATE_FILE = "create_file"
    OVERWRITE_FILE = "overwrite_file"
    CREATE_DIRECTORY = "create_directory"
    DELETE_FILE = "delete_file"


@dataclass(frozen=True)
class FileHandleResult:
    """Outcome of duplicate resolution for one target path.

    ``final_path`` is None when the file must be skipped. A target that did not
    exist yet is reported as ``RENAME`` with ``is_new_file=True``: a plain
    creation, not a real rename.
    """

    final_path: Path | None
    action: DuplicateFileAction
    is_new_file: bool

    @property
    def skipped(self) -> bool:
        return self.final_path is None


@dataclass(frozen=True)
class ConversionOperation:
    """A committed filesystem mutation that undo knows how to reverse."""

    kind: OperationKind
    target_path: Path
    backup_path: Path | None = None
    source_path: Path | None = None
    timestamp: datetime = field(default_factory=datetime.now)

    def __post_init__(self) -> None:
        destructive = (OperationKind.OVERWRITE_FILE, OperationKind.DELETE_FILE)
        if self.kind in destructive and self.backup_path is None:
            raise ValueError(f"{self.kind.value} requires a backup path: {self.target_path}")


@dataclass(frozen=True)
class ConversionRequest:
    """One document-kind batch. Immutable once execution starts."""

    kind: DocumentKind
    source_paths: tuple[Path, ...]
    source_root: Path
    destination_root: Path
    keep_folder_structure: bool = True
    recurse_subfolders: bool = True


class FileStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class FileOutcome:
    """Explicit per-file result; strategy loops branch on ``status``."""

    status: FileStatus
    reason: str = ""
    artifacts: tuple[Path, ...] = ()
    action: DuplicateFileAction | None = None
    is_new_file: bool = True


def new_session_id() -> str:
    return datetime.now().strftime("%Y%m%d_%H%M%S_") + uuid.uuid4().hex[:8]


def _default_sink(message: str, level: str = "INFO") -> None:
    from .core import log

    log(message, level=level)


@dataclass(frozen=True)
class SessionContext:
    """Session identity and log sink handed to the engine and undo executor."""

    session_id: str = field(default_factory=new_session_id)
    log: Callable[..., None] = _default_sink
    temp_root: Path = field(default_factory=lambda: Path(tempfile.gettempdir()) / "smart-office-pdf")

    @property
    def backup_dir(self) -> Path:
        return self.temp_root / "backup" / self.session_id

    @property
    def staging_dir(self) -> Path:
        return self.temp_root / "staging" / self.session_id
