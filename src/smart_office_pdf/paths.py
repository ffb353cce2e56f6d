"""Target-path planning and the host path-length guard."""

from __future__ import annotations

import hashlib
import os
from pathlib import Path
from typing import Callable

from .errors import PathTooLong

MAX_PATH_LENGTH = 260  # Windows MAX_PATH
MIN_FILENAME_LENGTH = 20
HASH_LENGTH = 8


def _short_hash(text: str) -> str:
    return hashlib.sha1(text.encode("utf-8")).hexdigest()[:HASH_LENGTH].upper()


def guard_path(
    path: str | Path,
    *,
    max_length: int = MAX_PATH_LENGTH,
    log: Callable[..., None] | None = None,
) -> Path:
    """Return ``path`` unchanged when it fits, else a truncated, hash-suffixed twin.

    The directory and extension are kept; the stem is cut so the whole path is
    exactly ``max_length`` characters long and ends with ``_<hash>`` derived
    from the original file name. Raises ``PathTooLong`` when the directory
    leaves less than ``MIN_FILENAME_LENGTH`` characters for the file name.
    """
    p = Path(path)
    full = str(p)
    if len(full) <= max_length:
        return p
    directory = str(p.parent)
    ext = p.suffix
    budget = max_length - len(directory) - len(ext) - 1
    if budget < MIN_FILENAME_LENGTH:
        raise PathTooLong(f"directory too long for a usable file name ({len(directory)} chars): {directory}")
    stem = p.stem[: budget - HASH_LENGTH - 1]
    new_name = f"{stem}_{_short_hash(p.name)}{ext}"
    out = p.parent / new_name
    if log is not None:
        log(f"[WARN ] path too long, truncated: {p.name} -> {new_name}", "WARNING")
    return out


def relative_dir(root: Path, directory: Path) -> Path:
    """Relative path of ``directory`` under ``root``; ``.`` when outside it."""
    try:
        return Path(os.path.relpath(directory, root)) if _is_within(directory, root) else Path(".")
    except ValueError:  # different drives on Windows
        return Path(".")


def _is_within(child: Path, root: Path) -> bool:
    try:
        Path(os.path.abspath(child)).relative_to(os.path.abspath(root))
        return True
    except ValueError:
        return False


def plan_target_dir(
    source: Path, source_root: Path, destination_root: Path, keep_folder_structure: bool
) -> Path:
    """Destination directory for ``source``; mirrors the source tree when asked."""
    if not keep_folder_structure:
        return destination_root
    rel = relative_dir(source_root, source.parent)
    return destination_root if str(rel) == "." else destination_root / rel


def target_file_name(source: Path, conflicted: bool) -> str:
    """``report.pdf`` normally, ``report.docx.pdf`` for pre-scan conflicts."""
    return f"{source.name}.pdf" if conflicted else f"{source.stem}.pdf"


def missing_parents(directory: Path) -> list[Path]:
    """Directories that would have to be created for ``directory``, outermost first."""
    out: list[Path] = []
    cur = directory
    while not cur.exists():
        out.append(cur)
        if cur.parent == cur:
            break
        cur = cur.parent
    return list(reversed(out))
