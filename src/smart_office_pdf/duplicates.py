"""Duplicate-target policy and the pre-conversion basename conflict scan."""

from __future__ import annotations

from collections import defaultdict
from datetime import datetime
from pathlib import Path
from typing import Callable, Iterable

from .models import DuplicateFileAction, FileHandleResult

MAX_RENAME_ATTEMPTS = 9999


def _unguarded(path: Path) -> Path:
    return path


def unique_path(
    path: Path,
    *,
    max_attempts: int = MAX_RENAME_ATTEMPTS,
    guard: Callable[[Path], Path] | None = None,
) -> Path:
    """First free ``name (n).ext`` next to ``path``.

    ``guard`` maps each candidate to the path that would really be written
    (e.g. the path-length guard) and the existence check runs on that result.
    After ``max_attempts`` probes it falls back to a timestamp suffix so the
    search always terminates; a counter is added if even that name is taken.
    """
    guard = guard or _unguarded
    stem, ext, parent = path.stem, path.suffix, path.parent
    for n in range(1, max_attempts + 1):
        candidate = guard(parent / f"{stem} ({n}){ext}")
        if not candidate.exists():
            return candidate
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    candidate = guard(parent / f"{stem}_{stamp}{ext}")
    n = 1
    while candidate.exists():
        candidate = guard(parent / f"{stem}_{stamp}_{n}{ext}")
        n += 1
    return candidate


def resolve(
    target: Path, action: DuplicateFileAction, *, guard: Callable[[Path], Path] | None = None
) -> FileHandleResult:
    """Apply the configured duplicate policy to ``target``.

    The returned path never names an existing file unless the action is
    ``OVERWRITE``.
    """
    target = (guard or _unguarded)(Path(target))
    if not target.exists():
        return FileHandleResult(target, DuplicateFileAction.RENAME, is_new_file=True)
    if action is DuplicateFileAction.SKIP:
        return FileHandleResult(None, DuplicateFileAction.SKIP, is_new_file=False)
    if action is DuplicateFileAction.OVERWRITE:
        return FileHandleResult(target, DuplicateFileAction.OVERWRITE, is_new_file=False)
    return FileHandleResult(unique_path(target, guard=guard), DuplicateFileAction.RENAME, is_new_file=False)


def prescan_conflicts(pairs: Iterable[tuple[Path, Path]]) -> frozenset[Path]:
    """Sources whose stem collides with another source in the same target directory.

    ``pairs`` holds ``(source_path, planned_target_directory)`` across every
    document kind of the run. Comparison is case-insensitive on both the
    directory and the stem. Read-only: the filesystem is never touched.
    """
    groups: dict[str, dict[str, list[Path]]] = defaultdict(lambda: defaultdict(list))
    for source, target_dir in pairs:
        source = Path(source)
        groups[str(target_dir).casefold()][source.stem.casefold()].append(source)
    conflicts: set[Path] = set()
    for by_stem in groups.values():
        for sources in by_stem.values():
            if len(set(sources)) > 1:
                conflicts.update(sources)
    return frozenset(conflicts)
