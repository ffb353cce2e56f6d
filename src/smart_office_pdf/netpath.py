"""Local-copy decorator for documents living on network shares.

Office automation is unreliable on UNC paths, so network sources are copied
to a local temp file before the wrapped backend opens them. Outputs need no
special handling: the engine always renders into a local staging directory.
"""

from __future__ import annotations

import hashlib
import shutil
from pathlib import Path

from . import core
from .backends import RenderingBackend
from .errors import OpenError


def is_network_path(path: str | Path) -> bool:
    s = str(path)
    return s.startswith("\\\\") or s.startswith("//")


def local_copy_path(path: str | Path, temp_dir: Path) -> Path:
    """Stable local name for a network file: ``<stem>_<md5[:8]><ext>``."""
    p = Path(path)
    digest = hashlib.md5(str(path).encode("utf-8")).hexdigest()[:8]
    return temp_dir / f"{p.stem}_{digest}{p.suffix}"


class NetworkPathBackend(RenderingBackend):
    def __init__(self, inner: RenderingBackend, temp_dir: Path) -> None:
        self.inner = inner
        self.temp_dir = temp_dir
        self._local: Path | None = None
        self.name = inner.name
        super().__init__(inner.kind, inner.settings)

    def open(self, path: Path) -> None:
        if not is_network_path(path):
            self.inner.open(path)
            return
        local = local_copy_path(path, self.temp_dir)
        try:
            self.temp_dir.mkdir(parents=True, exist_ok=True)
            shutil.copy2(str(path), local)
        except OSError as e:
            raise OpenError(f"cannot copy network file {path}: {e}") from e
        core.log(f"[net  ] {path} -> {local}", level="DEBUG")
        self._local = local
        try:
            self.inner.open(local)
        except Exception:
            self._cleanup()
            raise

    def render_to_pdf(self, destination: Path) -> None:
        self.inner.render_to_pdf(destination)

    def close(self) -> None:
        try:
            self.inner.close()
        finally:
            self._cleanup()

    def dispose(self) -> None:
        try:
            self.inner.dispose()
        finally:
            self._cleanup()

    def _cleanup(self) -> None:
        if self._local is None:
            return
        try:
            self._local.unlink(missing_ok=True)
        except OSError as e:
            core.log(f"[WARN ] cannot remove temp copy {self._local}: {e}", level="WARNING")
        self._local = None
