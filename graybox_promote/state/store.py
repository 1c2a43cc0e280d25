"""
Directory-backed key-value store for pipeline state.

Every project document, batch file and result record lives here as a JSON
file keyed by a slash separated path. Writes are atomic (temp file + replace)
and every document carries a version token (SHA-256 of its bytes) so callers
can claim work with compare-and-set instead of first-writer-wins.
"""

import hashlib
import json
import logging
import os
import shutil
import tempfile
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Callable, Iterable, Optional, Tuple, Union

logger = logging.getLogger(__name__)

LOCK_SUFFIX = ".lock"


class NotFoundError(Exception):
    """Raised when a state document does not exist"""
    pass


class LockTimeoutError(Exception):
    """Raised when a document lock cannot be acquired"""
    pass


def _version_of(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class StateStore:
    """
    Key-value persistence for JSON documents and raw buffers.

    Keys look like 'graybox_promote/site/exp/status.json' and map to files
    under the configured root directory.
    """

    def __init__(self, root: Union[str, Path], lock_timeout: float = 30.0, stale_lock_seconds: float = 120.0):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)
        self.lock_timeout = lock_timeout
        self.stale_lock_seconds = stale_lock_seconds

    def _resolve(self, path: str) -> Path:
        relative = path.strip('/')
        if not relative:
            raise ValueError("State path must not be empty")
        resolved = (self.root / relative).resolve()
        if self.root.resolve() not in resolved.parents:
            raise ValueError(f"State path escapes store root: {path}")
        return resolved

    # ------------------------------------------------------------------
    # Raw access
    # ------------------------------------------------------------------

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def remove_tree(self, path: str) -> None:
        """Delete every document under path (no-op when absent)."""
        target = self._resolve(path)
        if target.is_dir():
            shutil.rmtree(target)
        elif target.is_file():
            target.unlink()

    def read_buffer(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return target.read_bytes()
        except FileNotFoundError:
            raise NotFoundError(path)

    def write_stream(self, path: str, stream: Union[bytes, Iterable[bytes]]) -> None:
        """Atomically write bytes (or an iterable of chunks) to path."""
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, 'wb') as f:
                if isinstance(stream, (bytes, bytearray)):
                    f.write(stream)
                else:
                    for chunk in stream:
                        f.write(chunk)
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    # ------------------------------------------------------------------
    # JSON documents
    # ------------------------------------------------------------------

    def read(self, path: str) -> Any:
        data = self.read_buffer(path)
        return json.loads(data.decode('utf-8'))

    def write(self, path: str, document: Any) -> None:
        self.write_stream(path, self._encode(document))

    def read_versioned(self, path: str) -> Tuple[Any, Optional[str]]:
        """Return (document, version). A missing document is (None, None)."""
        try:
            data = self.read_buffer(path)
        except NotFoundError:
            return None, None
        return json.loads(data.decode('utf-8')), _version_of(data)

    def compare_and_set(self, path: str, document: Any, expected_version: Optional[str]) -> bool:
        """
        Write document only if the stored version still equals expected_version.

        expected_version=None means "only if the document does not exist yet".
        Returns False (without writing) when another writer got there first.
        """
        with self._locked(path):
            try:
                current = _version_of(self.read_buffer(path))
            except NotFoundError:
                current = None
            if current != expected_version:
                logger.debug(f"Version conflict on {path}: expected {expected_version}, found {current}")
                return False
            self.write(path, document)
            return True

    def update(self, path: str, mutate: Callable[[Any], Any], default: Callable[[], Any] = dict) -> Any:
        """
        Locked read-modify-write.

        mutate receives the current document (or default() when missing) and
        returns the document to store. The stored document is returned.
        """
        with self._locked(path):
            try:
                current = self.read(path)
            except NotFoundError:
                current = default()
            updated = mutate(current)
            self.write(path, updated)
            return updated

    @staticmethod
    def _encode(document: Any) -> bytes:
        return json.dumps(document, indent=2, ensure_ascii=False).encode('utf-8')

    # ------------------------------------------------------------------
    # Locking
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self, path: str):
        target = self._resolve(path)
        target.parent.mkdir(parents=True, exist_ok=True)
        lock_path = target.with_name(target.name + LOCK_SUFFIX)
        deadline = time.monotonic() + self.lock_timeout
        delay = 0.005

        while True:
            try:
                fd = os.open(lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode())
                os.close(fd)
                break
            except FileExistsError:
                self._break_stale_lock(lock_path)
                if time.monotonic() > deadline:
                    raise LockTimeoutError(f"Timed out waiting for lock on {path}")
                time.sleep(delay)
                delay = min(delay * 2, 0.1)

        try:
            yield
        finally:
            try:
                os.unlink(lock_path)
            except FileNotFoundError:
                logger.warning(f"Lock for {path} vanished before release")

    def _break_stale_lock(self, lock_path: Path) -> None:
        try:
            age = time.time() - lock_path.stat().st_mtime
        except FileNotFoundError:
            return
        if age > self.stale_lock_seconds:
            logger.warning(f"Breaking stale lock {lock_path} (age {age:.0f}s)")
            try:
                os.unlink(lock_path)
            except FileNotFoundError:
                pass
