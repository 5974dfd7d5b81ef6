"""
File-backed collection store.

Each collection lives in its own ``<data_dir>/<name>.json`` file shaped as
``{"documents": [...], "version": N}``. Every unit of work holds the
collection's lock for its whole read-modify-write, writes through a temp file
plus ``os.replace``, and bumps ``version`` so writers that bypass the lock are
detected instead of silently overwritten. A unit of work spanning several
collections hard-links each current file aside first and puts the replaced
ones back if a later replace fails.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from contextlib import ExitStack, contextmanager
from pathlib import Path
from typing import Iterable, Iterator

from licstore.core.errors import ConflictError, StoreCorruptionError, WriteFailureError

from .base import COLLECTIONS, Database, UnitOfWork
from .document_set import DocumentSet

try:
    import fcntl
except ImportError:  # pragma: no cover - Windows has no flock
    fcntl = None

logger = logging.getLogger(__name__)

_LOCK_SUFFIX = ".lock"
_BACKUP_SUFFIX = ".bak"


class _FileLock:
    """Re-entrant per-file lock: a thread lock plus an flock on a sidecar file."""

    def __init__(self, path: Path):
        self.path = path.with_suffix(path.suffix + _LOCK_SUFFIX)
        self._lock = threading.RLock()
        self._depth = 0
        self._handle = None

    @contextmanager
    def hold(self) -> Iterator[None]:
        with self._lock:
            if self._depth == 0 and fcntl is not None:
                self.path.parent.mkdir(parents=True, exist_ok=True)
                self._handle = self.path.open("a+", encoding="utf-8")
                fcntl.flock(self._handle.fileno(), fcntl.LOCK_EX)
            self._depth += 1
            try:
                yield
            finally:
                self._depth -= 1
                if self._depth == 0 and self._handle is not None:
                    fcntl.flock(self._handle.fileno(), fcntl.LOCK_UN)
                    self._handle.close()
                    self._handle = None


_registry_lock = threading.Lock()
_file_locks: dict[str, _FileLock] = {}


def _lock_for(path: Path) -> _FileLock:
    key = str(path.resolve())
    with _registry_lock:
        lock = _file_locks.get(key)
        if lock is None:
            lock = _file_locks[key] = _FileLock(path)
        return lock


class CollectionFile:
    """One collection's backing file: load, version check, atomic flush."""

    def __init__(self, name: str, path: Path):
        self.name = name
        self.path = Path(path)
        self.lock = _lock_for(self.path)

    def read(self) -> tuple[list[dict], int]:
        if not self.path.exists():
            return [], 0
        with self.path.open("r", encoding="utf-8") as f:
            raw = f.read()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.error("Collection file %s is not valid JSON: %s", self.path, exc)
            raise StoreCorruptionError(self.path, f"invalid JSON ({exc.msg} at line {exc.lineno})") from exc

        if not isinstance(data, dict) or not isinstance(data.get("documents"), list):
            logger.error("Collection file %s has no 'documents' list", self.path)
            raise StoreCorruptionError(self.path, "expected an object with a 'documents' list")
        documents = data["documents"]
        if not all(isinstance(doc, dict) for doc in documents):
            logger.error("Collection file %s holds non-object documents", self.path)
            raise StoreCorruptionError(self.path, "every document must be a JSON object")
        version = data.get("version", 0)
        if not isinstance(version, int) or isinstance(version, bool):
            raise StoreCorruptionError(self.path, f"invalid version {version!r}")
        return documents, version

    def load(self) -> DocumentSet:
        documents, version = self.read()
        return DocumentSet(self.name, documents, version)

    def current_version(self) -> int:
        return self.read()[1]

    def stage(self, documents: DocumentSet) -> Path:
        """Write the next version to a temp file next to the target."""
        payload = {"documents": documents.documents, "version": documents.version + 1}
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(
                dir=str(self.path.parent),
                prefix=f".{self.path.name}.",
                suffix=".tmp",
            )
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
        except OSError as exc:
            logger.error("Failed to stage %s: %s", self.path, exc)
            raise WriteFailureError(self.path, exc) from exc
        return Path(tmp_name)

    def publish(self, staged: Path) -> None:
        try:
            os.replace(staged, self.path)
        except OSError as exc:
            logger.error("Failed to replace %s: %s", self.path, exc)
            raise WriteFailureError(self.path, exc) from exc

    def backup(self) -> Path | None:
        """Hard-link the current file aside; None when there is no file yet."""
        if not self.path.exists():
            return None
        target = self.path.with_name(f".{self.path.name}{_BACKUP_SUFFIX}")
        try:
            target.unlink(missing_ok=True)
            os.link(self.path, target)
        except OSError as exc:
            logger.error("Failed to back up %s: %s", self.path, exc)
            raise WriteFailureError(self.path, exc) from exc
        return target

    def restore(self, backup: Path | None) -> None:
        """Put back the content saved by ``backup`` after a failed commit."""
        try:
            if backup is None:
                self.path.unlink(missing_ok=True)
            else:
                os.replace(backup, self.path)
        except OSError as exc:
            logger.error("Failed to restore %s, it holds the aborted commit: %s", self.path, exc)
            raise WriteFailureError(self.path, exc) from exc


class JsonDatabase(Database):
    """The embedded store: one JSON file per collection under ``data_dir``."""

    def __init__(self, data_dir: Path | str, collection_names: Iterable[str] = COLLECTIONS):
        super().__init__(collection_names)
        self.data_dir = Path(data_dir)
        self.files = {
            name: CollectionFile(name, self.data_dir / f"{name}.json")
            for name in self.collection_names
        }

    def path_for(self, name: str) -> Path:
        return self.files[name].path

    @contextmanager
    def _begin(self, names: list[str]) -> Iterator[UnitOfWork]:
        with ExitStack() as stack:
            # fixed lock order: no deadlock between overlapping transactions
            for name in sorted(names):
                stack.enter_context(self.files[name].lock.hold())
            work = UnitOfWork({name: self.files[name].load() for name in names})
            yield work
            self._commit(work)

    def _commit(self, work: UnitOfWork) -> None:
        dirty = [(name, docs) for name, docs in work.items() if docs.dirty]
        if not dirty:
            return

        for name, docs in dirty:
            found = self.files[name].current_version()
            if found != docs.version:
                logger.error(
                    "Collection %s changed on disk (version %s, expected %s); write aborted",
                    name, found, docs.version,
                )
                raise ConflictError(name, expected=docs.version, found=found)

        staged: list[tuple[str, Path]] = []
        backups: dict[str, Path | None] = {}
        try:
            for name, docs in dirty:
                staged.append((name, self.files[name].stage(docs)))
            for name, _tmp in staged:
                backups[name] = self.files[name].backup()
        except WriteFailureError:
            self._discard(staged, backups)
            raise

        published: list[str] = []
        try:
            for name, tmp in staged:
                self.files[name].publish(tmp)
                published.append(name)
        except WriteFailureError:
            # roll back the files already replaced
            for name in reversed(published):
                try:
                    self.files[name].restore(backups.pop(name))
                except WriteFailureError:
                    continue
            self._discard(staged, backups)
            raise

        self._discard([], backups)
        for name, docs in dirty:
            docs.version += 1
            logger.debug("Flushed %s (version %s)", name, docs.version)

    @staticmethod
    def _discard(staged: list[tuple[str, Path]], backups: dict[str, Path | None]) -> None:
        for _name, tmp in staged:
            tmp.unlink(missing_ok=True)
        for backup in backups.values():
            if backup is not None:
                backup.unlink(missing_ok=True)
