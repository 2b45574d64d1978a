# FILE: atp/storage.py
"""
Persistence for the tracked-entity table.

  - EntityStore:
      Abstract snapshot store: load() the whole identity -> entity map at
      startup, save() the whole map periodically and at shutdown.

  - FileEntityStore:
      One human-readable JSON file per engine instance. The directory is
      created with mode 0700 and the file is replaced atomically with mode
      0600.

  - InMemoryEntityStore:
      Keeps serialized copies in memory; used where durability is not wanted.

Path confinement:

  The storage path must be absolute, must normalize to a location strictly
  inside the platform's allowed base directory, and no existing component
  between that base and the file may be redirected (a symlink, or on
  Windows a reparse point / junction). The check runs at configuration time
  and again before every write; a violation at write time disables the store
  for the rest of the instance's life.
"""
from __future__ import annotations

import json
import logging
import os
import stat
import tempfile
import threading
from abc import ABC, abstractmethod
from typing import Dict, List, Mapping, Optional

from .entity import TrackedEntity

logger = logging.getLogger(__name__)

# ------------------------------
# Allowed locations
# ------------------------------

if os.name == "nt":  # pragma: no cover - exercised on Windows only
    ALLOWED_STORAGE_BASE = "C:\\ProgramData\\atp-collector\\"
else:
    ALLOWED_STORAGE_BASE = "/var/lib/atp-collector/"

DEFAULT_STORAGE_PATH = os.path.join(ALLOWED_STORAGE_BASE, "adaptivetelemetry.db")

_DIR_MODE = 0o700
_FILE_MODE = 0o600


class PathConfinementError(ValueError):
    """Storage path is outside the allowed base or passes through a redirect."""


class StorageError(RuntimeError):
    """Snapshot could not be read or written."""


# ------------------------------
# Redirect detection
# ------------------------------


class PathRedirectProbe(ABC):
    """Answers whether one existing path component leaves the real filesystem."""

    #: Word used in violation messages ("is a symlink").
    kind: str = "redirect"

    @abstractmethod
    def is_redirected(self, path: str) -> bool:
        """Return True if `path` is a redirect. Raises FileNotFoundError if absent."""


class PosixRedirectProbe(PathRedirectProbe):
    kind = "symlink"

    def is_redirected(self, path: str) -> bool:
        st = os.lstat(path)
        return stat.S_ISLNK(st.st_mode)


class WindowsRedirectProbe(PathRedirectProbe):
    kind = "reparse point"

    def is_redirected(self, path: str) -> bool:
        st = os.lstat(path)
        if stat.S_ISLNK(st.st_mode):
            return True
        attrs = getattr(st, "st_file_attributes", 0)
        return bool(attrs & stat.FILE_ATTRIBUTE_REPARSE_POINT)


def default_redirect_probe() -> PathRedirectProbe:
    if os.name == "nt":  # pragma: no cover
        return WindowsRedirectProbe()
    return PosixRedirectProbe()


# ------------------------------
# Path validation
# ------------------------------


def _is_strictly_under(path: str, base: str) -> bool:
    if os.path.normcase(path) == os.path.normcase(base):
        return False
    try:
        common = os.path.commonpath([os.path.normcase(path), os.path.normcase(base)])
    except ValueError:
        # different drives
        return False
    return common == os.path.normcase(base)


def check_path_for_redirects(
    path: str,
    base: str,
    *,
    probe: Optional[PathRedirectProbe] = None,
) -> None:
    """
    Walk every component below `base` down to `path` and raise
    PathConfinementError at the first redirected one. Components that do not
    exist yet are fine; so is `path == base`.
    """
    probe = probe or default_redirect_probe()
    path = os.path.normpath(path)
    base = os.path.normpath(base)
    if os.path.normcase(path) == os.path.normcase(base):
        return

    rel = os.path.relpath(path, base)
    current = base
    for part in rel.split(os.sep):
        if part in ("", os.curdir):
            continue
        current = os.path.join(current, part)
        try:
            redirected = probe.is_redirected(current)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PathConfinementError(f"cannot inspect path component {current}: {e}") from e
        if redirected:
            raise PathConfinementError(f"path component {current} is a {probe.kind}")


def validate_storage_path(
    path: str,
    *,
    base_dir: Optional[str] = None,
    probe: Optional[PathRedirectProbe] = None,
) -> str:
    """
    Validate a storage path and return its normalized form.

    Trailing separators, "./" segments and doubled separators are normalized
    away before the containment check.
    """
    if not path or not path.strip():
        raise PathConfinementError("storage path cannot be empty")
    if not os.path.isabs(path):
        raise PathConfinementError(f"storage path {path!r} must be an absolute path")

    base = base_dir or ALLOWED_STORAGE_BASE
    clean = os.path.normpath(path)
    clean_base = os.path.normpath(base)
    if not _is_strictly_under(clean, clean_base):
        raise PathConfinementError(f"storage path {path!r} must be under {base}")

    check_path_for_redirects(clean, clean_base, probe=probe)
    return clean


# ------------------------------
# Stores
# ------------------------------


class EntityStore(ABC):
    """
    Snapshot store for the tracked-entity table.

    Stores hold serialized copies only; the tracker keeps ownership of the
    live entities.
    """

    @abstractmethod
    def load(self) -> Dict[str, TrackedEntity]:
        """Return the persisted map. A store that was never written loads empty."""

    @abstractmethod
    def save(self, entities: Mapping[str, TrackedEntity]) -> None:
        """Replace the persisted map."""

    def close(self) -> None:
        return None

    @property
    def disabled(self) -> bool:
        return False


class InMemoryEntityStore(EntityStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._records: Dict[str, dict] = {}
        self.saves = 0

    def load(self) -> Dict[str, TrackedEntity]:
        with self._lock:
            return {k: TrackedEntity.from_record(v, identity=k) for k, v in self._records.items()}

    def save(self, entities: Mapping[str, TrackedEntity]) -> None:
        with self._lock:
            self._records = {k: e.to_record() for k, e in entities.items()}
            self.saves += 1


class FileEntityStore(EntityStore):
    """
    JSON-file snapshot store.

    Layout: {"<identity>": <entity record>, ...}, indented, sorted keys.
    """

    def __init__(
        self,
        path: str,
        *,
        base_dir: Optional[str] = None,
        probe: Optional[PathRedirectProbe] = None,
    ) -> None:
        self._base_dir = base_dir
        self._probe = probe
        self.path = validate_storage_path(path, base_dir=base_dir, probe=probe)
        self._lock = threading.Lock()
        self._disabled = False
        self._closed = False

    @property
    def disabled(self) -> bool:
        return self._disabled

    def _recheck(self) -> None:
        try:
            validate_storage_path(self.path, base_dir=self._base_dir, probe=self._probe)
        except PathConfinementError:
            self._disabled = True
            logger.error("storage path %s failed confinement check; persistence disabled", self.path)
            raise

    def load(self) -> Dict[str, TrackedEntity]:
        with self._lock:
            if not os.path.exists(self.path):
                return {}
            try:
                with open(self.path, "r", encoding="utf-8") as f:
                    doc = json.load(f)
            except (OSError, ValueError) as e:
                raise StorageError(f"failed to read {self.path}: {e}") from e

        if not isinstance(doc, dict):
            raise StorageError(f"{self.path} does not hold an identity map")

        out: Dict[str, TrackedEntity] = {}
        skipped: List[str] = []
        for ident, rec in doc.items():
            if not isinstance(rec, dict):
                skipped.append(str(ident))
                continue
            try:
                out[str(ident)] = TrackedEntity.from_record(rec, identity=str(ident))
            except ValueError:
                skipped.append(str(ident))
        if skipped:
            logger.warning("skipped %d malformed entity records in %s", len(skipped), self.path)
        return out

    def save(self, entities: Mapping[str, TrackedEntity]) -> None:
        with self._lock:
            if self._closed:
                raise StorageError("store is closed")
            if self._disabled:
                raise PathConfinementError(f"persistence disabled for {self.path}")
            self._recheck()

            payload = {ident: e.to_record() for ident, e in entities.items()}
            directory = os.path.dirname(self.path)
            tmp_path = None
            try:
                os.makedirs(directory, mode=_DIR_MODE, exist_ok=True)
                fd, tmp_path = tempfile.mkstemp(prefix=".atp-", suffix=".tmp", dir=directory)
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(payload, f, indent=2, sort_keys=True)
                    f.flush()
                    os.fsync(f.fileno())
                os.chmod(tmp_path, _FILE_MODE)
                os.replace(tmp_path, self.path)
                tmp_path = None
            except OSError as e:
                raise StorageError(f"failed to write {self.path}: {e}") from e
            finally:
                if tmp_path is not None and os.path.exists(tmp_path):
                    os.unlink(tmp_path)

    def close(self) -> None:
        with self._lock:
            self._closed = True


__all__ = [
    "ALLOWED_STORAGE_BASE",
    "DEFAULT_STORAGE_PATH",
    "PathConfinementError",
    "StorageError",
    "PathRedirectProbe",
    "PosixRedirectProbe",
    "WindowsRedirectProbe",
    "default_redirect_probe",
    "check_path_for_redirects",
    "validate_storage_path",
    "EntityStore",
    "InMemoryEntityStore",
    "FileEntityStore",
]
