"""Shared JSON persistence helpers for the Harvest catalog.

Every file-backed store in the project writes whole snapshots atomically
(temporary file, flush, fsync, replace) and keeps a configurable number of
rotating ``.bakN`` copies. Loads fall back to the newest readable backup when
the primary file is missing its contents or has been corrupted by an abrupt
shutdown.
"""
from __future__ import annotations

import base64
import copy
import hashlib
import json
import logging
import os
import shutil
import tempfile
import threading
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class StoreError(RuntimeError):
    """Raised when a persistence operation fails."""


class _SnapshotFile:
    """Atomic snapshot writes with rotating backups for a single path."""

    empty: Callable[[], Any] = dict
    shape: type = dict

    def __init__(
        self,
        path: Path | str,
        backups: int = 2,
        *,
        recovery_label: str | None = None,
    ) -> None:
        self.path = Path(path)
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(str(exc)) from exc
        self.backups = max(0, backups)
        self._recovery_label = recovery_label or self.path.name
        # Serialises load, rotate and write for every writer of this instance.
        self._lock = threading.RLock()

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _backup_path(self, index: int) -> Path:
        return self.path.with_suffix(self.path.suffix + f".bak{index}")

    def _candidate_paths(self) -> list[Path]:
        return [self.path] + [self._backup_path(idx) for idx in range(1, self.backups + 1)]

    def _decode(self, blob: bytes) -> Any:
        return json.loads(blob.decode("utf-8"))

    def _encode(self, data: Any) -> bytes:
        return json.dumps(data, indent=2, ensure_ascii=False).encode("utf-8")

    def _read(self, path: Path) -> Any | None:
        if not path.exists():
            return None
        try:
            blob = path.read_bytes()
        except OSError as exc:  # pragma: no cover - surfaced to callers
            raise StoreError(str(exc)) from exc
        if not blob.strip():
            return self.empty()
        try:
            data = self._decode(blob)
        except (InvalidToken, UnicodeDecodeError, json.JSONDecodeError):
            return None
        return data if isinstance(data, self.shape) else None

    def _write(self, data: Any) -> None:
        tmp_path: Path | None = None
        try:
            payload = self._encode(data)
            with tempfile.NamedTemporaryFile(
                dir=self.path.parent, prefix=self.path.name + ".", suffix=".tmp", delete=False
            ) as fh:
                tmp_path = Path(fh.name)
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            if tmp_path is not None:
                tmp_path.unlink(missing_ok=True)

    def _rotate_backups(self) -> None:
        if self.backups <= 0:
            return
        for idx in range(self.backups, 0, -1):
            src = self.path if idx == 1 else self._backup_path(idx - 1)
            if src.exists():
                try:
                    if src == self.path:
                        # The primary stays in place until the new snapshot replaces it.
                        shutil.copyfile(src, self._backup_path(idx))
                    else:
                        os.replace(src, self._backup_path(idx))
                except OSError:
                    logger.warning("Could not rotate backup %s", src.name)
                    continue

    def _load(self) -> Any:
        for candidate in self._candidate_paths():
            data = self._read(candidate)
            if data is None:
                continue
            if candidate != self.path:
                logger.warning("Recovered %s from backup %s", self._recovery_label, candidate.name)
            return data
        return self.empty()

    def _dump(self, data: Any) -> None:
        with self._lock:
            self._rotate_backups()
            self._write(data)


class JsonStore(_SnapshotFile):
    """Tiny JSON document store keyed by identifier."""

    def get(self, key: str, default: Any | None = None) -> Any:
        return self._load().get(key, default)

    def put(self, key: str, value: Any) -> Any:
        with self._lock:
            data = self._load()
            data[key] = value
            self._dump(data)
        return value


class ListStore(_SnapshotFile):
    """JSON list store with atomic writes and backup recovery."""

    empty = list
    shape = list

    def load(self) -> List[Dict[str, Any]]:
        return [item for item in self._load() if isinstance(item, dict)]

    def mutate(
        self,
        mutator: Callable[[List[Dict[str, Any]]], Iterable[Dict[str, Any]] | None],
    ) -> List[Dict[str, Any]]:
        """Load, apply ``mutator`` and persist in one step.

        The mutator either edits the list in place (returning ``None``) or
        returns a replacement sequence. Nothing is written when the list is
        unchanged. Concurrent callers on the same instance are serialised.
        """

        with self._lock:
            snapshot = self.load()
            original = copy.deepcopy(snapshot)
            outcome = mutator(snapshot)
            updated = snapshot if outcome is None else [dict(item) for item in outcome]
            if updated != original:
                self._dump(updated)
        return updated


def _derive_key(secret: str) -> bytes:
    if not secret:
        secret = "harvest-dev-secret"
    digest = hashlib.sha256(secret.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest)


class EncryptedJsonStore(JsonStore):
    """JSON store that encrypts payloads using Fernet symmetric encryption."""

    def __init__(self, path: Path | str, secret: str, backups: int = 2, **kwargs: Any):
        super().__init__(path, backups=backups, **kwargs)
        self._fernet = Fernet(_derive_key(secret))

    def _decode(self, blob: bytes) -> Any:
        return super()._decode(self._fernet.decrypt(blob))

    def _encode(self, data: Any) -> bytes:
        return self._fernet.encrypt(super()._encode(data))
