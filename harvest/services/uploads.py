"""Local-disk blob store for product images and the stock balance PDF."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional
from uuid import uuid4

from werkzeug.utils import secure_filename

from commonlib.storage import StoreError

logger = logging.getLogger(__name__)

URL_PREFIX = "/uploads/"


@dataclass(frozen=True)
class Upload:
    """An uploaded file detached from the web framework."""

    content: bytes
    filename: str = ""

    @property
    def extension(self) -> str:
        suffix = Path(secure_filename(self.filename or "")).suffix.lower()
        return suffix if 1 < len(suffix) <= 10 else ""


class UploadStore:
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise StoreError(str(exc)) from exc

    def save(self, data: bytes, extension: str = "") -> str:
        """Persist ``data`` and return the public ``/uploads/...`` URL."""

        extension = extension if not extension or extension.startswith(".") else f".{extension}"
        name = f"{uuid4().hex}{extension.lower()}"
        target = self.root / name
        tmp_path = target.with_suffix(target.suffix + ".tmp")
        try:
            with tmp_path.open("wb") as fh:
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_path, target)
        except OSError as exc:
            raise StoreError(str(exc)) from exc
        finally:
            tmp_path.unlink(missing_ok=True)
        return URL_PREFIX + name

    def path_for(self, url: Optional[str]) -> Optional[Path]:
        """Resolve a managed URL to its file, or ``None`` for foreign URLs."""

        if not url or not url.startswith(URL_PREFIX):
            return None
        name = url[len(URL_PREFIX):]
        if not name or name != secure_filename(name):
            return None
        return self.root / name

    def is_managed(self, url: Optional[str]) -> bool:
        return self.path_for(url) is not None

    def delete(self, url: Optional[str]) -> bool:
        """Best-effort removal; failures are logged and reported as False."""

        path = self.path_for(url)
        if path is None:
            return False
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        except OSError as exc:
            logger.warning("Could not delete upload %s: %s", url, exc)
            return False
        return True
