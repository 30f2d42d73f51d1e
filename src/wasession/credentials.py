"""
Durable credential storage.

A session's authentication material rotates constantly (pre-keys, session
keys, identity counters). Every update must be on disk before the next
transport event is handled, otherwise a crash can desynchronize the session
and force a re-pair.

On-disk layout of FileCredentialStore:

    <base_dir>/<session_id>/creds.json
    <base_dir>/<session_id>/keys/<category>/<key_id>.json

Category and key id path segments are percent-encoded so the original ids
round-trip through the file names.
"""

import asyncio
import json
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any
from urllib.parse import quote, unquote

from wasession.exceptions import CredentialStoreError
from wasession.logger import get_logger
from wasession.models import CredentialUpdate, Credentials

logger = get_logger(__name__)

CREDS_FILENAME = "creds.json"
KEYS_DIRNAME = "keys"


class CredentialStore(ABC):
    """Abstract durable key-value store for session credentials."""

    @abstractmethod
    async def load(self, session_id: str) -> Credentials:
        """
        Load credentials for a session.

        Returns:
            Stored credentials, or ``Credentials.empty()`` on first run.

        Raises:
            CredentialStoreError: If existing data cannot be read.
        """
        pass

    @abstractmethod
    async def save(self, session_id: str, update: CredentialUpdate) -> None:
        """
        Durably apply a credential update before returning.

        Raises:
            CredentialStoreError: If the update cannot be written.
        """
        pass

    @abstractmethod
    async def exists(self, session_id: str) -> bool:
        """True if a paired session is stored."""
        pass


def _safe_name(name: str) -> str:
    return name.replace("/", "__").replace(":", "-")


def _key_filename(key_id: str) -> str:
    # Reversible: key ids come back from the file name on load.
    return f"{quote(key_id, safe='')}.json"


def _key_id(path: Path) -> str:
    return unquote(path.stem)


def _write_json_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.tmp")
    with open(tmp_path, "w", encoding="utf-8") as f:
        json.dump(data, f, ensure_ascii=False)
        f.flush()
        os.fsync(f.fileno())
    os.replace(tmp_path, path)


class FileCredentialStore(CredentialStore):
    """
    JSON files on the local filesystem, one directory per session.

    Writes are atomic (temp file + rename) and serialized with an asyncio
    lock; blocking I/O runs in a worker thread.
    """

    def __init__(self, base_dir: str | Path):
        self.base_dir = Path(base_dir)
        self._write_lock = asyncio.Lock()

    def session_dir(self, session_id: str) -> Path:
        return self.base_dir / _safe_name(session_id)

    async def load(self, session_id: str) -> Credentials:
        try:
            return await asyncio.to_thread(self._load_sync, session_id)
        except (OSError, ValueError) as e:
            raise CredentialStoreError(session_id, str(e)) from e

    async def save(self, session_id: str, update: CredentialUpdate) -> None:
        async with self._write_lock:
            try:
                await asyncio.to_thread(self._save_sync, session_id, update)
            except (OSError, ValueError, TypeError) as e:
                raise CredentialStoreError(session_id, str(e)) from e

    async def exists(self, session_id: str) -> bool:
        creds_path = self.session_dir(session_id) / CREDS_FILENAME
        return await asyncio.to_thread(creds_path.is_file)

    # -- Internal ------------------------------------------------------------

    def _load_sync(self, session_id: str) -> Credentials:
        session_dir = self.session_dir(session_id)
        session_dir.mkdir(parents=True, exist_ok=True)

        creds_path = session_dir / CREDS_FILENAME
        if not creds_path.exists():
            logger.info(f"No stored credentials for '{session_id}', starting fresh")
            return Credentials.empty()

        creds = json.loads(creds_path.read_text(encoding="utf-8"))

        keys: dict[str, dict[str, Any]] = {}
        keys_dir = session_dir / KEYS_DIRNAME
        if keys_dir.is_dir():
            for category_dir in sorted(keys_dir.iterdir()):
                if not category_dir.is_dir():
                    continue
                bucket = keys.setdefault(unquote(category_dir.name), {})
                for key_path in sorted(category_dir.glob("*.json")):
                    bucket[_key_id(key_path)] = json.loads(
                        key_path.read_text(encoding="utf-8")
                    )

        logger.debug(
            f"Loaded credentials for '{session_id}' "
            f"({sum(len(b) for b in keys.values())} keys)"
        )
        return Credentials(creds=creds, keys=keys)

    def _save_sync(self, session_id: str, update: CredentialUpdate) -> None:
        session_dir = self.session_dir(session_id)
        creds_path = session_dir / CREDS_FILENAME

        if update.creds or not creds_path.exists():
            current = Credentials.empty().creds
            if creds_path.exists():
                current = json.loads(creds_path.read_text(encoding="utf-8"))
            merged = Credentials(creds=current).apply(CredentialUpdate(creds=update.creds))
            _write_json_atomic(creds_path, merged.creds)

        for category, entries in update.keys.items():
            category_dir = session_dir / KEYS_DIRNAME / quote(category, safe="")
            for key_id, value in entries.items():
                key_path = category_dir / _key_filename(key_id)
                if value is None:
                    key_path.unlink(missing_ok=True)
                else:
                    _write_json_atomic(key_path, value)

        logger.debug(f"Saved credential update for '{session_id}'")
