"""Save-slot storage.

Two layers:

  KeyValueStore   get/set/remove of one opaque string blob per key.
                  FileStore keeps each key as a file under a base directory:

                      {base}/
                        taleweaverSaves.json                      ← the save collection
                        taleweaverSaves_corrupted_<ms>.json       ← quarantined blobs

  SaveRepository  CRUD over the save collection. All slots live in ONE blob
                  (a JSON array of SaveData) under one key. Every writer
                  re-reads the blob before writing; last writer wins.

Corruption policy: an unparsable collection is never deleted outright. The
raw text is copied to a timestamped quarantine key, the primary key is
removed, a warning is recorded, and the collection is treated as empty.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Protocol

from pydantic import BaseModel, Field, TypeAdapter

from taleweaver.models import SaveData, Session

logger = logging.getLogger(__name__)

DEFAULT_SAVES_KEY = "taleweaverSaves"
DEFAULT_MAX_SLOTS = 50

CORRUPTED_ARCHIVED = (
    "Your save file was corrupted and has been archived. A new save file has been started."
)
CORRUPTED_NOT_ARCHIVED = (
    "Your save file was corrupted and could not be archived. "
    "You may need to clear the data directory to continue."
)
STORAGE_UNAVAILABLE = "Storage is unavailable. Saved games cannot be loaded or saved."
SAVE_OK = "Game Saved!"
SAVE_FAILED = "Save Failed! Storage may be full or data is corrupt."

_saves_adapter = TypeAdapter(list[SaveData])


class StorageUnavailableError(RuntimeError):
    """The key-value store could not be read or written."""


class StorageCorruptedError(ValueError):
    """The stored collection could not be parsed. Carries the raw blob."""

    def __init__(self, raw: str, reason: str) -> None:
        super().__init__(reason)
        self.raw = raw


class SaveNotFoundError(LookupError):
    """No save slot with the requested id."""


# ---------------------------------------------------------------------------
# Key-value store
# ---------------------------------------------------------------------------

class KeyValueStore(Protocol):
    def get(self, key: str) -> str | None: ...
    def set(self, key: str, value: str) -> None: ...
    def remove(self, key: str) -> None: ...


class FileStore:
    """One file per key under `base_path`."""

    def __init__(self, base_path: Path) -> None:
        self._base = base_path
        self._base.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        safe = re.sub(r"[^A-Za-z0-9_.-]+", "_", key)
        return self._base / f"{safe}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.is_file():
            return None
        try:
            return path.read_bytes().decode("utf-8", errors="surrogateescape")
        except OSError as e:
            raise StorageUnavailableError(f"Cannot read {path}: {e}") from e

    def set(self, key: str, value: str) -> None:
        path = self._path(key)
        try:
            path.write_bytes(value.encode("utf-8", errors="surrogateescape"))
        except OSError as e:
            raise StorageUnavailableError(f"Cannot write {path}: {e}") from e

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as e:
            raise StorageUnavailableError(f"Cannot remove {key}: {e}") from e


# ---------------------------------------------------------------------------
# Save repository
# ---------------------------------------------------------------------------

class SaveResult(BaseModel):
    ok: bool
    message: str
    saves: list[SaveData] = Field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class SaveRepository:
    """Save slots keyed by character id, persisted as one collection blob.

    `saves` is the most recently known collection; load() looks slots up
    there, while save() and delete() always re-read the store first.
    `warning` holds the last storage problem worth showing to the player;
    consumers clear it once shown.
    """

    def __init__(
        self,
        store: KeyValueStore,
        key: str = DEFAULT_SAVES_KEY,
        max_slots: int = DEFAULT_MAX_SLOTS,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._store = store
        self._key = key
        self._max_slots = max_slots
        self._clock = clock
        self.saves: list[SaveData] = []
        self.warning: str | None = None

    # -- reading -----------------------------------------------------------

    def _read(self) -> list[SaveData]:
        raw = self._store.get(self._key)
        if raw is None:
            return []
        try:
            return _saves_adapter.validate_json(raw)
        except ValueError as e:
            raise StorageCorruptedError(raw, str(e)) from e

    def _quarantine(self, raw: str) -> None:
        archive_key = f"{self._key}_corrupted_{int(self._clock().timestamp() * 1000)}"
        try:
            self._store.set(archive_key, raw)
            self._store.remove(self._key)
        except StorageUnavailableError as e:
            logger.error("Failed to archive corrupted save data: %s", e)
            self.warning = CORRUPTED_NOT_ARCHIVED
            return
        logger.warning("Corrupted save data archived under %s", archive_key)
        self.warning = CORRUPTED_ARCHIVED

    def _read_fresh(self) -> list[SaveData]:
        try:
            return self._read()
        except StorageCorruptedError as e:
            self._quarantine(e.raw)
            return []

    def _write(self, saves: list[SaveData]) -> None:
        self._store.set(self._key, _saves_adapter.dump_json(saves).decode("utf-8"))

    def list_saves(self) -> list[SaveData]:
        """All slots. Never raises: problems end up in `warning`."""
        try:
            saves = self._read_fresh()
        except StorageUnavailableError as e:
            logger.error("Could not read saves: %s", e)
            self.warning = STORAGE_UNAVAILABLE
            return []
        self.saves = saves
        return list(saves)

    # -- writing -----------------------------------------------------------

    def save(self, session: Session) -> SaveResult:
        """Upsert the session's character slot and persist the collection."""
        character = session.character
        if character is None:
            raise ValueError("Cannot save a session without a character")

        slot = SaveData(
            id=character.id,
            last_saved=self._clock(),
            phase=session.phase,
            character=character,
            messages=session.messages,
            choices=session.choices,
            attack_options=session.attack_options,
        )
        try:
            saves = self._read_fresh()
            for i, existing in enumerate(saves):
                if existing.id == slot.id:
                    saves[i] = slot
                    break
            else:
                saves.append(slot)
            saves = self._evict(saves, keep_id=slot.id)
            self._write(saves)
        except StorageUnavailableError as e:
            logger.error("Failed to save game: %s", e)
            return SaveResult(ok=False, message=SAVE_FAILED, saves=list(self.saves))

        self.saves = saves
        return SaveResult(ok=True, message=SAVE_OK, saves=list(saves))

    def _evict(self, saves: list[SaveData], keep_id: str) -> list[SaveData]:
        """Drop the oldest slots (never `keep_id`) beyond the slot cap."""
        if len(saves) <= self._max_slots:
            return saves
        candidates = sorted(
            (s for s in saves if s.id != keep_id), key=lambda s: s.last_saved
        )
        drop = {s.id for s in candidates[: len(saves) - self._max_slots]}
        for save_id in drop:
            logger.info("Save slot cap reached, evicting %s", save_id)
        return [s for s in saves if s.id not in drop]

    def get(self, save_id: str) -> SaveData:
        """Look up a slot in the last known collection."""
        for slot in self.saves:
            if slot.id == save_id:
                return slot
        raise SaveNotFoundError(f"No save with id {save_id!r}")

    def delete(self, save_id: str) -> list[SaveData]:
        """Remove a slot. Raises SaveNotFoundError or StorageUnavailableError."""
        saves = self._read_fresh()
        remaining = [s for s in saves if s.id != save_id]
        if len(remaining) == len(saves):
            raise SaveNotFoundError(f"No save with id {save_id!r}")
        self._write(remaining)
        self.saves = remaining
        return list(remaining)
