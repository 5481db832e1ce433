"""member_docs.store

Local Fallback Store.

The service depends only on the KeyValueStore protocol (get/set/remove over
named keys holding JSON-compatible values).  Two backends are provided:

  JsonFileStore  one JSON file per key under a state directory
  MemoryStore    in-process dict, optionally size-capped (tests, dry runs)

LocalFallbackStore layers the four named keys on top.  Every read is
tolerant: an absent or unreadable key yields the default and logs a warning.
Writes that fail raise StorageQuotaError.
"""

from __future__ import annotations

import json
import logging
import os
import re
from pathlib import Path
from typing import Any, Iterable, Protocol

from member_docs.models import MAX_NOTIFICATIONS, Member, Notification
from member_docs.shared import RecordValidationError, StorageQuotaError

log = logging.getLogger(__name__)

KEY_MEMBERS = "local_members"
KEY_NOTIFICATIONS = "app_notifications"
KEY_ENDPOINT_URL = "endpoint_url"
KEY_OFFLINE_OVERRIDE = "offline_override"

_KEY_RE = re.compile(r"^[A-Za-z0-9_.-]+$")


class KeyValueStore(Protocol):
    def get(self, key: str) -> Any: ...
    def set(self, key: str, value: Any) -> None: ...
    def remove(self, key: str) -> None: ...


# ---------------------------------------------------------------------------
# Backends
# ---------------------------------------------------------------------------

class JsonFileStore:
    """Persist each key as <base_dir>/<key>.json.  Writes replace atomically."""

    def __init__(self, base_dir: Path) -> None:
        self._base_dir = Path(base_dir)

    def _path(self, key: str) -> Path:
        if not _KEY_RE.match(key):
            raise ValueError(f"invalid store key: {key!r}")
        return self._base_dir / f"{key}.json"

    def get(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        return json.loads(path.read_text(encoding="utf-8"))

    def set(self, key: str, value: Any) -> None:
        path = self._path(key)
        tmp = path.with_suffix(".json.tmp")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(value, indent=2, ensure_ascii=False), encoding="utf-8")
            os.replace(tmp, path)
        except OSError as exc:
            raise StorageQuotaError(f"could not write {path}: {exc}") from exc

    def remove(self, key: str) -> None:
        try:
            self._path(key).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageQuotaError(f"could not remove {key}: {exc}") from exc


class MemoryStore:
    """Dict-backed store.  ``max_bytes`` caps the total serialized size."""

    def __init__(self, max_bytes: int | None = None) -> None:
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes

    def get(self, key: str) -> Any:
        raw = self._data.get(key)
        return None if raw is None else json.loads(raw)

    def set(self, key: str, value: Any) -> None:
        raw = json.dumps(value, ensure_ascii=False)
        if self._max_bytes is not None:
            used = sum(len(v.encode("utf-8")) for k, v in self._data.items() if k != key)
            if used + len(raw.encode("utf-8")) > self._max_bytes:
                raise StorageQuotaError(f"store quota of {self._max_bytes} bytes exceeded")
        self._data[key] = raw

    def remove(self, key: str) -> None:
        self._data.pop(key, None)


# ---------------------------------------------------------------------------
# Named keys
# ---------------------------------------------------------------------------

class LocalFallbackStore:
    def __init__(self, backend: KeyValueStore) -> None:
        self._backend = backend

    def _read(self, key: str, default: Any) -> Any:
        try:
            value = self._backend.get(key)
        except Exception as exc:  # noqa: BLE001
            log.warning("Local store read of %s failed (%s); using default.", key, exc)
            return default
        return default if value is None else value

    # -- members ------------------------------------------------------------

    def load_members(self) -> list[Member]:
        raw = self._read(KEY_MEMBERS, [])
        if not isinstance(raw, list):
            log.warning("Local member snapshot is not a list; ignoring it.")
            return []
        members = []
        for item in raw:
            try:
                members.append(Member.from_dict(item))
            except (RecordValidationError, KeyError, TypeError, ValueError) as exc:
                log.warning("Dropping unreadable local member record (%s)", exc)
        return members

    def save_members(self, members: Iterable[Member]) -> None:
        self._backend.set(KEY_MEMBERS, [m.to_dict() for m in members])

    # -- notifications ------------------------------------------------------

    def load_notifications(self) -> list[Notification]:
        raw = self._read(KEY_NOTIFICATIONS, [])
        if not isinstance(raw, list):
            return []
        notes = []
        for item in raw:
            try:
                notes.append(Notification.from_dict(item))
            except (RecordValidationError, TypeError, AttributeError) as exc:
                log.warning("Dropping unreadable notification (%s)", exc)
        return notes[:MAX_NOTIFICATIONS]

    def save_notifications(self, notifications: Iterable[Notification]) -> None:
        self._backend.set(
            KEY_NOTIFICATIONS, [n.to_dict() for n in list(notifications)[:MAX_NOTIFICATIONS]]
        )

    # -- settings -----------------------------------------------------------

    def load_endpoint_url(self) -> str:
        return str(self._read(KEY_ENDPOINT_URL, "") or "")

    def save_endpoint_url(self, url: str) -> None:
        if url:
            self._backend.set(KEY_ENDPOINT_URL, url)
        else:
            self._backend.remove(KEY_ENDPOINT_URL)

    def load_offline_override(self) -> bool:
        return bool(self._read(KEY_OFFLINE_OVERRIDE, False))

    def save_offline_override(self, value: bool) -> None:
        self._backend.set(KEY_OFFLINE_OVERRIDE, bool(value))

    def clear_members(self) -> None:
        self._backend.remove(KEY_MEMBERS)
