"""member_docs.models

Member record model, audit log entries and notifications.

Members are treated as values: every mutation helper returns a new Member
(or the same object when nothing changed) so a collection snapshot held by
a reader never changes underneath it.

The dict shape produced by Member.to_dict() is the local-store and backup
format.  It uses the backend's field names (memberType, documentIssuer,
documentHistory, rowIndex, sheetName) so backups taken from the browser
client restore cleanly.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Iterable, Iterator, Mapping

from member_docs.checklists import (
    LOCAL_PARTITION,
    Category,
    category_label,
    core_checklist,
    full_checklist,
    resolve_category,
)
from member_docs.normalize import (
    format_instant,
    normalize_member_id,
    parse_instant,
    trim,
    utc_now,
)
from member_docs.shared import RecordValidationError

LOCAL_ROW_POSITION = -1

NOTIFICATION_TYPES = frozenset({"success", "warning", "info", "error"})
MAX_NOTIFICATIONS = 50


# ---------------------------------------------------------------------------
# Audit log
# ---------------------------------------------------------------------------

@dataclass
class DocumentChange:
    document: str
    from_: bool
    to: bool

    def to_dict(self) -> dict[str, Any]:
        return {"document": self.document, "from": self.from_, "to": self.to}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> DocumentChange:
        return cls(
            document=str(data["document"]),
            from_=bool(data.get("from")),
            to=bool(data.get("to")),
        )


@dataclass
class AuditLogEntry:
    timestamp: datetime
    auditor: str
    changes: list[DocumentChange] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "timestamp": format_instant(self.timestamp),
            "auditor": self.auditor,
            "changes": [c.to_dict() for c in self.changes],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> AuditLogEntry:
        timestamp = parse_instant(data.get("timestamp"))
        if timestamp is None:
            raise RecordValidationError("unparseable_history_timestamp", str(data.get("timestamp")))
        return cls(
            timestamp=timestamp,
            auditor=str(data.get("auditor") or ""),
            changes=[DocumentChange.from_dict(c) for c in data.get("changes") or []],
        )


# ---------------------------------------------------------------------------
# Member
# ---------------------------------------------------------------------------

@dataclass
class Member:
    id: str
    name: str
    category: Category
    registration_date: datetime
    documents: dict[str, bool] = field(default_factory=dict)
    issuer: str = ""
    auditor: str = ""
    history: list[AuditLogEntry] = field(default_factory=list)
    # Remote record handle; ("Local", -1) for records not backed by the sheet.
    partition_name: str = LOCAL_PARTITION
    row_position: int = LOCAL_ROW_POSITION

    @property
    def is_remote(self) -> bool:
        return self.row_position > 0 and self.partition_name != LOCAL_PARTITION

    def as_local(self) -> Member:
        return replace(self, partition_name=LOCAL_PARTITION, row_position=LOCAL_ROW_POSITION)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "memberType": category_label(self.category),
            "registrationDate": format_instant(self.registration_date),
            "documents": dict(self.documents),
            "documentIssuer": self.issuer,
            "auditor": self.auditor,
            "documentHistory": [e.to_dict() for e in self.history],
            "rowIndex": self.row_position,
            "sheetName": self.partition_name,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Member:
        """Rebuild a Member from the local-store/backup shape.

        Ids are re-padded and legacy category labels re-resolved on the way
        in, so snapshots written by older clients load normalized.
        """
        member_id = normalize_member_id(data.get("id"))
        if member_id is None:
            raise RecordValidationError("missing_id")
        name = trim(str(data.get("name") or ""))
        if name is None:
            raise RecordValidationError("missing_name", member_id)
        raw_category = data.get("memberType", data.get("category"))
        category = resolve_category(raw_category)
        if category is None:
            raise RecordValidationError("unrecognized_category", str(raw_category))
        registration = parse_instant(data.get("registrationDate"))
        if registration is None:
            raise RecordValidationError("unparseable_date", str(data.get("registrationDate")))
        row_position = data.get("rowIndex")
        return cls(
            id=member_id,
            name=name,
            category=category,
            registration_date=registration,
            documents={str(k): bool(v) for k, v in (data.get("documents") or {}).items()},
            issuer=str(data.get("documentIssuer") or ""),
            auditor=str(data.get("auditor") or ""),
            history=[AuditLogEntry.from_dict(e) for e in data.get("documentHistory") or []],
            partition_name=str(data.get("sheetName") or LOCAL_PARTITION),
            row_position=int(row_position) if row_position is not None else LOCAL_ROW_POSITION,
        )


def fresh_documents(category: Category) -> dict[str, bool]:
    """All-False document map over the category's full checklist."""
    return {doc.name: False for doc in full_checklist(category)}


def is_compliant(member: Member) -> bool:
    """True iff every mandatory document for the member's category is present.

    This is the one compliance predicate; dashboards, reports and the
    overdue monitor all call it.
    """
    return all(member.documents.get(doc.name) is True for doc in core_checklist(member.category))


def new_member(
    member_id: str,
    name: str,
    category: Category,
    registration_date: datetime,
    issuer: str,
    auditor: str,
) -> Member:
    return Member(
        id=member_id,
        name=name,
        category=category,
        registration_date=registration_date,
        documents=fresh_documents(category),
        issuer=issuer,
        auditor=auditor,
        history=[],
    )


def next_member_id(members: Iterable[Member]) -> str:
    """One past the highest numeric id in the collection, zero-padded."""
    numeric = [int(m.id) for m in members if m.id.isdigit()]
    return normalize_member_id(str(max(numeric, default=0) + 1))  # type: ignore[return-value]


def record_document_check(
    member: Member,
    updated: Mapping[str, bool],
    auditor: str,
    now: datetime | None = None,
) -> Member:
    """Apply document flags and prepend one audit entry for the real changes.

    Keys not mentioned in ``updated`` keep their current value.  When no flag
    actually changes value the original member is returned untouched
    (no history entry, auditor unchanged).
    """
    changes = [
        DocumentChange(document=name, from_=bool(member.documents.get(name, False)), to=bool(value))
        for name, value in updated.items()
        if bool(member.documents.get(name, False)) != bool(value)
    ]
    if not changes:
        return member
    documents = dict(member.documents)
    for change in changes:
        documents[change.document] = change.to
    entry = AuditLogEntry(timestamp=now or utc_now(), auditor=auditor, changes=changes)
    return replace(
        member,
        documents=documents,
        auditor=auditor,
        history=[entry, *member.history],
    )


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------

@dataclass
class Notification:
    id: str
    type: str
    message: str
    timestamp: datetime
    is_read: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "message": self.message,
            "timestamp": format_instant(self.timestamp),
            "isRead": self.is_read,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Notification:
        timestamp = parse_instant(data.get("timestamp"))
        if timestamp is None:
            raise RecordValidationError("unparseable_date", str(data.get("timestamp")))
        return cls(
            id=str(data.get("id") or uuid.uuid4().hex),
            type=str(data.get("type") or "info"),
            message=str(data.get("message") or ""),
            timestamp=timestamp,
            is_read=bool(data.get("isRead")),
        )


class NotificationLog:
    """Newest-first notification list capped at MAX_NOTIFICATIONS."""

    def __init__(self, items: Iterable[Notification] = ()) -> None:
        self._items: list[Notification] = list(items)[:MAX_NOTIFICATIONS]

    def add(self, type: str, message: str, now: datetime | None = None) -> Notification:
        if type not in NOTIFICATION_TYPES:
            raise ValueError(f"unknown notification type: {type!r}")
        note = Notification(
            id=uuid.uuid4().hex,
            type=type,
            message=message,
            timestamp=now or utc_now(),
        )
        self._items = [note, *self._items][:MAX_NOTIFICATIONS]
        return note

    def mark_read(self, ids: Iterable[str]) -> int:
        wanted = set(ids)
        marked = 0
        for note in self._items:
            if note.id in wanted and not note.is_read:
                note.is_read = True
                marked += 1
        return marked

    def delete(self, note_id: str) -> bool:
        before = len(self._items)
        self._items = [n for n in self._items if n.id != note_id]
        return len(self._items) != before

    def clear(self) -> None:
        self._items = []

    @property
    def unread_count(self) -> int:
        return sum(1 for n in self._items if not n.is_read)

    def __iter__(self) -> Iterator[Notification]:
        return iter(list(self._items))

    def __len__(self) -> int:
        return len(self._items)
