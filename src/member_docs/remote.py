"""member_docs.remote

Remote Sync Client for the spreadsheet-backed member register.

The backend is a single HTTP endpoint taking a JSON body with an ``action``
field.  Each category lives in its own sheet ("partition"); rows are
addressed by 1-based position within that sheet, where row 1 is the header.

Request variants are a closed set of dataclasses; encode_request() is the
only place that turns them into wire payloads.

Wire row layout (positional, never reordered):
    0 id | 1 name | 2 category label | 3 registration instant (ISO)
    4 documents (JSON object) | 5 issuer | 6 auditor | 7 history (JSON list)

The client performs no retries.  Every failure surfaces as a SyncError
subclass and the caller decides what to do with it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Union

import requests

from member_docs.checklists import category_label, partition_for, resolve_category
from member_docs.models import AuditLogEntry, Member
from member_docs.normalize import (
    format_instant,
    normalize_member_id,
    parse_instant,
    trim,
    utc_midnight,
    utc_now,
)
from member_docs.shared import BackendLogicError, ConnectivityError, RecordValidationError

log = logging.getLogger(__name__)

ROW_WIDTH = 8
HEADER_ROWS = 1
DEFAULT_TIMEOUT = 30


# ---------------------------------------------------------------------------
# Request variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ReadAll:
    pass


@dataclass(frozen=True)
class Add:
    sheet_name: str
    row: tuple


@dataclass(frozen=True)
class BulkAdd:
    sheet_name: str
    rows: tuple


@dataclass(frozen=True)
class Update:
    sheet_name: str
    row_index: int
    row: tuple


@dataclass(frozen=True)
class Delete:
    sheet_name: str
    row_index: int


Request = Union[ReadAll, Add, BulkAdd, Update, Delete]


def encode_request(request: Request) -> dict[str, Any]:
    """Render a request variant as the JSON payload the backend expects."""
    if isinstance(request, ReadAll):
        return {"action": "READ_ALL"}
    if isinstance(request, Add):
        return {"action": "ADD", "sheetName": request.sheet_name, "rowData": list(request.row)}
    if isinstance(request, BulkAdd):
        return {
            "action": "BULK_ADD",
            "sheetName": request.sheet_name,
            "rowsData": [list(r) for r in request.rows],
        }
    if isinstance(request, Update):
        return {
            "action": "UPDATE",
            "sheetName": request.sheet_name,
            "rowIndex": request.row_index,
            "rowData": list(request.row),
        }
    if isinstance(request, Delete):
        return {"action": "DELETE", "sheetName": request.sheet_name, "rowIndex": request.row_index}
    raise TypeError(f"unsupported request type: {type(request).__name__}")


# ---------------------------------------------------------------------------
# Row codec
# ---------------------------------------------------------------------------

class RowDecodeError(RecordValidationError):
    """A backend row could not be turned into a Member."""


def member_to_row(member: Member) -> tuple:
    return (
        member.id,
        member.name,
        category_label(member.category),
        format_instant(member.registration_date),
        json.dumps(member.documents, ensure_ascii=False),
        member.issuer,
        member.auditor,
        json.dumps([e.to_dict() for e in member.history], ensure_ascii=False),
    )


def _json_cell(value: Any, expected: type, reason: str) -> Any:
    if value is None or (isinstance(value, str) and not value.strip()):
        return expected()
    if isinstance(value, expected):
        return value
    try:
        parsed = json.loads(value)
    except (TypeError, ValueError) as exc:
        raise RowDecodeError(reason, str(exc)) from exc
    if not isinstance(parsed, expected):
        raise RowDecodeError(reason, f"expected {expected.__name__}")
    return parsed


def row_to_member(row: list[Any], row_index: int, sheet_name: str) -> Member:
    """Decode one backend row.

    The id is re-padded and the category label re-resolved unconditionally,
    so legacy spellings load as the canonical categories.  Empty issuer,
    auditor, documents and history cells are tolerated; a blank date falls
    back to today (UTC midnight).
    """
    cells = list(row) + [None] * (ROW_WIDTH - len(row))
    member_id = normalize_member_id(cells[0])
    if member_id is None:
        raise RowDecodeError("missing_id")
    name = trim(str(cells[1])) if cells[1] is not None else None
    if name is None:
        raise RowDecodeError("missing_name", member_id)
    category = resolve_category(cells[2])
    if category is None:
        raise RowDecodeError("unrecognized_category", str(cells[2]))

    if trim(str(cells[3] or "")) is None:
        registration = utc_midnight(utc_now().date())
    else:
        registration = parse_instant(cells[3])
        if registration is None:
            raise RowDecodeError("unparseable_date", str(cells[3]))

    documents = _json_cell(cells[4], dict, "bad_documents_json")
    history = _json_cell(cells[7], list, "bad_history_json")
    try:
        entries = [AuditLogEntry.from_dict(e) for e in history]
    except (KeyError, TypeError, AttributeError, RecordValidationError) as exc:
        raise RowDecodeError("bad_history_json", str(exc)) from exc

    return Member(
        id=member_id,
        name=name,
        category=category,
        registration_date=registration,
        documents={str(k): bool(v) for k, v in documents.items()},
        issuer=str(cells[5] or ""),
        auditor=str(cells[6] or ""),
        history=entries,
        partition_name=sheet_name,
        row_position=row_index,
    )


@dataclass
class ReadAllResult:
    members: list[Member] = field(default_factory=list)
    # (sheet_name, row_index, reason) for rows that failed to decode
    skipped: list[tuple[str, int, str]] = field(default_factory=list)


def _whole_number(value: Any, minimum: int) -> int | None:
    """An integer (or integral float/str) >= minimum, else None."""
    if isinstance(value, bool):
        return None
    try:
        number = int(value)
    except (TypeError, ValueError, OverflowError):
        return None
    if isinstance(value, float) and number != value:
        return None
    return number if number >= minimum else None


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class SheetClient:
    """Blocking client for the sheet backend.  One POST per call."""

    def __init__(
        self,
        endpoint_url: str,
        session: requests.Session | None = None,
        timeout: int = DEFAULT_TIMEOUT,
    ) -> None:
        if not endpoint_url:
            raise ValueError("endpoint_url is required")
        self.endpoint_url = endpoint_url
        self.timeout = timeout
        self._session = session or requests.Session()

    def call(self, request: Request) -> dict[str, Any]:
        payload = encode_request(request)
        action = payload["action"]
        try:
            resp = self._session.post(self.endpoint_url, json=payload, timeout=self.timeout)
        except requests.RequestException as exc:
            log.error("%s request failed: %s", action, exc)
            raise ConnectivityError(f"{action} request failed: {exc}", raw=str(exc)) from exc

        if resp.status_code != 200:
            log.error("%s returned HTTP %s", action, resp.status_code)
            raise ConnectivityError(
                f"{action} returned HTTP {resp.status_code}", raw=resp.text
            )

        try:
            body = resp.json()
        except ValueError as exc:
            log.error("%s returned a non-JSON body", action)
            raise ConnectivityError(f"{action} returned malformed JSON", raw=resp.text) from exc
        if not isinstance(body, dict):
            raise ConnectivityError(f"{action} returned malformed JSON", raw=resp.text)

        if body.get("status") == "error":
            message = str(body.get("message") or "unknown backend error")
            log.error("%s rejected by backend: %s", action, message)
            raise BackendLogicError(message)
        return body

    # -- actions ------------------------------------------------------------

    def read_all(self) -> ReadAllResult:
        body = self.call(ReadAll())
        entries = body.get("members") or []
        if not isinstance(entries, list):
            log.error("READ_ALL returned members of type %s", type(entries).__name__)
            raise ConnectivityError("READ_ALL returned malformed JSON", raw=json.dumps(body, default=str))
        result = ReadAllResult()
        for position, entry in enumerate(entries):
            if not isinstance(entry, dict):
                log.warning("Skipping READ_ALL entry %d: not an object", position)
                result.skipped.append(("", 0, "malformed_entry"))
                continue
            sheet_name = str(entry.get("sheetName") or "")
            row_index = _whole_number(entry.get("rowIndex"), minimum=HEADER_ROWS + 1)
            if row_index is None:
                log.warning("Skipping %s entry %d: bad rowIndex %r", sheet_name, position, entry.get("rowIndex"))
                result.skipped.append((sheet_name, 0, "bad_row_index"))
                continue
            row = entry.get("rowData") or []
            if not isinstance(row, list):
                log.warning("Skipping %s row %s: rowData is not a list", sheet_name, row_index)
                result.skipped.append((sheet_name, row_index, "malformed_entry"))
                continue
            try:
                result.members.append(row_to_member(row, row_index, sheet_name))
            except RowDecodeError as exc:
                log.warning("Skipping %s row %s: %s", sheet_name, row_index, exc)
                result.skipped.append((sheet_name, row_index, exc.reason))
        log.info(
            "READ_ALL: %d members, %d rows skipped", len(result.members), len(result.skipped)
        )
        return result

    def add(self, member: Member) -> None:
        self.call(Add(partition_for(member.category), member_to_row(member)))

    def bulk_add(self, members: Iterable[Member]) -> int:
        """BULK_ADD grouped by destination sheet, one call per sheet, in order.

        Returns the number of rows the backend reports appended.
        """
        groups: dict[str, list[tuple]] = {}
        for member in members:
            groups.setdefault(partition_for(member.category), []).append(member_to_row(member))
        appended = 0
        for sheet_name, rows in groups.items():
            body = self.call(BulkAdd(sheet_name, tuple(rows)))
            count = _whole_number(body.get("count", len(rows)), minimum=0)
            if count is None:
                log.warning("BULK_ADD to %s returned count %r; assuming %d", sheet_name, body.get("count"), len(rows))
                count = len(rows)
            appended += count
        return appended

    def update(self, member: Member) -> None:
        if not member.is_remote:
            raise ValueError(f"member {member.id} has no remote row to update")
        self.call(Update(member.partition_name, member.row_position, member_to_row(member)))

    def delete(self, sheet_name: str, row_index: int) -> None:
        if row_index <= HEADER_ROWS:
            raise ValueError(f"row {row_index} is not a data row")
        self.call(Delete(sheet_name, row_index))

    def check_connection(self) -> bool:
        try:
            self.call(ReadAll())
        except (ConnectivityError, BackendLogicError) as exc:
            log.warning("Connection check failed: %s", exc)
            return False
        return True
