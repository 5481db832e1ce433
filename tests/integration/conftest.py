"""Integration test fixtures.

FakeSheetBackend keeps sheets in memory and answers the same JSON actions
as the deployed sheet script.  Tests wire it into a real SheetClient through
a MagicMock session, so everything above the HTTP transport runs for real.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import pytest
import requests

from member_docs.controller import MemberService
from member_docs.remote import SheetClient
from member_docs.store import JsonFileStore, LocalFallbackStore

ENDPOINT_URL = "https://script.example.com/macros/s/fake/exec"

# ---------------------------------------------------------------------------
# Fake backend
# ---------------------------------------------------------------------------


class FakeSheetBackend:
    """In-memory sheets.  Row index 1 is the header, data starts at 2."""

    def __init__(self) -> None:
        self.sheets: dict[str, list[list[Any]]] = {}
        self.requests: list[dict[str, Any]] = []
        self.unreachable = False
        # action -> message; the next request with that action fails once
        self.fail_next: dict[str, str] = {}

    def rows(self, sheet_name: str) -> list[list[Any]]:
        return self.sheets.setdefault(sheet_name, [])

    def ids(self) -> list[str]:
        return sorted(str(row[0]) for rows in self.sheets.values() for row in rows)

    def handle(self, payload: dict[str, Any]) -> dict[str, Any]:
        self.requests.append(payload)
        action = payload["action"]
        if action in self.fail_next:
            return {"status": "error", "message": self.fail_next.pop(action)}

        if action == "READ_ALL":
            return {
                "members": [
                    {"rowData": list(row), "sheetName": name, "rowIndex": i + 2}
                    for name, rows in self.sheets.items()
                    for i, row in enumerate(rows)
                ]
            }
        sheet = self.rows(payload["sheetName"])
        if action == "ADD":
            sheet.append(list(payload["rowData"]))
            return {"status": "success"}
        if action == "BULK_ADD":
            sheet.extend(list(r) for r in payload["rowsData"])
            return {"status": "success", "count": len(payload["rowsData"])}
        position = payload["rowIndex"] - 2
        if not 0 <= position < len(sheet):
            return {"status": "error", "message": f"row {payload['rowIndex']} out of range"}
        if action == "UPDATE":
            sheet[position] = list(payload["rowData"])
        elif action == "DELETE":
            del sheet[position]
        else:
            return {"status": "error", "message": f"unknown action {action}"}
        return {"status": "success"}

    def post(self, url: str, json: dict[str, Any], timeout: int) -> MagicMock:
        if self.unreachable:
            raise requests.ConnectionError("Failed to establish a new connection")
        resp = MagicMock()
        resp.status_code = 200
        body = self.handle(json)
        resp.json.return_value = body
        resp.text = str(body)
        return resp

    def actions(self) -> list[str]:
        return [r["action"] for r in self.requests]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def backend() -> FakeSheetBackend:
    return FakeSheetBackend()


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def make_service(backend: FakeSheetBackend, state_dir: Path):
    """Build a MemberService on a file-backed store, talking to ``backend``.

    Each call returns a fresh service over the same state directory, the
    way a new process would see it.
    """
    session = MagicMock()
    session.post.side_effect = backend.post

    def _make(online: bool = True) -> MemberService:
        store = LocalFallbackStore(JsonFileStore(state_dir))
        if online and not store.load_endpoint_url():
            store.save_endpoint_url(ENDPOINT_URL)
        service = MemberService(
            store, client_factory=lambda url: SheetClient(url, session=session, timeout=5)
        )
        service.startup()
        return service

    return _make
