"""Unit tests for member_docs.remote (Remote Sync Client).

No network access: the requests session is a MagicMock.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
import requests

from member_docs.checklists import Category, full_checklist
from member_docs.models import new_member, record_document_check
from member_docs.remote import (
    Add,
    BulkAdd,
    Delete,
    ReadAll,
    RowDecodeError,
    SheetClient,
    Update,
    encode_request,
    member_to_row,
    row_to_member,
)
from member_docs.shared import BackendLogicError, ConnectivityError, SyncError

T0 = datetime(2024, 7, 15, tzinfo=timezone.utc)
URL = "https://script.example.com/exec"


def _member(member_id="00001", category=Category.CURRENT, name="สมชาย ใจดี"):
    return new_member(member_id, name, category, T0, "ฝ่ายบุคคล", "alice")


def _response(body=None, status=200, text=None):
    resp = MagicMock()
    resp.status_code = status
    resp.text = text if text is not None else json.dumps(body)
    if isinstance(body, Exception):
        resp.json.side_effect = body
    else:
        resp.json.return_value = body
    return resp


def _client(*responses):
    session = MagicMock()
    session.post.side_effect = list(responses)
    return SheetClient(URL, session=session, timeout=5), session


def _payloads(session):
    return [c.kwargs["json"] for c in session.post.call_args_list]


# ---------------------------------------------------------------------------
# Request encoding
# ---------------------------------------------------------------------------

class TestEncodeRequest:
    def test_read_all(self):
        assert encode_request(ReadAll()) == {"action": "READ_ALL"}

    def test_add(self):
        assert encode_request(Add("S", ("a",) * 8)) == {
            "action": "ADD", "sheetName": "S", "rowData": ["a"] * 8,
        }

    def test_bulk_add(self):
        payload = encode_request(BulkAdd("S", (("a",) * 8, ("b",) * 8)))
        assert payload["action"] == "BULK_ADD"
        assert payload["rowsData"] == [["a"] * 8, ["b"] * 8]

    def test_update(self):
        payload = encode_request(Update("S", 4, ("a",) * 8))
        assert payload == {"action": "UPDATE", "sheetName": "S", "rowIndex": 4, "rowData": ["a"] * 8}

    def test_delete(self):
        assert encode_request(Delete("S", 3)) == {"action": "DELETE", "sheetName": "S", "rowIndex": 3}

    def test_unknown_variant(self):
        with pytest.raises(TypeError):
            encode_request({"action": "READ_ALL"})


# ---------------------------------------------------------------------------
# Row codec
# ---------------------------------------------------------------------------

class TestRowCodec:
    def test_field_order(self):
        row = member_to_row(_member())
        assert len(row) == 8
        assert row[0] == "00001"
        assert row[2] == "พนักงานปัจจุบัน"
        assert row[3] == "2024-07-15T00:00:00.000Z"
        assert json.loads(row[4]) == {d.name: False for d in full_checklist(Category.CURRENT)}
        assert row[5] == "ฝ่ายบุคคล"
        assert row[6] == "alice"
        assert json.loads(row[7]) == []

    def test_thai_text_not_escaped(self):
        assert "สำเนา" in member_to_row(_member())[4]

    @pytest.mark.parametrize("category", list(Category))
    def test_round_trip_all_fields(self, category):
        m = _member(category=category)
        doc = full_checklist(category)[0].name
        m = record_document_check(m, {doc: True}, "bob", now=T0)
        decoded = row_to_member(list(member_to_row(m)), 5, "Sheet")
        assert decoded.partition_name == "Sheet"
        assert decoded.row_position == 5
        assert decoded.as_local() == m

    def test_id_padded_and_label_normalized(self):
        row = list(member_to_row(_member()))
        row[0] = 7
        row[2] = "สมาชิกนอกหน่วย"
        m = row_to_member(row, 2, "นอกหน่วย")
        assert m.id == "00007"
        assert m.category is Category.EXTERNAL

    def test_tolerates_empty_optional_cells(self):
        m = row_to_member(["1", "A", "สมาชิกสมทบ", "2024-07-15T00:00:00.000Z", "", "", "", ""], 2, "สมาชิกสมทบ")
        assert m.documents == {}
        assert m.history == []
        assert m.issuer == ""

    def test_short_row_padded(self):
        m = row_to_member(["1", "A", "Retired"], 2, "พนักงานบำนาญ")
        assert m.registration_date.hour == 0

    @pytest.mark.parametrize("row, reason", [
        (["", "A", "Current", "", "", "", "", ""], "missing_id"),
        (["1", " ", "Current", "", "", "", "", ""], "missing_name"),
        (["1", "A", "visitor", "", "", "", "", ""], "unrecognized_category"),
        (["1", "A", "Current", "tomorrow", "", "", "", ""], "unparseable_date"),
        (["1", "A", "Current", "", "{bad", "", "", ""], "bad_documents_json"),
        (["1", "A", "Current", "", "[]", "", "", ""], "bad_documents_json"),
        (["1", "A", "Current", "", "", "", "", "{}"], "bad_history_json"),
        (["1", "A", "Current", "", "", "", "", '[{"auditor": "x"}]'], "bad_history_json"),
    ])
    def test_decode_errors(self, row, reason):
        with pytest.raises(RowDecodeError) as exc_info:
            row_to_member(row, 2, "S")
        assert exc_info.value.reason == reason


# ---------------------------------------------------------------------------
# SheetClient
# ---------------------------------------------------------------------------

class TestSheetClientReadAll:
    def test_decodes_rows_with_handles(self):
        row = list(member_to_row(_member()))
        client, session = _client(_response({"members": [
            {"rowData": row, "sheetName": "พนักงานปัจจุบัน", "rowIndex": 2},
        ]}))
        result = client.read_all()
        assert [(m.id, m.partition_name, m.row_position) for m in result.members] == [
            ("00001", "พนักงานปัจจุบัน", 2),
        ]
        assert session.post.call_args.args == (URL,)
        assert session.post.call_args.kwargs["timeout"] == 5

    def test_empty_partitions_ok(self):
        client, _ = _client(_response({"members": []}))
        assert client.read_all().members == []

    def test_missing_members_key_ok(self):
        client, _ = _client(_response({"status": "success"}))
        assert client.read_all().members == []

    def test_bad_rows_skipped(self):
        good = list(member_to_row(_member()))
        client, _ = _client(_response({"members": [
            {"rowData": ["", "", "", "", "", "", "", ""], "sheetName": "S", "rowIndex": 2},
            {"rowData": good, "sheetName": "S", "rowIndex": 3},
        ]}))
        result = client.read_all()
        assert len(result.members) == 1
        assert result.skipped == [("S", 2, "missing_id")]

    def test_members_not_a_list(self):
        client, _ = _client(_response({"members": "oops"}))
        with pytest.raises(ConnectivityError, match="malformed"):
            client.read_all()

    def test_entry_not_an_object_skipped(self):
        good = list(member_to_row(_member()))
        client, _ = _client(_response({"members": [
            None,
            "row",
            {"rowData": good, "sheetName": "S", "rowIndex": 2},
        ]}))
        result = client.read_all()
        assert [m.id for m in result.members] == ["00001"]
        assert [reason for _, _, reason in result.skipped] == ["malformed_entry", "malformed_entry"]

    @pytest.mark.parametrize("row_index", ["abc", None, 1, 0, 2.5, True])
    def test_bad_row_index_skipped(self, row_index):
        row = list(member_to_row(_member()))
        client, _ = _client(_response({"members": [
            {"rowData": row, "sheetName": "S", "rowIndex": row_index},
        ]}))
        result = client.read_all()
        assert result.members == []
        assert result.skipped == [("S", 0, "bad_row_index")]

    def test_numeric_string_row_index_accepted(self):
        row = list(member_to_row(_member()))
        client, _ = _client(_response({"members": [
            {"rowData": row, "sheetName": "S", "rowIndex": "7"},
        ]}))
        assert client.read_all().members[0].row_position == 7

    def test_row_data_not_a_list_skipped(self):
        client, _ = _client(_response({"members": [
            {"rowData": {"id": "1"}, "sheetName": "S", "rowIndex": 3},
        ]}))
        assert client.read_all().skipped == [("S", 3, "malformed_entry")]


class TestSheetClientFailures:
    def test_network_error(self):
        session = MagicMock()
        session.post.side_effect = requests.ConnectionError("refused")
        client = SheetClient(URL, session=session)
        with pytest.raises(ConnectivityError) as exc_info:
            client.read_all()
        assert "refused" in exc_info.value.raw

    def test_non_200(self):
        client, _ = _client(_response({"x": 1}, status=502, text="Bad gateway"))
        with pytest.raises(ConnectivityError) as exc_info:
            client.add(_member())
        assert exc_info.value.raw == "Bad gateway"

    def test_malformed_json(self):
        client, _ = _client(_response(ValueError("no json"), text="<html>"))
        with pytest.raises(ConnectivityError, match="malformed"):
            client.read_all()

    def test_non_object_body(self):
        client, _ = _client(_response(["a"]))
        with pytest.raises(ConnectivityError):
            client.read_all()

    def test_backend_error_status(self):
        client, _ = _client(_response({"status": "error", "message": "Could not obtain lock"}))
        with pytest.raises(BackendLogicError) as exc_info:
            client.add(_member())
        assert exc_info.value.message == "Could not obtain lock"
        assert isinstance(exc_info.value, SyncError)

    def test_no_retry(self):
        client, session = _client(_response({"status": "error", "message": "x"}), _response({}))
        with pytest.raises(BackendLogicError):
            client.read_all()
        assert session.post.call_count == 1

    def test_check_connection(self):
        client, _ = _client(_response({"members": []}), _response({"status": "error", "message": "x"}))
        assert client.check_connection() is True
        assert client.check_connection() is False

    def test_requires_url(self):
        with pytest.raises(ValueError):
            SheetClient("")


class TestSheetClientWrites:
    def test_add_targets_category_sheet(self):
        client, session = _client(_response({"status": "success"}))
        client.add(_member(category=Category.ASSOCIATE))
        payload = _payloads(session)[0]
        assert payload["action"] == "ADD"
        assert payload["sheetName"] == "สมาชิกสมทบ"
        assert len(payload["rowData"]) == 8

    def test_bulk_add_one_call_per_sheet_in_order(self):
        members = [
            _member("00001", Category.CURRENT),
            _member("00002", Category.RETIRED),
            _member("00003", Category.CURRENT),
        ]
        client, session = _client(
            _response({"status": "success", "count": 2}),
            _response({"status": "success", "count": 1}),
        )
        assert client.bulk_add(members) == 3
        payloads = _payloads(session)
        assert [p["sheetName"] for p in payloads] == ["พนักงานปัจจุบัน", "พนักงานบำนาญ"]
        assert [r[0] for r in payloads[0]["rowsData"]] == ["00001", "00003"]

    def test_bulk_add_stops_at_first_failure(self):
        members = [_member("00001", Category.CURRENT), _member("00002", Category.RETIRED)]
        client, session = _client(_response({"status": "error", "message": "lock"}), _response({}))
        with pytest.raises(BackendLogicError):
            client.bulk_add(members)
        assert session.post.call_count == 1

    @pytest.mark.parametrize("count", ["many", None, -1, [2]])
    def test_bulk_add_bad_count_falls_back_to_rows_sent(self, count):
        members = [_member("00001"), _member("00002")]
        client, _ = _client(_response({"status": "success", "count": count}))
        assert client.bulk_add(members) == 2

    def test_bulk_add_nothing(self):
        client, session = _client()
        assert client.bulk_add([]) == 0
        session.post.assert_not_called()

    def test_update_sends_full_row(self):
        remote = row_to_member(list(member_to_row(_member())), 4, "พนักงานปัจจุบัน")
        client, session = _client(_response({"status": "success"}))
        client.update(remote)
        payload = _payloads(session)[0]
        assert payload["rowIndex"] == 4
        assert payload["rowData"] == list(member_to_row(remote))

    def test_update_local_only_refused(self):
        client, session = _client()
        with pytest.raises(ValueError):
            client.update(_member())
        session.post.assert_not_called()

    def test_delete(self):
        client, session = _client(_response({"status": "success"}))
        client.delete("นอกหน่วย", 3)
        assert _payloads(session) == [{"action": "DELETE", "sheetName": "นอกหน่วย", "rowIndex": 3}]

    def test_delete_header_row_refused(self):
        client, _ = _client()
        with pytest.raises(ValueError):
            client.delete("นอกหน่วย", 1)
