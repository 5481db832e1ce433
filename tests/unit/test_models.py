"""Unit tests for member_docs.models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from member_docs.checklists import Category, core_checklist, full_checklist
from member_docs.models import (
    MAX_NOTIFICATIONS,
    AuditLogEntry,
    DocumentChange,
    Member,
    Notification,
    NotificationLog,
    fresh_documents,
    is_compliant,
    new_member,
    next_member_id,
    record_document_check,
)
from member_docs.shared import RecordValidationError

T0 = datetime(2024, 7, 15, tzinfo=timezone.utc)


def _member(**kw) -> Member:
    defaults = dict(
        member_id="00001",
        name="สมชาย ใจดี",
        category=Category.CURRENT,
        registration_date=T0,
        issuer="ฝ่ายบุคคล",
        auditor="alice",
    )
    defaults.update(kw)
    return new_member(**defaults)


# ---------------------------------------------------------------------------
# Creation and compliance
# ---------------------------------------------------------------------------

class TestNewMember:
    @pytest.mark.parametrize("category", list(Category))
    def test_documents_match_full_checklist_all_false(self, category):
        m = _member(category=category)
        assert list(m.documents) == [d.name for d in full_checklist(category)]
        assert not any(m.documents.values())
        assert m.history == []

    def test_is_local_only(self):
        m = _member()
        assert m.partition_name == "Local"
        assert m.row_position == -1
        assert not m.is_remote

    def test_fresh_documents_independent_copies(self):
        a = fresh_documents(Category.CURRENT)
        a["x"] = True
        assert "x" not in fresh_documents(Category.CURRENT)


class TestIsCompliant:
    @pytest.mark.parametrize("category", list(Category))
    def test_all_core_true_is_compliant(self, category):
        m = _member(category=category)
        for doc in core_checklist(category):
            m.documents[doc.name] = True
        assert is_compliant(m)

    @pytest.mark.parametrize("category", list(Category))
    def test_any_core_missing_is_not(self, category):
        m = _member(category=category)
        core = core_checklist(category)
        for doc in core[1:]:
            m.documents[doc.name] = True
        assert not is_compliant(m)

    def test_optional_documents_do_not_matter(self):
        m = _member()
        for doc in full_checklist(Category.CURRENT):
            m.documents[doc.name] = not doc.mandatory
        assert not is_compliant(m)
        for doc in core_checklist(Category.CURRENT):
            m.documents[doc.name] = True
        assert is_compliant(m)

    def test_stale_keys_ignored(self):
        m = _member()
        m.documents = {"stale": True}
        assert not is_compliant(m)


class TestNextMemberId:
    def test_empty(self):
        assert next_member_id([]) == "00001"

    def test_max_plus_one(self):
        members = [_member(member_id="00003"), _member(member_id="00010"), _member(member_id="00002")]
        assert next_member_id(members) == "00011"

    def test_non_numeric_ids_ignored(self):
        assert next_member_id([_member(member_id="A0001")]) == "00001"


# ---------------------------------------------------------------------------
# record_document_check
# ---------------------------------------------------------------------------

class TestRecordDocumentCheck:
    def test_change_prepends_entry(self):
        m = _member()
        doc = full_checklist(Category.CURRENT)[0].name
        now = T0 + timedelta(days=1)
        out = record_document_check(m, {doc: True}, "bob", now=now)
        assert out is not m
        assert out.documents[doc] is True
        assert out.auditor == "bob"
        assert out.history == [AuditLogEntry(now, "bob", [DocumentChange(doc, False, True)])]
        # the original is untouched
        assert m.documents[doc] is False
        assert m.history == []

    def test_only_real_changes_logged(self):
        m = _member()
        names = [d.name for d in full_checklist(Category.CURRENT)]
        out = record_document_check(m, {names[0]: True, names[1]: False}, "bob")
        assert [c.document for c in out.history[0].changes] == [names[0]]

    def test_no_change_returns_same_object(self):
        m = _member()
        doc = full_checklist(Category.CURRENT)[0].name
        out = record_document_check(m, {doc: False}, "bob")
        assert out is m
        assert out.auditor == "alice"

    def test_newest_first(self):
        m = _member()
        a, b = [d.name for d in full_checklist(Category.CURRENT)[:2]]
        m1 = record_document_check(m, {a: True}, "bob", now=T0)
        m2 = record_document_check(m1, {b: True}, "carol", now=T0 + timedelta(hours=1))
        assert [e.auditor for e in m2.history] == ["carol", "bob"]
        assert m2.history[1] is m1.history[0]

    def test_unmentioned_keys_kept(self):
        m = _member()
        a, b = [d.name for d in full_checklist(Category.CURRENT)[:2]]
        m1 = record_document_check(m, {a: True}, "bob")
        m2 = record_document_check(m1, {b: True}, "bob")
        assert m2.documents[a] is True and m2.documents[b] is True


# ---------------------------------------------------------------------------
# dict shape
# ---------------------------------------------------------------------------

class TestMemberDict:
    def test_round_trip(self):
        m = _member(category=Category.ASSOCIATE)
        doc = full_checklist(Category.ASSOCIATE)[2].name
        m = record_document_check(m, {doc: True}, "bob", now=T0)
        assert Member.from_dict(m.to_dict()) == m

    def test_uses_backend_field_names(self):
        d = _member().to_dict()
        assert d["memberType"] == "พนักงานปัจจุบัน"
        assert d["registrationDate"] == "2024-07-15T00:00:00.000Z"
        assert d["rowIndex"] == -1
        assert d["sheetName"] == "Local"

    def test_legacy_values_normalized(self):
        d = _member().to_dict()
        d["id"] = "7"
        d["memberType"] = "สมาชิกนอกหน่วย"
        m = Member.from_dict(d)
        assert m.id == "00007"
        assert m.category is Category.EXTERNAL

    def test_missing_handle_defaults_local(self):
        d = _member().to_dict()
        del d["rowIndex"], d["sheetName"]
        m = Member.from_dict(d)
        assert (m.partition_name, m.row_position) == ("Local", -1)

    @pytest.mark.parametrize("field, value, reason", [
        ("id", "", "missing_id"),
        ("name", "  ", "missing_name"),
        ("memberType", "visitor", "unrecognized_category"),
        ("registrationDate", "soon", "unparseable_date"),
    ])
    def test_invalid(self, field, value, reason):
        d = _member().to_dict()
        d[field] = value
        with pytest.raises(RecordValidationError) as exc_info:
            Member.from_dict(d)
        assert exc_info.value.reason == reason


# ---------------------------------------------------------------------------
# NotificationLog
# ---------------------------------------------------------------------------

class TestNotificationLog:
    def test_prepends(self):
        log = NotificationLog()
        log.add("info", "first")
        log.add("success", "second")
        assert [n.message for n in log] == ["second", "first"]

    def test_capped(self):
        log = NotificationLog()
        for i in range(MAX_NOTIFICATIONS + 5):
            log.add("info", f"n{i}")
        assert len(log) == MAX_NOTIFICATIONS
        assert next(iter(log)).message == f"n{MAX_NOTIFICATIONS + 4}"

    def test_unknown_type(self):
        with pytest.raises(ValueError):
            NotificationLog().add("fatal", "x")

    def test_mark_read_delete_clear(self):
        log = NotificationLog()
        a = log.add("info", "a")
        b = log.add("warning", "b")
        assert log.unread_count == 2
        assert log.mark_read([a.id]) == 1
        assert log.unread_count == 1
        assert log.delete(b.id) is True
        assert log.delete(b.id) is False
        assert len(log) == 1
        log.clear()
        assert len(log) == 0

    def test_notification_round_trip(self):
        note = NotificationLog().add("error", "boom", now=T0)
        assert Notification.from_dict(note.to_dict()) == note
