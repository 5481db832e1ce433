"""member_docs.controller

Mode Controller: MemberService routes every operation to the sheet backend
or to the local fallback store.

Rules:
  - online  == an endpoint URL is configured and the offline override is off
  - a failed remote write never drops the change: it is applied to the
    in-memory collection and the local store, and a warning notification
    names the affected record
  - structural changes (add, delete, category move, import) end with a full
    reload; same-sheet updates patch the in-memory record
  - the collection is a tuple, replaced wholesale on every change
  - admin-only operations are refused before any I/O and the refusal is
    recorded as an error notification

Member and settings operations return an OperationResult instead of raising.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Iterable, Mapping

from member_docs.checklists import Category, full_checklist, partition_for, resolve_category
from member_docs.models import (
    Member,
    NotificationLog,
    new_member,
    next_member_id,
    record_document_check,
)
from member_docs.monitor import OverdueMonitor, check_overdue
from member_docs.normalize import (
    normalize_member_id,
    normalize_space,
    parse_registration_date,
    utc_now,
)
from member_docs.reconcile import ParsedBatch, change_category, count_plan, plan_import
from member_docs.remote import SheetClient
from member_docs.shared import (
    ImportCounters,
    MemberNotFoundError,
    PermissionDeniedError,
    RecordValidationError,
    StorageQuotaError,
    SyncError,
)
from member_docs.store import LocalFallbackStore

log = logging.getLogger(__name__)

ADMIN_ROLE = "Admin"


@dataclass(frozen=True)
class Actor:
    username: str
    role: str = "User"

    @property
    def is_admin(self) -> bool:
        return self.role == ADMIN_ROLE


@dataclass
class OperationResult:
    ok: bool
    message: str = ""
    warnings: list[str] = field(default_factory=list)
    reloaded: bool = False
    retryable: bool = False
    error: Exception | None = None
    payload: Any = None


class MemberService:
    def __init__(
        self,
        store: LocalFallbackStore,
        client_factory: Callable[[str], SheetClient] = SheetClient,
        clock: Callable[[], datetime] = utc_now,
        monitor: OverdueMonitor | None = None,
    ) -> None:
        self._store = store
        self._client_factory = client_factory
        self._clock = clock
        self._client: SheetClient | None = None
        self.monitor = monitor or OverdueMonitor()
        self.members: tuple[Member, ...] = ()
        self.notifications = NotificationLog()
        self.endpoint_url = ""
        self.offline_override = False

    # ------------------------------------------------------------------ #
    # State                                                                #
    # ------------------------------------------------------------------ #

    @property
    def endpoint_configured(self) -> bool:
        return bool(self.endpoint_url)

    @property
    def is_online(self) -> bool:
        return self.endpoint_configured and not self.offline_override

    def _remote(self) -> SheetClient:
        if self._client is None or self._client.endpoint_url != self.endpoint_url:
            self._client = self._client_factory(self.endpoint_url)
        return self._client

    def find(self, member_id: Any) -> Member:
        wanted = normalize_member_id(member_id)
        for member in self.members:
            if member.id == wanted:
                return member
        raise MemberNotFoundError(f"no member with id {wanted}")

    # ------------------------------------------------------------------ #
    # Persistence helpers                                                  #
    # ------------------------------------------------------------------ #

    def _commit(self, members: Iterable[Member], mirror_only: bool = False) -> list[str]:
        """Replace the collection, then write it to the local store.

        A failed local write leaves the in-memory collection in place.  For
        a mirror of freshly loaded remote data the failure is only logged;
        otherwise it is returned as a warning because the change now exists
        nowhere durable.
        """
        self.members = tuple(members)
        self.monitor.collection_loaded(self.members)
        try:
            self._store.save_members(self.members)
        except StorageQuotaError as exc:
            if mirror_only:
                log.warning("Local mirror write failed (%s); continuing.", exc)
                return []
            log.error("Local store write failed: %s", exc)
            return [f"Local save failed, changes are held in memory only: {exc}"]
        return []

    def _notify(self, type: str, message: str) -> None:
        self.notifications.add(type, message, now=self._clock())
        self._save_notifications()

    def _save_notifications(self) -> None:
        try:
            self._store.save_notifications(self.notifications)
        except StorageQuotaError as exc:
            log.warning("Could not persist notifications (%s)", exc)

    def _deny(self, actor: Actor, action: str) -> OperationResult:
        message = f"{actor.username} is not allowed to {action}"
        log.warning("%s", message)
        self._notify("error", message)
        return OperationResult(ok=False, message=message, error=PermissionDeniedError(message))

    def _fallback(
        self,
        members: Iterable[Member],
        exc: SyncError,
        subject: str,
        payload: Any = None,
    ) -> OperationResult:
        """Commit locally after a failed remote write and record the warning."""
        message = f"Backend unavailable, {subject} saved locally only: {exc.message}"
        self._notify("warning", message)
        warnings = [message, *self._commit(members)]
        return OperationResult(
            ok=True,
            message=message,
            warnings=warnings,
            retryable=True,
            error=exc,
            payload=payload,
        )

    def _replaced(self, updated: Member) -> list[Member]:
        return [updated if m.id == updated.id else m for m in self.members]

    # ------------------------------------------------------------------ #
    # Loading                                                              #
    # ------------------------------------------------------------------ #

    def startup(self) -> OperationResult:
        """Load local state, then refresh from the backend when online."""
        self.endpoint_url = self._store.load_endpoint_url()
        self.offline_override = self._store.load_offline_override()
        self.notifications = NotificationLog(self._store.load_notifications())
        self.members = tuple(self._store.load_members())
        self.monitor.collection_loaded(self.members)
        log.info(
            "Loaded %d members from local store (online=%s)", len(self.members), self.is_online
        )
        if self.is_online:
            return self.reload()
        return OperationResult(ok=True, message=f"Loaded {len(self.members)} members from local store")

    def reload(
        self,
        keep_local_only: bool = True,
        written_ids: Iterable[str] = (),
    ) -> OperationResult:
        """READ_ALL and replace the collection.

        With ``keep_local_only`` records that exist only locally survive the
        reload as long as their id is not present remotely.  Without it the
        remote collection overwrites everything.  Local copies of
        ``written_ids`` that now exist remotely are superseded silently; any
        other local-only record that does not survive is named in the
        warnings.
        """
        if not self.is_online:
            return OperationResult(ok=False, message="Not connected to a backend")
        try:
            result = self._remote().read_all()
        except SyncError as exc:
            message = f"Could not load members from the backend: {exc.message}"
            return OperationResult(ok=False, message=message, retryable=True, error=exc)

        warnings = [
            f"Skipped unreadable row {row} in sheet {sheet} ({reason})"
            for sheet, row, reason in result.skipped
        ]
        remote_ids = {m.id for m in result.members}
        written = set(written_ids)
        kept, dropped = [], []
        for member in self.members:
            if member.is_remote or (member.id in written and member.id in remote_ids):
                continue
            if keep_local_only and member.id not in remote_ids:
                kept.append(member)
            else:
                dropped.append(member)
        if dropped:
            names = ", ".join(f"{m.id} {m.name}" for m in dropped)
            message = f"Discarded {len(dropped)} local-only records on reload: {names}"
            log.warning("%s", message)
            self._notify("warning", message)
            warnings.append(message)

        self._commit([*result.members, *kept], mirror_only=True)
        return OperationResult(
            ok=True,
            message=f"Loaded {len(result.members)} members from the backend",
            warnings=warnings,
            reloaded=True,
        )

    def _reload_after_write(
        self,
        message: str,
        payload: Any = None,
        written_ids: Iterable[str] = (),
    ) -> OperationResult:
        reloaded = self.reload(written_ids=written_ids)
        if not reloaded.ok:
            warning = f"{message}, but refreshing from the backend failed: {reloaded.message}"
            self._notify("warning", warning)
            return OperationResult(
                ok=True, message=message, warnings=[warning], retryable=True,
                error=reloaded.error, payload=payload,
            )
        self._notify("success", message)
        return OperationResult(
            ok=True, message=message, warnings=reloaded.warnings, reloaded=True, payload=payload,
        )

    # ------------------------------------------------------------------ #
    # Member mutations                                                     #
    # ------------------------------------------------------------------ #

    def add_member(
        self,
        actor: Actor,
        name: str,
        category: Category | str,
        registration_date: Any,
        issuer: str = "",
    ) -> OperationResult:
        try:
            clean_name, resolved, registered = _validate_details(name, category, registration_date)
        except RecordValidationError as exc:
            return OperationResult(ok=False, message=str(exc), error=exc)

        member = new_member(
            member_id=next_member_id(self.members),
            name=clean_name,
            category=resolved,
            registration_date=registered,
            issuer=issuer.strip(),
            auditor=actor.username,
        )
        subject = f'member "{member.name}" ({member.id})'

        if not self.is_online:
            warnings = self._commit([*self.members, member])
            self._notify("success", f"Added {subject} (local)")
            return OperationResult(ok=True, message=f"Added {subject}", warnings=warnings, payload=member)

        try:
            self._remote().add(member)
        except SyncError as exc:
            return self._fallback([*self.members, member], exc, subject, payload=member)

        result = self._reload_after_write(f"Added {subject}", payload=member)
        if not result.reloaded and all(m.id != member.id for m in self.members):
            # Written remotely but not yet visible; keep it until the next load.
            result.warnings += self._commit([*self.members, member])
        return result

    def update_documents(
        self,
        actor: Actor,
        member_id: Any,
        documents: Mapping[str, bool],
    ) -> OperationResult:
        try:
            member = self.find(member_id)
        except MemberNotFoundError as exc:
            return OperationResult(ok=False, message=str(exc), error=exc)

        # stale keys from a previous category stay editable
        known = {doc.name for doc in full_checklist(member.category)} | set(member.documents)
        unknown = sorted(name for name in documents if name not in known)
        if unknown:
            exc = RecordValidationError("unknown_document", ", ".join(unknown))
            return OperationResult(ok=False, message=str(exc), error=exc)

        updated = record_document_check(member, documents, actor.username, now=self._clock())
        if updated is member:
            return OperationResult(ok=True, message="No document changes", payload=member)
        subject = f'documents for "{member.name}" ({member.id})'
        return self._patch(updated, subject, f"Updated {subject}")

    def update_details(
        self,
        actor: Actor,
        member_id: Any,
        name: str,
        category: Category | str,
        registration_date: Any,
        issuer: str = "",
    ) -> OperationResult:
        """Edit name, date, issuer and category.

        A category change moves the record: documents restart all-false and
        history is cleared.  Online this is an ADD to the new sheet followed
        by a DELETE of the old row and a reload.
        """
        try:
            member = self.find(member_id)
            clean_name, resolved, registered = _validate_details(name, category, registration_date)
        except (MemberNotFoundError, RecordValidationError) as exc:
            return OperationResult(ok=False, message=str(exc), error=exc)

        details = dict(
            name=clean_name,
            registration_date=registered,
            issuer=issuer.strip(),
            auditor=actor.username,
        )
        subject = f'member "{clean_name}" ({member.id})'

        if resolved is member.category:
            return self._patch(replace(member, **details), subject, f"Updated {subject}")

        moved = replace(change_category(member, resolved, actor.username, reset=True), **details)
        if not self.is_online:
            warnings = self._commit(self._replaced(moved))
            self._notify("info", f"Moved {subject} to {partition_for(resolved)}")
            return OperationResult(ok=True, message=f"Moved {subject}", warnings=warnings, payload=moved)

        client = self._remote()
        try:
            client.add(moved)
            if member.is_remote:
                client.delete(member.partition_name, member.row_position)
        except SyncError as exc:
            return self._fallback(self._replaced(moved), exc, subject, payload=moved)
        return self._reload_after_write(
            f"Moved {subject} to {partition_for(resolved)}", payload=moved, written_ids=[moved.id]
        )

    def _patch(self, updated: Member, subject: str, message: str) -> OperationResult:
        """Same-sheet update: UPDATE the row when there is one, patch in memory."""
        if self.is_online and updated.is_remote:
            try:
                self._remote().update(updated)
            except SyncError as exc:
                return self._fallback(self._replaced(updated), exc, subject, payload=updated)
        warnings = self._commit(self._replaced(updated))
        if self.is_online and not updated.is_remote:
            warnings.append(f"{subject} is not on the backend yet; saved locally")
        self._notify("info", message)
        return OperationResult(ok=True, message=message, warnings=warnings, payload=updated)

    def delete_member(self, actor: Actor, member_id: Any) -> OperationResult:
        if not actor.is_admin:
            return self._deny(actor, "delete members")
        try:
            member = self.find(member_id)
        except MemberNotFoundError as exc:
            return OperationResult(ok=False, message=str(exc), error=exc)

        subject = f'member "{member.name}" ({member.id})'
        remaining = [m for m in self.members if m.id != member.id]
        if not (self.is_online and member.is_remote):
            warnings = self._commit(remaining)
            self._notify("success", f"Deleted {subject}")
            return OperationResult(ok=True, message=f"Deleted {subject}", warnings=warnings)

        try:
            self._remote().delete(member.partition_name, member.row_position)
        except SyncError as exc:
            return self._fallback(remaining, exc, f"deletion of {subject}")
        return self._reload_after_write(f"Deleted {subject}")

    def import_members(
        self,
        actor: Actor,
        batch: ParsedBatch,
        counters: ImportCounters | None = None,
    ) -> OperationResult:
        """Merge a parsed import batch into the collection."""
        if not actor.is_admin:
            return self._deny(actor, "import members")
        counters = counters or ImportCounters()
        plan = plan_import(self.members, batch.rows, actor.username)
        count_plan(plan, batch, counters)
        summary = (
            f"Import finished: {counters.rows_added} added, {counters.rows_updated} updated, "
            f"{counters.rows_rejected} rejected"
        )
        if not plan.has_changes:
            return OperationResult(ok=True, message=summary, warnings=list(counters.warnings), payload=counters)

        if not self.is_online:
            warnings = self._commit(plan.apply())
            self._notify("success", summary)
            return OperationResult(ok=True, message=summary, warnings=warnings, payload=counters)

        client = self._remote()
        remote_updates = [m for m in plan.updates if m.is_remote]
        to_append = [*plan.members_to_append, *(m for m in plan.updates if not m.is_remote)]
        try:
            for member in remote_updates:
                client.update(member)
                counters.remote_calls += 1
            if to_append:
                client.bulk_add(to_append)
                counters.remote_calls += len({partition_for(m.category) for m in to_append})
            for sheet_name, rows in plan.deletes_by_sheet().items():
                for row_index in rows:
                    client.delete(sheet_name, row_index)
                    counters.remote_calls += 1
        except SyncError as exc:
            counters.warnings.append(f"import stopped after {counters.remote_calls} backend calls")
            result = self._fallback(plan.apply(), exc, "the import", payload=counters)
            result.warnings += counters.warnings
            return result

        result = self._reload_after_write(
            summary, payload=counters, written_ids=[m.id for m in to_append]
        )
        result.warnings = [*counters.warnings, *result.warnings]
        return result

    # ------------------------------------------------------------------ #
    # Connection settings                                                  #
    # ------------------------------------------------------------------ #

    def configure_endpoint(self, actor: Actor, url: str) -> OperationResult:
        """Store a new endpoint URL and load from it, overwriting the collection."""
        if not actor.is_admin:
            return self._deny(actor, "change connection settings")
        url = (url or "").strip()
        warnings = []
        try:
            self._store.save_endpoint_url(url)
            self._store.save_offline_override(False)
        except StorageQuotaError as exc:
            warnings.append(f"Connection settings could not be saved: {exc}")
        self.endpoint_url = url
        self.offline_override = False
        self._client = None
        if not url:
            return OperationResult(ok=True, message="Backend endpoint cleared", warnings=warnings)
        result = self.reload(keep_local_only=False)
        result.warnings = [*warnings, *result.warnings]
        return result

    def check_connection(self, url: str | None = None) -> OperationResult:
        """Probe an endpoint with one READ_ALL without touching any state.

        Defaults to the configured endpoint; lets an operator try a URL
        before committing to it with configure_endpoint().
        """
        url = (url or self.endpoint_url).strip()
        if not url:
            return OperationResult(ok=False, message="No backend endpoint configured")
        if self._client_factory(url).check_connection():
            return OperationResult(ok=True, message=f"Backend reachable at {url}")
        return OperationResult(ok=False, message=f"Backend not reachable at {url}", retryable=True)

    def go_offline(self) -> OperationResult:
        return self._set_override(True)

    def go_online(self) -> OperationResult:
        """Clear the offline override and reload, keeping local-only records."""
        result = self._set_override(False)
        if not self.endpoint_configured:
            return OperationResult(ok=False, message="No backend endpoint configured", warnings=result.warnings)
        reloaded = self.reload()
        reloaded.warnings = [*result.warnings, *reloaded.warnings]
        return reloaded

    def _set_override(self, value: bool) -> OperationResult:
        self.offline_override = value
        warnings = []
        try:
            self._store.save_offline_override(value)
        except StorageQuotaError as exc:
            warnings.append(f"Offline setting could not be saved: {exc}")
        state = "offline" if value else "online"
        return OperationResult(ok=True, message=f"Switched to {state} mode", warnings=warnings)

    def push_pending(self, actor: Actor) -> OperationResult:
        """Write local-only records that the backend does not have, then reload.

        Records kept locally after a failed write (or created offline) are
        never sent automatically; an operator runs this pass.
        """
        if not actor.is_admin:
            return self._deny(actor, "push local records")
        if not self.is_online:
            return OperationResult(ok=False, message="Not connected to a backend")
        client = self._remote()
        try:
            remote_ids = {m.id for m in client.read_all().members}
            pending = [m for m in self.members if not m.is_remote and m.id not in remote_ids]
            if pending:
                client.bulk_add(pending)
        except SyncError as exc:
            message = f"Could not push local records: {exc.message}"
            return OperationResult(ok=False, message=message, retryable=True, error=exc)
        if not pending:
            return OperationResult(ok=True, message="No local-only records to push")
        return self._reload_after_write(
            f"Pushed {len(pending)} local records to the backend",
            payload=pending,
            written_ids=[m.id for m in pending],
        )

    # ------------------------------------------------------------------ #
    # Local data management                                                #
    # ------------------------------------------------------------------ #

    def clear_all(self, actor: Actor) -> OperationResult:
        if not actor.is_admin:
            return self._deny(actor, "clear local data")
        self.members = ()
        self.monitor.collection_loaded(self.members)
        warnings = []
        try:
            self._store.clear_members()
        except StorageQuotaError as exc:
            warnings.append(f"Local store could not be cleared: {exc}")
        self._notify("warning", "All local member data cleared")
        return OperationResult(ok=True, message="All local member data cleared", warnings=warnings)

    def export_backup(self, actor: Actor, path: Path | None = None) -> OperationResult:
        if not actor.is_admin:
            return self._deny(actor, "export backups")
        records = [m.to_dict() for m in self.members]
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(records, indent=2, ensure_ascii=False), encoding="utf-8")
        self._notify("info", f"Backup of {len(records)} members created")
        return OperationResult(ok=True, message=f"Backed up {len(records)} members", payload=records)

    def restore_backup(self, actor: Actor, records: Any) -> OperationResult:
        """Replace the collection with backup records, all as local-only."""
        if not actor.is_admin:
            return self._deny(actor, "restore backups")
        if not isinstance(records, list):
            return OperationResult(ok=False, message="Backup must be a list of member records")
        members = []
        for index, record in enumerate(records, start=1):
            try:
                members.append(Member.from_dict(record).as_local())
            except (RecordValidationError, KeyError, TypeError, ValueError, AttributeError) as exc:
                message = f"Backup record {index} is invalid ({exc}); nothing restored"
                return OperationResult(ok=False, message=message, error=exc)
        warnings = self._commit(members)
        self._notify("success", f"Restored {len(members)} members from backup")
        return OperationResult(ok=True, message=f"Restored {len(members)} members", warnings=warnings)

    # ------------------------------------------------------------------ #
    # Notifications and overdue checks                                     #
    # ------------------------------------------------------------------ #

    def mark_read(self, ids: Iterable[str]) -> int:
        marked = self.notifications.mark_read(ids)
        self._save_notifications()
        return marked

    def delete_notification(self, note_id: str) -> bool:
        deleted = self.notifications.delete(note_id)
        self._save_notifications()
        return deleted

    def clear_notifications(self) -> None:
        self.notifications.clear()
        self._save_notifications()

    def check_overdue(self, now: datetime | None = None):
        note = check_overdue(self.members, self.notifications, now or self._clock())
        if note is not None:
            self._save_notifications()
        return note

    def poll_overdue(self, now: datetime | None = None, force: bool = False):
        """Run the debounced scan if due; ``force`` skips the wait."""
        if force:
            note = self.monitor.flush(self.notifications, now or self._clock())
        else:
            note = self.monitor.poll(self.notifications, now or self._clock())
        if note is not None:
            self._save_notifications()
        return note


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

def _validate_details(
    name: str,
    category: Category | str,
    registration_date: Any,
) -> tuple[str, Category, datetime]:
    clean_name = normalize_space(name)
    if clean_name is None:
        raise RecordValidationError("missing_name")
    resolved = resolve_category(category)
    if resolved is None:
        raise RecordValidationError("unrecognized_category", str(category))
    registered = parse_registration_date(registration_date)
    if registered is None:
        raise RecordValidationError("unparseable_date", str(registration_date))
    return clean_name, resolved, registered
