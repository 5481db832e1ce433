"""Member document register CLI.

Usage:
    member-docs --mode status
    member-docs --mode configure --actor alice --role Admin --endpoint-url https://...
    member-docs --mode add --actor bob --name "Somchai Dee" --category Current \\
        --registration-date 15/07/2567
    member-docs --mode check_documents --actor bob --member-id 7 \\
        --set-document "สำเนาบัตรประชาชนผู้สมัคร"
    member-docs --mode import --actor alice --role Admin --import-path members.xlsx
    pbpaste | member-docs --mode import --actor alice --role Admin --import-path -
    member-docs --mode check_connection --endpoint-url https://...

State (member snapshot, notifications, endpoint URL, offline flag) lives in
--state-dir, one JSON file per key.
"""

from __future__ import annotations

import json
import logging
import sys
import uuid
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path

import click

from member_docs.checklists import Category, category_label, default_config, full_checklist
from member_docs.controller import Actor, MemberService, OperationResult
from member_docs.models import is_compliant
from member_docs.reconcile import (
    build_import_report,
    parse_import_rows,
    read_csv_rows,
    read_import_file,
)
from member_docs.remote import SheetClient
from member_docs.shared import ImportCounters, MemberNotFoundError, RejectWriter, write_run_report
from member_docs.store import JsonFileStore, LocalFallbackStore

MODES = [
    "load", "status", "add", "check_documents", "edit", "delete", "import",
    "configure", "check_connection", "offline", "online", "overdue", "notifications",
    "backup", "restore", "clear", "push_pending",
]
ACTOR_MODES = {
    "add", "check_documents", "edit", "delete", "import", "configure",
    "backup", "restore", "clear", "push_pending",
}


@click.command()
@click.option("--mode", default="status", type=click.Choice(MODES), show_default=True, help="Operation to run")
@click.option(
    "--state-dir",
    default="./.member_docs",
    envvar="MEMBER_DOCS_STATE_DIR",
    type=click.Path(file_okay=False),
    show_default=True,
    help="Directory holding the local fallback store",
)
@click.option("--actor", default=None, help="Acting username recorded in audit logs")
@click.option("--role", default="User", type=click.Choice(["User", "Admin"]), show_default=True)
# member fields
@click.option("--member-id", default=None, help="[check_documents|edit|delete] Member id")
@click.option("--name", default=None, help="[add|edit] Member name")
@click.option("--category", default=None, help="[add|edit] Category (Current, External, Retired, Associate or a Thai label)")
@click.option("--registration-date", default=None, help="[add|edit] DD/MM/YYYY (BE or CE) or YYYY-MM-DD")
@click.option("--issuer", default=None, help="[add|edit] Who issued the documents")
@click.option("--set-document", multiple=True, help="[check_documents] Mark a document as received")
@click.option("--clear-document", multiple=True, help="[check_documents] Mark a document as missing")
# import
@click.option(
    "--import-path",
    default=None,
    type=click.Path(exists=True, dir_okay=False, allow_dash=True),
    help="[import] .csv or .xlsx file, or - to read pasted CSV from stdin",
)
@click.option("--no-header", is_flag=True, default=False, help="[import] First row is data, not a header")
@click.option(
    "--rejects-path",
    default="./artifacts/rejects/member_import_rejects.csv",
    type=click.Path(),
    show_default=True,
    help="[import] CSV of rejected rows",
)
@click.option("--run-id", default=None, help="Override UUID for log correlation")
# settings, backups, notifications
@click.option("--endpoint-url", default=None, help="[configure|check_connection] Backend endpoint URL (empty string clears it)")
@click.option("--timeout", default=30, type=int, show_default=True, help="Backend request timeout in seconds")
@click.option("--backup-path", default=None, type=click.Path(dir_okay=False), help="[backup|restore] JSON backup file")
@click.option("--mark-all-read", is_flag=True, default=False, help="[notifications] Mark every notification read")
@click.option("--delete-notification", default=None, help="[notifications] Delete one notification by id")
@click.option("--clear-notifications", is_flag=True, default=False, help="[notifications] Delete all notifications")
@click.option(
    "--log-level",
    default="WARNING",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"]),
    show_default=True,
)
def main(
    mode: str,
    state_dir: str,
    actor: str | None,
    role: str,
    member_id: str | None,
    name: str | None,
    category: str | None,
    registration_date: str | None,
    issuer: str | None,
    set_document: tuple[str, ...],
    clear_document: tuple[str, ...],
    import_path: str | None,
    no_header: bool,
    rejects_path: str,
    run_id: str | None,
    endpoint_url: str | None,
    timeout: int,
    backup_path: str | None,
    mark_all_read: bool,
    delete_notification: str | None,
    clear_notifications: bool,
    log_level: str,
) -> None:
    """Member document register: sync, import and compliance checks."""
    logging.basicConfig(level=log_level, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    run_id = run_id or str(uuid.uuid4())
    started_at = datetime.now(timezone.utc).isoformat()

    if mode in ACTOR_MODES and not actor:
        click.echo(f"[{run_id}] FATAL: {mode} mode requires: --actor", err=True)
        sys.exit(1)
    user = Actor(actor or "anonymous", role)

    store = LocalFallbackStore(JsonFileStore(Path(state_dir)))
    service = MemberService(store, client_factory=lambda url: SheetClient(url, timeout=timeout))
    loaded = service.startup()
    if mode in ("load", "status") or not loaded.ok:
        _echo_result(run_id, loaded, exit_on_failure=mode == "load")

    if mode == "status":
        _print_status(service)
    elif mode == "add":
        _validate_add_flags(name, category, registration_date, run_id)
        _echo_result(run_id, service.add_member(user, name, category, registration_date, issuer or ""))
    elif mode == "check_documents":
        _validate_check_documents_flags(member_id, set_document, clear_document, run_id)
        flags = {doc: True for doc in set_document}
        flags.update({doc: False for doc in clear_document})
        _echo_result(run_id, service.update_documents(user, member_id, flags))
    elif mode == "edit":
        _validate_member_id_flag(member_id, mode, run_id)
        try:
            current = service.find(member_id)
        except MemberNotFoundError as exc:
            click.echo(f"[{run_id}] FATAL: {exc}", err=True)
            sys.exit(1)
        _echo_result(run_id, service.update_details(
            user,
            member_id,
            name=name if name is not None else current.name,
            category=category if category is not None else current.category,
            registration_date=registration_date if registration_date is not None else current.registration_date,
            issuer=issuer if issuer is not None else current.issuer,
        ))
    elif mode == "delete":
        _validate_member_id_flag(member_id, mode, run_id)
        _echo_result(run_id, service.delete_member(user, member_id))
    elif mode == "import":
        _validate_import_flags(import_path, run_id)
        _run_import(run_id, started_at, service, user, import_path, not no_header, Path(rejects_path))
    elif mode == "configure":
        if endpoint_url is None:
            click.echo(f"[{run_id}] FATAL: configure mode requires: --endpoint-url", err=True)
            sys.exit(1)
        _echo_result(run_id, service.configure_endpoint(user, endpoint_url))
    elif mode == "check_connection":
        _echo_result(run_id, service.check_connection(endpoint_url))
    elif mode == "offline":
        _echo_result(run_id, service.go_offline())
    elif mode == "online":
        _echo_result(run_id, service.go_online())
    elif mode == "overdue":
        note = service.check_overdue()
        click.echo(note.message if note else "No new overdue warning")
    elif mode == "notifications":
        _run_notifications(service, mark_all_read, delete_notification, clear_notifications)
    elif mode == "backup":
        _validate_backup_flags(backup_path, mode, run_id)
        _echo_result(run_id, service.export_backup(user, Path(backup_path)))
    elif mode == "restore":
        _validate_backup_flags(backup_path, mode, run_id)
        try:
            records = json.loads(Path(backup_path).read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            click.echo(f"[{run_id}] FATAL: cannot read backup {backup_path}: {exc}", err=True)
            sys.exit(1)
        _echo_result(run_id, service.restore_backup(user, records))
    elif mode == "clear":
        _echo_result(run_id, service.clear_all(user))
    elif mode == "push_pending":
        _echo_result(run_id, service.push_pending(user))

    # A one-shot process never outlives the debounce window.
    service.poll_overdue(force=True)


# ---------------------------------------------------------------------------
# Mode helpers
# ---------------------------------------------------------------------------

def _run_import(
    run_id: str,
    started_at: str,
    service: MemberService,
    user: Actor,
    import_path: str,
    has_header: bool,
    rejects_path: Path,
) -> None:
    try:
        if import_path == "-":
            raw_rows = read_csv_rows(click.get_text_stream("stdin").read())
        else:
            raw_rows = read_import_file(Path(import_path))
    except (OSError, ValueError) as exc:
        click.echo(f"[{run_id}] FATAL: cannot read {import_path}: {exc}", err=True)
        sys.exit(1)
    batch = parse_import_rows(raw_rows, has_header=has_header)
    rejects = RejectWriter(rejects_path)
    try:
        for reject in batch.rejects:
            rejects.write(reject)
    finally:
        rejects.close()

    counters = ImportCounters()
    result = service.import_members(user, batch, counters)
    click.echo(build_import_report(counters, online=service.is_online))
    if rejects.count:
        click.echo(f"[{run_id}] Rejected rows written to {rejects_path}")
    report_path = write_run_report(
        run_id, started_at, "import", service.is_online,
        {
            "import_path": "<stdin>" if import_path == "-" else import_path,
            "rejects_path": str(rejects_path) if rejects.count else None,
            "checklist_hash": default_config().yaml_hash,
        },
        counters,
    )
    click.echo(f"[{run_id}] Run report: {report_path}")
    _echo_result(run_id, result)


def _run_notifications(
    service: MemberService,
    mark_all_read: bool,
    delete_notification: str | None,
    clear_notifications: bool,
) -> None:
    if clear_notifications:
        service.clear_notifications()
    if delete_notification and not service.delete_notification(delete_notification):
        click.echo(f"No notification with id {delete_notification}", err=True)
    if mark_all_read:
        service.mark_read([n.id for n in service.notifications])
    for note in service.notifications:
        marker = " " if note.is_read else "*"
        click.echo(f"{marker} {note.timestamp:%Y-%m-%d %H:%M} [{note.type}] {note.message} ({note.id})")
    click.echo(f"{service.notifications.unread_count} unread of {len(service.notifications)}")


def _print_status(service: MemberService) -> None:
    state = "online" if service.is_online else "offline"
    click.echo(f"mode           : {state} (endpoint configured: {service.endpoint_configured})")
    click.echo(f"members        : {len(service.members)}")
    per_category = Counter(m.category for m in service.members)
    for cat in Category:
        members = [m for m in service.members if m.category is cat]
        complete = sum(1 for m in members if is_compliant(m))
        click.echo(
            f"  {category_label(cat)} ({cat.value}): {per_category[cat]} members, "
            f"{complete} complete, {len(full_checklist(cat))} documents tracked"
        )
    local_only = sum(1 for m in service.members if not m.is_remote)
    click.echo(f"local-only     : {local_only}")
    click.echo(f"notifications  : {service.notifications.unread_count} unread")


def _echo_result(run_id: str, result: OperationResult, exit_on_failure: bool = True) -> None:
    stream_err = not result.ok
    click.echo(f"[{run_id}] {result.message}", err=stream_err)
    for warning in result.warnings:
        click.echo(f"[{run_id}] WARNING: {warning}", err=True)
    if not result.ok and result.retryable:
        click.echo(f"[{run_id}] The operation can be retried.", err=True)
    if not result.ok and exit_on_failure:
        sys.exit(1)


# ---------------------------------------------------------------------------
# Flag validation
# ---------------------------------------------------------------------------

def _validate_add_flags(
    name: str | None,
    category: str | None,
    registration_date: str | None,
    run_id: str,
) -> None:
    missing = [
        flag for flag, value in (
            ("--name", name),
            ("--category", category),
            ("--registration-date", registration_date),
        )
        if not value
    ]
    if missing:
        click.echo(f"[{run_id}] FATAL: add mode requires: {', '.join(missing)}", err=True)
        sys.exit(1)


def _validate_member_id_flag(member_id: str | None, mode: str, run_id: str) -> None:
    if not member_id:
        click.echo(f"[{run_id}] FATAL: {mode} mode requires: --member-id", err=True)
        sys.exit(1)


def _validate_check_documents_flags(
    member_id: str | None,
    set_document: tuple[str, ...],
    clear_document: tuple[str, ...],
    run_id: str,
) -> None:
    _validate_member_id_flag(member_id, "check_documents", run_id)
    if not set_document and not clear_document:
        click.echo(
            f"[{run_id}] FATAL: check_documents mode requires at least one "
            "--set-document or --clear-document",
            err=True,
        )
        sys.exit(1)
    both = set(set_document) & set(clear_document)
    if both:
        click.echo(
            f"[{run_id}] FATAL: documents both set and cleared: {sorted(both)}",
            err=True,
        )
        sys.exit(1)


def _validate_import_flags(import_path: str | None, run_id: str) -> None:
    if not import_path:
        click.echo(f"[{run_id}] FATAL: import mode requires: --import-path", err=True)
        sys.exit(1)


def _validate_backup_flags(backup_path: str | None, mode: str, run_id: str) -> None:
    if not backup_path:
        click.echo(f"[{run_id}] FATAL: {mode} mode requires: --backup-path", err=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
