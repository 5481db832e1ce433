"""member_docs.reconcile

Reconciliation Engine: bulk member import and category changes.

Import rows are positional (id, name, category label, registration date,
issuer) and come from CSV text, a .csv file or the first sheet of an .xlsx
workbook.  Parsing never aborts a batch: every bad row becomes an
ImportReject and the valid subset can still be imported.

Merge rules, by member id:
  - id not in the collection         -> add with a fresh all-false checklist
  - same id, same category           -> overwrite name, date and issuer;
                                        documents and history untouched
  - same id, different category      -> move: fresh checklist, empty history,
                                        remote handle dropped

Online execution order (see MemberService.import_members):
  1. UPDATE each same-category row at its current position
  2. BULK_ADD new and moved members, one call per destination sheet
  3. DELETE the moved members' old rows, highest position first per sheet
  4. full reload
Positions stay valid through step 3 because appends land below existing
rows and deletes run bottom-up.
"""

from __future__ import annotations

import csv
import io
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Sequence

from openpyxl import load_workbook

from member_docs.checklists import Category, resolve_category
from member_docs.models import Member, fresh_documents, new_member
from member_docs.normalize import (
    cell_text,
    normalize_member_id,
    normalize_space,
    parse_registration_date,
)
from member_docs.shared import ImportCounters

log = logging.getLogger(__name__)

IMPORT_COLUMNS = ("id", "name", "category", "registration_date", "issuer")

_REJECT_MESSAGES = {
    "missing_id": "member id is missing",
    "duplicate_id_in_batch": "member id appears earlier in this file; row skipped",
    "missing_name": "member name is missing",
    "unrecognized_category": "unrecognized member category",
    "unparseable_date": "registration date is not a valid DD/MM/YYYY or YYYY-MM-DD date",
}


# ---------------------------------------------------------------------------
# Row parsing
# ---------------------------------------------------------------------------

@dataclass
class ImportRow:
    row_number: int
    id: str
    name: str
    category: Category
    registration_date: datetime
    issuer: str = ""


@dataclass
class ImportReject:
    row_number: int
    reason: str
    member_id: str | None = None
    value: Any = None

    @property
    def message(self) -> str:
        text = f"row {self.row_number}: {_REJECT_MESSAGES.get(self.reason, self.reason)}"
        if self.value not in (None, ""):
            text += f" ({self.value!s})"
        if self.member_id:
            text += f" [id {self.member_id}]"
        return text


@dataclass
class ParsedBatch:
    rows: list[ImportRow] = field(default_factory=list)
    rejects: list[ImportReject] = field(default_factory=list)
    scanned: int = 0


def parse_import_rows(rows: Iterable[Sequence[Any]], has_header: bool = True) -> ParsedBatch:
    """Validate raw positional rows into ImportRows plus per-row rejects.

    Row numbers are 1-based file rows, header included.  Rows with neither
    an id nor a name are treated as blank and not counted as scanned.
    Within the batch the first occurrence of an id wins.
    """
    batch = ParsedBatch()
    seen: set[str] = set()
    for row_number, raw in enumerate(rows, start=1):
        if has_header and row_number == 1:
            continue
        cells = list(raw or []) + [None] * len(IMPORT_COLUMNS)
        raw_id, raw_name, raw_category, raw_date, raw_issuer = cells[: len(IMPORT_COLUMNS)]
        if cell_text(raw_id) is None and cell_text(raw_name) is None:
            continue
        batch.scanned += 1

        member_id = normalize_member_id(raw_id)
        if member_id is None:
            batch.rejects.append(ImportReject(row_number, "missing_id"))
            continue
        if member_id in seen:
            batch.rejects.append(ImportReject(row_number, "duplicate_id_in_batch", member_id))
            continue
        seen.add(member_id)

        name = normalize_space(cell_text(raw_name))
        if name is None:
            batch.rejects.append(ImportReject(row_number, "missing_name", member_id))
            continue

        category = resolve_category(cell_text(raw_category))
        if category is None:
            batch.rejects.append(
                ImportReject(row_number, "unrecognized_category", member_id, cell_text(raw_category))
            )
            continue

        registration = parse_registration_date(raw_date)
        if registration is None:
            batch.rejects.append(
                ImportReject(row_number, "unparseable_date", member_id, cell_text(raw_date))
            )
            continue

        batch.rows.append(ImportRow(
            row_number=row_number,
            id=member_id,
            name=name,
            category=category,
            registration_date=registration,
            issuer=cell_text(raw_issuer) or "",
        ))
    return batch


def read_csv_rows(text: str) -> list[list[str]]:
    return [row for row in csv.reader(io.StringIO(text))]


def read_import_file(path: Path) -> list[list[Any]]:
    """Raw rows from a .csv file or the active sheet of an .xlsx workbook."""
    suffix = path.suffix.lower()
    if suffix == ".csv":
        with path.open(encoding="utf-8-sig", newline="") as fh:
            return [row for row in csv.reader(fh)]
    if suffix in (".xlsx", ".xlsm"):
        workbook = load_workbook(path, read_only=True, data_only=True)
        try:
            sheet = workbook.active
            return [list(row) for row in sheet.iter_rows(values_only=True)]
        finally:
            workbook.close()
    raise ValueError(f"unsupported import file type: {path.suffix or path.name}")


# ---------------------------------------------------------------------------
# Category change
# ---------------------------------------------------------------------------

def change_category(
    member: Member,
    new_category: Category,
    actor: str,
    reset: bool = True,
) -> Member:
    """Re-type a member.

    The result is always local-only (the old row sits in another sheet).
    With ``reset`` the checklist restarts all-false for the new category and
    history is cleared; without it documents and history are carried over
    unchanged.  Nothing in between.
    """
    if new_category is member.category:
        return member
    moved = replace(member, category=new_category, auditor=actor).as_local()
    if reset:
        moved = replace(moved, documents=fresh_documents(new_category), history=[])
    return moved


# ---------------------------------------------------------------------------
# Planning
# ---------------------------------------------------------------------------

@dataclass
class CategoryMove:
    previous: Member
    replacement: Member


@dataclass
class ImportPlan:
    existing: tuple[Member, ...]
    to_add: list[Member] = field(default_factory=list)
    updates: list[Member] = field(default_factory=list)
    moves: list[CategoryMove] = field(default_factory=list)

    @property
    def has_changes(self) -> bool:
        return bool(self.to_add or self.updates or self.moves)

    @property
    def members_to_append(self) -> list[Member]:
        """Rows that need a BULK_ADD: new members then moved members."""
        return [*self.to_add, *(m.replacement for m in self.moves)]

    def deletes_by_sheet(self) -> dict[str, list[int]]:
        """Old rows of moved remote members, highest position first per sheet."""
        grouped: dict[str, list[int]] = {}
        for move in self.moves:
            if move.previous.is_remote:
                grouped.setdefault(move.previous.partition_name, []).append(
                    move.previous.row_position
                )
        return {sheet: sorted(rows, reverse=True) for sheet, rows in grouped.items()}

    def apply(self) -> tuple[Member, ...]:
        """The collection after the import, replacing records in place."""
        replacements = {m.id: m for m in self.updates}
        replacements.update({mv.replacement.id: mv.replacement for mv in self.moves})
        merged = [replacements.get(m.id, m) for m in self.existing]
        return tuple([*merged, *self.to_add])


def plan_import(
    existing: Iterable[Member],
    incoming: Iterable[ImportRow],
    actor: str,
) -> ImportPlan:
    """Decide add / update / move for every incoming row."""
    plan = ImportPlan(existing=tuple(existing))
    by_id = {m.id: m for m in plan.existing}
    for row in incoming:
        current = by_id.get(row.id)
        if current is None:
            plan.to_add.append(new_member(
                member_id=row.id,
                name=row.name,
                category=row.category,
                registration_date=row.registration_date,
                issuer=row.issuer,
                auditor=actor,
            ))
            continue

        details = dict(
            name=row.name,
            registration_date=row.registration_date,
            issuer=row.issuer,
            auditor=actor,
        )
        if current.category is row.category:
            plan.updates.append(replace(current, **details))
        else:
            moved = change_category(current, row.category, actor, reset=True)
            plan.moves.append(CategoryMove(previous=current, replacement=replace(moved, **details)))
    log.info(
        "Import plan: %d to add, %d to update, %d category moves",
        len(plan.to_add), len(plan.updates), len(plan.moves),
    )
    return plan


def count_plan(plan: ImportPlan, batch: ParsedBatch, counters: ImportCounters) -> None:
    counters.rows_scanned += batch.scanned
    counters.rows_rejected += len(batch.rejects)
    counters.rows_added += len(plan.to_add)
    counters.rows_updated += len(plan.updates) + len(plan.moves)
    counters.rows_moved += len(plan.moves)
    counters.warnings.extend(r.message for r in batch.rejects)


# ---------------------------------------------------------------------------
# Report
# ---------------------------------------------------------------------------

def build_import_report(counters: ImportCounters, online: bool) -> str:
    lines = [
        "=== Member Import Report ===",
        f"online         : {online}",
        "",
        "--- Rows ---",
        f"rows_scanned   : {counters.rows_scanned}",
        f"rows_added     : {counters.rows_added}",
        f"rows_updated   : {counters.rows_updated}",
        f"  of which moved: {counters.rows_moved}",
        f"rows_rejected  : {counters.rows_rejected}",
        "",
        f"remote_calls   : {counters.remote_calls}",
    ]
    if counters.warnings:
        lines += ["", "--- Warnings (first 10) ---"]
        lines += [f"  {w}" for w in counters.warnings[:10]]
    return "\n".join(lines)
