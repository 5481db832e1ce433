"""member_docs.shared

Shared utilities used by the sync client, the reconciliation engine and the
CLI.  Includes the error taxonomy, RejectWriter, ImportCounters and
report-writing support.
"""

from __future__ import annotations

import csv
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class SyncError(Exception):
    """A remote backend call failed.  Carries the raw backend/transport message."""

    def __init__(self, message: str, raw: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.raw = raw if raw is not None else message


class ConnectivityError(SyncError):
    """Network unreachable, non-2xx response, or a malformed response body."""


class BackendLogicError(SyncError):
    """The backend answered {status: "error", message} (e.g. lock timeout)."""


class RecordValidationError(ValueError):
    """A member record or import row failed validation."""

    def __init__(self, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {detail}" if detail else reason)
        self.reason = reason
        self.detail = detail


class PermissionDeniedError(Exception):
    """The acting user lacks the Admin capability for the operation."""


class StorageQuotaError(Exception):
    """A write to the local fallback store failed (capacity, permissions, disk)."""


class MemberNotFoundError(LookupError):
    """No member with the given id is in the current collection."""


# ---------------------------------------------------------------------------
# RejectWriter
# ---------------------------------------------------------------------------

class RejectWriter:
    """Lazy-open CSV writer for rejected import rows."""

    FIELDNAMES = ["row_number", "member_id", "reason", "value", "message"]

    def __init__(self, path: Path) -> None:
        self._path = path
        self._fh = None
        self._writer = None
        self.count = 0

    def write(self, reject: Any) -> None:
        if self._fh is None:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._fh = open(self._path, "w", newline="", encoding="utf-8")
            self._writer = csv.DictWriter(
                self._fh, fieldnames=self.FIELDNAMES, extrasaction="ignore"
            )
            self._writer.writeheader()
        self._writer.writerow({
            "row_number": reject.row_number,
            "member_id": reject.member_id or "",
            "reason": reject.reason,
            "value": "" if reject.value is None else str(reject.value),
            "message": reject.message,
        })
        self._fh.flush()
        self.count += 1

    def close(self) -> None:
        if self._fh:
            self._fh.close()


# ---------------------------------------------------------------------------
# ImportCounters
# ---------------------------------------------------------------------------

@dataclass
class ImportCounters:
    rows_scanned: int = 0
    rows_added: int = 0
    rows_updated: int = 0
    rows_moved: int = 0
    rows_rejected: int = 0
    remote_calls: int = 0
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "rows_scanned": self.rows_scanned,
            "rows_added": self.rows_added,
            "rows_updated": self.rows_updated,
            "rows_moved": self.rows_moved,
            "rows_rejected": self.rows_rejected,
            "remote_calls": self.remote_calls,
            "warnings": self.warnings[:50],
        }


# ---------------------------------------------------------------------------
# Report writer
# ---------------------------------------------------------------------------

def write_run_report(
    run_id: str,
    started_at: str,
    mode: str,
    online: bool,
    source_paths: dict[str, str | None],
    counters: ImportCounters,
    report_dir: Path = Path("./artifacts/reports"),
) -> Path:
    report = {
        "run_id": run_id,
        "mode": mode,
        "started_at": started_at,
        "finished_at": datetime.now(timezone.utc).isoformat(),
        "online": online,
        **source_paths,
        "counters": counters.to_dict(),
    }
    report_path = report_dir / f"{run_id}.json"
    report_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.write_text(
        json.dumps(report, indent=2, default=str, ensure_ascii=False),
        encoding="utf-8",
    )
    return report_path
