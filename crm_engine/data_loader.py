"""CRM Follow-up Engine - XLSX Data Loader.

Parses the console's migration / export workbook and returns typed
``Account``, ``Owner``, ``FollowUpTask`` and ``DeviceBatch`` records.
This is the boundary where raw strings become enum members and blank
cells become ``None``; nothing past this module sees raw cell values.

Supported data sources
~~~~~~~~~~~~~~~~~~~~~~
* **File path** -- local ``.xlsx`` file.
* **Bytes buffer** -- ``io.BytesIO`` (uploads, HTTP downloads).

Sheet layout:

+-----------------+-----------------------------------------------------+
| Sheet           | Purpose                                             |
+=================+=====================================================+
| ``Accounts``    | One row per subscription (required)                 |
| ``Owners``      | Team members who can own accounts                   |
| ``Tasks``       | Existing follow-up tasks                            |
| ``Devices``     | One row per received unit (batch columns repeated)  |
+-----------------+-----------------------------------------------------+

Columns are located by header text, so column order does not matter.
Rows that cannot be coerced are skipped with a warning instead of
aborting the load.

Usage::

    from crm_engine.data_loader import load_workbook

    result = load_workbook("data/crm_export.xlsx")
    print(f"Accounts: {len(result.accounts)}")
    result.print_summary()
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import IO, Optional, Union

import openpyxl
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from .models import (
    Account,
    CrmStatus,
    DeviceBatch,
    FollowUpTask,
    Owner,
    Priority,
    TaskStatus,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ACCOUNTS_SHEET = "Accounts"
OWNERS_SHEET = "Owners"
TASKS_SHEET = "Tasks"
DEVICES_SHEET = "Devices"

# Column header aliases -- matched case-insensitively against row 1.
_ACCOUNT_HEADERS: dict[str, list[str]] = {
    "account_id":     ["Account ID", "Subscription ID", "ID"],
    "name":           ["Account Name", "Name", "Customer"],
    "crm_status":     ["CRM Status", "Status"],
    "priority":       ["Priority", "CRM Priority"],
    "frequency":      [
        "Follow-up Frequency (Months)",
        "Follow Up Frequency Months",
        "Frequency Months",
    ],
    "times_per_year": ["Follow-ups Per Year", "Follow Ups Per Year", "Times Per Year"],
    "last_contact":   ["Last Contact Date", "Last Contact"],
    "next_follow_up": ["Next Follow-up Date", "Next Follow Up Date", "Next Follow-up"],
    "owner_id":       ["Account Owner", "Owner ID", "Owner"],
    "tags":           ["Tags"],
}

_OWNER_HEADERS: dict[str, list[str]] = {
    "owner_id":   ["Owner ID", "User ID", "ID"],
    "first_name": ["First Name"],
    "last_name":  ["Last Name"],
    "email":      ["Email", "Email Address"],
    "active":     ["Active", "Is Active"],
}

_TASK_HEADERS: dict[str, list[str]] = {
    "task_id":     ["Task ID", "Follow-up ID", "ID"],
    "account_id":  ["Account ID", "Subscription ID"],
    "title":       ["Title", "Subject"],
    "due_date":    ["Due Date", "Scheduled Date"],
    "assigned_to": ["Assigned To", "Assignee", "Owner ID"],
    "status":      ["Status"],
    "priority":    ["Priority"],
    "created_at":  ["Created At", "Created"],
}

_DEVICE_HEADERS: dict[str, list[str]] = {
    "batch_id":     ["Batch ID"],
    "batch_number": ["Batch Number", "Batch No"],
    "product_id":   ["Product", "Product ID"],
    "quantity":     ["Quantity Received", "Quantity"],
    "unit_tracked": ["Unit Tracked", "IMEI Tracked", "Tracked"],
    "imei":         ["IMEI", "IMEIs", "Identifier"],
}

# Cell values that should be treated as null / unknown.
_NULL_SIGNALS: set[str | None] = {"", "#N/A", "N/A", "None", "#REF!", None}

_LIST_SPLIT = re.compile(r"[,;\s]+")


# ---------------------------------------------------------------------------
# Result container
# ---------------------------------------------------------------------------

@dataclass
class LoadResult:
    """Aggregated output from :func:`load_workbook`."""

    accounts: list[Account] = field(default_factory=list)
    owners: list[Owner] = field(default_factory=list)
    tasks: list[FollowUpTask] = field(default_factory=list)
    # (batch, submitted identifiers) -- identifiers are raw, not reconciled
    batches: list[tuple[DeviceBatch, list[str]]] = field(default_factory=list)

    # Metadata
    source_file: str | None = None
    total_rows_scanned: int = 0
    rows_skipped: int = 0
    warnings: list[str] = field(default_factory=list)

    @property
    def unassigned_accounts(self) -> list[Account]:
        return [a for a in self.accounts if not a.is_assigned]

    @property
    def active_owners(self) -> list[Owner]:
        return [o for o in self.owners if o.active]

    def get_account(self, account_id: str) -> Account | None:
        for account in self.accounts:
            if account.account_id == account_id:
                return account
        return None

    def print_summary(self) -> None:
        """Print a human-readable summary of what was loaded."""
        status_counts: dict[str, int] = {}
        priority_counts: dict[str, int] = {}
        for a in self.accounts:
            status_counts[a.crm_status.value] = status_counts.get(a.crm_status.value, 0) + 1
            priority_counts[a.priority.value] = priority_counts.get(a.priority.value, 0) + 1

        print("=" * 65)
        print("  CRM Follow-up Engine -- Data Load Summary")
        print("=" * 65)
        print(f"  Source file       : {self.source_file or '(bytes buffer)'}")
        print(f"  Rows scanned      : {self.total_rows_scanned}")
        print(f"  Rows skipped      : {self.rows_skipped}")
        print("-" * 65)
        print(f"  Accounts          : {len(self.accounts)}")
        print(f"  Unassigned        : {len(self.unassigned_accounts)}")
        print(f"  Owners (active)   : {len(self.owners)} ({len(self.active_owners)})")
        print(f"  Follow-up tasks   : {len(self.tasks)}")
        print(f"  Device batches    : {len(self.batches)}")
        print("-" * 65)
        print("  CRM status:")
        for status in CrmStatus:
            count = status_counts.get(status.value, 0)
            if count:
                print(f"    {status.value:<22s}: {count}")
        print("  Priority:")
        for priority in Priority:
            count = priority_counts.get(priority.value, 0)
            if count:
                print(f"    {priority.value:<22s}: {count}")
        if self.warnings:
            print("-" * 65)
            print(f"  Warnings ({len(self.warnings)}):")
            for w in self.warnings[:20]:
                print(f"    - {w}")
            if len(self.warnings) > 20:
                print(f"    ... and {len(self.warnings) - 20} more")
        print("=" * 65)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def load_workbook(source: Union[str, Path, IO[bytes]]) -> LoadResult:
    """Load accounts, owners, tasks and device batches from a workbook.

    Parameters
    ----------
    source:
        File path (``str`` or ``Path``) or a readable bytes buffer
        (``io.BytesIO``).

    Returns
    -------
    LoadResult
        Container with parsed records, warnings, and a
        ``print_summary()`` helper.

    Raises
    ------
    FileNotFoundError
        The path does not exist.
    ValueError
        The ``Accounts`` sheet or one of its required columns is missing.
    """
    result = LoadResult()

    wb = _open_workbook(source)
    if isinstance(source, (str, Path)):
        result.source_file = str(source)

    try:
        if ACCOUNTS_SHEET not in wb.sheetnames:
            raise ValueError(
                f"Sheet '{ACCOUNTS_SHEET}' not found.  Available: {wb.sheetnames}"
            )

        parsers = (
            (ACCOUNTS_SHEET, _parse_accounts, "accounts"),
            (OWNERS_SHEET, _parse_owners, "owners"),
            (TASKS_SHEET, _parse_tasks, "tasks"),
            (DEVICES_SHEET, _parse_devices, "batches"),
        )
        for sheet_name, parser, attr in parsers:
            if sheet_name not in wb.sheetnames:
                result.warnings.append(f"Sheet '{sheet_name}' not found -- no {attr} loaded")
                continue
            records, meta = parser(wb[sheet_name])
            setattr(result, attr, records)
            result.total_rows_scanned += meta["rows_scanned"]
            result.rows_skipped += meta["rows_skipped"]
            result.warnings.extend(meta["warnings"])
    finally:
        wb.close()

    logger.info(
        "Loaded %d accounts, %d owners, %d tasks, %d batches (%d warnings)",
        len(result.accounts), len(result.owners), len(result.tasks),
        len(result.batches), len(result.warnings),
    )
    return result


# ---------------------------------------------------------------------------
# Workbook opening
# ---------------------------------------------------------------------------

def _open_workbook(source: Union[str, Path, IO[bytes]]) -> Workbook:
    """Open an openpyxl Workbook from a file path or bytes buffer."""
    if isinstance(source, (str, Path)):
        path = Path(source)
        if not path.exists():
            raise FileNotFoundError(f"XLSX file not found: {path}")
        logger.info("Opening XLSX file: %s", path)
        return openpyxl.load_workbook(path, data_only=True)

    logger.info("Opening XLSX from bytes buffer")
    return openpyxl.load_workbook(source, data_only=True)


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

def _require_columns(ws: Worksheet, header_map: dict[str, int], required: tuple[str, ...]) -> None:
    missing = [key for key in required if key not in header_map]
    if missing:
        raise ValueError(
            f"Required columns not found in '{ws.title}' sheet: {missing}.  "
            f"Header row: {[cell.value for cell in ws[1]]}"
        )


def _meta(rows_scanned: int, rows_skipped: int, warnings: list[str]) -> dict:
    return {"rows_scanned": rows_scanned, "rows_skipped": rows_skipped, "warnings": warnings}


def _parse_accounts(ws: Worksheet) -> tuple[list[Account], dict]:
    warnings: list[str] = []
    accounts: list[Account] = []
    header_map = _build_header_map(ws, _ACCOUNT_HEADERS)
    _require_columns(ws, header_map, ("account_id",))

    rows_scanned = skipped = 0
    seen: set[str] = set()
    for row in ws.iter_rows(min_row=2):
        rows_scanned += 1
        where = f"{ws.title} row {row[0].row}"

        account_id = _clean_id(_cell_value(row, header_map, "account_id"))
        if not account_id:
            skipped += 1
            continue
        if account_id in seen:
            warnings.append(f"{where}: duplicate account {account_id} -- skipping")
            skipped += 1
            continue

        try:
            crm_status = _parse_enum(CrmStatus, _cell_value(row, header_map, "crm_status"),
                                     CrmStatus.ACTIVE)
            priority = _parse_enum(Priority, _cell_value(row, header_map, "priority"),
                                   Priority.NORMAL)
        except ValueError as exc:
            warnings.append(f"{where}: {exc} -- skipping")
            skipped += 1
            continue

        tags_raw = _clean_str(_cell_value(row, header_map, "tags"))
        accounts.append(Account(
            account_id=account_id,
            name=_clean_str(_cell_value(row, header_map, "name")),
            crm_status=crm_status,
            priority=priority,
            follow_up_frequency_months=_parse_optional_int(
                _cell_value(row, header_map, "frequency"), f"{where} frequency", warnings,
            ),
            follow_up_times_per_year=_parse_optional_int(
                _cell_value(row, header_map, "times_per_year"), f"{where} times per year", warnings,
            ),
            last_contact_date=_parse_datetime(
                _cell_value(row, header_map, "last_contact"), f"{where} Last Contact", warnings,
            ),
            next_follow_up_date=_parse_datetime(
                _cell_value(row, header_map, "next_follow_up"), f"{where} Next Follow-up", warnings,
            ),
            account_owner_id=_clean_id(_cell_value(row, header_map, "owner_id")) or None,
            tags=[t.strip() for t in tags_raw.split(",") if t.strip()] if tags_raw else [],
        ))
        seen.add(account_id)

    logger.info("Parsed %d accounts from %d rows", len(accounts), rows_scanned)
    return accounts, _meta(rows_scanned, skipped, warnings)


def _parse_owners(ws: Worksheet) -> tuple[list[Owner], dict]:
    warnings: list[str] = []
    owners: list[Owner] = []
    header_map = _build_header_map(ws, _OWNER_HEADERS)
    _require_columns(ws, header_map, ("owner_id",))

    rows_scanned = skipped = 0
    for row in ws.iter_rows(min_row=2):
        rows_scanned += 1
        owner_id = _clean_id(_cell_value(row, header_map, "owner_id"))
        if not owner_id:
            skipped += 1
            continue
        active_raw = _cell_value(row, header_map, "active")
        owners.append(Owner(
            owner_id=owner_id,
            first_name=_clean_str(_cell_value(row, header_map, "first_name")),
            last_name=_clean_str(_cell_value(row, header_map, "last_name")),
            email=_clean_str(_cell_value(row, header_map, "email")),
            active=True if _clean_str_or_none(active_raw) is None else _parse_bool(active_raw),
        ))

    logger.info("Parsed %d owners from %d rows", len(owners), rows_scanned)
    return owners, _meta(rows_scanned, skipped, warnings)


def _parse_tasks(ws: Worksheet) -> tuple[list[FollowUpTask], dict]:
    warnings: list[str] = []
    tasks: list[FollowUpTask] = []
    header_map = _build_header_map(ws, _TASK_HEADERS)
    _require_columns(ws, header_map, ("task_id", "account_id", "due_date", "assigned_to"))

    rows_scanned = skipped = 0
    for row in ws.iter_rows(min_row=2):
        rows_scanned += 1
        where = f"{ws.title} row {row[0].row}"

        task_id = _clean_id(_cell_value(row, header_map, "task_id"))
        if not task_id:
            skipped += 1
            continue

        account_id = _clean_id(_cell_value(row, header_map, "account_id"))
        assigned_to = _clean_id(_cell_value(row, header_map, "assigned_to"))
        due_date = _parse_datetime(_cell_value(row, header_map, "due_date"),
                                   f"{where} Due Date", warnings)
        if not account_id or not assigned_to or due_date is None:
            warnings.append(f"{where}: task {task_id} missing account, assignee or due date -- skipping")
            skipped += 1
            continue

        try:
            status = _parse_enum(TaskStatus, _cell_value(row, header_map, "status"),
                                 TaskStatus.PENDING)
            priority = _parse_enum(Priority, _cell_value(row, header_map, "priority"),
                                   Priority.NORMAL)
        except ValueError as exc:
            warnings.append(f"{where}: {exc} -- skipping")
            skipped += 1
            continue

        tasks.append(FollowUpTask(
            task_id=task_id,
            account_id=account_id,
            title=_clean_str(_cell_value(row, header_map, "title")) or f"Follow-up: {account_id}",
            due_date=due_date,
            assigned_to=assigned_to,
            status=status,
            priority=priority,
            created_at=_parse_datetime(_cell_value(row, header_map, "created_at"),
                                       f"{where} Created At", warnings),
        ))

    logger.info("Parsed %d tasks from %d rows", len(tasks), rows_scanned)
    return tasks, _meta(rows_scanned, skipped, warnings)


def _parse_devices(ws: Worksheet) -> tuple[list[tuple[DeviceBatch, list[str]]], dict]:
    """Group unit rows by batch id.

    Batch-level columns are taken from the first row of each batch.  An
    IMEI cell may hold several identifiers separated by commas, spaces or
    newlines (pasted lists).
    """
    warnings: list[str] = []
    header_map = _build_header_map(ws, _DEVICE_HEADERS)
    _require_columns(ws, header_map, ("batch_id", "quantity"))

    batches: dict[str, tuple[DeviceBatch, list[str]]] = {}
    rows_scanned = skipped = 0
    for row in ws.iter_rows(min_row=2):
        rows_scanned += 1
        where = f"{ws.title} row {row[0].row}"

        batch_id = _clean_id(_cell_value(row, header_map, "batch_id"))
        if not batch_id:
            skipped += 1
            continue

        if batch_id not in batches:
            quantity = _parse_optional_int(_cell_value(row, header_map, "quantity"),
                                           f"{where} Quantity", warnings)
            if quantity is None:
                warnings.append(f"{where}: batch {batch_id} has no quantity -- skipping")
                skipped += 1
                continue
            tracked_raw = _cell_value(row, header_map, "unit_tracked")
            batches[batch_id] = (
                DeviceBatch(
                    batch_id=batch_id,
                    quantity_received=quantity,
                    batch_number=_clean_str(_cell_value(row, header_map, "batch_number")),
                    product_id=_clean_str(_cell_value(row, header_map, "product_id")),
                    unit_tracked=True if _clean_str_or_none(tracked_raw) is None else _parse_bool(tracked_raw),
                ),
                [],
            )

        batches[batch_id][1].extend(_split_identifiers(_cell_value(row, header_map, "imei")))

    logger.info("Parsed %d device batches from %d rows", len(batches), rows_scanned)
    return list(batches.values()), _meta(rows_scanned, skipped, warnings)


# ---------------------------------------------------------------------------
# Header mapping
# ---------------------------------------------------------------------------

def _build_header_map(
    ws: Worksheet,
    header_spec: dict[str, list[str]],
) -> dict[str, int]:
    """Map logical field names to 0-based column indices.

    Reads row 1 of the worksheet and matches each header cell against
    the known aliases in *header_spec*.  Aliases are tried in order, so
    a more specific alias listed first wins over a generic one.
    """
    header_map: dict[str, int] = {}

    row1_values: list[str | None] = []
    for cell in ws[1]:
        val = cell.value
        row1_values.append(str(val).strip().lower() if val is not None else None)

    for logical_name, aliases in header_spec.items():
        for alias in aliases:
            if alias.lower() in row1_values:
                header_map[logical_name] = row1_values.index(alias.lower())
                break

    logger.debug("Header map for %s (%d/%d): %s",
                 ws.title, len(header_map), len(header_spec), list(header_map))
    return header_map


def _cell_value(row, header_map: dict[str, int], field_name: str):
    """Safely read a cell value by logical field name."""
    idx = header_map.get(field_name)
    if idx is None or idx >= len(row):
        return None
    return row[idx].value


# ---------------------------------------------------------------------------
# Data cleaning / type coercion helpers
# ---------------------------------------------------------------------------

def _clean_str(val) -> str:
    """Convert a cell value to a stripped string.  None becomes ``""``."""
    if val is None:
        return ""
    s = str(val).strip()
    return "" if s in _NULL_SIGNALS else s


def _clean_str_or_none(val) -> str | None:
    """Convert a cell value to a stripped string, returning None for nullish."""
    s = _clean_str(val)
    return s or None


def _clean_id(val) -> str:
    """Identifiers typed as numbers come back as floats (``1001.0``)."""
    if isinstance(val, float) and val.is_integer():
        return str(int(val))
    return _clean_str(val)


def _parse_bool(val) -> bool:
    """Parse a boolean cell value.

    Handles ``True``, ``False``, ``"TRUE"``, ``"yes"``, ``1``, ``0``.
    """
    if val is None:
        return False
    if isinstance(val, bool):
        return val
    s = str(val).strip().lower()
    return s in ("true", "1", "yes", "y")


def _parse_optional_int(val, context: str, warnings: list[str]) -> Optional[int]:
    """Parse an integer cell; blank is None, junk is None plus a warning.

    Whole floats (Excel stores 3 as 3.0) are accepted; fractional values
    like 2.7 are rejected rather than truncated.
    """
    if _clean_str_or_none(val) is None:
        return None
    try:
        number = float(val)
    except (ValueError, TypeError):
        warnings.append(f"{context}: could not parse integer '{val}'")
        return None
    if not number.is_integer():
        warnings.append(f"{context}: '{val}' is not a whole number")
        return None
    return int(number)


def _parse_enum(enum_cls, val, default):
    """Blank cells take *default*; unknown text raises ValueError."""
    raw = _clean_str_or_none(val)
    if raw is None:
        return default
    return enum_cls.parse(raw)


def _parse_datetime(val, context: str, warnings: list[str]) -> datetime | None:
    """Parse a date / datetime cell value.

    openpyxl returns ``datetime`` objects for date-typed cells.  Also
    handles Excel serial date numbers and common string formats.
    """
    if _clean_str_or_none(val) is None:
        return None

    if isinstance(val, datetime):
        return val
    if isinstance(val, date):
        return datetime(val.year, val.month, val.day)

    if isinstance(val, (int, float)):
        serial = int(val)
        if 40000 < serial < 60000:
            return datetime(1899, 12, 30) + timedelta(days=serial)

    s = str(val).strip()
    try:
        return datetime.fromisoformat(s)
    except ValueError:
        pass
    for fmt in ("%m/%d/%Y", "%m-%d-%Y", "%b %d, %Y", "%B %d, %Y"):
        try:
            return datetime.strptime(s, fmt)
        except ValueError:
            continue

    warnings.append(f"{context}: could not parse date '{val}'")
    return None


def _split_identifiers(val) -> list[str]:
    """Split an IMEI cell into raw identifier tokens."""
    if isinstance(val, (int, float)) and not isinstance(val, bool):
        return [str(int(val))]
    raw = _clean_str(val)
    if not raw:
        return []
    return [token for token in _LIST_SPLIT.split(raw) if token]
