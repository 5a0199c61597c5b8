"""
Spreadsheet / CSV rota import.

Expected layout: the first row is ``Date, <staff name>, <staff name>, ...``;
each following row holds a date and one shift code per staff column. Only
AM, PM and NT create shifts; anything else (OFF, blank) means off.
"""

import io
import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Dict, List, Tuple

import pandas as pd

from database import Employee, db
from rota_engine import ShiftType
from rota_records import IMPORTED_NOTE, SHIFT_TIMES, ShiftRecord

logger = logging.getLogger(__name__)

IMPORTABLE_SHIFTS = {shift.value: shift for shift in SHIFT_TIMES}


class RotaImportError(Exception):
    """The uploaded file could not be turned into a rota."""


@dataclass
class ParsedRota:
    staff_names: List[str]
    entries: List[Tuple[str, date, ShiftType]] = field(default_factory=list)
    dates: List[date] = field(default_factory=list)
    rows_processed: int = 0

    @property
    def start_date(self):
        return min(self.dates) if self.dates else None

    @property
    def end_date(self):
        return max(self.dates) if self.dates else None


@dataclass
class ImportResult:
    parsed: ParsedRota
    records: List[ShiftRecord]
    new_employees: List[Employee]

    def to_dict(self):
        return {
            'rows_processed': self.parsed.rows_processed,
            'start_date': self.parsed.start_date.isoformat() if self.parsed.start_date else None,
            'end_date': self.parsed.end_date.isoformat() if self.parsed.end_date else None,
            'new_users': len(self.new_employees),
            'shifts_created': len(self.records),
        }


def _clean(value):
    if value is None or pd.isna(value):
        return ''
    return str(value).strip()


def read_sheet(data: bytes, filename: str = '') -> pd.DataFrame:
    """Load the first sheet of an upload without treating any row as a header."""
    try:
        if filename.lower().endswith('.csv'):
            return pd.read_csv(io.BytesIO(data), header=None, dtype=str)
        return pd.read_excel(io.BytesIO(data), header=None, sheet_name=0)
    except pd.errors.EmptyDataError:
        raise RotaImportError('File is empty or invalid format (headers + at least one row required)')
    except Exception as e:
        logger.error(f"Failed to parse rota upload {filename!r}: {str(e)}")
        raise RotaImportError('Failed to parse file. Please ensure it is a valid Excel or CSV file.') from e


def parse_rota_sheet(data: bytes, filename: str = '') -> ParsedRota:
    frame = read_sheet(data, filename)
    if len(frame.index) < 2 or len(frame.columns) < 2:
        raise RotaImportError('File is empty or invalid format (headers + at least one row required)')

    header = [_clean(value) for value in frame.iloc[0].tolist()]
    staff_names = header[1:]
    parsed = ParsedRota(staff_names=[name for name in staff_names if name])

    for row in frame.iloc[1:].itertuples(index=False):
        cells = list(row)
        raw_date = cells[0]
        if _clean(raw_date) == '':
            continue
        stamp = pd.to_datetime(raw_date, errors='coerce')
        if pd.isna(stamp):
            logger.debug(f"Skipping row with unreadable date {raw_date!r}")
            continue

        row_date = stamp.date()
        parsed.rows_processed += 1
        if row_date not in parsed.dates:
            parsed.dates.append(row_date)

        for name, cell in zip(staff_names, cells[1:]):
            code = _clean(cell).upper()
            if name and code in IMPORTABLE_SHIFTS:
                parsed.entries.append((name, row_date, IMPORTABLE_SHIFTS[code]))

    return parsed


def _unique_username(name):
    base = re.sub(r'\s+', '', name.lower()) or 'staff'
    username = base
    suffix = 1
    while Employee.query.filter_by(username=username).first() is not None:
        suffix += 1
        username = f"{base}_{suffix}"
    return username


def resolve_staff(names, branch) -> Tuple[Dict[str, Employee], List[Employee]]:
    """Match names case-insensitively, creating accounts for anyone missing."""
    staff = {}
    created = []
    for name in names:
        if name in staff:
            continue
        employee = Employee.query.filter(db.func.lower(Employee.name) == name.lower()).first()
        if employee is None:
            employee = Employee(name=name, username=_unique_username(name), role='staff', branch=branch)
            db.session.add(employee)
            db.session.flush()
            created.append(employee)
            logger.info(f"Auto-created user: {name} ({employee.username})")
        staff[name] = employee
    return staff, created


def build_records(parsed: ParsedRota, staff: Dict[str, Employee], branch) -> List[ShiftRecord]:
    records = []
    seen = set()
    for name, row_date, shift in parsed.entries:
        employee = staff[name]
        if (employee.id, row_date) in seen:
            logger.warning(f"Ignoring second shift for {name} on {row_date}")
            continue
        seen.add((employee.id, row_date))
        start_time, end_time = SHIFT_TIMES[shift]
        records.append(ShiftRecord(
            employee_id=str(employee.id),
            date=row_date,
            start_time=start_time,
            end_time=end_time,
            shift_type=shift,
            branch=branch,
            notes=IMPORTED_NOTE,
            employee_name=employee.name,
            employee_role=employee.role,
        ))
    return records


def import_rota(data: bytes, filename: str, branch: str, store) -> ImportResult:
    """
    Parse an upload, create missing staff, and replace the imported date span.

    New staff accounts are committed before the shifts are saved so the
    reconstructed rota can resolve them.
    """
    parsed = parse_rota_sheet(data, filename)

    try:
        staff, created = resolve_staff(parsed.staff_names, branch)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    records = build_records(parsed, staff, branch)
    if records:
        store.overwrite_range(parsed.start_date, parsed.end_date, branch, records, confirm=True)

    logger.info(
        f"Imported {len(records)} shifts over {parsed.rows_processed} days "
        f"({len(created)} new staff) into {branch}"
    )
    return ImportResult(parsed=parsed, records=records, new_employees=created)
