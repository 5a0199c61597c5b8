"""
Conversion between a RosterSchedule and flat shift records.

Only working shifts are stored. A roster employee with no record on a day
is off that day.
"""

import logging
from dataclasses import dataclass
from datetime import date, time, timedelta
from typing import Dict, Iterable, List, Optional

import pandas as pd

from rota_engine import (
    DailySchedule, Employee, RosterSchedule, RotaInputError, ShiftType,
)

logger = logging.getLogger(__name__)

SHIFT_TIMES = {
    ShiftType.MORNING: (time(7, 30), time(15, 30)),
    ShiftType.AFTERNOON: (time(15, 30), time(22, 30)),
    ShiftType.NIGHT: (time(22, 30), time(7, 30)),  # ends next morning
}

GENERATED_NOTE = 'Generated Rota'
IMPORTED_NOTE = 'Imported via Excel'


def _parse_date(value):
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        raise RotaInputError(f"Invalid date: {value!r}")


def parse_time(value):
    if isinstance(value, time):
        return value
    try:
        return time.fromisoformat(str(value))
    except ValueError:
        raise RotaInputError(f"Invalid time: {value!r}")


@dataclass(frozen=True)
class ShiftRecord:
    """One employee's working shift on one day, as stored."""
    employee_id: str
    date: date
    start_time: time
    end_time: time
    shift_type: ShiftType
    branch: str
    notes: str = ''
    employee_name: Optional[str] = None
    employee_role: Optional[str] = None

    @property
    def key(self):
        return (self.employee_id, self.date, self.start_time)

    @property
    def ends_next_day(self):
        return self.end_time <= self.start_time

    def to_dict(self):
        return {
            'user_id': self.employee_id,
            'user_name': self.employee_name,
            'user_role': self.employee_role,
            'date': self.date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M:%S'),
            'end_time': self.end_time.strftime('%H:%M:%S'),
            'shift_type': self.shift_type.value,
            'branch': self.branch,
            'notes': self.notes,
        }

    @classmethod
    def from_dict(cls, data, default_branch=None):
        """Accepts the API row shape (``user_id``) or ``employee_id``."""
        try:
            employee_id = data.get('user_id', data.get('employee_id'))
            shift_type = ShiftType.from_label(data['shift_type'])
            start_time = data.get('start_time')
            end_time = data.get('end_time')
            if shift_type in SHIFT_TIMES and (start_time is None or end_time is None):
                start_time, end_time = SHIFT_TIMES[shift_type]
            record_date = data['date']
        except (KeyError, AttributeError, TypeError):
            raise RotaInputError(f"Invalid shift record: {data!r}")

        if employee_id is None:
            raise RotaInputError(f"Shift record missing user_id: {data!r}")
        branch = data.get('branch') or default_branch
        if not branch:
            raise RotaInputError(f"Shift record missing branch: {data!r}")

        return cls(
            employee_id=str(employee_id),
            date=_parse_date(record_date),
            start_time=parse_time(start_time),
            end_time=parse_time(end_time),
            shift_type=shift_type,
            branch=branch,
            notes=data.get('notes') or '',
            employee_name=data.get('user_name'),
            employee_role=data.get('user_role'),
        )


def to_records(schedule: RosterSchedule, branch, notes=GENERATED_NOTE) -> List[ShiftRecord]:
    records = []
    for day in schedule.days:
        for shift, members in day.assignments.items():
            if shift == ShiftType.OFF:
                continue
            start_time, end_time = SHIFT_TIMES[shift]
            for emp in members:
                records.append(ShiftRecord(
                    employee_id=emp.id,
                    date=day.date,
                    start_time=start_time,
                    end_time=end_time,
                    shift_type=shift,
                    branch=branch,
                    notes=notes,
                    employee_name=emp.name,
                    employee_role=emp.role,
                ))
    return records


def from_records(records: Iterable[ShiftRecord], employees: Iterable[Employee],
                 start_date, end_date) -> RosterSchedule:
    """
    Rebuild a schedule for ``start_date..end_date`` from stored records.

    Roster employees without a record on a day are placed off. Records for
    staff missing from the roster (e.g. deactivated accounts) are kept, using
    the name and role stored alongside the record.
    """
    start_date = _parse_date(start_date)
    end_date = _parse_date(end_date)
    if end_date < start_date:
        raise RotaInputError(f"end_date {end_date} is before start_date {start_date}")

    registry = {}
    for emp in employees:
        registry[emp.id] = emp
    roster_ids = list(registry)

    by_date: Dict[date, Dict[str, ShiftType]] = {}
    ordered = sorted(records, key=lambda r: (r.date, r.start_time, r.employee_id))
    for record in ordered:
        if not start_date <= record.date <= end_date:
            logger.debug(f"Ignoring record outside {start_date}..{end_date}: {record.key}")
            continue
        if record.shift_type == ShiftType.OFF:
            continue

        day_shifts = by_date.setdefault(record.date, {})
        if record.employee_id in day_shifts:
            logger.warning(
                f"Employee {record.employee_id} has more than one shift on {record.date}; "
                f"keeping {day_shifts[record.employee_id].value}, dropping {record.shift_type.value}"
            )
            continue
        day_shifts[record.employee_id] = record.shift_type

        if record.employee_id not in registry:
            logger.warning(
                f"Shift on {record.date} references employee {record.employee_id} "
                f"outside the current roster"
            )
            registry[record.employee_id] = Employee(
                id=record.employee_id,
                name=record.employee_name or 'Unknown',
                role=record.employee_role or 'Staff',
            )

    days = []
    current = start_date
    while current <= end_date:
        day_records = by_date.get(current, {})
        shifts = {emp_id: day_records.get(emp_id, ShiftType.OFF) for emp_id in roster_ids}
        for emp_id, shift in day_records.items():
            if emp_id not in shifts:
                shifts[emp_id] = shift
        day = DailySchedule(date=current, shifts=shifts, employees=registry)
        day.refresh_warnings()
        days.append(day)
        current += timedelta(days=1)

    return RosterSchedule(employees=registry, days=days)


def rota_dataframe(schedule: RosterSchedule, employees: Optional[Iterable[Employee]] = None) -> pd.DataFrame:
    """One row per date, one column per employee name, cells are shift labels."""
    if employees is None:
        employees = list(schedule.employees.values())
    else:
        employees = list(employees)

    rows = [
        [day.shift_for(emp.id).value for emp in employees]
        for day in schedule.days
    ]
    frame = pd.DataFrame(
        rows,
        index=pd.Index([day.date.isoformat() for day in schedule.days], name='Date'),
        columns=[emp.name for emp in employees],
    )
    return frame


def export_csv(schedule: RosterSchedule, employees: Optional[Iterable[Employee]] = None) -> str:
    return rota_dataframe(schedule, employees).to_csv(lineterminator='\n')
