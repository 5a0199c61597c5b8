"""
Rota generation engine.

Turns an ordered list of staff into a day-by-day shift table using two fixed
7-day rotations, then derives coverage and fairness statistics from it.
Manual edits cycle a single (day, employee) cell.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Dict, Iterable, List, Optional, Sequence

logger = logging.getLogger(__name__)


class ShiftType(str, Enum):
    MORNING = 'AM'
    AFTERNOON = 'PM'
    NIGHT = 'NT'
    OFF = 'OFF'

    @classmethod
    def from_label(cls, label):
        try:
            return cls(str(label).strip().upper())
        except ValueError:
            raise RotaInputError(f"Unknown shift type: {label!r}")


# Bucket display order
SHIFT_ORDER = [ShiftType.MORNING, ShiftType.AFTERNOON, ShiftType.NIGHT, ShiftType.OFF]
WORKING_SHIFTS = [ShiftType.MORNING, ShiftType.AFTERNOON, ShiftType.NIGHT]

CYCLE_LENGTH = 7

# 5 on / 2 off, one night per cycle
NIGHT_CYCLE = [
    ShiftType.MORNING, ShiftType.MORNING,
    ShiftType.AFTERNOON, ShiftType.AFTERNOON,
    ShiftType.NIGHT,
    ShiftType.OFF, ShiftType.OFF,
]

# 5 on / 2 off, never nights
DAY_CYCLE = [
    ShiftType.MORNING, ShiftType.MORNING, ShiftType.MORNING,
    ShiftType.AFTERNOON, ShiftType.AFTERNOON,
    ShiftType.OFF, ShiftType.OFF,
]

DEFAULT_NIGHT_CREW_SIZE = 7
DAY_CREW_SPACING = 3

REQUIRED_NIGHT_STAFF = 1
MAX_MORNING_STAFF = 3
MAX_AFTERNOON_STAFF = 3
MAX_TOTAL_SPREAD = 2

# Manual edit cycle, independent of the generation patterns
NEXT_MANUAL_SHIFT = {
    ShiftType.OFF: ShiftType.MORNING,
    ShiftType.MORNING: ShiftType.AFTERNOON,
    ShiftType.AFTERNOON: ShiftType.NIGHT,
    ShiftType.NIGHT: ShiftType.OFF,
}


class RotaInputError(ValueError):
    """Invalid arguments passed to the rota engine."""


class UnknownEmployeeError(RotaInputError):
    def __init__(self, employee_id):
        super().__init__(f"Unknown employee: {employee_id}")
        self.employee_id = employee_id


@dataclass
class Employee:
    id: str
    name: str
    role: str = 'Staff'
    avatar: Optional[str] = None
    branch: Optional[str] = None

    def __post_init__(self):
        self.id = str(self.id)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'role': self.role,
            'avatar': self.avatar,
            'branch': self.branch,
        }

    @classmethod
    def from_dict(cls, data):
        try:
            return cls(
                id=data['id'],
                name=data.get('name') or 'Unknown',
                role=data.get('role') or 'Staff',
                avatar=data.get('avatar'),
                branch=data.get('branch'),
            )
        except (KeyError, TypeError, AttributeError):
            raise RotaInputError(f"Invalid employee entry: {data!r}")


def coverage_warnings(counts):
    """Advisory warnings for one day's shift counts."""
    warnings = []
    night = counts.get(ShiftType.NIGHT, 0)
    if night != REQUIRED_NIGHT_STAFF:
        warnings.append(f"Strict NT Violation: {night} Staff")
    if counts.get(ShiftType.MORNING, 0) > MAX_MORNING_STAFF:
        warnings.append(f"AM Overstaffed (>{MAX_MORNING_STAFF})")
    if counts.get(ShiftType.AFTERNOON, 0) > MAX_AFTERNOON_STAFF:
        warnings.append(f"PM Overstaffed (>{MAX_AFTERNOON_STAFF})")
    return warnings


@dataclass
class DailySchedule:
    """
    One calendar day of the rota.

    ``shifts`` maps employee id to that employee's shift and is the source of
    truth; ``assignments`` is the bucket view derived from it.
    """
    date: date
    shifts: Dict[str, ShiftType]
    employees: Dict[str, Employee] = field(default_factory=dict, repr=False, compare=False)
    warnings: List[str] = field(default_factory=list)

    def shift_for(self, employee_id):
        return self.shifts.get(str(employee_id), ShiftType.OFF)

    @property
    def assignments(self) -> Dict[ShiftType, List[Employee]]:
        buckets = {shift: [] for shift in SHIFT_ORDER}
        for employee_id, shift in self.shifts.items():
            buckets[shift].append(self.employees[employee_id])
        return buckets

    def counts(self) -> Dict[ShiftType, int]:
        counts = {shift: 0 for shift in SHIFT_ORDER}
        for shift in self.shifts.values():
            counts[shift] += 1
        return counts

    def refresh_warnings(self):
        self.warnings = coverage_warnings(self.counts())
        return self.warnings

    def to_dict(self):
        return {
            'date': self.date.isoformat(),
            'assignments': {
                shift.value: [emp.id for emp in members]
                for shift, members in self.assignments.items()
            },
            'warnings': list(self.warnings),
        }


@dataclass
class RosterSchedule:
    """A contiguous run of DailySchedule plus the staff it was built for."""
    employees: Dict[str, Employee]
    days: List[DailySchedule]

    def __len__(self):
        return len(self.days)

    def __iter__(self):
        return iter(self.days)

    def __getitem__(self, index):
        return self.days[index]

    @property
    def start_date(self):
        return self.days[0].date if self.days else None

    @property
    def end_date(self):
        return self.days[-1].date if self.days else None

    @property
    def warning_count(self):
        return sum(len(day.warnings) for day in self.days)

    def to_dict(self):
        return {
            'start_date': self.start_date.isoformat() if self.days else None,
            'end_date': self.end_date.isoformat() if self.days else None,
            'employees': [emp.to_dict() for emp in self.employees.values()],
            'days': [day.to_dict() for day in self.days],
        }

    @classmethod
    def from_dict(cls, data):
        """Rebuild a schedule posted back by a client, checking its invariants."""
        if not isinstance(data, dict):
            raise RotaInputError("Schedule must be a JSON object")

        employees = {}
        for entry in data.get('employees') or []:
            emp = Employee.from_dict(entry)
            employees[emp.id] = emp

        parsed = []
        days = []
        previous = None
        for raw_day in data.get('days') or []:
            try:
                day_date = date.fromisoformat(raw_day['date'])
                buckets = raw_day.get('assignments') or {}
            except (KeyError, TypeError, ValueError, AttributeError):
                raise RotaInputError(f"Invalid day entry: {raw_day!r}")

            if previous is not None and day_date != previous + timedelta(days=1):
                raise RotaInputError(f"Schedule dates are not contiguous at {day_date.isoformat()}")
            previous = day_date

            shifts = {}
            for label, members in buckets.items():
                shift = ShiftType.from_label(label)
                for member in members:
                    if isinstance(member, dict):
                        emp = Employee.from_dict(member)
                        employees.setdefault(emp.id, emp)
                        employee_id = emp.id
                    else:
                        employee_id = str(member)
                    if employee_id not in employees:
                        raise UnknownEmployeeError(employee_id)
                    if employee_id in shifts:
                        raise RotaInputError(
                            f"Employee {employee_id} appears twice on {day_date.isoformat()}"
                        )
                    shifts[employee_id] = shift

            parsed.append((day_date, shifts, list(raw_day.get('warnings') or [])))

        # Anyone left out of a day's buckets is off; registry order keeps buckets stable
        for day_date, shifts, warnings in parsed:
            days.append(DailySchedule(
                date=day_date,
                shifts={emp_id: shifts.get(emp_id, ShiftType.OFF) for emp_id in employees},
                employees=employees,
                warnings=warnings,
            ))

        return cls(employees=employees, days=days)


class RotaEngine:
    """Fixed-pattern rota generator: night-eligible crew plus day-only crew."""

    def __init__(self, night_crew_size=DEFAULT_NIGHT_CREW_SIZE):
        if isinstance(night_crew_size, bool) or not isinstance(night_crew_size, int) or night_crew_size < 0:
            raise RotaInputError(f"night_crew_size must be a non-negative integer, got {night_crew_size!r}")
        self.night_crew_size = night_crew_size
        self.night_cycle = NIGHT_CYCLE
        self.day_cycle = DAY_CYCLE

    def generate(self, employees: Sequence[Employee], start_date, day_count: int) -> RosterSchedule:
        """
        Generate ``day_count`` days of rota starting at ``start_date``.

        The first ``night_crew_size`` employees rotate through the night
        cycle, each phase-shifted by their crew index; with a crew of exactly
        seven this puts exactly one person on nights every day. Everyone else
        follows the day cycle, spaced ``(index * 3) % 7`` days apart. The
        spacing keeps two day-only staff from sharing days off but is not
        collision-free for larger crews.

        Coverage problems are recorded as warnings on each day; the schedule is
        always complete.
        """
        if isinstance(day_count, bool) or not isinstance(day_count, int) or day_count <= 0:
            raise RotaInputError(f"day_count must be a positive integer, got {day_count!r}")
        if isinstance(start_date, datetime):
            start_date = start_date.date()
        if not isinstance(start_date, date):
            raise RotaInputError(f"start_date must be a date, got {start_date!r}")

        registry = {}
        for emp in employees:
            if emp.id in registry:
                raise RotaInputError(f"Duplicate employee id: {emp.id}")
            registry[emp.id] = emp

        night_crew = list(employees[:self.night_crew_size])
        day_crew = list(employees[self.night_crew_size:])

        logger.info(
            f"Generating {day_count}-day rota from {start_date}: "
            f"{len(night_crew)} night-eligible, {len(day_crew)} day-only"
        )

        days = []
        for d in range(day_count):
            shifts = {}
            for index, emp in enumerate(night_crew):
                shifts[emp.id] = self.night_cycle[(d + index) % CYCLE_LENGTH]
            for index, emp in enumerate(day_crew):
                offset = (index * DAY_CREW_SPACING) % CYCLE_LENGTH
                shifts[emp.id] = self.day_cycle[(d + offset) % CYCLE_LENGTH]

            day = DailySchedule(date=start_date + timedelta(days=d), shifts=shifts, employees=registry)
            if day.refresh_warnings():
                logger.debug(f"Coverage warnings on {day.date}: {day.warnings}")
            days.append(day)

        flagged = sum(1 for day in days if day.warnings)
        if flagged:
            logger.warning(f"Generated rota has coverage warnings on {flagged} of {day_count} days")

        return RosterSchedule(employees=registry, days=days)


def generate(employees, start_date, day_count, night_crew_size=DEFAULT_NIGHT_CREW_SIZE):
    return RotaEngine(night_crew_size).generate(employees, start_date, day_count)


@dataclass
class EmployeeTotals:
    employee: Employee
    counts: Dict[ShiftType, int] = field(default_factory=lambda: {shift: 0 for shift in SHIFT_ORDER})

    @property
    def total(self):
        return sum(self.counts[shift] for shift in WORKING_SHIFTS)

    def to_dict(self):
        data = {shift.value: count for shift, count in self.counts.items()}
        data['employee_id'] = self.employee.id
        data['name'] = self.employee.name
        data['total'] = self.total
        return data


@dataclass
class DayTotals:
    date: date
    counts: Dict[ShiftType, int]
    warnings: List[str]

    def to_dict(self):
        data = {shift.value: count for shift, count in self.counts.items()}
        data['date'] = self.date.isoformat()
        data['warnings'] = list(self.warnings)
        return data


@dataclass
class FairnessReport:
    per_employee: Dict[str, EmployeeTotals]
    per_day: List[DayTotals]
    min_total: int
    max_total: int
    variance_ok: bool
    warnings: List[str] = field(default_factory=list)

    @property
    def spread(self):
        return self.max_total - self.min_total

    def to_dict(self):
        return {
            'per_employee': [totals.to_dict() for totals in self.per_employee.values()],
            'per_day': [totals.to_dict() for totals in self.per_day],
            'min_total': self.min_total,
            'max_total': self.max_total,
            'variance_ok': self.variance_ok,
            'warnings': list(self.warnings),
        }


def analyze(schedule: RosterSchedule, employees: Optional[Iterable[Employee]] = None) -> FairnessReport:
    """Recompute per-employee and per-day statistics for a schedule."""
    if employees is None:
        employees = schedule.employees.values()

    per_employee = {emp.id: EmployeeTotals(employee=emp) for emp in employees}
    per_day = []

    for day in schedule.days:
        counts = day.counts()
        per_day.append(DayTotals(date=day.date, counts=counts, warnings=coverage_warnings(counts)))
        for employee_id, shift in day.shifts.items():
            totals = per_employee.get(employee_id)
            if totals is not None:
                totals.counts[shift] += 1

    totals = [t.total for t in per_employee.values()]
    min_total = min(totals) if totals else 0
    max_total = max(totals) if totals else 0
    variance_ok = (max_total - min_total) <= MAX_TOTAL_SPREAD

    warnings = []
    if not variance_ok:
        message = (
            f"Unbalanced rota: shift totals range {min_total}-{max_total} "
            f"(max spread {MAX_TOTAL_SPREAD})"
        )
        warnings.append(message)
        logger.warning(message)

    return FairnessReport(
        per_employee=per_employee,
        per_day=per_day,
        min_total=min_total,
        max_total=max_total,
        variance_ok=variance_ok,
        warnings=warnings,
    )


def cycle_assignment(schedule: RosterSchedule, day_index: int, employee_id) -> RosterSchedule:
    """
    Advance one cell through OFF -> AM -> PM -> NT -> OFF.

    Only the given day and employee change. The result may break the
    generator's coverage rules; the day's warnings are refreshed to show it.
    """
    if isinstance(day_index, bool) or not isinstance(day_index, int):
        raise RotaInputError(f"day_index must be an integer, got {day_index!r}")
    if not 0 <= day_index < len(schedule.days):
        raise RotaInputError(f"day_index {day_index} out of range (0-{len(schedule.days) - 1})")

    employee_id = str(employee_id)
    if employee_id not in schedule.employees:
        raise UnknownEmployeeError(employee_id)

    day = schedule.days[day_index]
    current = day.shift_for(employee_id)
    day.shifts[employee_id] = NEXT_MANUAL_SHIFT[current]
    day.refresh_warnings()

    logger.debug(f"{day.date} {employee_id}: {current.value} -> {day.shifts[employee_id].value}")
    return schedule
