"""
Persistence adapter for rota shifts.

Saving a rota replaces every stored shift in a date range: the range is
deleted and committed, then the new rows are inserted. The two steps are not
atomic, so each failure stage raises its own error:

* DeleteFailedError - nothing was removed; retry the whole save.
* PartialOverwriteError - the range was cleared but the insert failed; the
  range now has no shifts until the insert is retried.
"""

import logging
import threading
from dataclasses import dataclass
from datetime import date
from typing import List, Optional

from database import Employee, Schedule, db
from rota_engine import RosterSchedule, RotaInputError
from rota_records import ShiftRecord, from_records

logger = logging.getLogger(__name__)


class RotaStoreError(Exception):
    """Base class for rota persistence failures."""


class ConfirmationRequiredError(RotaStoreError):
    def __init__(self):
        super().__init__("Overwriting a saved rota must be confirmed")


class SaveInProgressError(RotaStoreError):
    def __init__(self, start_date, end_date, branch):
        super().__init__(f"A save for {branch} {start_date}..{end_date} is already in progress")


class DeleteFailedError(RotaStoreError):
    stage = 'delete'


class PartialOverwriteError(RotaStoreError):
    """Old shifts were deleted but the new ones could not be inserted."""
    stage = 'insert'

    def __init__(self, message, deleted_count, records):
        super().__init__(message)
        self.deleted_count = deleted_count
        self.records = records


@dataclass
class StoredRota:
    """
    What the store holds for a range.

    ``has_data`` is False when nothing has been saved for the range, which is
    different from a saved rota where everyone happens to be off.
    """
    start_date: date
    end_date: date
    branch: Optional[str]
    records: List[ShiftRecord]
    schedule: Optional[RosterSchedule] = None

    @property
    def has_data(self):
        return bool(self.records)

    @property
    def status(self):
        return 'saved' if self.has_data else 'empty'


@dataclass
class OverwriteResult:
    deleted_count: int
    inserted_count: int


_saves_in_flight = set()
_saves_lock = threading.Lock()


def is_saving(start_date, end_date, branch):
    with _saves_lock:
        return (start_date, end_date, branch) in _saves_in_flight


class RotaStore:
    def _range_query(self, start_date, end_date, branch):
        query = Schedule.query.filter(
            Schedule.date >= start_date,
            Schedule.date <= end_date
        )
        if branch:
            query = query.filter(Schedule.branch == branch)
        return query

    def list_shifts_in_range(self, start_date, end_date, branch=None) -> List[ShiftRecord]:
        # Deactivated staff are included so reconstruction can still show them
        rows = (
            self._range_query(start_date, end_date, branch)
            .order_by(Schedule.date, Schedule.start_time, Schedule.user_id)
            .all()
        )
        return [row.to_record() for row in rows]

    def delete_shifts_in_range(self, start_date, end_date, branch=None) -> int:
        try:
            deleted = self._range_query(start_date, end_date, branch).delete(synchronize_session=False)
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Deleted {deleted} shifts for {branch or 'all branches'} {start_date}..{end_date}")
        return deleted

    def bulk_insert_shifts(self, records) -> int:
        records = list(records)
        try:
            db.session.add_all([Schedule.from_record(record) for record in records])
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        logger.info(f"Inserted {len(records)} shifts")
        return len(records)

    def load_rota(self, start_date, end_date, branch, employees) -> StoredRota:
        records = self.list_shifts_in_range(start_date, end_date, branch)
        stored = StoredRota(start_date=start_date, end_date=end_date, branch=branch, records=records)
        if stored.has_data:
            stored.schedule = from_records(records, employees, start_date, end_date)
        return stored

    def overwrite_range(self, start_date, end_date, branch, records, confirm=False) -> OverwriteResult:
        """Replace all shifts for ``branch`` in ``start_date..end_date`` with ``records``."""
        if not confirm:
            raise ConfirmationRequiredError()

        records = list(records)
        validate_records(records, start_date, end_date, branch)
        check_employees_exist(records)

        key = (start_date, end_date, branch)
        with _saves_lock:
            if key in _saves_in_flight:
                raise SaveInProgressError(start_date, end_date, branch)
            _saves_in_flight.add(key)

        try:
            try:
                deleted = self.delete_shifts_in_range(start_date, end_date, branch)
            except Exception as e:
                logger.error(f"Rota save failed before any shifts were removed: {str(e)}")
                raise DeleteFailedError(f"Could not clear existing shifts: {str(e)}") from e

            try:
                inserted = self.bulk_insert_shifts(records)
            except Exception as e:
                logger.error(
                    f"Rota save left {branch} {start_date}..{end_date} empty: "
                    f"{deleted} shifts deleted, insert of {len(records)} failed: {str(e)}"
                )
                raise PartialOverwriteError(
                    f"Existing shifts were removed but the new rota could not be saved: {str(e)}",
                    deleted_count=deleted,
                    records=records,
                ) from e
        finally:
            with _saves_lock:
                _saves_in_flight.discard(key)

        logger.info(f"Saved rota for {branch} {start_date}..{end_date}: {inserted} shifts")
        return OverwriteResult(deleted_count=deleted, inserted_count=inserted)


def validate_records(records, start_date, end_date, branch):
    """Reject a batch that could only fail after the old shifts are gone."""
    if end_date < start_date:
        raise RotaInputError(f"end_date {end_date} is before start_date {start_date}")

    seen = set()
    for record in records:
        if not start_date <= record.date <= end_date:
            raise RotaInputError(f"Shift on {record.date} is outside {start_date}..{end_date}")
        if branch and record.branch != branch:
            raise RotaInputError(f"Shift for branch {record.branch!r} cannot be saved to {branch!r}")
        try:
            int(record.employee_id)
        except ValueError:
            raise RotaInputError(f"Invalid employee id: {record.employee_id!r}")
        if record.key in seen:
            raise RotaInputError(
                f"Duplicate shift for employee {record.employee_id} on {record.date} "
                f"at {record.start_time}"
            )
        seen.add(record.key)


def check_employees_exist(records):
    """Reject shifts for employee ids with no account, before anything is deleted."""
    wanted = {int(record.employee_id) for record in records}
    if not wanted:
        return
    found = {row.id for row in Employee.query.filter(Employee.id.in_(wanted)).all()}
    missing = sorted(wanted - found)
    if missing:
        raise RotaInputError(f"Unknown employee id(s): {', '.join(str(i) for i in missing)}")
