import logging
from datetime import datetime

from flask_sqlalchemy import SQLAlchemy

from rota_engine import Employee as RotaEmployee, ShiftType
from rota_records import ShiftRecord

logger = logging.getLogger(__name__)

db = SQLAlchemy()

# Roles never placed on the generated rota
NON_SCHEDULABLE_ROLES = ('admin', 'supervisor')


class Employee(db.Model):
    __tablename__ = 'employees'

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False)
    username = db.Column(db.String(120), unique=True, nullable=False)
    email = db.Column(db.String(120), nullable=True)
    role = db.Column(db.String(20), nullable=False, default='staff')  # staff, supervisor, admin
    avatar = db.Column(db.String(255), nullable=True)
    branch = db.Column(db.String(50), nullable=False, default='main')
    active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    schedules = db.relationship('Schedule', backref='employee', lazy=True)

    def to_dict(self):
        return {
            'id': self.id,
            'name': self.name,
            'username': self.username,
            'email': self.email,
            'role': self.role,
            'avatar': self.avatar,
            'branch': self.branch,
            'active': self.active,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def to_rota_employee(self):
        return RotaEmployee(
            id=self.id,
            name=self.name,
            role=self.role,
            avatar=self.avatar,
            branch=self.branch,
        )


class Schedule(db.Model):
    __tablename__ = 'schedules'
    __table_args__ = (
        db.UniqueConstraint('user_id', 'date', 'start_time', name='uq_schedule_user_date_start'),
    )

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('employees.id'), nullable=False)
    date = db.Column(db.Date, nullable=False)
    start_time = db.Column(db.Time, nullable=False)
    end_time = db.Column(db.Time, nullable=False)
    shift_type = db.Column(db.String(10), nullable=True)  # AM, PM, NT
    notes = db.Column(db.Text, nullable=True)
    branch = db.Column(db.String(50), nullable=False, default='main')
    created_at = db.Column(db.DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'user_name': self.employee.name if self.employee else 'Unknown',
            'user_role': self.employee.role if self.employee else 'Unknown',
            'date': self.date.isoformat(),
            'start_time': self.start_time.strftime('%H:%M:%S'),
            'end_time': self.end_time.strftime('%H:%M:%S'),
            'shift_type': self.shift_type,
            'notes': self.notes,
            'branch': self.branch,
            'created_at': self.created_at.isoformat() if self.created_at else None
        }

    def to_record(self):
        return ShiftRecord(
            employee_id=str(self.user_id),
            date=self.date,
            start_time=self.start_time,
            end_time=self.end_time,
            shift_type=ShiftType.from_label(self.shift_type or 'OFF'),
            branch=self.branch,
            notes=self.notes or '',
            employee_name=self.employee.name if self.employee else None,
            employee_role=self.employee.role if self.employee else None,
        )

    @classmethod
    def from_record(cls, record):
        return cls(
            user_id=int(record.employee_id),
            date=record.date,
            start_time=record.start_time,
            end_time=record.end_time,
            shift_type=record.shift_type.value,
            notes=record.notes,
            branch=record.branch,
        )


def schedulable_employees(branch=None):
    """Active staff eligible for the rota, in a stable order."""
    query = Employee.query.filter(
        Employee.active == True,
        Employee.role.notin_(NON_SCHEDULABLE_ROLES)
    )
    if branch:
        query = query.filter(Employee.branch == branch)
    return query.order_by(Employee.id).all()


SAMPLE_EMPLOYEES = [
    # name, username, role
    ('Amina Otieno', 'amina', 'staff'),
    ('Brian Mwangi', 'brian', 'staff'),
    ('Cynthia Njeri', 'cynthia', 'staff'),
    ('David Kiptoo', 'david', 'staff'),
    ('Esther Wanjiru', 'esther', 'staff'),
    ('Felix Ochieng', 'felix', 'staff'),
    ('Grace Achieng', 'grace', 'staff'),
    ('Hassan Ali', 'hassan', 'staff'),
    ('Irene Muthoni', 'irene', 'staff'),
    ('Joseph Kamau', 'joseph', 'supervisor'),
    ('Admin', 'admin', 'admin'),
]


def init_db(branch='main'):
    """Create tables and add sample staff if the database is empty."""
    try:
        db.create_all()

        if Employee.query.count() == 0:
            logger.info("Database empty, initializing with sample data...")
            for name, username, role in SAMPLE_EMPLOYEES:
                db.session.add(Employee(name=name, username=username, role=role, branch=branch))
            db.session.commit()
            logger.info(f"Database initialized with {len(SAMPLE_EMPLOYEES)} sample employees")
        else:
            logger.info("Database already contains data, skipping initialization")

    except Exception as e:
        logger.error(f"Error initializing database: {str(e)}")
        db.session.rollback()
        raise
