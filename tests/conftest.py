import logging
import os
import tempfile

# Point the app at a throwaway SQLite file before it is imported
_DB_DIR = tempfile.mkdtemp(prefix="rota-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'rota_test.db')}"
os.environ["ROTA_DEFAULT_BRANCH"] = "main"

import pytest

from app import app
from database import Employee, db, init_db
from rota_engine import Employee as RotaEmployee

# ---------------------------------------------------------------------------
# Global logging config for verbose, readable test output
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.DEBUG,
    format="%(asctime)s | %(levelname)-7s | %(name)s | %(message)s"
)
logger = logging.getLogger("tests")


# ---------------------------------------------------------------------------
# Pytest fixtures: app context, clean DB, seeded data, test client
# ---------------------------------------------------------------------------
@pytest.fixture(scope="session", autouse=True)
def _show_versions():
    logger.info("Starting test session for the rota service")
    logger.info("Database: %s", app.config["SQLALCHEMY_DATABASE_URI"])


@pytest.fixture(autouse=True)
def _is_testing_env():
    # Make sure Flask knows we are testing
    app.config["TESTING"] = True
    # Force Werkzeug not to swallow exceptions
    app.config["PROPAGATE_EXCEPTIONS"] = True


@pytest.fixture
def app_ctx():
    """
    - Drops & recreates all tables each test for isolation.
    - Seeds the sample staff (nine schedulable staff, a supervisor and an admin).
    """
    with app.app_context():
        db.drop_all()
        init_db("main")

        yield

        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app_ctx):
    return app.test_client()


@pytest.fixture
def roster(app_ctx):
    """Schedulable staff as rota employees, in rota order."""
    staff = (
        Employee.query
        .filter(Employee.role == "staff")
        .order_by(Employee.id)
        .all()
    )
    return [emp.to_rota_employee() for emp in staff]


def make_staff(count):
    return [RotaEmployee(id=f"E{i}", name=f"Staff {i}") for i in range(count)]
