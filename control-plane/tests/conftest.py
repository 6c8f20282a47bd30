import os
import sys
import tempfile
import pytest

# Point the platform store at a throwaway database
# Set these BEFORE importing any project modules
TEST_DIR = tempfile.mkdtemp(prefix="control-plane-test-")
os.environ["DB_DIR"] = TEST_DIR
os.environ["DB_PATH"] = os.path.join(TEST_DIR, "control_plane_test.db")
os.environ["DIAGNOSTIC_REPORT_PATH"] = os.path.join(TEST_DIR, "diagnostic_report.json")
os.environ["PROVISION_DELAY_SECONDS"] = "0"
os.environ["PLATFORM_BACKEND"] = "sql"

# Add the control-plane directory to sys.path
base_dir = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
sys.path.append(base_dir)

from api.models import Base, SessionLocal, engine
from reconciler.platform_client import SQLPlatformClient
from reconciler.reconciler import ReconcileDriver


@pytest.fixture(scope="session", autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(autouse=True)
def clean_tables():
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


@pytest.fixture
def db():
    database = SessionLocal()
    try:
        yield database
    finally:
        database.close()


@pytest.fixture
def db_factory():
    return SessionLocal


@pytest.fixture
def sql_client():
    return SQLPlatformClient(SessionLocal)


@pytest.fixture
def driver(sql_client):
    """A driver over the test store with no creation handler and no backoff delay."""
    return ReconcileDriver(
        sql_client,
        interval_seconds=0,
        max_backoff_seconds=0,
        resync_seconds=0,
        workers=2,
        stuck_after_seconds=3600,
    )
