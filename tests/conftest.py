import os
import tempfile

import pytest


_TMP_DIR = tempfile.mkdtemp(prefix="ride_ledger_tests_")

os.environ.setdefault("ENV", "dev")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_TMP_DIR, 'rides.db')}")
os.environ.setdefault("JWT_SECRET", "test_secret_for_ride_ledger")
os.environ.setdefault("AUTO_CREATE_SCHEMA", "true")
os.environ.setdefault("LEDGER_SWEEP_POLL_SECS", "0")
os.environ.setdefault("DRIVER_SHARE_BPS", "8000")


@pytest.fixture(scope="session")
def app():
    from ride_ledger.main import app as _app
    return _app


@pytest.fixture(scope="session")
def client(app):
    from fastapi.testclient import TestClient
    return TestClient(app)


@pytest.fixture(autouse=True)
def _clean_db():
    """Every test starts from empty tables."""
    from ride_ledger.database import engine
    from ride_ledger.models import Base

    Base.metadata.create_all(bind=engine)
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())
    yield
