import pytest
from fastapi.testclient import TestClient

START = 1_700_000_000.0
PASSWORD = "Password123"


class FakeClock:
    def __init__(self, now: float = START):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def db_path(tmp_path, monkeypatch):
    import app.db as db_module

    path = tmp_path / "test.db"
    monkeypatch.setattr(db_module, "DB_PATH", path)
    db_module.init_db()
    return path


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def services(db_path, clock):
    from app.security.ratelimit import MemoryBucketStore
    from app.services import build_services

    return build_services(clock=clock, bucket_store=MemoryBucketStore())


@pytest.fixture
def client(services):
    from app.main import app

    app.state.services = services
    with TestClient(app) as c:
        yield c


@pytest.fixture
def make_user(db_path):
    from app.auth.utils import create_user

    counter = iter(range(1, 1000))

    def _make(username=None, password=PASSWORD, is_admin=False):
        return create_user(username or f"user{next(counter)}", password, is_admin=is_admin)

    return _make


@pytest.fixture
def user(make_user):
    return make_user("alice")


@pytest.fixture
def admin(make_user):
    return make_user("root", is_admin=True)


@pytest.fixture
def auth_headers(services):
    def _headers(identity):
        return {"Authorization": f"Bearer {services.authority.issue(identity)}"}

    return _headers


@pytest.fixture
def audit_events(db_path):
    """Return stored audit events, optionally of one type, oldest first."""
    from app.db import get_connection

    def _events(event_type=None):
        sql = "SELECT * FROM security_audit_logs"
        params = ()
        if event_type:
            sql += " WHERE event_type = ?"
            params = (event_type,)
        with get_connection() as conn:
            return conn.execute(sql + " ORDER BY id", params).fetchall()

    return _events
