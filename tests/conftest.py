"""Shared test fixtures."""
import pytest
from unittest.mock import patch, MagicMock
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from leadpipe.database import Base


@pytest.fixture
def db_engine():
    """In-memory SQLite engine with schema created."""
    engine = create_engine(
        'sqlite:///:memory:',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )
    import leadpipe.models.db_run
    import leadpipe.models.step_metric
    import leadpipe.models.cache_entry
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(db_engine):
    """SQLAlchemy session bound to in-memory SQLite. Rolls back after each test."""
    Session = sessionmaker(bind=db_engine)
    session = Session()
    yield session
    session.rollback()
    session.close()


@pytest.fixture(autouse=True)
def patch_get_session(db_engine):
    """Route all get_session() calls to fresh sessions on the test engine.

    leadpipe.services.db binds get_session at import time, so it is patched
    separately from leadpipe.database.
    """
    TestSession = sessionmaker(bind=db_engine)
    with patch('leadpipe.database.get_session', side_effect=lambda: TestSession()), \
         patch('leadpipe.services.db.get_session', side_effect=lambda: TestSession()):
        yield TestSession


@pytest.fixture
def app(fake_redis):
    """Flask test app."""
    from leadpipe import create_app
    app = create_app(init_database=False)
    app.config['TESTING'] = True
    yield app


@pytest.fixture
def client(app):
    """Flask test client."""
    with app.test_client() as c:
        yield c


@pytest.fixture
def no_sleep():
    """Recording stand-in for time.sleep."""
    return MagicMock()


@pytest.fixture
def make_run():
    """Factory fixture — builds a Run-like MagicMock without touching Redis."""
    def _make(**overrides):
        defaults = dict(
            id='run-test-001',
            name='Q3 outbound list',
            status='queued',
            pipeline=[{'step': 'personLookup', 'config': {}}, {'step': 'companyType', 'config': {}}],
            current_step='',
            step_status={'personLookup': 'pending', 'companyType': 'pending'},
            created_at='2026-01-15T10:00:00',
            input_count=3,
            output_count=0,
            use_file_storage=False,
            totals={},
            errors=[],
            summary='',
            error='',
        )
        defaults.update(overrides)
        run = MagicMock()
        for k, v in defaults.items():
            setattr(run, k, v)
        return run
    return _make


@pytest.fixture
def sample_rows():
    """Lead rows resembling an uploaded sheet after a person lookup."""
    return [
        {
            'id': 'lead-1',
            'name': 'Ada Park',
            'linkedin_url': 'https://www.linkedin.com/in/adapark/',
            'email': 'ada@northwind.example',
            'organization.id': 'org-1',
            'organization.name': 'Northwind Analytics',
            'organization.estimated_num_employees': 420,
        },
        {
            'id': 'lead-2',
            'name': 'Ben Ortiz',
            'linkedin_url': 'https://linkedin.com/in/benortiz',
            'email': 'ben@contoso.example',
            'organization.id': 'org-2',
            'organization.name': 'Contoso Health',
            'organization.estimated_num_employees': 12800,
        },
        {
            'id': 'lead-3',
            'name': 'Cy Diaz',
            'linkedin_url': 'https://linkedin.com/in/cydiaz',
            'email': 'cy@tailspin.example',
            'organization.id': 'org-3',
            'organization.name': 'Tailspin Robotics',
            'organization.estimated_num_employees': 5,
        },
    ]


class FakeRedis:
    """Dict-backed Redis fake covering the commands Run and the breakers use."""

    def __init__(self):
        self.store = {}
        self.hashes = {}
        self.zsets = {}

    def get(self, key):
        return self.store.get(key)

    def set(self, key, value):
        self.store[key] = str(value) if not isinstance(value, str) else value

    def setex(self, key, ttl, value):
        self.set(key, value)
        return True

    def incr(self, key):
        val = int(self.store.get(key, 0)) + 1
        self.store[key] = str(val)
        return val

    def delete(self, *keys):
        for k in keys:
            self.store.pop(k, None)
            self.hashes.pop(k, None)
            self.zsets.pop(k, None)

    def zadd(self, key, mapping):
        self.zsets.setdefault(key, {}).update(mapping)
        return len(mapping)

    def zrevrange(self, key, start, end):
        ranked = sorted(self.zsets.get(key, {}).items(), key=lambda kv: kv[1], reverse=True)
        ids = [member for member, _ in ranked]
        return ids[start:] if end == -1 else ids[start:end + 1]

    def zrem(self, key, member):
        self.zsets.get(key, {}).pop(member, None)

    def hset(self, key, field, value):
        self.hashes.setdefault(key, {})[field] = value

    def hincrby(self, key, field, amount):
        h = self.hashes.setdefault(key, {})
        h[field] = str(int(h.get(field, 0)) + amount)

    def hgetall(self, key):
        return dict(self.hashes.get(key, {}))

    def ping(self):
        return True

    def pipeline(self):
        return FakePipeline(self)


class FakePipeline:
    """Buffers commands and replays them on execute()."""

    def __init__(self, redis):
        self._redis = redis
        self._ops = []

    def __getattr__(self, name):
        def queue(*args):
            self._ops.append((name, args))
            return self
        return queue

    def execute(self):
        for name, args in self._ops:
            getattr(self._redis, name)(*args)
        self._ops = []


@pytest.fixture
def fake_redis():
    """In-memory Redis fake wired into the Run model and leadpipe.extensions."""
    fake = FakeRedis()
    with patch('leadpipe.extensions.redis_client', fake), \
         patch('leadpipe.models.run.r', fake):
        yield fake


@pytest.fixture(autouse=True)
def reset_breakers():
    """Each test starts with an empty circuit breaker registry."""
    from leadpipe.services import circuit_breaker
    circuit_breaker._registry.clear()
    yield
    circuit_breaker._registry.clear()
