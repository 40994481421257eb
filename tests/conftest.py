import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from db import Base, Settings, make_engine, make_session_factory
from catalog import CatalogService
from patrons import PatronService
from circulation import CirculationService
from returns import ReturnService
from fines import FineService
from sweep import DailyFineSweep
from security import create_access_token


class FakeClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 3, 1, 10, 0, 0))


@pytest.fixture
def cfg(tmp_path, request):
    # a fresh sqlite file per test
    db_file = tmp_path / f"test_{request.node.name}.db"
    return Settings(_env_file=None, DATABASE_URL=f"sqlite:///{db_file}", JWT_SECRET="test-secret")


@pytest.fixture
def db(cfg):
    engine = make_engine(cfg)
    Base.metadata.create_all(bind=engine)
    session = make_session_factory(engine)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def make_book(db):
    def _make(copies=1, **fields):
        fields.setdefault("title", "Rayuela")
        fields.setdefault("author", "Julio Cortazar")
        fields.setdefault("purchase_price", Decimal("1000"))
        fields.setdefault("daily_rental_rate", Decimal("10"))
        fields.setdefault("rental_deposit", Decimal("50"))
        return CatalogService(db).add_book(copies=copies, **fields)
    return _make


@pytest.fixture
def make_patron(db, clock):
    seq = itertools.count(1)

    def _make(email=None, name=None, role="user"):
        n = next(seq)
        return PatronService(db, clock).register_patron(
            email or f"reader{n}@example.org", name or f"Reader {n}", role)
    return _make


@pytest.fixture
def circulation(db, cfg, clock):
    return CirculationService(db, cfg, clock)


@pytest.fixture
def returns(db, cfg, clock):
    return ReturnService(db, cfg, clock)


@pytest.fixture
def fines(db, cfg, clock):
    return FineService(db, cfg, clock)


@pytest.fixture
def sweep(db, cfg, clock):
    return DailyFineSweep(db, cfg, clock)


@pytest.fixture
def api(cfg, clock):
    from main import create_app
    return TestClient(create_app(cfg, clock))


@pytest.fixture
def auth(cfg):
    def _headers(role="admin", patron_id=None, sub="desk@example.org"):
        token = create_access_token({"sub": sub, "role": role, "patron_id": patron_id}, cfg=cfg)
        return {"Authorization": f"Bearer {token}"}
    return _headers
