import pytest

from cohortlab.core.db import build_engine, build_session_factory
from cohortlab.models.orm.registry import Base
from cohortlab.models.orm.batch import GroupingMode
from cohortlab.models.schemas.batch import BatchCreateModel
from cohortlab.services.server import ExperimentServer


@pytest.fixture
def session_factory(tmp_path):
    """A fresh file-backed SQLite store per test (threads need a shared file)."""
    engine = build_engine(f"sqlite:///{tmp_path / 'cohortlab.db'}")
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()


@pytest.fixture
def server(session_factory):
    server = ExperimentServer(session_factory)
    server.create_treatment("tutorial", {"phase": "tutorial", "rounds": 1})
    server.create_treatment("group", {"phase": "group", "rounds": 10})
    server.create_treatment("big_payoff", {"payoff": 5})
    return server


@pytest.fixture
def make_batch(server):
    counter = {"value": 0}

    def _make_batch(**kwargs):
        counter["value"] += 1
        kwargs.setdefault("name", f"batch-{counter['value']}")
        kwargs.setdefault("grouping_mode", GroupingMode.NONE)
        return server.create_batch(BatchCreateModel(**kwargs))

    return _make_batch


@pytest.fixture
def batch(make_batch):
    return make_batch()
