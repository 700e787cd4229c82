import pytest
from fastapi.testclient import TestClient

from students_api.config import Settings
from students_api.db import create_db_engine
from students_api.main import create_app


@pytest.fixture
def settings():
    return Settings(
        DATABASE_URL="sqlite://",
        SAMPLER_INTERVAL_SECONDS=60.0,
        SIMULATE_SLOW_SECONDS=0.01,
        RUNTIME_METRICS=False,
    )


@pytest.fixture
def engine(settings):
    eng = create_db_engine(settings.DATABASE_URL)
    yield eng
    eng.dispose()


@pytest.fixture
def app(settings, engine):
    return create_app(settings, engine=engine)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c


@pytest.fixture
def metrics(app):
    return app.state.metrics
