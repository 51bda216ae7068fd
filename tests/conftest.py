"""
Shared pytest fixtures: an in-memory SQLite store and a Flask test client.
"""

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from tool_telemetry.api.app import create_app
from tool_telemetry.api.config import TelemetryConfig
from tool_telemetry.db import Base, TelemetryStore, close_db
from tool_telemetry.db.engine import enable_sqlite_pragmas


@pytest.fixture
def session():
    """Session on a private in-memory SQLite database with all tables created."""
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    enable_sqlite_pragmas(engine)
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine)
    db_session = factory()
    yield db_session
    db_session.close()
    engine.dispose()


@pytest.fixture
def store(session):
    return TelemetryStore(session)


@pytest.fixture
def app(tmp_path):
    close_db()
    config = TelemetryConfig(
        database_url=f"sqlite:///{tmp_path / 'telemetry.db'}",
        log_level="WARNING",
    )
    flask_app = create_app(config)
    flask_app.config["TESTING"] = True
    yield flask_app
    close_db()


@pytest.fixture
def client(app):
    return app.test_client()
