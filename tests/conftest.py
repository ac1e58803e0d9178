"""Shared fixtures: a Flask app on in-memory SQLite and the engine services."""
from unittest.mock import MagicMock

import pytest

from fulfillment import create_app
from fulfillment.config import TestingConfig
from fulfillment.models import db


@pytest.fixture
def app():
    """Create Flask application for testing."""
    app = create_app(TestingConfig)

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def services(app):
    return app.extensions["fulfillment"]


@pytest.fixture
def retry_service(services):
    return services["retry_service"]


@pytest.fixture
def prodigi(services):
    """Mock provider client registered for 'prodigi'."""
    client = MagicMock()
    services["registry"].register_client("prodigi", client)
    return client
