"""Shared pytest fixtures: an in-memory application with provider test secrets."""

import os

import pytest

os.environ["DATABASE_URI"] = "sqlite://"  # In-memory database for tests
os.environ["APP_SECRET_KEY"] = "test-secret-key"
os.environ["CONFIG_PATH"] = os.path.join(os.path.dirname(__file__), "no-such-config.yaml")
os.environ["EMAIL_ENABLED"] = "false"
os.environ["STRIPE_ENABLED"] = "true"
os.environ["STRIPE_SECRET_KEY"] = "sk_test_123"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_test_secret"
os.environ["RAZORPAY_ENABLED"] = "true"
os.environ["RAZORPAY_KEY_ID"] = "rzp_test_key"
os.environ["RAZORPAY_KEY_SECRET"] = "rzp_test_key_secret"
os.environ["RAZORPAY_WEBHOOK_SECRET"] = "rzp_webhook_secret"
os.environ.pop("LICENSE_GRACE_PERIOD_DAYS", None)

from app import create_app  # noqa: E402


class RecordingDispatcher:
    """Collects notices instead of sending email."""

    def __init__(self):
        self.notices = []

    def dispatch(self, notices):
        self.notices.extend(notices)

    def kinds(self):
        return [n.kind for n in self.notices]


@pytest.fixture
def app():
    """Create application for testing."""
    application = create_app()
    application.config["TESTING"] = True
    application.config["WTF_CSRF_ENABLED"] = False
    application.config["RATELIMIT_ENABLED"] = False
    application.config["NOTIFICATION_DISPATCHER"] = RecordingDispatcher()
    yield application


@pytest.fixture
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture
def notices(app):
    """Notices dispatched during the test."""
    return app.config["NOTIFICATION_DISPATCHER"]
