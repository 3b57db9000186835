"""Blueprint registration."""

from routes.checkout import checkout_bp
from routes.health import health_bp
from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    health_bp,
    webhooks_bp,
    checkout_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
