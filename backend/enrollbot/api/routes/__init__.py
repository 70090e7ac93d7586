# API routes
from enrollbot.api.routes import health
from enrollbot.api.routes import app_sessions
from enrollbot.api.routes import webhooks_stripe

__all__ = ["health", "app_sessions", "webhooks_stripe"]
