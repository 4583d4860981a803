"""HTTP administrative surface: dead-letter queue operations and EventBus metrics."""

from eventrelay.admin.routes import create_admin_router

__all__ = ["create_admin_router"]
