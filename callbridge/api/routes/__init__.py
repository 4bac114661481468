"""API Routes"""

from . import admin, health, media_stream, reports, tenants, tools, webhooks

__all__ = ["admin", "health", "media_stream", "reports", "tenants", "tools", "webhooks"]
