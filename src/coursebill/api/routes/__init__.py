"""API routes."""

from . import access, admin, checkout, webhooks

__all__ = ["access", "admin", "checkout", "webhooks"]
