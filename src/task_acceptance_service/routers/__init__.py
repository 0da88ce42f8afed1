"""API routers."""

from task_acceptance_service.routers import acceptances, conversations, health, tasks

__all__ = ["acceptances", "conversations", "health", "tasks"]
