"""HTTP clients for external service communication."""

from task_acceptance_service.clients.identity_client import IdentityClient

__all__ = ["IdentityClient"]
