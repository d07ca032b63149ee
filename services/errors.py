"""
Donation ledger error taxonomy.

Each error carries the HTTP status the API layer answers with; main.py
registers one exception handler for the whole family.
"""

import logging
from contextlib import contextmanager

from sqlalchemy.exc import InterfaceError, OperationalError

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base class for errors raised by the donation ledger."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LedgerError):
    """Malformed or out-of-policy input. Not retried."""

    status_code = 400


class NotFoundError(LedgerError):
    """Unknown campaign, donation or gateway reference. Not retried."""

    status_code = 404


class AuthenticationError(LedgerError):
    """Webhook signature missing or invalid. The request is dropped."""

    status_code = 401


class GatewayError(LedgerError):
    """Upstream provider call failed or the transaction was declined."""

    status_code = 502

    def __init__(self, message: str, provider: str = None, status_code: int = None):
        super().__init__(message)
        self.provider = provider
        if status_code is not None:
            self.status_code = status_code


class TransientInfrastructureError(LedgerError):
    """Store unavailable. Safe to retry the whole operation."""

    status_code = 503


@contextmanager
def translate_store_errors(operation: str):
    """Re-raise connection-level database failures as TransientInfrastructureError.

    Integrity and data errors are not transient and propagate unchanged.
    """
    try:
        yield
    except (OperationalError, InterfaceError) as e:
        logger.error(f"Database unavailable during {operation}: {e}")
        raise TransientInfrastructureError("Database temporarily unavailable") from e
