# errors.py
from __future__ import annotations


class TransitError(Exception):
    """Base class for every error the footprint core raises on purpose."""

    status_code = 500

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason


class InvalidInput(TransitError, ValueError):
    """Bad caller input (empty user, negative distance, unknown mode, ...)."""

    status_code = 400


class ParseError(TransitError, ValueError):
    """Malformed bulk emission-factor payload. The whole load is rejected."""

    status_code = 400


class StorageError(TransitError, RuntimeError):
    """Backend failure. Never turned into an empty or zero result."""

    status_code = 503
