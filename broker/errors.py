"""
Broker error taxonomy.

Every error that may reach a caller carries the HTTP status it maps to;
the API turns them into ``{"ok": false, "error": ...}`` bodies.
"""
from __future__ import annotations


class BrokerError(Exception):
    """Base exception for all broker operations."""

    status_code = 500

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class ValidationError(BrokerError):
    """Missing or malformed required field. No state was changed."""

    status_code = 400


class NotFoundError(BrokerError):
    status_code = 404


class PartialDecodeError(BrokerError):
    """
    A single attachment description could not be decoded.

    Raised inside attachment normalization only; the attachment is dropped
    and its siblings and parent question still succeed.
    """

    status_code = 400
