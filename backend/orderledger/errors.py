# Overview: Base class for engine domain errors.

from __future__ import annotations


class OrderLedgerError(Exception):
    """
    Base for every error the engine raises on purpose.

    `details` carries the context a caller needs to act on the failure
    (order id, material id, attempted transition, ...). Routes return it
    verbatim next to the message.
    """

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        return {"error": self.message, "details": self.details}


class NotFoundError(OrderLedgerError):
    """A referenced order, material, product or conflict record does not exist."""
