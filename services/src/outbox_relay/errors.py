from __future__ import annotations


class OutboxRelayError(RuntimeError):
    """Base class for relay and materializer failures."""


class LedgerUnavailableError(OutboxRelayError):
    """Raised when the change ledger cannot be read at batch-select time."""


class EnvelopeDecodeError(OutboxRelayError, ValueError):
    """Raised when a delivered message is not a valid envelope."""


class ProjectionError(OutboxRelayError, ValueError):
    """Raised when an envelope payload lacks fields its projection rule needs."""
