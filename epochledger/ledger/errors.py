"""Error taxonomy for the epoch ledger.

Four families, each with a fixed meaning for callers (and for the public
HTTP API, which maps them to status codes):

- LedgerValidationError: malformed input, no partial effect (400)
- NotFoundError: well-formed but absent or not visible (404)
- ConflictError: state does not permit the operation (409)
- ConfigurationError: the epoch's configuration cannot price the input

Nothing in the core catches these; they propagate to the caller, which
owns retry policy.
"""

from __future__ import annotations


class LedgerError(Exception):
    """Root of all ledger errors."""


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class LedgerValidationError(LedgerError, ValueError):
    """Input is malformed (bad id, bad pagination, negative amount)."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------


class NotFoundError(LedgerError):
    """Requested record does not exist for this tenant."""


class EpochNotFoundError(NotFoundError):
    def __init__(self, epoch_id: int):
        super().__init__(f"epoch {epoch_id} not found")
        self.epoch_id = epoch_id


class CurationNotFoundError(NotFoundError):
    def __init__(self, epoch_id: int, event_id: str):
        super().__init__(f"no curation for event {event_id} in epoch {epoch_id}")
        self.epoch_id = epoch_id
        self.event_id = event_id


# ---------------------------------------------------------------------------
# Conflict
# ---------------------------------------------------------------------------


class ConflictError(LedgerError):
    """The current ledger state does not permit the operation."""


class EpochNotOpenError(ConflictError):
    """close_epoch on an epoch that is already closed (or lost a close race)."""

    def __init__(self, epoch_id: int, status: str | None = None):
        detail = f" (status={status})" if status else ""
        super().__init__(f"epoch {epoch_id} is not open{detail}")
        self.epoch_id = epoch_id
        self.status = status


class EpochClosedError(ConflictError):
    """A write targeted an epoch that has already been closed."""

    def __init__(self, epoch_id: int, operation: str):
        super().__init__(f"epoch {epoch_id} is closed; refusing {operation}")
        self.epoch_id = epoch_id
        self.operation = operation


class PoolTotalMismatchError(ConflictError):
    """Caller-supplied pool total differs from the sum of pool components."""

    def __init__(self, epoch_id: int, supplied: int, computed: int):
        super().__init__(
            f"pool total mismatch for epoch {epoch_id}: "
            f"supplied {supplied}, components sum to {computed}"
        )
        self.epoch_id = epoch_id
        self.supplied = supplied
        self.computed = computed


class DuplicateRecordError(ConflictError):
    """A write-once record was inserted twice."""


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class ConfigurationError(LedgerError):
    """The epoch's configuration cannot process its own inputs."""


class InvalidWeightConfigError(ConfigurationError, ValueError):
    """A weight table has a non-string key or a non-integer / negative weight."""


class UnknownEventTypeError(ConfigurationError, KeyError):
    """An included event's type has no entry in the epoch's weight table."""

    def __init__(self, event_type: str, epoch_id: int | None = None):
        where = f" in epoch {epoch_id}" if epoch_id is not None else ""
        super().__init__(f"event type {event_type!r} has no weight{where}")
        self.event_type = event_type
        self.epoch_id = epoch_id

    def __str__(self) -> str:
        return self.args[0]


__all__ = [
    "ConfigurationError",
    "ConflictError",
    "CurationNotFoundError",
    "DuplicateRecordError",
    "EpochClosedError",
    "EpochNotFoundError",
    "EpochNotOpenError",
    "InvalidWeightConfigError",
    "LedgerError",
    "LedgerValidationError",
    "NotFoundError",
    "PoolTotalMismatchError",
    "UnknownEventTypeError",
]
