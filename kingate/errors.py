"""Caller-visible failure kinds raised by the permission, guard, ledger and suggestion layers."""


class KingateError(Exception):
    """Base class for recoverable, caller-visible outcomes."""


class Unauthorized(KingateError):
    def __init__(self, message: str = "Not permitted"):
        super().__init__(message)


class NotFound(KingateError):
    pass


class VersionConflict(KingateError):
    """The stored version moved on since the caller read the record."""

    def __init__(self, record_id: str, expected: int, actual: int | None):
        self.record_id = record_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Version conflict on {record_id}: expected {expected}, found {actual}"
        )


class AlreadyProcessed(KingateError):
    pass


class AlreadyReverted(AlreadyProcessed):
    pass


class NotRevertible(KingateError):
    pass


class InvalidField(KingateError):
    def __init__(self, field: str):
        self.field = field
        super().__init__(f"Field '{field}' cannot be edited")


class InvalidValue(KingateError):
    pass


class RateLimited(KingateError):
    pass


class MarriageConflict(KingateError):
    pass


class CycleDetected(KingateError):
    def __init__(self, cycles: list[dict]):
        self.cycles = cycles
        super().__init__(f"{len(cycles)} parent cycle(s) found")


class IntegrityFault(RuntimeError):
    """An invariant the store is expected to guarantee no longer holds."""
