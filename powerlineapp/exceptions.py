# powerlineapp/exceptions.py


class PowerLineError(Exception):
    """Base class for every error raised by the PowerLine engines."""


class PositionNotFound(PowerLineError, LookupError):
    def __init__(self, node_id):
        self.node_id = node_id
        super().__init__(f"Position {node_id!r} not found")


class NoAvailableSlot(PowerLineError):
    """The anchor subtree has no open slot within the configured bounds."""


class ConcurrentPlacementConflict(PowerLineError):
    """The chosen slot was claimed by another placement first."""

    def __init__(self, message="Slot was claimed concurrently", attempts=None):
        self.attempts = attempts
        super().__init__(message)


class NegativeVolume(PowerLineError, ValueError):
    def __init__(self, amount):
        self.amount = amount
        super().__init__(f"Volume delta must not be negative (got {amount})")


class InvalidPath(PowerLineError, ValueError):
    pass


class PositionOccupied(PowerLineError):
    pass


class RootAlreadyExists(PowerLineError):
    pass


class QualificationReplay(PowerLineError):
    """A commission event with this identifier is already in the ledger."""

    def __init__(self, event_id):
        self.event_id = event_id
        super().__init__(f"Commission event {event_id!r} already recorded")


class TreeIntegrityError(PowerLineError):
    """Stored tree shape contradicts itself. Never repaired automatically."""
