class MovementError(Exception):
    """Base class for per-movement failures resolved by the processor."""


class TargetVanished(MovementError):
    """Target entity no longer exists when the movement arrives."""

    def __init__(self, collection: str, key: str | None):
        super().__init__(f"{collection}/{key} no longer exists")
        self.collection = collection
        self.key = key


class OriginVanished(MovementError):
    """Origin settlement was removed while the movement was in flight."""

    def __init__(self, key: str):
        super().__init__(f"origin settlement {key} no longer exists")
        self.key = key


class UnknownMovementType(MovementError):
    """Stored movement carries a type the processor does not know."""

    def __init__(self, raw: str):
        super().__init__(f"unknown movement type: {raw!r}")
        self.raw = raw
