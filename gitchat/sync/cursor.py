"""Bookkeeping for how much of the log has been shown."""


class InvariantViolation(RuntimeError):
    """An internal consistency check failed."""


class ViewCursor:
    """Count of log entries already surfaced to the user.

    Only ever moves forward.
    """

    def __init__(self) -> None:
        self._position = 0

    @property
    def position(self) -> int:
        return self._position

    def advance(self, to: int) -> None:
        """Move the cursor to `to`.

        Raises:
            InvariantViolation: If `to` is behind the current position.
        """
        if to < self._position:
            raise InvariantViolation(
                f"Cursor cannot move backwards (at {self._position}, asked for {to})"
            )
        self._position = to

    def __repr__(self) -> str:
        return f"ViewCursor(position={self._position})"
