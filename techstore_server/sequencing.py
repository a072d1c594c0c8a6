"""Issuance-order sequencing for overlapping API requests."""


class RequestSequencer:
    """
    Hands out monotonically increasing tickets.

    A response may only be applied while its ticket is still the latest one
    issued, so a slow earlier request never overwrites a later one.
    """

    def __init__(self) -> None:
        self._latest = 0

    def issue(self) -> int:
        self._latest += 1
        return self._latest

    def is_current(self, ticket: int) -> bool:
        return ticket == self._latest

    def invalidate(self) -> None:
        """Make every outstanding ticket stale."""
        self._latest += 1

    @property
    def latest(self) -> int:
        return self._latest
