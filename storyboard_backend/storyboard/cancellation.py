import logging

from .errors import Cancelled

logger = logging.getLogger(__name__)


class CancellationToken:
    """Cooperative stop flag for one run. Stages read it between awaited calls only."""

    def __init__(self):
        self._cancelled = False

    def cancel(self):
        if not self._cancelled:
            logger.info("Cancellation requested")
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def check(self):
        """Raise Cancelled if a stop was requested."""
        if self._cancelled:
            raise Cancelled("Run cancelled")

    def __repr__(self):
        return f"CancellationToken(cancelled={self._cancelled})"
