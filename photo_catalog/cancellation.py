import threading
from typing import Optional

from .exceptions import OperationCancelledError


class CancellationToken:
    """
    Cooperative cancellation flag shared between a caller and a long-running
    operation. The operation polls it at its checkpoints (directory, file,
    plan item) and stops with OperationCancelledError.
    """

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise OperationCancelledError("Operation was cancelled.")


def check_cancelled(token: Optional[CancellationToken]):
    """No-op when the caller did not pass a token."""
    if token is not None:
        token.raise_if_cancelled()
