"""Cooperative cancellation token shared by a job and its scheduler."""

import threading

from .errors import OperationCancelled


class CancellationToken:
    """One-way cancellation flag checked at pipeline suspension points."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        """Raise OperationCancelled if cancel() was called."""
        if self._event.is_set():
            raise OperationCancelled()
