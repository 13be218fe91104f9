"""Cooperative cancellation."""

import threading


class WorkflowCancelledError(Exception):
    """Raised at a cancellation checkpoint once cancellation was requested."""
    pass


class CancellationToken:
    """Thread-safe flag checked before each column, rule and stage."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self, where: str = "") -> None:
        if self._event.is_set():
            suffix = f" ({where})" if where else ""
            raise WorkflowCancelledError(f"Workflow cancelled{suffix}")


def check_cancelled(token, where: str = "") -> None:
    """Raise if ``token`` is set; a missing token never cancels."""
    if token is not None:
        token.raise_if_cancelled(where)
