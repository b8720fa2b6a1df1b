"""Cooperative cancellation tokens.

A token is cancelled at most once. Tokens can be linked to parent tokens: when
any parent is cancelled, every linked child is cancelled too, while cancelling
a child never touches its parents or siblings.
"""

import threading
from typing import List, Optional

from .errors import OperationCancelled


class CancellationToken:
    """Thread-safe cancellation flag with parent linking."""

    def __init__(self, *parents: "CancellationToken"):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._children: List["CancellationToken"] = []
        self._parents = list(parents)
        self.reason: Optional[str] = None
        for parent in self._parents:
            parent._attach(self)

    @classmethod
    def none(cls) -> "CancellationToken":
        """A token nobody holds a reference to cancel; used for must-complete writes."""
        return cls()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: Optional[str] = None) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            children = list(self._children)
        for child in children:
            child.cancel(reason)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self.reason or "Operation cancelled")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Sleeps up to ``timeout`` seconds; returns True if cancelled meanwhile."""
        return self._event.wait(timeout)

    def close(self) -> None:
        """Detach from parents so long-lived parents do not accumulate children."""
        for parent in self._parents:
            parent._detach(self)
        self._parents = []

    def _attach(self, child: "CancellationToken") -> None:
        with self._lock:
            if not self._event.is_set():
                self._children.append(child)
                return
            reason = self.reason
        child.cancel(reason)

    def _detach(self, child: "CancellationToken") -> None:
        with self._lock:
            try:
                self._children.remove(child)
            except ValueError:
                pass


def linked_token(*parents: CancellationToken) -> CancellationToken:
    """Returns a new token cancelled whenever any of ``parents`` is cancelled."""
    return CancellationToken(*parents)
