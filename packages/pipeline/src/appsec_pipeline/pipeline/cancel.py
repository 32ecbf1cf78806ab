from __future__ import annotations

import threading
from typing import Callable, Optional

import structlog

from appsec_pipeline.core import Cancelled

log = structlog.get_logger(__name__)

CancelCallback = Callable[[str], None]


class CancelToken:
    """
    Cooperative cancellation shared by a driver and its workers.

    Cancelling a token cancels every child derived from it; a child never
    cancels its parent. Callbacks registered with `on_cancel` run on the
    cancelling thread, or immediately when the token is already cancelled.
    """

    def __init__(self, parent: Optional["CancelToken"] = None) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._reason: str | None = None
        self._callbacks: dict[int, CancelCallback] = {}
        self._next_id = 0
        self._children: list[CancelToken] = []

        if parent is not None:
            parent._adopt(self)

    def _adopt(self, child: "CancelToken") -> None:
        with self._lock:
            cancelled = self._event.is_set()
            if not cancelled:
                self._children.append(child)
        if cancelled:
            child.cancel(self._reason or "parent cancelled")

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> str | None:
        return self._reason

    def cancel(self, reason: str = "cancelled") -> bool:
        """Cancel once. Returns False when the token was already cancelled."""
        with self._lock:
            if self._event.is_set():
                return False
            self._reason = reason
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
            children = list(self._children)

        log.debug("cancel", reason=reason, callbacks=len(callbacks))
        for cb in callbacks:
            try:
                cb(reason)
            except Exception:
                log.exception("cancel.callback_failed", reason=reason)
        for child in children:
            child.cancel(reason)
        return True

    def on_cancel(self, callback: CancelCallback) -> Callable[[], None]:
        """Register `callback`; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                cb_id = self._next_id
                self._next_id += 1
                self._callbacks[cb_id] = callback

                def _unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(cb_id, None)

                return _unregister

        callback(self._reason or "cancelled")
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        """Sleep up to `timeout` seconds; True when cancelled meanwhile."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self._reason)
