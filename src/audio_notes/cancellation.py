from __future__ import annotations

import logging
from threading import Event, Lock, Thread
from typing import Any, Callable, TypeVar

from audio_notes.errors import JobCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """A single cancel signal threaded through one job.

    Components holding a live handle (subprocess, HTTP response) register a
    callback with ``on_cancel`` and unregister it once the handle is gone. The
    callback runs on the cancelling thread, so handles are killed immediately
    rather than when the owner next checks.
    """

    def __init__(self) -> None:
        self._event = Event()
        self._lock = Lock()
        self._callbacks: dict[int, Callable[[], None]] = {}
        self._next_id = 0

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        with self._lock:
            if self._event.is_set():
                return
            self._event.set()
            callbacks = list(self._callbacks.values())
            self._callbacks.clear()
        for callback in callbacks:
            try:
                callback()
            except Exception:  # pylint: disable=broad-except
                logger.exception("Cancellation callback failed")

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register ``callback``; returns a function that unregisters it."""
        with self._lock:
            if not self._event.is_set():
                handle = self._next_id
                self._next_id += 1
                self._callbacks[handle] = callback

                def unregister() -> None:
                    with self._lock:
                        self._callbacks.pop(handle, None)

                return unregister
        callback()
        return lambda: None

    def wait(self, timeout: float) -> bool:
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise JobCancelled()


class InterruptibleCall:
    """Runs one blocking call on a helper thread.

    The caller returns as soon as the call finishes, the token is cancelled, or
    ``interrupt`` is called. A socket read cannot be woken by closing its client
    from another thread, so the caller stops waiting instead and leaves the
    helper to unwind after ``on_abandon`` has released its handles.
    """

    def __init__(self, cancel: CancellationToken | None = None, *, name: str = "audio-notes-io") -> None:
        self.cancel = cancel
        self.name = name
        self._wake = Event()
        self._lock = Lock()
        self._error: BaseException | None = None

    @property
    def interrupted(self) -> bool:
        with self._lock:
            return self._error is not None

    def interrupt(self, error: BaseException) -> None:
        with self._lock:
            if self._error is None:
                self._error = error
        self._wake.set()

    def run(
        self,
        func: Callable[[], T],
        *,
        on_abandon: Callable[[], None] | None = None,
        cancel_message: str = "Cancelled by user",
    ) -> T:
        outcome: dict[str, Any] = {}

        def target() -> None:
            try:
                outcome["value"] = func()
            except BaseException as exc:  # pylint: disable=broad-except
                outcome["error"] = exc
            finally:
                self._wake.set()

        unregister = (
            self.cancel.on_cancel(lambda: self.interrupt(JobCancelled(cancel_message)))
            if self.cancel is not None
            else (lambda: None)
        )
        try:
            if not self.interrupted:
                Thread(target=target, name=self.name, daemon=True).start()
            self._wake.wait()
        finally:
            unregister()

        with self._lock:
            error = self._error
        if error is not None:
            if on_abandon is not None:
                try:
                    on_abandon()
                except Exception:  # pylint: disable=broad-except
                    logger.exception("Releasing interrupted call %s failed", self.name)
            raise error
        if "error" in outcome:
            raise outcome["error"]
        return outcome["value"]
