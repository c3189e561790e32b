"""Cancellation handles and the per-run controller that supervises them.

Process-backed agents register a ``ProcessHandle``; session-backed agents
register an ``AbortHandle`` with pid 0. The controller only sees the
``StoppableHandle`` protocol and never special-cases either one.
"""

from __future__ import annotations

import asyncio
import logging
import os
import signal
import threading
from typing import Callable, Optional, Protocol, runtime_checkable

logger = logging.getLogger(__name__)

KILL_GRACE_SECONDS = 3.0


@runtime_checkable
class StoppableHandle(Protocol):
    """Anything the controller can stop."""

    pid: int

    def stop(self) -> None: ...


class AbortSignal:
    """One-shot abort flag that can be awaited and observed.

    Safe to trigger from any thread; waiters are woken on the loop the
    signal was created for.
    """

    def __init__(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        self._loop = loop
        self._event: Optional[asyncio.Event] = None
        self._aborted = False
        self._callbacks: list[Callable[[], None]] = []
        self._lock = threading.Lock()

    @property
    def aborted(self) -> bool:
        return self._aborted

    def add_callback(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` on abort, immediately if already aborted."""
        with self._lock:
            if not self._aborted:
                self._callbacks.append(callback)
                return
        callback()

    def abort(self) -> None:
        with self._lock:
            if self._aborted:
                return
            self._aborted = True
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception:
                logger.exception("Abort callback failed")

        if self._event is not None and self._loop is not None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is self._loop:
                self._event.set()
            elif not self._loop.is_closed():
                self._loop.call_soon_threadsafe(self._event.set)

    async def wait(self) -> None:
        if self._event is None:
            self._loop = asyncio.get_running_loop()
            self._event = asyncio.Event()
            if self._aborted:
                self._event.set()
        await self._event.wait()


class AbortHandle:
    """Handle for session-backed work; stopping it trips the abort signal."""

    pid = 0

    def __init__(self, signal_: AbortSignal):
        self.signal = signal_

    def stop(self) -> None:
        self.signal.abort()


class ProcessHandle:
    """Handle for a child process that leads its own process group.

    ``stop()`` sends SIGTERM to the group, falling back to the child alone
    when the group cannot be signalled. Unless the streams close first,
    the whole group gets SIGKILL once the grace period has passed.
    """

    def __init__(
        self,
        pid: int,
        is_alive: Callable[[], bool],
        grace_seconds: float = KILL_GRACE_SECONDS,
    ):
        self.pid = pid
        self._is_alive = is_alive
        self.grace_seconds = grace_seconds
        self.stopped = False
        self._timer: Optional[threading.Timer] = None

    def stop(self) -> None:
        if self.pid <= 0 or not self._is_alive():
            return
        self.stopped = True
        self._signal(signal.SIGTERM)

        if self._timer is None:
            self._timer = threading.Timer(self.grace_seconds, self._escalate)
            self._timer.daemon = True
            self._timer.start()

    def cancel_escalation(self) -> None:
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    def _escalate(self) -> None:
        # Group members can outlive the leader and keep its pipes open.
        kill = getattr(signal, "SIGKILL", signal.SIGTERM)
        try:
            os.killpg(self.pid, kill)
            logger.warning("Process group %s outlived the grace period, sent SIGKILL", self.pid)
        except ProcessLookupError:
            pass
        except (OSError, AttributeError) as e:
            logger.debug("Group kill of %s failed: %s", self.pid, e)
        if self._is_alive():
            try:
                os.kill(self.pid, kill)
            except OSError as e:
                logger.debug("Kill of %s failed: %s", self.pid, e)

    def _signal(self, sig: int) -> None:
        try:
            os.killpg(self.pid, sig)
            return
        except (OSError, AttributeError) as e:
            logger.debug("Group signal %s to %s failed: %s", sig, self.pid, e)
        try:
            os.kill(self.pid, sig)
        except OSError as e:
            logger.debug("Signal %s to %s failed: %s", sig, self.pid, e)


class RunController:
    """Tracks the live handles of one run.

    The state only moves from active to cancelled. The registry is shared
    by every in-flight execution and guarded by a lock.
    """

    def __init__(self) -> None:
        self._handles: dict[str, StoppableHandle] = {}
        self._cancelled = False
        self._lock = threading.Lock()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    def register(self, agent_key: str, handle: StoppableHandle) -> None:
        with self._lock:
            self._handles[agent_key] = handle

    def unregister(self, agent_key: str) -> None:
        with self._lock:
            self._handles.pop(agent_key, None)

    def active_keys(self) -> list[str]:
        with self._lock:
            return list(self._handles)

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
            handles = list(self._handles.items())
            self._handles.clear()

        for agent_key, handle in handles:
            self._stop(agent_key, handle)

    def cancel_agent(self, agent_key: str) -> bool:
        with self._lock:
            handle = self._handles.pop(agent_key, None)
        if handle is None:
            return False
        self._stop(agent_key, handle)
        return True

    @staticmethod
    def _stop(agent_key: str, handle: StoppableHandle) -> None:
        try:
            handle.stop()
        except Exception:
            logger.exception("Failed to stop agent %s", agent_key)
