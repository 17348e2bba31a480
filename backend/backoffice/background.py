# Overview: Detached worker pool for fire-and-forget side effects (audit writes).

"""
Background dispatch for work the request never waits on.

WHY: Audit writes must not block or fail the business operation that
triggered them. Work submitted here runs on a thread pool owned by the
application, inside its own app context and its own database session, so
it is detached from the caller's transaction and from request teardown.

RULES:
- submit() never raises to the caller; a refused submission is logged.
- The callable runs exactly once. No retries.
- drain() is for shutdown and tests only; request handlers never call it.
"""

from __future__ import annotations

import atexit
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait

from flask import Flask, current_app


class _DispatcherState:
    def __init__(self, max_workers: int):
        self.executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="backoffice-bg",
        )
        self.pending: set[Future] = set()
        self.lock = threading.Lock()


class BackgroundDispatcher:
    """Flask extension wrapping a per-application ThreadPoolExecutor."""

    extension_name = "background_dispatcher"

    def __init__(self, app: Flask | None = None):
        if app is not None:
            self.init_app(app)

    def init_app(self, app: Flask) -> None:
        max_workers = int(app.config.get("AUDIT_MAX_WORKERS", 2))
        state = _DispatcherState(max_workers)
        app.extensions[self.extension_name] = state

        timeout = float(app.config.get("AUDIT_DRAIN_TIMEOUT", 10))

        def _shutdown():
            self._drain_state(state, timeout)
            state.executor.shutdown(wait=False)

        atexit.register(_shutdown)

    def _state(self, app: Flask | None = None) -> _DispatcherState:
        app = app or current_app
        return app.extensions[self.extension_name]

    def submit(self, fn, *args, **kwargs) -> Future | None:
        """
        Run fn(*args, **kwargs) on the pool inside a fresh app context.

        Returns the Future, or None if the pool refused the work.
        """
        app = current_app._get_current_object()
        state = self._state(app)

        def _run():
            from .extensions import db

            with app.app_context():
                try:
                    return fn(*args, **kwargs)
                except Exception:
                    app.logger.exception("Background task %s failed", getattr(fn, "__name__", fn))
                    return None
                finally:
                    db.session.remove()

        try:
            future = state.executor.submit(_run)
        except RuntimeError:
            app.logger.exception("Background pool refused task %s", getattr(fn, "__name__", fn))
            return None

        with state.lock:
            state.pending.add(future)
        future.add_done_callback(lambda f: self._forget(state, f))
        return future

    @staticmethod
    def _forget(state: _DispatcherState, future: Future) -> None:
        with state.lock:
            state.pending.discard(future)

    @staticmethod
    def _drain_state(state: _DispatcherState, timeout: float | None) -> bool:
        with state.lock:
            outstanding = list(state.pending)
        if not outstanding:
            return True
        _, not_done = wait(outstanding, timeout=timeout)
        return not not_done

    def drain(self, timeout: float | None = None) -> bool:
        """Wait for outstanding tasks. True if everything finished in time."""
        return self._drain_state(self._state(), timeout)

    def pending_count(self) -> int:
        state = self._state()
        with state.lock:
            return len(state.pending)
