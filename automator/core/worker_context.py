"""
Worker context manager.

Every context is a fresh, isolated browser context opened on the tool's
entry page and driven by its own thread (Playwright sync objects must stay
on the thread that created them). A context runs one task and is then
destroyed, whatever the outcome.
"""

import logging
import queue
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from automator.core.constants import (
    ErrorCode, DEFAULT_ENTRY_URL,
    CONTEXT_READY_TIMEOUT_SEC, CONTEXT_READY_POLL_SEC, CONTEXT_SETTLE_SEC,
    CONTEXT_JOIN_TIMEOUT_SEC, CONTEXT_OPEN_GRACE_SEC,
)
from automator.core.error_codes import JobError
from automator.core.models import TaskCompleted, TaskFailed
from automator.core.task_channel import TaskChannel, TaskEnvelope
from automator.core.task_executor import TaskExecutor
from automator.core.waiting import wait_for, interruptible_sleep

logger = logging.getLogger(__name__)


# ── Browser backend ───────────────────────────────────────────────────

@dataclass
class BrowserSession:
    playwright: object
    browser: object
    context: object
    page: object


class PlaywrightBackend:
    """Launches one Chromium browser + context + page per worker context."""

    def __init__(self, headless: bool = False,
                 storage_state_path: Path | None = None,
                 browser_channel: str | None = None,
                 navigation_timeout_ms: int = 60_000):
        self.headless = headless
        self.storage_state_path = storage_state_path
        self.browser_channel = browser_channel
        self.navigation_timeout_ms = navigation_timeout_ms

    def open(self, entry_url: str) -> BrowserSession:
        from playwright.sync_api import sync_playwright

        pw = sync_playwright().start()
        browser = None
        try:
            launch_args = {'headless': self.headless}
            if self.browser_channel:
                launch_args['channel'] = self.browser_channel
            browser = pw.chromium.launch(**launch_args)

            context_args = {}
            if self.storage_state_path and Path(self.storage_state_path).exists():
                context_args['storage_state'] = str(self.storage_state_path)
            context = browser.new_context(**context_args)
            context.set_default_navigation_timeout(self.navigation_timeout_ms)

            page = context.new_page()
            page.goto(entry_url, wait_until="domcontentloaded")
            return BrowserSession(playwright=pw, browser=browser, context=context, page=page)
        except Exception:
            if browser is not None:
                try:
                    browser.close()
                except Exception as e:
                    logger.debug("Browser close after failed open: %s", e)
            pw.stop()
            raise

    def close(self, session: BrowserSession):
        for step, action in (("context", session.context.close),
                             ("browser", session.browser.close),
                             ("playwright", session.playwright.stop)):
            try:
                action()
            except Exception as e:
                logger.warning("Failed to close %s: %s", step, e)


# ── Handle ────────────────────────────────────────────────────────────

class ContextHandle:
    """The orchestrator's reference to one live worker context."""

    def __init__(self, context_id: str):
        self.context_id = context_id
        self.inbox: "queue.Queue[Optional[TaskEnvelope]]" = queue.Queue()
        self.ready = threading.Event()       # readiness wait finished (either way)
        self.closing = threading.Event()
        self.is_ready = False
        self.startup_error: Optional[str] = None
        self.thread: Optional[threading.Thread] = None

    def post(self, envelope: TaskEnvelope) -> bool:
        """Fire-and-forget delivery into the context's inbox."""
        if self.closing.is_set() or self.startup_error:
            return False
        if self.thread is not None and not self.thread.is_alive():
            return False
        self.inbox.put(envelope)
        return True

    def __repr__(self):
        return f"<ContextHandle {self.context_id} ready={self.is_ready}>"


# ── Manager ───────────────────────────────────────────────────────────

class WorkerContextManager:
    """Creates and destroys worker contexts."""

    def __init__(self, channel: TaskChannel, executor: TaskExecutor,
                 backend=None,
                 entry_url: str = DEFAULT_ENTRY_URL,
                 ready_timeout_sec: float = CONTEXT_READY_TIMEOUT_SEC,
                 ready_poll_sec: float = CONTEXT_READY_POLL_SEC,
                 settle_sec: float = CONTEXT_SETTLE_SEC,
                 join_timeout_sec: float = CONTEXT_JOIN_TIMEOUT_SEC,
                 open_grace_sec: float = CONTEXT_OPEN_GRACE_SEC):
        self.channel = channel
        self.executor = executor
        self.backend = backend or PlaywrightBackend()
        self.entry_url = entry_url
        self.ready_timeout_sec = ready_timeout_sec
        self.ready_poll_sec = ready_poll_sec
        self.settle_sec = settle_sec
        self.join_timeout_sec = join_timeout_sec
        self.open_grace_sec = open_grace_sec
        self._live: dict[str, ContextHandle] = {}
        self._lock = threading.Lock()

    def create(self) -> ContextHandle:
        """
        Start a fresh context and block until it reports ready or the ready
        timeout elapses. A context whose page never became ready is still
        returned and its task is expected to fail fast. A context still stuck
        opening the browser is returned with a startup error and takes no task.
        """
        handle = ContextHandle(context_id=uuid.uuid4().hex[:12])
        thread = threading.Thread(
            target=self._context_main, args=(handle,),
            name=f"worker-context-{handle.context_id}", daemon=True,
        )
        handle.thread = thread
        try:
            thread.start()
        except RuntimeError as e:
            raise JobError(ErrorCode.CONTEXT_CREATE, f"Could not start worker context: {e}")

        with self._lock:
            self._live[handle.context_id] = handle

        # Opening the browser is part of the bounded wait as well.
        startup_budget = self.ready_timeout_sec + self.settle_sec + self.open_grace_sec
        if not handle.ready.wait(startup_budget):
            handle.startup_error = f"context did not finish starting within {startup_budget:.0f}s"
            logger.warning("Context %s %s", handle.context_id, handle.startup_error)
        elif handle.startup_error:
            logger.warning("Context %s failed to start: %s",
                           handle.context_id, handle.startup_error)
        elif not handle.is_ready:
            logger.warning("Context %s not ready after %.0fs — continuing anyway",
                           handle.context_id, self.ready_timeout_sec)
        else:
            logger.debug("Context %s ready", handle.context_id)
        return handle

    def destroy(self, handle: ContextHandle):
        """Tear the context down. Never raises."""
        try:
            handle.closing.set()
            self.channel.cancel_context(handle.context_id)
            handle.inbox.put(None)
            if handle.thread is not None and handle.thread is not threading.current_thread():
                handle.thread.join(self.join_timeout_sec)
                if handle.thread.is_alive():
                    logger.warning("Context %s still busy after %.0fs — leaving it to exit on its own",
                                   handle.context_id, self.join_timeout_sec)
        except Exception as e:
            logger.warning("Failed to destroy context %s: %s", handle.context_id, e)
        finally:
            with self._lock:
                self._live.pop(handle.context_id, None)

    def live_count(self) -> int:
        with self._lock:
            return len(self._live)

    def destroy_all(self):
        with self._lock:
            handles = list(self._live.values())
        for handle in handles:
            self.destroy(handle)

    # ── Context thread ────────────────────────────────────────────────

    def _context_main(self, handle: ContextHandle):
        session = None
        try:
            try:
                session = self.backend.open(self.entry_url)
            except Exception as e:
                logger.error("Context %s could not open %s: %s",
                             handle.context_id, self.entry_url, e)
                handle.startup_error = f"{type(e).__name__}: {e}"
                return

            page = getattr(session, 'page', session)
            handle.is_ready = wait_for(
                lambda: self.executor.is_ready(page),
                timeout=self.ready_timeout_sec,
                poll_interval=self.ready_poll_sec,
                cancel=handle.closing,
            )
            if handle.is_ready:
                interruptible_sleep(self.settle_sec, handle.closing)
            handle.ready.set()

            self._serve(handle, page)
        finally:
            handle.ready.set()
            if session is not None:
                try:
                    self.backend.close(session)
                except Exception as e:
                    logger.warning("Context %s teardown failed: %s", handle.context_id, e)

    def _serve(self, handle: ContextHandle, page):
        while not handle.closing.is_set():
            envelope = handle.inbox.get()
            if envelope is None:
                return
            try:
                payload = self.executor.execute(page, envelope.task, handle.closing)
                message = TaskCompleted(task_id=envelope.task_id, payload=payload)
            except JobError as e:
                message = TaskFailed(task_id=envelope.task_id, code=e.code, message=e.message)
            except Exception as e:
                logger.warning("Task %s raised in context %s: %s",
                               envelope.task_id, handle.context_id, e, exc_info=True)
                message = TaskFailed(task_id=envelope.task_id, code=ErrorCode.TASK_FAILED,
                                     message=f"{type(e).__name__}: {e}")
            self.channel.deliver(message)
