"""Background persistence of engine commands.

The coordinator listens for patches emitted by the engine and sends them to
a backend from a single worker task, so they reach the backend in exactly
the order they were applied locally. Local edits never wait on it.

Failure policy:

* transport errors are retried with exponential backoff; when retries run
  out the engine reverts the command and records a :class:`SyncFailure`
* a :class:`ConflictOnReconcile` from the backend means another session
  wrote first: the authoritative state is fetched, the engine reconciles,
  and every queued patch is dropped
"""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from .commands import CommandState, SyncPatch
from .engine import BudgetEngine
from .errors import ConflictOnReconcile
from .models import Category, MonthLedger, Workspace
from .settings import get_config_value

logger = logging.getLogger(__name__)


class Backend(Protocol):
    """What the coordinator needs from a persistence backend."""

    def push(self, workspace: Workspace, patch: SyncPatch, expected_revision: Optional[int]) -> int:
        """Apply ``patch`` idempotently and return the new revision.

        Raises:
            ConflictOnReconcile: If the stored revision is not ``expected_revision``
        """

    def load_state(self, workspace: Workspace) -> Tuple[List[Category], List[MonthLedger]]:
        """Return the authoritative categories and ledgers."""

    def revision(self, workspace: Workspace) -> int:
        """Return the current revision counter."""


class SyncCoordinator:
    """Sends engine patches to a backend in apply order.

    Args:
        engine: Engine whose patches are persisted
        backend: Persistence backend; its blocking calls run in a thread
        workspace: Identity scope (defaults to ``engine.workspace``)
        max_retries: Retries after the first attempt before reverting
        backoff_base: Delay before the first retry, in seconds
        backoff_factor: Multiplier applied to the delay on every retry
        sleep: Awaitable used for backoff delays
    """

    def __init__(
        self,
        engine: BudgetEngine,
        backend: Backend,
        workspace: Optional[Workspace] = None,
        max_retries: Optional[int] = None,
        backoff_base: Optional[float] = None,
        backoff_factor: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.engine = engine
        self.backend = backend
        self.workspace = workspace or engine.workspace
        if self.workspace is None:
            raise ValueError("SyncCoordinator requires a workspace")
        self.max_retries = (
            max_retries if max_retries is not None
            else get_config_value('planner', 'sync', 'max_retries', default=3)
        )
        self.backoff_base = (
            backoff_base if backoff_base is not None
            else get_config_value('planner', 'sync', 'backoff_base_seconds', default=0.5)
        )
        self.backoff_factor = (
            backoff_factor if backoff_factor is not None
            else get_config_value('planner', 'sync', 'backoff_factor', default=2.0)
        )
        self._sleep = sleep
        self._queue: Optional[asyncio.Queue] = None
        self._backlog: List[SyncPatch] = []
        self._worker: Optional[asyncio.Task] = None
        self._detach: Optional[Callable[[], None]] = None
        self.known_revision: Optional[int] = None
        self.sent: List[str] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def attach(self) -> None:
        """Start collecting patches from the engine (safe to call twice)."""
        if self._detach is None:
            self._detach = self.engine.add_patch_listener(self.enqueue)

    async def start(self) -> None:
        self.attach()
        if self._worker is not None and not self._worker.done():
            return
        self._queue = asyncio.Queue()
        for patch in self._backlog:
            self._queue.put_nowait(patch)
        self._backlog.clear()
        if self.known_revision is None:
            self.known_revision = await asyncio.to_thread(self.backend.revision, self.workspace)
        self._worker = asyncio.create_task(self._run())

    async def stop(self) -> None:
        if self._detach is not None:
            self._detach()
            self._detach = None
        if self._worker is not None:
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
            self._worker = None

    async def flush(self) -> None:
        """Wait until every queued patch has been handled."""
        if self._queue is not None:
            await self._queue.join()

    @property
    def pending(self) -> int:
        queued = self._queue.qsize() if self._queue is not None else 0
        return queued + len(self._backlog)

    def enqueue(self, patch: SyncPatch) -> None:
        if self._queue is None:
            self._backlog.append(patch)
        else:
            self._queue.put_nowait(patch)

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    async def _run(self) -> None:
        if self._queue is None:
            raise RuntimeError("SyncCoordinator is not started")
        while True:
            patch = await self._queue.get()
            try:
                await self._deliver(patch)
            except Exception:
                logger.exception("Unexpected error while syncing %s", patch.patch_id)
            finally:
                self._queue.task_done()

    async def _deliver(self, patch: SyncPatch) -> None:
        command = self.engine.command(patch.command_id)
        if command is not None and command.state is CommandState.REVERTED:
            logger.debug("Dropping patch %s of reverted command", patch.patch_id)
            return

        last_error: Optional[BaseException] = None
        for attempt in range(self.max_retries + 1):
            try:
                revision = await asyncio.to_thread(
                    self.backend.push, self.workspace, patch, self.known_revision
                )
            except ConflictOnReconcile as conflict:
                await self._reconcile(conflict)
                return
            except Exception as exc:
                last_error = exc
                if attempt < self.max_retries:
                    delay = self.backoff_base * self.backoff_factor ** attempt
                    logger.warning(
                        "Sync of %s failed (attempt %d of %d): %s; retrying in %.2fs",
                        patch.patch_id, attempt + 1, self.max_retries + 1, exc, delay,
                    )
                    await self._sleep(delay)
                continue
            self.known_revision = revision
            self.sent.append(patch.patch_id)
            self.engine.mark_committed(patch)
            return

        logger.error("Giving up on %s after %d attempts", patch.patch_id, self.max_retries + 1)
        self.engine.revert(patch, str(last_error) if last_error else '')

    async def _reconcile(self, conflict: ConflictOnReconcile) -> None:
        logger.error(
            "Backend revision moved from %s to %s; reconciling",
            conflict.expected_revision, conflict.actual_revision,
        )
        categories, ledgers = await asyncio.to_thread(self.backend.load_state, self.workspace)
        self.known_revision = await asyncio.to_thread(self.backend.revision, self.workspace)
        dropped = 0
        while self._queue is not None and not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            dropped += 1
        if dropped:
            logger.warning("Dropped %d queued patch(es) after reconcile", dropped)
        self.engine.reconcile(categories, ledgers, conflict)
