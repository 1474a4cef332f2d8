"""Per-resource operation scheduler.

enqueue() persists a queued operation and returns its id immediately;
draining happens in a detached task. Each resource key (app:env) runs at
most one operation at a time, in creation order. Different keys never
wait for each other.
"""

import asyncio
import logging
from typing import AsyncIterator, Optional

from manifest import AppRegistry
from operations.broadcaster import DONE, LOG, STATUS, Event, OutputBroadcaster, QueueSink
from operations.errors import InputError
from operations.executor import ProcessExecutor
from operations.locks import ResourceLockManager
from operations.models import OPERATION_TYPES, SHARED_ENV, Operation, get_operation_type, resource_key
from operations.store import OperationStore

logger = logging.getLogger(__name__)


class Scheduler:
    """Accepts operations and drains per-resource queues.

    Args:
        store: Operation store
        executor: Runs one operation to completion
        broadcaster: Live event fan-out used by stream()
        registry: Used to validate app and environment on enqueue
        locks: Resource lock manager (a fresh one by default)
    """

    def __init__(
        self,
        store: OperationStore,
        executor: ProcessExecutor,
        broadcaster: OutputBroadcaster,
        registry: Optional[AppRegistry] = None,
        locks: Optional[ResourceLockManager] = None,
    ):
        self.store = store
        self.executor = executor
        self.broadcaster = broadcaster
        self.registry = registry
        self.locks = locks or ResourceLockManager()
        self._tasks: set[asyncio.Task] = set()

    def start(self) -> list[str]:
        """Reconcile stale rows and resume queues left by a previous run.

        Returns the ids of operations marked failed by reconciliation.
        """
        stale = self.store.reconcile_stale()
        for app, env in self.store.resources_with_queued():
            logger.info(f"Resuming queue for {resource_key(app, env)}")
            self._spawn_drain(app, env)
        return stale

    def validate(self, app: str, env: str, type: str) -> None:
        """Reject unknown types, apps and environments.

        Raises:
            InputError: The request can never run
        """
        if get_operation_type(type) is None:
            raise InputError(f"Unknown operation type: {type} (valid: {', '.join(sorted(OPERATION_TYPES))})")
        if self.registry is None:
            return
        manifest = self.registry.get(app)
        if manifest is None:
            raise InputError(f"Unknown app: {app}")
        if env != SHARED_ENV and env not in manifest.environments:
            raise InputError(f"Unknown environment: {app}:{env}")

    def enqueue(
        self,
        app: str,
        env: str,
        type: str,
        ref: Optional[str] = None,
        vars: Optional[dict] = None,
        callback_url: Optional[str] = None,
        initiated_by: Optional[str] = None,
    ) -> str:
        """Create a queued operation and trigger a drain. Returns the id.

        Must be called from within the running event loop.
        """
        self.validate(app, env, type)
        op_id = self.store.create(app, env, type, ref=ref, vars=vars,
                                  callback_url=callback_url, initiated_by=initiated_by)
        logger.info(f"Enqueued {type} for {resource_key(app, env)} (op {op_id})")
        self._spawn_drain(app, env)
        return op_id

    def _spawn_drain(self, app: str, env: Optional[str]) -> None:
        task = asyncio.create_task(self.process_queue(app, env))
        self._tasks.add(task)
        task.add_done_callback(self._drain_done)

    def _drain_done(self, task: asyncio.Task) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Queue drain failed: {task.exception()!r}")

    async def process_queue(self, app: str, env: Optional[str]) -> None:
        """Run queued operations for one resource until its queue is empty.

        A no-op when another drain already holds the resource.
        """
        key = resource_key(app, env)
        while True:
            if self.locks.is_locked(key):
                return
            op = self.store.get_next_queued(app, env)
            if op is None:
                return
            if not self.locks.try_acquire(key):
                return
            try:
                await self.executor.execute(op)
            finally:
                self.locks.release(key)

    async def cancel(self, op_id: str) -> bool:
        return await self.executor.cancel(op_id)

    def get(self, op_id: str) -> Optional[Operation]:
        return self.store.get(op_id)

    def list(self, **filters) -> list[Operation]:
        return self.store.list(**filters)

    async def stream(self, op_id: str) -> AsyncIterator[Event]:
        """Replay persisted output and status, then follow live events until done.

        Subscribing and reading the snapshot happen without an await in
        between, so every queued event is newer than the snapshot.
        """
        sink = QueueSink()
        unsubscribe = self.broadcaster.subscribe(op_id, sink)
        try:
            op = self.store.get(op_id)
            if op is None:
                raise InputError(f"Operation not found: {op_id}")

            if op.output:
                yield Event(LOG, {'text': op.output})
            yield Event(STATUS, {'status': op.status})
            if op.is_terminal:
                data = {'status': op.status}
                if op.error:
                    data['error'] = op.error
                yield Event(DONE, data)
                return

            while True:
                event = await sink.get()
                yield event
                if event.event == DONE:
                    return
        finally:
            unsubscribe()

    async def wait_idle(self) -> None:
        """Wait until every drain task (including ones they spawn) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        await self.executor.drain_background()
