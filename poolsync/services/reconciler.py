"""Per-pool reconciliation loop.

One asyncio task per bound pool. Every cycle reads the service key from the
registry, turns the value into a member set and fully replaces the pool with
it. The next cycle starts one interval after the previous one *started*, but
never before the previous one has finished, so at most one set of CLI calls
is in flight per pool.

Failures are absorbed: a failed registry read skips the cycle, a failed
apply is left for the next cycle to converge. Only ``stop()`` ends the loop.
"""
from __future__ import annotations

import asyncio
import uuid
from enum import Enum
from typing import Callable, Iterable, Optional

from poolsync.core.config import settings
from poolsync.core.logging import get_logger
from poolsync.metrics.prometheus import TICKS
from poolsync.models.schemas import ApplyAction, PollingState, PoolSpec
from poolsync.services.errors import CommandError, RegistryError
from poolsync.services.members import parse_members
from poolsync.services.polling import PollingRegistry
from poolsync.services.pool_applier import PoolApplier
from poolsync.services.registry_client import RegistryReader

log = get_logger("Loop")


class TickOutcome(str, Enum):
    APPLIED = "applied"
    REGISTRY_ERROR = "registry_error"
    APPLY_ERROR = "apply_error"
    SKIPPED = "skipped"


class ReconciliationLoop:
    """Keeps one pool in line with one registry key until stopped."""

    def __init__(
        self,
        spec: PoolSpec,
        service_name: str,
        registry: RegistryReader,
        applier: PoolApplier,
        polling: PollingRegistry,
        interval_s: float,
        *,
        grace_s: Optional[float] = None,
        instance_name: Optional[str] = None,
        initial_state: PollingState = PollingState.POLLING,
        on_exit: Optional[Callable[["ReconciliationLoop"], None]] = None,
        after: Iterable["ReconciliationLoop"] = (),
    ):
        self.spec = spec
        self.service_name = service_name
        self.interval_s = interval_s
        self.instance_name = instance_name or f"{spec.name}#{uuid.uuid4().hex[:8]}"
        self._registry = registry
        self._applier = applier
        self._polling = polling
        self._grace = settings.stop_grace_s if grace_s is None else grace_s
        self._initial_state = initial_state
        self._on_exit = on_exit
        self._stop = asyncio.Event()
        self._keep_pool = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        # loops for the same pool that must be fully gone before the first cycle
        self._after = [p for p in after if p is not self]

        self.ticks = 0
        self.cleanup_attempts = 0
        self.last_outcome: Optional[TickOutcome] = None
        self.last_action: Optional[ApplyAction] = None

    @property
    def task(self) -> Optional[asyncio.Task]:
        return self._task

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        """Schedule the loop and register the pool as actively polled."""
        if self.is_running:
            return
        self._polling.register(self.spec.name, self.instance_name, self._initial_state)
        self._task = asyncio.create_task(self._run(), name=f"reconcile:{self.spec.name}")
        log.info(
            "started %s: service=%s pool=%s every %.1fs",
            self.instance_name, self.service_name, self.spec.name, self.interval_s,
        )

    def stop(self, cleanup: bool = True) -> None:
        """Ask the loop to stop at its next check.

        With ``cleanup`` the pool is deleted once, best effort, after the grace
        delay. An in-flight CLI call is never interrupted. Calling it again
        with ``cleanup=False`` during the grace delay hands the pool over and
        cancels the pending delete.
        """
        if not cleanup:
            self._keep_pool.set()
        self._stop.set()
        log.info("stopping %s (cleanup=%s)", self.instance_name, cleanup)

    async def wait(self) -> None:
        if self._task is not None:
            await self._task

    async def run_once(self) -> TickOutcome:
        """Run a single reconciliation cycle."""
        if self._stop.is_set():
            return self._record(TickOutcome.SKIPPED)
        self.ticks += 1

        try:
            raw = await self._registry.get_value(self.service_name)
        except RegistryError as e:
            log.warning("%s: registry read failed, skipping cycle: %s", self.spec.name, e)
            return self._record(TickOutcome.REGISTRY_ERROR)

        members = parse_members(raw)
        log.debug("%s: service endpoint list %s", self.spec.name, list(members))

        # stop may have arrived while the registry call was suspended
        if self._stop.is_set():
            return self._record(TickOutcome.SKIPPED)

        desired = self.spec.model_copy(update={"members": members})
        try:
            self.last_action = await self._applier.apply_pool(desired)
        except CommandError as e:
            log.error("%s: applying pool failed: %s", self.spec.name, e)
            return self._record(TickOutcome.APPLY_ERROR)

        if self._initial_state is PollingState.UPDATING:
            self._polling.set_state(self.spec.name, PollingState.POLLING)
            self._initial_state = PollingState.POLLING
        return self._record(TickOutcome.APPLIED)

    def _record(self, outcome: TickOutcome) -> TickOutcome:
        self.last_outcome = outcome
        TICKS.labels(outcome=outcome.value).inc()
        return outcome

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            try:
                await self._wait_for_predecessors()
                while not self._stop.is_set():
                    started = loop.time()
                    try:
                        await self.run_once()
                    except Exception:
                        log.exception("%s: unexpected error in reconciliation cycle", self.spec.name)

                    remaining = self.interval_s - (loop.time() - started)
                    if remaining > 0 and not self._stop.is_set():
                        try:
                            await asyncio.wait_for(self._stop.wait(), timeout=remaining)
                        except asyncio.TimeoutError:
                            pass
            finally:
                self._polling.unregister(self.spec.name, self.instance_name)
                log.info("%s: stopped polling registry", self.instance_name)

            if not self._keep_pool.is_set():
                await self._final_cleanup()
        finally:
            try:
                await self._registry.aclose()
            except Exception as e:
                log.warning("%s: closing registry client failed: %s", self.instance_name, e)
            if self._on_exit is not None:
                self._on_exit(self)

    async def _wait_for_predecessors(self) -> None:
        tasks = [p.task for p in self._after if p.task is not None and not p.task.done()]
        if not tasks:
            return
        log.info("%s: waiting for %d previous loop(s) of %s to finish", self.instance_name, len(tasks), self.spec.name)
        # asyncio.wait neither raises the tasks' errors nor cancels them
        await asyncio.wait(tasks)
        self._after = []

    async def _final_cleanup(self) -> None:
        if self._grace > 0:
            try:
                await asyncio.wait_for(self._keep_pool.wait(), timeout=self._grace)
            except asyncio.TimeoutError:
                pass
        if self._keep_pool.is_set():
            log.info("%s: pool %s was bound again, skipping final delete", self.instance_name, self.spec.name)
            return
        self.cleanup_attempts += 1
        try:
            action = await self._applier.delete_pool(self.spec.name)
            log.info("%s: final cleanup of pool %s: %s", self.instance_name, self.spec.name, action.value)
        except CommandError as e:
            log.warning("%s: final delete of pool %s failed: %s", self.instance_name, self.spec.name, e)
