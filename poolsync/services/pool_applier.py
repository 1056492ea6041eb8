"""Applies a desired pool state to the load-balancer configuration store.

Each call is an existence check followed by exactly one mutation: create,
full-replace modify, or delete. Membership is never patched incrementally;
``members replace-all-with`` overwrites whatever the pool currently holds,
so applying the same spec twice leaves the pool in the same state.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List

from poolsync.core.logging import get_logger
from poolsync.metrics.prometheus import APPLY_ACTIONS
from poolsync.models.schemas import ApplyAction, PoolSpec
from poolsync.services.errors import CommandError
from poolsync.services.members import format_members
from poolsync.services.tmsh import CommandRunner

log = get_logger("Applier")


def pool_config_args(spec: PoolSpec) -> List[str]:
    """Arguments shared by create and modify."""
    return [
        spec.name,
        "monitor", spec.monitor,
        "load-balancing-mode", spec.load_balancing_mode,
        "members", "replace-all-with", *format_members(spec.members),
    ]


class PoolApplier:
    """
    Create / modify / delete one pool through the CLI.

    ``retries`` is an opt-in extension point: by default a failed mutation is
    reported once and left for the next reconciliation cycle to converge.
    """

    def __init__(self, runner: CommandRunner, retries: int = 0, backoff_s: float = 0.5):
        self._runner = runner
        self._retries = max(0, int(retries))
        self._backoff = backoff_s

    async def pool_exists(self, name: str) -> bool:
        """A successful ``list`` means the pool exists; any failure means it does not."""
        try:
            await self._runner.run("list", "ltm", "pool", name)
        except CommandError as e:
            log.debug("pool %s not found: %s", name, e)
            return False
        return True

    async def apply_pool(self, desired: PoolSpec) -> ApplyAction:
        """Converge the pool to ``desired``; an empty member set removes the pool."""
        if not desired.members:
            log.info("endpoint list for %s is empty, removing the pool", desired.name)
            return await self.delete_pool(desired.name)

        config = pool_config_args(desired)
        if await self.pool_exists(desired.name):
            log.info("updating pool %s members=%s", desired.name, " ".join(desired.members))
            await self._mutate(lambda: self._runner.run("modify", "ltm", "pool", *config))
            action = ApplyAction.MODIFIED
        else:
            log.info("creating pool %s members=%s", desired.name, " ".join(desired.members))
            await self._mutate(lambda: self._runner.run("create", "ltm", "pool", *config))
            action = ApplyAction.CREATED
        APPLY_ACTIONS.labels(action=action.value).inc()
        return action

    async def delete_pool(self, name: str) -> ApplyAction:
        """Delete the pool; deleting a missing pool is a no-op, not an error."""
        if not await self.pool_exists(name):
            APPLY_ACTIONS.labels(action=ApplyAction.NOOP.value).inc()
            return ApplyAction.NOOP
        await self._mutate(lambda: self._runner.run("delete", "ltm", "pool", name))
        log.info("deleted pool %s", name)
        APPLY_ACTIONS.labels(action=ApplyAction.DELETED.value).inc()
        return ApplyAction.DELETED

    async def _mutate(self, call: Callable[[], Awaitable[str]]) -> None:
        last_exc: CommandError | None = None
        for i in range(self._retries + 1):
            try:
                await call()
                return
            except CommandError as e:
                last_exc = e
                if i < self._retries:
                    log.warning("pool command failed (attempt %d/%d): %s", i + 1, self._retries + 1, e)
                    await asyncio.sleep(self._backoff * (2**i))
        assert last_exc is not None
        raise last_exc
