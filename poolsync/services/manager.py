"""Lifecycle owner for reconciliation loops.

The manager is created once per process (see ``poolsync.main``) and handed
to the routes and to the audit suppressor. It is the only writer of the
PollingRegistry, via the loops it starts.
"""
from __future__ import annotations

import asyncio
from typing import Callable, Dict, List, Optional, Set

from pydantic import ValidationError

from poolsync.core.config import effective_interval_ms, settings
from poolsync.core.logging import get_logger
from poolsync.models.schemas import AuditSnapshot, BindRequest, PollingEntry, PollingState, UnbindRequest
from poolsync.services.credentials import StagedCredentials, remove_credentials, stage_credentials
from poolsync.services.errors import CommandError, CredentialError
from poolsync.services.polling import PollingRegistry, PollingSignal
from poolsync.services.pool_applier import PoolApplier
from poolsync.services.reconciler import ReconciliationLoop
from poolsync.services.registry_client import EtcdRegistryClient, RegistryReader

log = get_logger("Loop")

RegistryFactory = Callable[[BindRequest, StagedCredentials], RegistryReader]


def etcd_registry_factory(request: BindRequest, creds: StagedCredentials) -> RegistryReader:
    return EtcdRegistryClient.from_credentials(request.etcd_endpoint, creds)


class LoopManager:
    """Starts, replaces and stops the per-pool loops."""

    def __init__(
        self,
        applier: PoolApplier,
        polling: Optional[PollingRegistry] = None,
        signal: Optional[PollingSignal] = None,
        registry_factory: RegistryFactory = etcd_registry_factory,
        credential_dir: Optional[str] = None,
        grace_s: Optional[float] = None,
    ):
        self.applier = applier
        self.polling = polling if polling is not None else PollingRegistry()
        self.signal = signal if signal is not None else PollingSignal(settings.polling_signal_path)
        self._registry_factory = registry_factory
        self._credential_dir = credential_dir or settings.credential_dir
        self._grace = settings.stop_grace_s if grace_s is None else grace_s
        self._loops: Dict[str, ReconciliationLoop] = {}
        self._requests: Dict[str, BindRequest] = {}
        self._background: Set[asyncio.Task] = set()
        # loops told to stop whose task has not finished yet
        self._stopping: Set[ReconciliationLoop] = set()

    def loop_for(self, pool_name: str) -> Optional[ReconciliationLoop]:
        return self._loops.get(pool_name)

    def entries(self) -> List[PollingEntry]:
        return self.polling.entries()

    async def bind(self, request: BindRequest) -> ReconciliationLoop:
        """Start synchronising ``request.pool_name``, replacing any running loop.

        Returns as soon as the loop is scheduled; the pool itself is created
        asynchronously by the loop's first cycle.
        """
        name = request.pool_name
        interval_ms = effective_interval_ms(request.poll_interval)
        if request.poll_interval and interval_ms != int(request.poll_interval * 1000):
            log.info("%s: poll interval %ss is too short, using %dms", name, request.poll_interval, interval_ms)

        previous = self._loops.get(name)
        replacing = previous is not None and previous.is_running

        cert = request.authentication_cert
        try:
            creds = stage_credentials(name, cert.client_cert, cert.client_key, cert.ca_cert, self._credential_dir)
            registry = self._registry_factory(request, creds)
        except (ValueError, OSError) as e:
            # ssl.SSLError is an OSError. A pool that is still running keeps its directory.
            if not replacing:
                remove_credentials(name, self._credential_dir)
            log.error("%s: bind rejected, TLS material is unusable: %s", name, e)
            raise CredentialError(f"unusable TLS material for pool {name}: {e}") from e

        # unbound loops still inside their grace delay hand the pool over
        after = [old for old in self._stopping if old.spec.name == name]
        for old in after:
            old.stop(cleanup=False)

        initial_state = PollingState.POLLING
        if replacing:
            log.info("%s: configuration changed, replacing %s", name, previous.instance_name)
            self.polling.set_state(name, PollingState.UPDATING)
            previous.stop(cleanup=False)
            self._track(previous)
            after.append(previous)
            initial_state = PollingState.UPDATING

        loop = ReconciliationLoop(
            request.pool_spec(),
            request.service_name,
            registry,
            self.applier,
            self.polling,
            interval_ms / 1000,
            grace_s=self._grace,
            initial_state=initial_state,
            on_exit=self._on_loop_exit,
            after=after,
        )
        self._loops[name] = loop
        self._requests[name] = request
        loop.start()
        self.signal.raise_(self.polling.entries())
        return loop

    async def unbind(self, request: UnbindRequest) -> bool:
        """Stop synchronising a pool and remove it.

        Returns True when a running loop was told to stop; it deletes the pool
        itself after the grace delay. Without a loop (e.g. after a restart) a
        single best-effort delete is scheduled instead.
        """
        name = request.pool_name
        self._requests.pop(name, None)
        loop = self._loops.pop(name, None)
        stopped = loop is not None and loop.is_running
        if stopped:
            loop.stop(cleanup=True)
            self._track(loop)
        else:
            log.info("%s: no active loop, deleting pool directly", name)
            self._spawn(self._delete_unmanaged(name))
        remove_credentials(name, self._credential_dir)
        return stopped

    async def rebind(self, pool_name: str, snapshot: AuditSnapshot) -> bool:
        """Re-arm a pool whose loop is gone; the audit pass's reconfigure target."""
        values = snapshot.values()
        values["poolName"] = pool_name
        try:
            request = BindRequest.model_validate(values)
        except ValidationError:
            request = self._requests.get(pool_name)
        if request is None:
            log.warning("%s: audit asked for a rebind but no bind properties are known", pool_name)
            return False
        await self.bind(request)
        return True

    async def shutdown(self, timeout_s: float = 5.0) -> None:
        """Stop every loop without touching the pools and clear the signal."""
        loops = list(self._loops.values())
        self._loops.clear()
        for loop in loops:
            loop.stop(cleanup=False)
            self._track(loop)
        pending = [t for t in self._background if not t.done()]
        if pending:
            _, still_running = await asyncio.wait(pending, timeout=timeout_s)
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
        self.signal.clear()

    async def _delete_unmanaged(self, name: str) -> None:
        if self.polling.is_active(name):
            log.info("%s: bound again before removal, keeping pool", name)
            return
        try:
            action = await self.applier.delete_pool(name)
            log.info("%s: pool removal: %s", name, action.value)
        except CommandError as e:
            log.error("%s: delete failed: %s", name, e)

    def _track(self, loop: ReconciliationLoop) -> None:
        if loop.task is not None and not loop.task.done():
            self._stopping.add(loop)
            self._background.add(loop.task)
            loop.task.add_done_callback(self._background.discard)

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def _on_loop_exit(self, loop: ReconciliationLoop) -> None:
        self._stopping.discard(loop)
        if self._loops.get(loop.spec.name) is loop:
            del self._loops[loop.spec.name]
        entries = self.polling.entries()
        if entries:
            self.signal.raise_(entries)
        else:
            self.signal.clear()
