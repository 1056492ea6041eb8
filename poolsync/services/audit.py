"""Audit-pass suppressor.

An external auditor periodically hands over the current input properties of
a bound pool. If the pool still has a live reconciliation loop the audit is a
no-op. If not (typically the process restarted and the in-memory polling
registry is empty) the pool-name marker is cleared in the returned snapshot
and exactly one reconfiguration is triggered, which re-arms the loop.
"""
from __future__ import annotations

import asyncio
import itertools
from typing import Awaitable, Callable, Optional

from poolsync.core.config import settings
from poolsync.core.logging import get_logger
from poolsync.metrics.prometheus import AUDITS
from poolsync.models.schemas import AuditSnapshot
from poolsync.services.errors import AuditError
from poolsync.services.polling import PollingRegistry

log = get_logger("Audit")

REQUIRED_PROPERTIES = ("poolName", "poolType", "healthMonitor")

Reconfigure = Callable[[str, AuditSnapshot], Awaitable[object]]

# process-wide audit cycle number, only used in log headers
_audit_counter = itertools.count(1)


class AuditSuppressor:

    def __init__(self, polling: PollingRegistry, reconfigure: Reconfigure, delay_s: Optional[float] = None):
        self._polling = polling
        self._reconfigure = reconfigure
        self._delay = settings.audit_delay_s if delay_s is None else delay_s

    async def audit(self, snapshot: Optional[AuditSnapshot]) -> AuditSnapshot:
        header = f"AUDIT #{next(_audit_counter)}: "
        log.debug("%sstart", header)
        try:
            pool_name = self._validate(snapshot)
        except AuditError:
            AUDITS.labels(decision="error").inc()
            raise

        # give a bind accepted just before this audit the chance to register
        if self._delay:
            await asyncio.sleep(self._delay)

        if self._polling.is_active(pool_name):
            log.debug("%s%s is being polled, nothing to do", header, pool_name)
            AUDITS.labels(decision="suppressed").inc()
            return snapshot

        log.info("%s%s is not being polled, triggering reconfiguration", header, pool_name)
        result = snapshot.model_copy(deep=True)
        result.get_property("poolName").value = None
        try:
            await self._reconfigure(pool_name, snapshot)
        except Exception:
            log.exception("%sreconfiguration of %s failed", header, pool_name)
        AUDITS.labels(decision="retriggered").inc()
        log.debug("%sdone", header)
        return result

    @staticmethod
    def _validate(snapshot: Optional[AuditSnapshot]) -> str:
        if snapshot is None:
            raise AuditError("audit task state must exist")
        for key in REQUIRED_PROPERTIES:
            prop = snapshot.get_property(key)
            if prop is None or prop.value in (None, ""):
                raise AuditError(f"audit snapshot is missing required property {key!r}")
        return str(snapshot.get_property("poolName").value)
