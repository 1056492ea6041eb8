"""Exception types raised by the Pool Sync services."""
from __future__ import annotations

from typing import Sequence


class PoolSyncError(Exception):
    """Base class for every error raised by this package."""


class RegistryError(PoolSyncError):
    """The registry could not be read on any configured endpoint."""


class CommandError(PoolSyncError):
    """A load-balancer CLI invocation failed."""

    def __init__(self, args: Sequence[str], returncode: int | None, stderr: str = ""):
        self.command = list(args)
        self.returncode = returncode
        self.stderr = stderr.strip()
        detail = self.stderr or "no output"
        super().__init__(f"`{' '.join(self.command)}` failed (rc={returncode}): {detail}")


class AuditError(PoolSyncError):
    """The audit snapshot is missing or incomplete."""


class CredentialError(PoolSyncError):
    """The TLS material of a bind could not be staged or loaded."""
