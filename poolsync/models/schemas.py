"""Pydantic models for the Pool Sync service."""
from __future__ import annotations

import binascii
from base64 import b64decode
from enum import Enum
from typing import Any, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class PollingState(str, Enum):
    """State of a pool instance under reconciliation."""
    POLLING = "polling"
    UPDATING = "update"


class ApplyAction(str, Enum):
    """What the applier did to the load-balancer pool."""
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    NOOP = "noop"


class PoolSpec(BaseModel):
    """Desired pool state. ``members`` is always the full desired set."""
    model_config = ConfigDict(frozen=True)

    name: str
    load_balancing_mode: str
    monitor: str
    members: Tuple[str, ...] = ()


class PollingEntry(BaseModel):
    """One pool instance currently owned by a reconciliation loop."""
    model_config = ConfigDict(populate_by_name=True)

    name: str
    state: PollingState = PollingState.POLLING
    pool_ref: str = Field(alias="bigipPool")


class AuthenticationCert(BaseModel):
    """Base64-encoded TLS material used to reach the registry."""
    model_config = ConfigDict(populate_by_name=True)

    client_cert: str = Field(alias="etcdv3Cert")
    client_key: str = Field(alias="etcdv3Key")
    ca_cert: str = Field(alias="caCert")

    @field_validator("client_cert", "client_key", "ca_cert")
    @classmethod
    def _must_be_base64(cls, v: str) -> str:
        try:
            b64decode(v, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"not valid base64: {e}") from e
        return v


class BindRequest(BaseModel):
    """Input used to start (or update) synchronisation of one pool."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    etcd_endpoint: str = Field(alias="etcdv3Endpoint", min_length=1)
    authentication_cert: AuthenticationCert = Field(alias="authenticationCert")
    service_name: str = Field(alias="serviceName", min_length=1)
    pool_name: str = Field(alias="poolName", min_length=1)
    pool_type: str = Field(alias="poolType", min_length=1)
    health_monitor: str = Field(alias="healthMonitor", min_length=1)
    # seconds; clamped by core.config.effective_interval_ms
    poll_interval: Optional[float] = Field(None, alias="pollInterval", allow_inf_nan=False)

    def pool_spec(self, members: Tuple[str, ...] = ()) -> PoolSpec:
        return PoolSpec(
            name=self.pool_name,
            load_balancing_mode=self.pool_type,
            monitor=self.health_monitor,
            members=members,
        )


class UnbindRequest(BaseModel):
    """Input used to stop synchronisation and remove the pool."""
    model_config = ConfigDict(populate_by_name=True, str_strip_whitespace=True)

    pool_name: str = Field(alias="poolName", min_length=1)
    pool_type: str = Field(alias="poolType", min_length=1)


class AuditProperty(BaseModel):
    """A single block input property as seen by the audit pass."""
    model_config = ConfigDict(extra="allow")

    id: str
    value: Any = None


class AuditSnapshot(BaseModel):
    """Current input properties handed over by an audit pass."""
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    current_input_properties: List[AuditProperty] = Field(alias="currentInputProperties")

    def get_property(self, key: str) -> Optional[AuditProperty]:
        for prop in self.current_input_properties:
            if prop.id == key:
                return prop
        return None

    def values(self) -> dict:
        """Map property ids to their values."""
        return {p.id: p.value for p in self.current_input_properties}


class BindAccepted(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pool_name: str = Field(alias="poolName")
    state: PollingState
    poll_interval_ms: int = Field(alias="pollIntervalMs")


class UnbindAccepted(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pool_name: str = Field(alias="poolName")
    loop_stopped: bool = Field(alias="loopStopped")
