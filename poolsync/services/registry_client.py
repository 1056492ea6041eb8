"""HTTP client wrapper for the etcd v3 registry.

Reads a single key through the etcd JSON gateway (``/v3/kv/range``) over
mutual TLS and returns the raw value. The value of a service key is the
comma-separated ``host:port`` list that ends up as pool members.
"""

from __future__ import annotations

import ssl
from base64 import b64decode, b64encode
from typing import List, Protocol, Sequence, Union

import httpx

from poolsync.core.config import settings
from poolsync.core.logging import get_logger
from poolsync.metrics.prometheus import REGISTRY_LATENCY
from poolsync.services.credentials import StagedCredentials
from poolsync.services.errors import RegistryError

log = get_logger("Registry")


class RegistryReader(Protocol):
    """Reads the raw value of one registry key."""

    async def get_value(self, key: str) -> str:
        ...

    async def aclose(self) -> None:
        ...


def split_endpoints(endpoints: Union[str, Sequence[str]]) -> List[str]:
    """Normalize ``"h1:2379,h2:2379"`` (or a list) to absolute base URLs."""
    items = endpoints.split(",") if isinstance(endpoints, str) else list(endpoints)
    urls: list[str] = []
    for item in items:
        item = item.strip().rstrip("/")
        if not item:
            continue
        urls.append(item if "://" in item else f"https://{item}")
    return urls


def _decode_range_response(payload: object) -> str:
    """Extract the first value from a range response; a missing key reads as ``""``."""
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected range response: {payload!r}")
    kvs = payload.get("kvs") or []
    if not kvs:
        return ""
    value = kvs[0].get("value")
    if not value:
        return ""
    return b64decode(value).decode("utf-8")


class EtcdRegistryClient:
    """
    Tiny etcd v3 gateway client.

    Holds an httpx.AsyncClient configured with the pool's TLS material and
    tries the configured endpoints in order for every read.
    """

    def __init__(self, client: httpx.AsyncClient, endpoints: Union[str, Sequence[str]], timeout_s: float = 5.0):
        self._client = client
        self._endpoints = split_endpoints(endpoints)
        self._timeout = timeout_s
        if not self._endpoints:
            raise ValueError("no registry endpoints configured")

    @classmethod
    def from_credentials(
        cls, endpoints: Union[str, Sequence[str]], creds: StagedCredentials, timeout_s: float | None = None
    ) -> "EtcdRegistryClient":
        """Construct a client that authenticates with staged certificate files."""
        timeout = timeout_s if timeout_s is not None else settings.registry_timeout_s
        ctx = ssl.create_default_context(cafile=creds.ca_path)
        ctx.load_cert_chain(certfile=creds.cert_path, keyfile=creds.key_path)
        client = httpx.AsyncClient(verify=ctx, timeout=timeout)
        return cls(client, endpoints, timeout)

    @property
    def endpoints(self) -> List[str]:
        return list(self._endpoints)

    async def get_value(self, key: str) -> str:
        """Return the raw value stored under ``key``.

        Raises RegistryError when no endpoint gives a usable answer.
        """
        body = {"key": b64encode(key.encode("utf-8")).decode("ascii")}
        last_exc: Exception | None = None

        for base in self._endpoints:
            url = f"{base}/v3/kv/range"
            try:
                with REGISTRY_LATENCY.time():
                    resp = await self._client.post(url, json=body, timeout=self._timeout)
                if resp.status_code == 200:
                    return _decode_range_response(resp.json())
                last_exc = RuntimeError(f"HTTP {resp.status_code}")
                log.warning("registry non-200 (%s) on %s", resp.status_code, url)
            except (httpx.HTTPError, ValueError) as e:
                last_exc = e
                log.warning("registry error on %s: %s", url, e)

        raise RegistryError(f"failed to read {key!r} from {', '.join(self._endpoints)}: {last_exc}")

    async def aclose(self) -> None:
        await self._client.aclose()
