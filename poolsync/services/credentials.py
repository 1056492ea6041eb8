"""Staging of registry TLS material to local files."""
from __future__ import annotations

import os
import re
import shutil
from base64 import b64decode
from dataclasses import dataclass

from poolsync.core.logging import get_logger

log = get_logger("Registry")

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class StagedCredentials:
    cert_path: str
    key_path: str
    ca_path: str


def credential_dir(base_dir: str, pool_name: str) -> str:
    """Per-pool directory; ``/Common/pool_a`` becomes ``Common_pool_a``."""
    safe = _UNSAFE.sub("_", pool_name).strip("_") or "default"
    return os.path.join(base_dir, safe)


def _write(path: str, data: bytes, mode: int) -> None:
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, mode)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    os.chmod(path, mode)


def stage_credentials(pool_name: str, cert_b64: str, key_b64: str, ca_b64: str, base_dir: str) -> StagedCredentials:
    """Decode the three base64 blobs and write them for one pool.

    All blobs are decoded before anything touches the disk.
    """
    cert = b64decode(cert_b64, validate=True)
    key = b64decode(key_b64, validate=True)
    ca = b64decode(ca_b64, validate=True)

    target = credential_dir(base_dir, pool_name)
    os.makedirs(target, mode=0o700, exist_ok=True)
    staged = StagedCredentials(
        cert_path=os.path.join(target, "client.crt"),
        key_path=os.path.join(target, "client.key"),
        ca_path=os.path.join(target, "ca.crt"),
    )
    _write(staged.cert_path, cert, 0o644)
    _write(staged.key_path, key, 0o600)
    _write(staged.ca_path, ca, 0o644)
    log.debug("staged credentials for %s in %s", pool_name, target)
    return staged


def remove_credentials(pool_name: str, base_dir: str) -> None:
    target = credential_dir(base_dir, pool_name)
    try:
        shutil.rmtree(target)
    except FileNotFoundError:
        pass
    except OSError as e:
        log.warning("could not remove credentials in %s: %s", target, e)
