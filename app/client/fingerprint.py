"""
Device fingerprint provider.

The fingerprint is a SHA-256 digest over stable host characteristics.
It is computed once per process and cached; a process restart on the
same machine yields the same value.

Providers are plain objects with a ``get()`` method so tests can run
several simulated devices side by side.
"""

import hashlib
import json
import logging
import platform
import uuid
from functools import lru_cache
from typing import Protocol

logger = logging.getLogger(__name__)


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _host_characteristics() -> dict[str, str]:
    return {
        "node": platform.node(),
        "system": platform.system(),
        "release": platform.release(),
        "machine": platform.machine(),
        "mac": format(uuid.getnode(), "012x"),
    }


@lru_cache(maxsize=1)
def get_device_fingerprint() -> str:
    """Stable identifier for this host, cached for the process lifetime."""
    blob = json.dumps(_host_characteristics(), sort_keys=True).encode("utf-8")
    fingerprint = sha256_hex(blob)
    logger.debug("Computed device fingerprint %s…", fingerprint[:8])
    return fingerprint


class FingerprintProvider(Protocol):
    def get(self) -> str: ...


class HostFingerprint:
    """Fingerprint of the machine this process runs on."""

    def get(self) -> str:
        return get_device_fingerprint()


class StaticFingerprint:
    """Fixed fingerprint for a simulated device."""

    def __init__(self, value: str) -> None:
        if not value:
            raise ValueError("fingerprint must be non-empty")
        self.value = value

    def get(self) -> str:
        return self.value

    def __repr__(self) -> str:
        return f"StaticFingerprint({self.value!r})"
