# donorpin/security/device_binding.py
from __future__ import annotations

import hashlib
import hmac
import platform
import uuid
from pathlib import Path
from typing import Iterable, Optional, Protocol


_MACHINE_ID_PATHS = ("/etc/machine-id", "/var/lib/dbus/machine-id")


class DeviceIdentity(Protocol):
    def current_device_id(self) -> str:
        ...


class StaticDeviceIdentity:
    """Fixed device id. Used by tests and by installations that provision their own id."""

    def __init__(self, device_id: str):
        if not device_id:
            raise ValueError("device_id_required")
        self.device_id = device_id

    def current_device_id(self) -> str:
        return self.device_id


class HostDeviceIdentity:
    """
    Stable identifier for the current installation.

    Built from host name, machine type and the OS machine-id when one is
    readable; the MAC-derived node id is the last resort. Not a hardware
    attestation: it only has to be deterministic on one installation.
    """

    def __init__(self, machine_id_paths: Iterable[str] = _MACHINE_ID_PATHS):
        self.machine_id_paths = tuple(machine_id_paths)

    def _machine_id(self) -> Optional[str]:
        for p in self.machine_id_paths:
            try:
                v = Path(p).read_text(encoding="utf-8").strip()
            except OSError:
                continue
            if v:
                return v
        return None

    def current_device_id(self) -> str:
        components = [
            platform.system() or "unknown-os",
            platform.node() or "unknown-host",
            platform.machine() or "unknown-arch",
            self._machine_id() or f"node:{uuid.getnode():012x}",
        ]
        return hashlib.sha256("|".join(components).encode("utf-8")).hexdigest()[:32]


def device_label() -> str:
    """Human-readable device name for audit lines. Not a security value."""
    host = platform.node() or "unknown-host"
    sysname = platform.system() or "unknown-os"
    return f"{sysname}:{host}"


def device_binding_tag(device_id: str) -> str:
    return hashlib.sha256(device_id.encode("utf-8")).hexdigest()


def verify_device_binding(stored_tag: str, device_id: str) -> bool:
    """
    Constant-time comparison of a stored binding tag with the current device.
    """
    if not stored_tag or not device_id:
        return False
    expected = device_binding_tag(device_id)
    return hmac.compare_digest(expected.encode("ascii"), (stored_tag or "").strip().lower().encode("ascii", "replace"))
