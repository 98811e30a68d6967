# donorpin/security/__init__.py
"""
Security package.

This package centralizes:
- PIN policy: validation, strength score, live-feedback check
- PIN credential hashing / verification (PBKDF2 + optional pepper)
- Device identity and device binding tags
- Device-bound sealing of the stored credential (PBKDF2 + AES-256-GCM)
- Audit context encoding (compact, log-friendly)
"""

from .pin_policy import (
    PinCheck,
    PinValidationResult,
    check_pin,
    validate_pin,
    pin_strength,
    strength_label,
)
from .password_hashing import hash_pin, verify_pin, generate_random_pin
from .device_binding import (
    DeviceIdentity,
    HostDeviceIdentity,
    StaticDeviceIdentity,
    device_binding_tag,
    verify_device_binding,
)
from .envelope_crypto import EnvelopeDecryptError, seal, open_sealed
from .audit_logging import (
    build_audit_context,
    encode_audit_context,
    compact_reason,
)
