# donorpin/security/pin_policy.py
"""
PIN shape and policy checks.

One module owns every PIN rule: the validator used by setup/change, the
strength score shown while the donor types, and the live-feedback check
that combines both. The pattern predicates below are shared so the three
callers cannot drift apart.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import List, Optional

from ..config import DEFAULT_POLICY, SecurityPolicy


_ALTERNATING = re.compile(r"^(\d)(\d)\1\2\1$")
_MIRRORED_ALTERNATING = re.compile(r"^(\d)(\d)\2\1\2$")


@dataclass
class PinValidationResult:
    is_valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class PinCheck:
    validation: PinValidationResult
    score: int
    label: str


def _is_digits(pin: str) -> bool:
    # str.isdigit() accepts non-ASCII digits such as "²"
    return bool(pin) and all("0" <= c <= "9" for c in pin)


def is_well_formed(pin: Optional[str], policy: SecurityPolicy = DEFAULT_POLICY) -> bool:
    return pin is not None and len(pin) == policy.pin_length and _is_digits(pin)


def is_sequential(pin: str) -> bool:
    """Monotonic run of adjacent digits: 01234, 12345, 98765, 43210..."""
    if len(pin) < 2 or not _is_digits(pin):
        return False
    steps = {int(b) - int(a) for a, b in zip(pin, pin[1:])}
    return steps == {1} or steps == {-1}


def is_repeated(pin: str) -> bool:
    return len(pin) >= 2 and _is_digits(pin) and len(set(pin)) == 1


def common_pins(length: int) -> frozenset:
    ascending = "".join(str((1 + i) % 10) for i in range(length))
    descending = "".join(str((length - i) % 10) for i in range(length))
    same = {str(d) * length for d in range(10)}
    return frozenset({ascending, descending} | same)


def is_common(pin: str) -> bool:
    return _is_digits(pin) and pin in common_pins(len(pin))


def is_weak_pattern(pin: str) -> bool:
    if len(pin) >= 3 and is_repeated(pin):
        return True
    return bool(_ALTERNATING.match(pin) or _MIRRORED_ALTERNATING.match(pin))


def validate_pin(candidate: Optional[str], policy: SecurityPolicy = DEFAULT_POLICY) -> PinValidationResult:
    errors: List[str] = []
    warnings: List[str] = []

    if candidate is None or not candidate.strip():
        errors.append("PIN is required")
        return PinValidationResult(is_valid=False, errors=errors, warnings=warnings)

    pin = candidate.strip()

    if len(pin) != policy.pin_length:
        errors.append(f"PIN must be exactly {policy.pin_length} digits")
        return PinValidationResult(is_valid=False, errors=errors, warnings=warnings)

    if not _is_digits(pin):
        errors.append("PIN must contain only numbers")
        return PinValidationResult(is_valid=False, errors=errors, warnings=warnings)

    if not policy.allow_sequential and is_sequential(pin):
        errors.append("PIN cannot be sequential (e.g., 12345, 54321)")

    if not policy.allow_repeated and is_repeated(pin):
        errors.append("PIN cannot have repeated digits (e.g., 11111, 22222)")

    if is_common(pin):
        warnings.append("This PIN is commonly used and may be less secure")

    if is_weak_pattern(pin):
        warnings.append("Consider using a more complex PIN for better security")

    return PinValidationResult(is_valid=not errors, errors=errors, warnings=warnings)


def pin_strength(pin: Optional[str], policy: SecurityPolicy = DEFAULT_POLICY) -> int:
    """
    UX-only score in [0, 100].

    20 for a well-formed PIN, +20 each for not sequential, not all-repeated
    and not on the common list, +5 per distinct digit.
    """
    pin = (pin or "").strip()
    score = 0
    if is_well_formed(pin, policy):
        score = 20
    if not is_sequential(pin):
        score += 20
    if not is_repeated(pin):
        score += 20
    if not is_common(pin):
        score += 20
    score += 5 * len(set(pin))
    return max(0, min(score, 100))


def strength_label(score: int) -> str:
    if score >= 80:
        return "Very Strong"
    if score >= 60:
        return "Strong"
    if score >= 40:
        return "Medium"
    if score >= 20:
        return "Weak"
    return "Very Weak"


def check_pin(candidate: Optional[str], policy: SecurityPolicy = DEFAULT_POLICY) -> PinCheck:
    score = pin_strength(candidate, policy)
    return PinCheck(validation=validate_pin(candidate, policy), score=score, label=strength_label(score))


def sanitize_pin_input(raw: str) -> str:
    return "".join(c for c in (raw or "") if "0" <= c <= "9")


def format_pin_input(raw: str, policy: SecurityPolicy = DEFAULT_POLICY) -> str:
    return sanitize_pin_input(raw)[: policy.pin_length]


def mask_pin(pin: str, visible: int = 1) -> str:
    if not pin:
        return ""
    visible = max(0, min(visible, len(pin)))
    return pin[:visible] + "•" * (len(pin) - visible)


def pins_match(a: str, b: str) -> bool:
    return a == b


def pin_hint(pin: str, policy: SecurityPolicy = DEFAULT_POLICY) -> str:
    """First and last digit, the rest starred. Empty for malformed input."""
    if not is_well_formed(pin, policy):
        return ""
    return pin[0] + "*" * (len(pin) - 2) + pin[-1]


def is_valid_pin_hint(hint: str, policy: SecurityPolicy = DEFAULT_POLICY) -> bool:
    stars = policy.pin_length - 2
    return bool(re.fullmatch(r"\d\*{%d}\d" % stars, hint or ""))
