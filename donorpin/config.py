from __future__ import annotations
import yaml
from dataclasses import dataclass, field
from typing import Any, Dict


MAX_ATTEMPT_HISTORY = 10
MIN_STORE_KDF_ITERATIONS = 100_000


@dataclass
class SecurityPolicy:
    pin_length: int = 5
    max_attempts: int = 3
    lockout_window_minutes: int = 15
    credential_expiry_days: int = 90
    storage_expiry_days: int = 30
    allow_sequential: bool = False
    allow_repeated: bool = False

    def validate(self) -> "SecurityPolicy":
        if self.pin_length < 4 or self.pin_length > 12:
            raise ValueError("pin_length_out_of_range")
        # A lockout must stay representable inside the capped attempt history.
        if self.max_attempts < 1 or self.max_attempts > MAX_ATTEMPT_HISTORY:
            raise ValueError("max_attempts_out_of_range")
        if self.lockout_window_minutes <= 0:
            raise ValueError("lockout_window_must_be_positive")
        if self.credential_expiry_days <= 0:
            raise ValueError("credential_expiry_must_be_positive")
        if self.storage_expiry_days <= 0:
            raise ValueError("storage_expiry_must_be_positive")
        return self

    @property
    def lockout_window_ms(self) -> int:
        return self.lockout_window_minutes * 60 * 1000

    @property
    def credential_expiry_ms(self) -> int:
        return self.credential_expiry_days * 24 * 60 * 60 * 1000

    @property
    def storage_expiry_ms(self) -> int:
        return self.storage_expiry_days * 24 * 60 * 60 * 1000


DEFAULT_POLICY = SecurityPolicy()


@dataclass
class StoreConfig:
    backend: str = "sqlite"
    kdf_iterations: int = MIN_STORE_KDF_ITERATIONS
    schema_version: str = "1.0"


@dataclass
class AuthConfig:
    allow_demo_subject: bool = False
    require_backing_session: bool = True


@dataclass
class AppConfig:
    db_path: str = "data/donorpin.db"
    log_level: str = "INFO"
    policy: SecurityPolicy = field(default_factory=SecurityPolicy)
    store: StoreConfig = field(default_factory=StoreConfig)
    auth: AuthConfig = field(default_factory=AuthConfig)


def load_config(path: str = "config.yaml") -> AppConfig:
    with open(path, "r", encoding="utf-8") as f:
        raw: Dict[str, Any] = yaml.safe_load(f) or {}

    pol = raw.get("policy", {}) or {}
    sto = raw.get("store", {}) or {}
    auth = raw.get("auth", {}) or {}

    backend = str(sto.get("backend", "sqlite")).strip().lower()
    if backend not in ("sqlite", "memory"):
        raise ValueError("unknown_store_backend")

    kdf_iterations = int(sto.get("kdf_iterations", MIN_STORE_KDF_ITERATIONS))
    if kdf_iterations < MIN_STORE_KDF_ITERATIONS:
        raise ValueError("store_kdf_iterations_too_small")

    return AppConfig(
        db_path=str(raw.get("db_path", "data/donorpin.db")),
        log_level=str(raw.get("log_level", "INFO")).upper(),
        policy=SecurityPolicy(
            pin_length=int(pol.get("pin_length", 5)),
            max_attempts=int(pol.get("max_attempts", 3)),
            lockout_window_minutes=int(pol.get("lockout_window_minutes", 15)),
            credential_expiry_days=int(pol.get("credential_expiry_days", 90)),
            storage_expiry_days=int(pol.get("storage_expiry_days", 30)),
            allow_sequential=bool(pol.get("allow_sequential", False)),
            allow_repeated=bool(pol.get("allow_repeated", False)),
        ).validate(),
        store=StoreConfig(
            backend=backend,
            kdf_iterations=kdf_iterations,
            schema_version=str(sto.get("schema_version", "1.0")),
        ),
        auth=AuthConfig(
            allow_demo_subject=bool(auth.get("allow_demo_subject", False)),
            require_backing_session=bool(auth.get("require_backing_session", True)),
        ),
    )
