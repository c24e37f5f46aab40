from __future__ import annotations

from dataclasses import dataclass

from storm.config import RECONCILE_INTERVAL_SECONDS


@dataclass
class StartupProfile:
    host: str
    port: int
    primary_root: str
    reconcile_interval_seconds: int = RECONCILE_INTERVAL_SECONDS


def _require_valid_port(port: int, field_name: str = "port") -> None:
    if int(port) < 1 or int(port) > 65535:
        raise ValueError(f"{field_name} must be in range 1..65535")


def _require_non_empty_host(host: str) -> None:
    if not str(host or "").strip():
        raise ValueError("host is required")


def validate_startup_profile(profile: StartupProfile) -> None:
    _require_non_empty_host(profile.host)
    _require_valid_port(profile.port)
    if not str(profile.primary_root or "").strip():
        raise ValueError("primary_root is required for the storm service")
    if int(profile.reconcile_interval_seconds) < 0:
        raise ValueError("reconcile_interval_seconds must be >= 0")
