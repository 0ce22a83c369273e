"""
Configuration management for NetLens.

Probe defaults come from the ``Settings`` dataclass and can be overridden
through ``NETLENS_*`` environment variables.
"""

import os
from dataclasses import dataclass, fields
from typing import Optional


ENV_PREFIX = "NETLENS_"


@dataclass
class Settings:
    """Default probe parameters and runtime options."""

    # Ping
    ping_count: int = 4
    ping_timeout_ms: int = 1000
    ping_interval: float = 0.5  # seconds between echo requests

    # Traceroute
    max_hops: int = 30
    trace_timeout_ms: int = 1000
    ptr_timeout: float = 2.0

    # Port scan
    port_timeout_ms: int = 500
    scan_workers: int = 1

    # DNS / HTTP
    dns_timeout: float = 5.0
    http_timeout: float = 15.0

    # Logging
    log_level: str = "WARNING"
    log_file: str = ""

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "Settings":
        """Load settings from environment variables, e.g. NETLENS_PING_COUNT=10."""
        environ = os.environ if environ is None else environ
        values = {}
        for f in fields(cls):
            raw = environ.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw
        return cls(**values)


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance."""
    global _settings
    if _settings is None:
        _settings = Settings.from_env()
    return _settings


def set_settings(settings: Optional[Settings]) -> None:
    """Set (or with None, reset) the global settings instance."""
    global _settings
    _settings = settings
