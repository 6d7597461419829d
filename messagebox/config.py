"""
Client configuration.

Module-level constants hold the defaults; ClientConfig.from_env() lets every
knob be overridden from the environment, e.g.

    MESSAGEBOX_HOST=http://localhost:8080 MESSAGEBOX_NETWORK=local python app.py
"""

import os
from dataclasses import dataclass
from typing import List, Optional

from .errors import ValidationError

DEFAULT_HOST = "https://messagebox.babbage.systems"

# Push channel deadlines (seconds)
ACK_TIMEOUT = 10.0
AUTH_TIMEOUT = 5.0

HTTP_TIMEOUT = 30.0

# Overlay hosts answering lookups and accepting topic submissions
NETWORK_PRESETS = {
    "mainnet": [
        "https://overlay-us-1.bsvb.tech",
        "https://overlay-eu-1.bsvb.tech",
        "https://overlay-ap-1.bsvb.tech",
        "https://users.bapp.dev",
    ],
    "testnet": [
        "https://testnet-users.bapp.dev",
    ],
    "local": [
        "http://localhost:8080",
    ],
}


def _env_flag(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value.strip().lower() not in ("0", "false", "no", "off")


@dataclass
class ClientConfig:
    host: str = DEFAULT_HOST
    network_preset: str = "mainnet"
    overlay_hosts: Optional[List[str]] = None
    overlay_enabled: bool = True
    enable_logging: bool = False
    ack_timeout: float = ACK_TIMEOUT
    auth_timeout: float = AUTH_TIMEOUT
    http_timeout: float = HTTP_TIMEOUT

    def __post_init__(self):
        self.host = normalize_host(self.host)
        if self.network_preset not in NETWORK_PRESETS:
            raise ValidationError("unknown network preset %r (expected one of %s)"
                                  % (self.network_preset, ", ".join(sorted(NETWORK_PRESETS))))
        if self.overlay_hosts is None:
            self.overlay_hosts = list(NETWORK_PRESETS[self.network_preset])
        else:
            self.overlay_hosts = [normalize_host(h) for h in self.overlay_hosts]

    @classmethod
    def from_env(cls, **overrides) -> "ClientConfig":
        kwargs = {
            "host": os.environ.get("MESSAGEBOX_HOST", DEFAULT_HOST),
            "network_preset": os.environ.get("MESSAGEBOX_NETWORK", "mainnet"),
            "overlay_enabled": _env_flag("MESSAGEBOX_OVERLAY", True),
            "enable_logging": _env_flag("MESSAGEBOX_LOGGING", False),
            "ack_timeout": float(os.environ.get("MESSAGEBOX_ACK_TIMEOUT", ACK_TIMEOUT)),
            "auth_timeout": float(os.environ.get("MESSAGEBOX_AUTH_TIMEOUT", AUTH_TIMEOUT)),
        }
        overlay = os.environ.get("MESSAGEBOX_OVERLAY_HOSTS")
        if overlay:
            kwargs["overlay_hosts"] = [h.strip() for h in overlay.split(",") if h.strip()]
        kwargs.update(overrides)
        return cls(**kwargs)


def normalize_host(host: str) -> str:
    return (host or "").strip().rstrip("/")
