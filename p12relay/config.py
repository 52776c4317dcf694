"""
p12relay.config
~~~~~~~~~~~~~~~
Runtime settings.  Values arrive from CLI flags, which fall back to
``P12RELAY_*`` environment variables (a ``.env`` file is honoured).
The passphrase is never part of the configuration.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from .logger import parse_level

ENV_PREFIX = "P12RELAY"


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class Config:
    listen_host: str = "0.0.0.0"
    listen_port: int = 5000
    cert_path: str = ""
    cacert_path: str = ""
    insecure: bool = False
    no_mtls: bool = False
    log_level: str = "info"
    plain: bool = False
    timeout: Optional[float] = None
    log_path: str = ""
    scheme: str = "https"

    @property
    def level(self) -> int:
        return parse_level(self.log_level)

    @property
    def debug(self) -> bool:
        return self.log_level.lower() == "debug"


def load_config(**options) -> Config:
    """Build a validated :class:`Config`; ``None`` values keep the defaults."""
    cfg = Config(**{k: v for k, v in options.items() if v is not None})

    if not cfg.cert_path and not cfg.no_mtls:
        raise ConfigError("--cert flag is required unless --no-mtls is specified")
    if not 0 <= cfg.listen_port <= 65535:
        raise ConfigError(f"invalid port: {cfg.listen_port}")
    if cfg.timeout is not None and cfg.timeout <= 0:
        raise ConfigError("timeout must be a positive number of seconds")
    return cfg
