"""Client settings, optionally read from the environment."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field

from apiflight.duration import parse_duration
from apiflight.types import Duration

DEFAULT_TIMEOUT: Duration = "30s"


@dataclass(frozen=True, slots=True)
class ClientSettings:
    """Configuration surface of the request pipeline."""

    base_url: str = ""
    prefix: str = ""
    timeout: Duration = DEFAULT_TIMEOUT
    refresh_endpoint: str = "/api/auth/token/refresh"
    credential_storage_name: str = "apiflight.credential"
    default_headers: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        # Fail at construction rather than on the first request
        parse_duration(self.timeout)

    @classmethod
    def from_env(
        cls,
        prefix: str = "APIFLIGHT_",
        environ: Mapping[str, str] | None = None,
    ) -> ClientSettings:
        """Read settings from ``<prefix>BASE_URL``, ``<prefix>TIMEOUT`` etc.

        Unset variables keep their defaults.
        """
        env = os.environ if environ is None else environ
        defaults = cls()

        def read(name: str, default: str) -> str:
            return env.get(f"{prefix}{name}", default)

        timeout: Duration = read("TIMEOUT", "")
        if timeout == "":
            timeout = defaults.timeout
        elif isinstance(timeout, str) and timeout.isdigit():
            timeout = int(timeout)

        return cls(
            base_url=read("BASE_URL", defaults.base_url).rstrip("/"),
            prefix=read("PREFIX", defaults.prefix),
            timeout=timeout,
            refresh_endpoint=read("REFRESH_ENDPOINT", defaults.refresh_endpoint),
            credential_storage_name=read(
                "CREDENTIAL_STORAGE_NAME", defaults.credential_storage_name
            ),
        )


__all__ = ["DEFAULT_TIMEOUT", "ClientSettings"]
