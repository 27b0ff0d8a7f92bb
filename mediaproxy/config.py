"""
Configuration for mediaproxy.

Read once at startup from ``MEDIAPROXY_*`` environment variables and handed
to the app by injection. The upstream capability (Drive access token or S3
key pair) lives here and is never sent to clients.

The Drive capability is a plain OAuth bearer access token. Such tokens expire
after about an hour and nothing here refreshes them: once expired, Drive answers
401 and every request fails with 401 until ``MEDIAPROXY_DRIVE_ACCESS_TOKEN`` is
replaced and the process restarted. Rotate it outside the proxy.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Mapping

UPSTREAMS = ("drive", "s3", "memory")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


class ConfigError(Exception):
    """Raised when configuration validation fails."""


def _split(value: str | None) -> list[str]:
    if not value:
        return []
    return [part.strip() for part in value.split(",") if part.strip()]


def _positive(env: Mapping[str, str], name: str, default: float, kind: type = float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        value = kind(raw)
    except ValueError:
        raise ConfigError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ConfigError(f"{name} must be positive, got {raw!r}")
    return value


@dataclass
class Config:
    host: str = "127.0.0.1"
    port: int = 3000
    upstream: str = "drive"
    # folders (Drive folder ids or S3 key prefixes) listed by /api/media
    folder_ids: list[str] = field(default_factory=list)
    metadata_timeout: float = 10.0
    chunk_size: int = 64 * 1024
    static_dir: str | None = None
    log_level: str = "INFO"
    drive_access_token: str | None = field(default=None, repr=False)
    s3_access_key_id: str | None = field(default=None, repr=False)
    s3_secret_access_key: str | None = field(default=None, repr=False)
    s3_region: str = "us-east-1"
    s3_bucket: str | None = None
    s3_endpoint: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> Config:
        env = os.environ if env is None else env
        config = cls(
            host=env.get("MEDIAPROXY_HOST", "127.0.0.1"),
            port=int(_positive(env, "MEDIAPROXY_PORT", 3000, int)),
            upstream=env.get("MEDIAPROXY_UPSTREAM", "drive").lower(),
            folder_ids=_split(env.get("MEDIAPROXY_FOLDER_IDS")),
            metadata_timeout=_positive(env, "MEDIAPROXY_METADATA_TIMEOUT", 10.0),
            chunk_size=int(_positive(env, "MEDIAPROXY_CHUNK_SIZE", 64 * 1024, int)),
            static_dir=env.get("MEDIAPROXY_STATIC_DIR") or None,
            log_level=env.get("MEDIAPROXY_LOG_LEVEL", "INFO").upper(),
            drive_access_token=env.get("MEDIAPROXY_DRIVE_ACCESS_TOKEN") or None,
            s3_access_key_id=env.get("MEDIAPROXY_S3_ACCESS_KEY_ID") or env.get("AWS_ACCESS_KEY_ID"),
            s3_secret_access_key=env.get("MEDIAPROXY_S3_SECRET_ACCESS_KEY") or env.get("AWS_SECRET_ACCESS_KEY"),
            s3_region=env.get("MEDIAPROXY_S3_REGION", "us-east-1"),
            s3_bucket=env.get("MEDIAPROXY_S3_BUCKET") or None,
            s3_endpoint=env.get("MEDIAPROXY_S3_ENDPOINT") or None,
        )
        config.validate()
        return config

    def validate(self) -> None:
        if self.upstream not in UPSTREAMS:
            raise ConfigError(f"Unknown upstream {self.upstream!r}, expected one of {', '.join(UPSTREAMS)}")
        if self.log_level not in LOG_LEVELS:
            raise ConfigError(f"Unknown log level {self.log_level!r}")
        if self.upstream == "drive" and not self.drive_access_token:
            raise ConfigError("MEDIAPROXY_DRIVE_ACCESS_TOKEN is required for the drive upstream")
        if self.upstream == "s3":
            missing = [
                name
                for name, value in (
                    ("MEDIAPROXY_S3_ACCESS_KEY_ID", self.s3_access_key_id),
                    ("MEDIAPROXY_S3_SECRET_ACCESS_KEY", self.s3_secret_access_key),
                    ("MEDIAPROXY_S3_BUCKET", self.s3_bucket),
                )
                if not value
            ]
            if missing:
                raise ConfigError(f"Missing settings for the s3 upstream: {', '.join(missing)}")
        if self.static_dir is not None and not os.path.isdir(self.static_dir):
            raise ConfigError(f"Static directory {self.static_dir!r} does not exist")
