"""
Sync daemon configuration loaded from environment variables.

Uses Pydantic BaseSettings for automatic env var loading and validation.
The broker settings themselves are not configured here: they come from the
local store (``GET /local-config``) at startup. This module only covers
where to find the local store, where to keep key material, and the timing
policy of the daemon.

CHANGELOG:
- 2026-10-16: Add HEALTH_PATH and LOG_LEVEL (STORY-110)
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

import logging

from pydantic import field_validator, model_validator
from pydantic_settings import BaseSettings

_DEFAULT_KEY_PROVISIONING_URL = (
    "https://storage.googleapis.com/gp-iot-dev.appspot.com/public/certs/"
    "{device_id}/{filename}"
)


class SyncSettings(BaseSettings):
    """Cloud sync daemon configuration.

    All values are loaded from environment variables and every one has a
    default, so the daemon starts with an empty environment on a standard
    device image.

    Attributes:
        local_api_base_url: Base URL of the local store API, including the
            ``/api`` prefix.
        local_api_timeout_s: Per-request timeout against the local store.
        data_folder: Folder holding daemon state (key material).
        key_provisioning_url: URL template used to download missing key
            files. Receives ``{device_id}`` and ``{filename}``.
        private_key_file: EC private key used to sign broker tokens.
            Defaults to ``{data_folder}/keys/ec_private.pem``.
        publish_interval_s: Seconds between telemetry publish cycles.
        publish_timeout_s: Seconds to wait for a broker ack before a
            publish counts as failed.
        startup_retry_interval_s: Seconds between startup fetch attempts.
        startup_max_attempts: Attempts per startup fetch before exiting.
        reconnect_delay_s: Delay before reconnecting to the cloud broker.
        config_retry_delay_s: Delay before retrying a failed config write.
        health_path: Path of the JSON health file.
        log_level: Root log level name.
    """

    local_api_base_url: str = "http://localhost:8080/api"
    local_api_timeout_s: float = 10.0
    data_folder: str = "/data/mqtt"
    key_provisioning_url: str = _DEFAULT_KEY_PROVISIONING_URL
    private_key_file: str = ""
    publish_interval_s: float = 300.0
    publish_timeout_s: float = 30.0
    startup_retry_interval_s: float = 60.0
    startup_max_attempts: int = 10
    reconnect_delay_s: float = 60.0
    config_retry_delay_s: float = 60.0
    health_path: str = "/data/health.json"
    log_level: str = "INFO"

    @model_validator(mode="after")
    def _default_private_key_file(self) -> "SyncSettings":
        """Default private_key_file to the keys subfolder of data_folder."""
        if not self.private_key_file:
            self.private_key_file = f"{self.data_folder.rstrip('/')}/keys/ec_private.pem"
        return self

    @field_validator("local_api_base_url")
    @classmethod
    def local_api_base_url_must_be_http(cls, v: str) -> str:
        """Validate the local API URL scheme and drop a trailing slash."""
        if not v.lower().startswith(("http://", "https://")):
            raise ValueError(
                f"LOCAL_API_BASE_URL must be an http(s) URL (got: '{v[:20]}...')"
            )
        return v.rstrip("/")

    @field_validator("key_provisioning_url")
    @classmethod
    def key_provisioning_url_must_be_https(cls, v: str) -> str:
        """Key material is only ever downloaded over HTTPS."""
        if not v.lower().startswith("https://"):
            raise ValueError("KEY_PROVISIONING_URL must use HTTPS")
        if "{device_id}" not in v or "{filename}" not in v:
            raise ValueError(
                "KEY_PROVISIONING_URL must contain {device_id} and {filename}"
            )
        return v

    @field_validator(
        "publish_interval_s",
        "publish_timeout_s",
        "reconnect_delay_s",
        "config_retry_delay_s",
        "local_api_timeout_s",
    )
    @classmethod
    def interval_must_be_positive(cls, v: float) -> float:
        """Timers and timeouts must be strictly positive."""
        if v <= 0:
            raise ValueError("intervals and timeouts must be > 0")
        return v

    @field_validator("startup_retry_interval_s")
    @classmethod
    def startup_retry_interval_must_be_non_negative(cls, v: float) -> float:
        """Validate startup retry interval is non-negative."""
        if v < 0:
            raise ValueError("STARTUP_RETRY_INTERVAL_S must be >= 0")
        return v

    @field_validator("startup_max_attempts")
    @classmethod
    def startup_max_attempts_must_be_valid(cls, v: int) -> int:
        """At least one attempt is always made."""
        if v < 1:
            raise ValueError("STARTUP_MAX_ATTEMPTS must be >= 1")
        return v

    @field_validator("log_level")
    @classmethod
    def log_level_must_be_known(cls, v: str) -> str:
        """Validate LOG_LEVEL against the stdlib level names."""
        level = v.upper()
        if level not in logging.getLevelNamesMapping():
            raise ValueError(f"LOG_LEVEL must be a logging level name (got: '{v}')")
        return level

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}
