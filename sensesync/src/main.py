"""
Sync daemon entrypoint.

Loads SyncSettings, configures structured JSON logging, builds the local API
client, health writer and key provisioner, and runs the SyncClient until
SIGTERM/SIGINT. Shutdown sets a shared asyncio.Event, lets the publish loop
finish its current cycle and then closes the broker connection.

Exit codes:
- 0: clean shutdown (including a signal received during startup retries).
- 1: startup failed (identity or config unreachable, or device not
  provisioned).

CHANGELOG:
- 2026-10-16: Add LOG_LEVEL and exit code 1 on startup failure (STORY-110)
- 2026-10-12: Initial creation, adapted from the edge daemon (STORY-101)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
import signal
import sys
from datetime import UTC, datetime
from urllib.parse import urlsplit, urlunsplit

from sensesync.src.broker import build_connection
from sensesync.src.config import SyncSettings
from sensesync.src.errors import StartupError
from sensesync.src.health import HealthWriter
from sensesync.src.keys import KeyProvisioner
from sensesync.src.local_api import LocalApiClient
from sensesync.src.sync_client import SyncClient

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter, one object per line."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging for the sync daemon.

    Sets up the root logger with a JSON-formatted handler writing to stderr.

    Args:
        level: Root log level name.
    """
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)


def _redacted_url(value: str) -> str:
    """Return *value* without any userinfo or query string."""
    parts = urlsplit(value)
    netloc = parts.hostname or ""
    if parts.port is not None:
        netloc = f"{netloc}:{parts.port}"
    return urlunsplit((parts.scheme, netloc, parts.path, "", ""))


# ---------------------------------------------------------------------------
# Startup config logging
# ---------------------------------------------------------------------------


def log_config_summary(settings: SyncSettings) -> None:
    """Log a config summary at startup.

    URLs are logged without credentials or query strings.

    Args:
        settings: The loaded SyncSettings.
    """
    logger.info(
        "Sync daemon starting with config: "
        "local_api_base_url=%s, data_folder=%s, private_key_file=%s, "
        "key_provisioning_url=%s, publish_interval_s=%s, publish_timeout_s=%s, "
        "startup_retry_interval_s=%s, startup_max_attempts=%s, "
        "reconnect_delay_s=%s, config_retry_delay_s=%s, health_path=%s",
        _redacted_url(settings.local_api_base_url),
        settings.data_folder,
        settings.private_key_file,
        _redacted_url(settings.key_provisioning_url),
        settings.publish_interval_s,
        settings.publish_timeout_s,
        settings.startup_retry_interval_s,
        settings.startup_max_attempts,
        settings.reconnect_delay_s,
        settings.config_retry_delay_s,
        settings.health_path,
    )


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------


async def async_main(settings: SyncSettings | None = None) -> None:
    """Async entrypoint: load config, build components, run the sync client.

    Sets up SIGTERM/SIGINT handlers to trigger graceful shutdown.

    Raises:
        StartupError: If startup failed for a reason other than shutdown.
    """
    settings = settings or SyncSettings()
    configure_logging(settings.log_level)
    log_config_summary(settings)

    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda: _handle_signal(shutdown_event),
        )

    health = HealthWriter(settings.health_path)
    key_provisioner = KeyProvisioner(
        settings.data_folder,
        settings.key_provisioning_url,
        private_key_file=settings.private_key_file,
    )
    connection_factory = functools.partial(
        build_connection,
        private_key_file=settings.private_key_file,
        publish_timeout_s=settings.publish_timeout_s,
    )

    async with LocalApiClient(
        settings.local_api_base_url, timeout_s=settings.local_api_timeout_s
    ) as local_api:
        client = SyncClient(
            local_api,
            connection_factory=connection_factory,
            key_provisioner=key_provisioner,
            health=health,
            publish_interval_s=settings.publish_interval_s,
            startup_retry_interval_s=settings.startup_retry_interval_s,
            startup_max_attempts=settings.startup_max_attempts,
            reconnect_delay_s=settings.reconnect_delay_s,
            config_retry_delay_s=settings.config_retry_delay_s,
            shutdown_event=shutdown_event,
        )
        try:
            await client.run()
        except StartupError:
            if shutdown_event.is_set():
                logger.info("Shutdown requested during startup")
                return
            raise
        finally:
            client.stop()
    logger.info("Shutdown complete")


def _handle_signal(shutdown_event: asyncio.Event) -> None:
    """Handle SIGTERM/SIGINT by setting the shutdown event.

    Args:
        shutdown_event: The event to set for graceful shutdown.
    """
    logger.info("Received shutdown signal, initiating graceful shutdown")
    shutdown_event.set()


def main() -> None:
    """Synchronous entrypoint for the sync daemon."""
    try:
        asyncio.run(async_main())
    except StartupError as exc:
        logger.critical("Startup failed: %s", exc)
        sys.exit(1)


if __name__ == "__main__":
    main()
