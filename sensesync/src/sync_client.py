"""
Sync client: wires the local store, the broker and the config reconciler.

Startup runs strictly in order, each fetch retried on its own:
1. fetch the device identity (fatal after STARTUP_MAX_ATTEMPTS failures),
2. fetch the local config (same policy),
3. for the cloud provider, make sure the key pair is on disk (non-fatal),
4. build the broker connection for the configured provider and connect,
5. run the telemetry publish loop until shutdown.

Each publish cycle fetches the unsent batch, publishes it once and deletes
its records only after a positive broker ack. A failed publish deletes
nothing, so the same records go out again next cycle (at-least-once). A
failed delete is logged, and the record is re-published next cycle.

The cloud connection does not reconnect on its own. Every disconnect
schedules exactly one connect() after RECONNECT_DELAY_S, with no backoff
and no cap. The local broker reconnects natively, so its disconnects are
only logged.

CHANGELOG:
- 2026-10-17: Make delete failures non-fatal per record (STORY-112)
- 2026-10-16: Stop during startup retries exits cleanly (STORY-110)
- 2026-10-15: Initial creation (STORY-109)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, TypeVar

from pydantic import ValidationError
from sensesync.src.errors import MalformedMessageError, StartupError, UnavailableError
from sensesync.src.models import (
    CloudProviderConfig,
    ConfigPush,
    DeviceIdentity,
    LocalConfig,
    Telemetry,
)
from sensesync.src.reconciler import ConfigReconciler

if TYPE_CHECKING:
    from sensesync.src.broker import BrokerConnection
    from sensesync.src.health import HealthWriter
    from sensesync.src.keys import KeyProvisioner
    from sensesync.src.local_api import LocalApiClient
    from sensesync.src.models import BrokerConfig

logger = logging.getLogger(__name__)

_T = TypeVar("_T")

ConnectionFactory = Callable[["BrokerConfig", DeviceIdentity], "BrokerConnection"]


async def _wait_or_shutdown(shutdown_event: asyncio.Event, timeout: float) -> bool:
    """Sleep for *timeout* seconds or until shutdown.

    Returns:
        True if shutdown was requested.
    """
    with contextlib.suppress(TimeoutError):
        await asyncio.wait_for(shutdown_event.wait(), timeout=timeout)
    return shutdown_event.is_set()


class SyncClient:
    """Store-and-forward orchestrator for one device.

    Args:
        local_api: Client for the local store API.
        connection_factory: Builds the broker connection from the broker
            section of the local config and the device identity.
        key_provisioner: Ensures the cloud key pair exists; skipped when None.
        health: Health file writer, or None to skip health writes.
        publish_interval_s: Seconds between publish cycles.
        startup_retry_interval_s: Seconds between startup fetch attempts.
        startup_max_attempts: Attempts per startup fetch.
        reconnect_delay_s: Delay before reconnecting the cloud connection.
        config_retry_delay_s: Delay before retrying a failed config write.
        shutdown_event: Event that stops the loops when set.
        log: Logger to use; defaults to the module logger.
    """

    def __init__(
        self,
        local_api: LocalApiClient,
        *,
        connection_factory: ConnectionFactory,
        key_provisioner: KeyProvisioner | None = None,
        health: HealthWriter | None = None,
        publish_interval_s: float = 300.0,
        startup_retry_interval_s: float = 60.0,
        startup_max_attempts: int = 10,
        reconnect_delay_s: float = 60.0,
        config_retry_delay_s: float = 60.0,
        shutdown_event: asyncio.Event | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._local_api = local_api
        self._connection_factory = connection_factory
        self._key_provisioner = key_provisioner
        self._health = health
        self._publish_interval_s = publish_interval_s
        self._startup_retry_interval_s = startup_retry_interval_s
        self._startup_max_attempts = startup_max_attempts
        self._reconnect_delay_s = reconnect_delay_s
        self._config_retry_delay_s = config_retry_delay_s
        self._shutdown = shutdown_event or asyncio.Event()
        self._log = log or logger

        self._identity: DeviceIdentity | None = None
        self._connection: BrokerConnection | None = None
        self._reconciler: ConfigReconciler | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None
        self._stopping = False
        self._tasks: set[asyncio.Task[None]] = set()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def identity(self) -> DeviceIdentity | None:
        return self._identity

    @property
    def config(self) -> LocalConfig | None:
        return self._reconciler.config if self._reconciler is not None else None

    @property
    def connection(self) -> BrokerConnection | None:
        return self._connection

    @property
    def reconciler(self) -> ConfigReconciler | None:
        return self._reconciler

    @property
    def reconnect_scheduled(self) -> bool:
        return self._reconnect_handle is not None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Start up, then run the publish loop until shutdown."""
        await self.start()
        await self._publish_loop()

    async def start(self) -> None:
        """Run the startup sequence and connect to the broker.

        Raises:
            StartupError: If the identity or config cannot be fetched within
                the allowed attempts, or the device is not provisioned.
        """
        self._log.info("Looking for device information")
        identity = await self._fetch_with_retry(
            "device information", self._local_api.fetch_identity
        )
        if not identity.is_provisioned:
            self._log.critical("Device UUID not set (device_id=%r), exiting", identity.device_id)
            raise StartupError("device identity is not provisioned")
        self._identity = identity
        self._log.info(
            "Device information collected: name=%s, id=%s, app=%s",
            identity.device_name,
            identity.device_id,
            identity.app_name,
        )

        self._log.info("Looking for device configuration")
        config = await self._fetch_with_retry(
            "device configuration", self._local_api.fetch_config
        )
        self._log.info("Device configuration received (provider=%s)", config.broker.provider)
        self._reconciler = ConfigReconciler(
            self._local_api,
            config,
            retry_delay_s=self._config_retry_delay_s,
            log=self._log,
        )

        if isinstance(config.broker, CloudProviderConfig) and self._key_provisioner is not None:
            await self._key_provisioner.ensure_keys(identity.device_id)

        self._connection = self._connection_factory(config.broker, identity)
        self._connect()

    def stop(self) -> None:
        """Stop the loops, cancel timers and close the broker connection."""
        self._stopping = True
        self._shutdown.set()
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None
        if self._reconciler is not None:
            self._reconciler.close()
        for task in list(self._tasks):
            task.cancel()
        if self._connection is not None:
            self._connection.disconnect()

    # ------------------------------------------------------------------
    # Publish cycle
    # ------------------------------------------------------------------

    async def publish_once(self) -> bool:
        """Run one fetch-publish-delete cycle.

        Returns:
            True if a non-empty batch was acknowledged by the broker.
        """
        connection = self._connection
        if connection is None:
            return False

        try:
            batch = await self._local_api.fetch_unsent()
        except UnavailableError as exc:
            self._log.warning("Unable to fetch unsent sensor data: %s", exc)
            return False

        if self._health is not None:
            self._health.set_unsent_count(len(batch))
        if batch.is_empty:
            self._log.debug("No unsent sensor data, skipping publish")
            return False

        acked = await connection.publish(Telemetry(data=batch.data))
        if not acked:
            self._log.warning(
                "Telemetry publish of %d record(s) on %s not acknowledged, "
                "retrying next cycle",
                len(batch),
                connection.events_topic,
            )
            return False

        if self._health is not None:
            self._health.record_publish()
        await self._delete_sent(batch.files)
        return True

    async def _delete_sent(self, files: list[str]) -> None:
        for origin_file in files:
            try:
                await self._local_api.delete_unsent(origin_file)
            except UnavailableError as exc:
                self._log.warning(
                    "Unable to delete sent record %s, it will be re-published: %s",
                    origin_file,
                    exc,
                )

    async def _publish_cycle(self) -> None:
        try:
            await self.publish_once()
        except Exception:
            self._log.error("Publish cycle error", exc_info=True)

    async def _publish_loop(self) -> None:
        self._log.info("Publish loop started (interval=%ss)", self._publish_interval_s)
        while not self._shutdown.is_set():
            await self._publish_cycle()
            await _wait_or_shutdown(self._shutdown, self._publish_interval_s)
        self._log.info("Publish loop stopped")

    # ------------------------------------------------------------------
    # Broker callbacks
    # ------------------------------------------------------------------

    def _connect(self) -> None:
        assert self._connection is not None
        self._connection.connect(
            self._on_message,
            on_connected=self._on_connected,
            on_disconnected=self._on_disconnected,
            on_error=self._on_error,
        )

    def _on_connected(self) -> None:
        self._log.info("Broker connection ready")
        if self._health is not None:
            self._health.record_connected()

    def _on_error(self, exc: Exception) -> None:
        self._log.debug("Broker reported error: %s", exc)

    def _on_disconnected(self) -> None:
        if self._health is not None:
            self._health.record_disconnected()
        connection = self._connection
        if self._stopping or connection is None:
            return
        if connection.auto_reconnect:
            self._log.info("Broker disconnected, relying on native reconnect")
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
        self._log.info("Reconnecting in %.0fs", self._reconnect_delay_s)
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(self._reconnect_delay_s, self._reconnect)

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        if self._stopping or self._connection is None:
            return
        self._connect()

    def _on_message(self, topic: str, message: str) -> None:
        if topic.endswith("/errors"):
            return
        if not topic.endswith("/config"):
            self._log.debug("Ignoring message on unknown topic %s", topic)
            return
        if not message:
            return
        try:
            push = ConfigPush.model_validate_json(message)
        except ValidationError as exc:
            error = MalformedMessageError(
                f"config message on {topic} is not valid: {exc.error_count()} error(s)"
            )
            self._log.warning("Dropping message: %s", error)
            return
        if self._reconciler is None:
            return
        self._spawn(self._reconciler.submit(push.parameters))

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _spawn(self, coro: Awaitable[object]) -> None:
        async def _run() -> None:
            try:
                await coro
            except Exception:
                self._log.error("Config reconciliation error", exc_info=True)

        task = asyncio.get_running_loop().create_task(_run())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _fetch_with_retry(self, what: str, fetch: Callable[[], Awaitable[_T]]) -> _T:
        for attempt in range(1, self._startup_max_attempts + 1):
            try:
                result = await fetch()
            except UnavailableError as exc:
                left = self._startup_max_attempts - attempt
                if left == 0:
                    self._log.critical(
                        "Failed to retrieve %s after %d attempt(s): %s. No more attempts, exiting",
                        what,
                        attempt,
                        exc,
                    )
                    raise StartupError(f"could not retrieve {what}") from exc
                self._log.error(
                    "Failed to retrieve %s: %s. Retrying in %.0fs (%d attempt(s) left)",
                    what,
                    exc,
                    self._startup_retry_interval_s,
                    left,
                )
                if await _wait_or_shutdown(self._shutdown, self._startup_retry_interval_s):
                    raise StartupError(f"shutdown requested while retrieving {what}") from exc
                continue
            return result
        raise StartupError(f"could not retrieve {what}")
