"""
MQTT broker connections for the two supported providers.

- CloudBrokerConnection: Cloud IoT MQTT bridge. TLS 1.2, MQTT 3.1.1, JWT as
  the password at connect time. Never reconnects on its own: the caller
  decides when to call connect() again (see SyncClient).
- LocalBrokerConnection: local Mosquitto broker. MQTT 5 over tcp, tls or
  websockets, with paho's native reconnect at a fixed interval. Payloads are
  base64 text in both directions.

paho runs its network loop on a background thread. Every paho callback is
handed to the asyncio loop with ``call_soon_threadsafe``, so connection
state, pending publishes and the user callbacks are only ever touched from
the event loop thread.

On connect both variants subscribe to ``/devices/{id}/errors`` (QoS 0) and
``/devices/{id}/config`` (QoS 1), and publish telemetry to
``/devices/{id}/events`` with QoS 1 and the retain flag.

CHANGELOG:
- 2026-10-19: Ignore acks from superseded clients (STORY-113)
- 2026-10-17: Fail pending publishes when the connection drops (STORY-112)
- 2026-10-14: Add local broker variant (STORY-106)
- 2026-10-13: Initial creation, cloud variant (STORY-105)

TODO:
- None
"""

from __future__ import annotations

import abc
import asyncio
import base64
import binascii
import logging
import ssl
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import paho.mqtt.client as mqtt
from sensesync.src.credentials import CredentialManager
from sensesync.src.errors import CredentialError, MalformedMessageError, TransportError
from sensesync.src.models import (
    BrokerConfig,
    CloudProviderConfig,
    DeviceIdentity,
    LocalBrokerConfig,
    Telemetry,
)

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

TELEMETRY_QOS = 1
ERRORS_QOS = 0
CONFIG_QOS = 1

DEFAULT_PUBLISH_TIMEOUT_S: float = 30.0
"""Seconds to wait for a PUBACK before a publish counts as failed."""

LOCAL_RECONNECT_INTERVAL_S: int = 20
"""Fixed interval of the local broker's native reconnect."""

LOCAL_KEEPALIVE_S: int = 10
CLOUD_KEEPALIVE_S: int = 60

MessageCallback = Callable[[str, str], None]
ErrorCallback = Callable[[Exception], None]


@dataclass
class _Callbacks:
    on_message: MessageCallback
    on_connected: Callable[[], None] | None = None
    on_disconnected: Callable[[], None] | None = None
    on_error: ErrorCallback | None = None


# ---------------------------------------------------------------------------
# Base connection
# ---------------------------------------------------------------------------


class BrokerConnection(abc.ABC):
    """Provider-independent MQTT connection scoped to one device.

    Subclasses build and configure the paho client and define the payload
    encoding. Everything else (subscriptions, acks, disconnect handling)
    lives here.

    Args:
        identity: Device identity; its ``device_id`` scopes every topic.
        hostname: Broker hostname.
        port: Broker port.
        publish_timeout_s: Seconds to wait for a PUBACK.
        log: Logger to use; defaults to the module logger.
    """

    auto_reconnect: bool = False
    keepalive_s: int = CLOUD_KEEPALIVE_S

    def __init__(
        self,
        identity: DeviceIdentity,
        hostname: str,
        port: int,
        *,
        publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
        log: logging.Logger | None = None,
    ) -> None:
        self._device_id = identity.device_id
        self._hostname = hostname
        self._port = port
        self._publish_timeout_s = publish_timeout_s
        self._log = log or logger

        self._loop: asyncio.AbstractEventLoop | None = None
        self._client: mqtt.Client | None = None
        self._callbacks: _Callbacks | None = None
        self._connected = False
        self._subscriptions_failed = False
        self._pending_subscriptions: set[int] = set()
        self._pending_publishes: dict[int, asyncio.Future[bool]] = {}

    # ------------------------------------------------------------------
    # Topics and state
    # ------------------------------------------------------------------

    @property
    def errors_topic(self) -> str:
        return f"/devices/{self._device_id}/errors"

    @property
    def config_topic(self) -> str:
        return f"/devices/{self._device_id}/config"

    @property
    def events_topic(self) -> str:
        return f"/devices/{self._device_id}/events"

    @property
    def is_connected(self) -> bool:
        """True between a successful CONNACK and the next disconnect."""
        return self._connected

    @property
    def endpoint(self) -> str:
        return f"{self._hostname}:{self._port}"

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def _build_client(self) -> mqtt.Client:
        """Return a configured paho client, not yet connected.

        Raises:
            CredentialError: If the client credentials cannot be produced.
        """

    def _connect_options(self) -> dict[str, Any]:
        return {}

    @abc.abstractmethod
    def _encode(self, text: str) -> str:
        """Encode an outbound payload."""

    @abc.abstractmethod
    def _decode(self, payload: bytes) -> str:
        """Decode an inbound payload.

        Raises:
            MalformedMessageError: If the payload cannot be decoded.
        """

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def connect(
        self,
        on_message: MessageCallback,
        on_connected: Callable[[], None] | None = None,
        on_disconnected: Callable[[], None] | None = None,
        on_error: ErrorCallback | None = None,
    ) -> None:
        """Start connecting to the broker. Returns immediately.

        Must be called from a running event loop. Any previous client is
        discarded first and its late events are ignored.

        Args:
            on_message: Called with ``(topic, text)`` for errors and config
                messages.
            on_connected: Called once the connection is up and both
                subscriptions were granted.
            on_disconnected: Called once per completed disconnect, and once
                per failed connect attempt for variants that do not
                reconnect on their own.
            on_error: Called for each transport or credential error.
        """
        self._loop = asyncio.get_running_loop()
        self._teardown_client()
        self._callbacks = _Callbacks(on_message, on_connected, on_disconnected, on_error)

        self._log.debug(
            "Connecting device %s to %s (%s)",
            self._device_id,
            self.endpoint,
            type(self).__name__,
        )
        try:
            client = self._build_client()
        except CredentialError as exc:
            self._log.error("Cannot connect to %s: %s", self.endpoint, exc)
            self._loop.call_soon(self._fail_connect_attempt, exc)
            return

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_publish = self._on_publish
        self._client = client

        client.connect_async(
            self._hostname,
            self._port,
            keepalive=self.keepalive_s,
            **self._connect_options(),
        )
        client.loop_start()

    async def publish(self, telemetry: Telemetry) -> bool:
        """Publish *telemetry* on the events topic and wait for the ack.

        Returns:
            ``True`` once the broker acknowledged the message. ``False`` if
            not connected, if the broker refused it, if the connection
            dropped before the ack, or if no ack came within the publish
            timeout. The caller must treat ``False`` as retryable.
        """
        topic = self.events_topic
        client = self._client
        if client is None or not self._connected:
            self._log.warning(
                "Not connected to %s, cannot publish telemetry on topic %s",
                self.endpoint,
                topic,
            )
            return False

        payload = telemetry.to_json()
        self._log.info(
            "Publishing %d telemetry record(s) on topic %s", len(telemetry.data), topic
        )
        self._log.debug("Telemetry payload for %s: %s", topic, payload)

        info = client.publish(topic, self._encode(payload), qos=TELEMETRY_QOS, retain=True)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            self._log.warning(
                "Publish on topic %s rejected locally: %s", topic, mqtt.error_string(info.rc)
            )
            return False

        future: asyncio.Future[bool] = asyncio.get_running_loop().create_future()
        self._pending_publishes[info.mid] = future
        try:
            acked = await asyncio.wait_for(future, timeout=self._publish_timeout_s)
        except TimeoutError:
            self._log.warning(
                "No ack for publish mid=%d on topic %s within %.1fs",
                info.mid,
                topic,
                self._publish_timeout_s,
            )
            return False
        finally:
            self._pending_publishes.pop(info.mid, None)

        if acked:
            self._log.info("Device telemetry published on topic %s", topic)
        else:
            self._log.warning("Broker refused telemetry on topic %s", topic)
        return acked

    def disconnect(self) -> None:
        """Close the connection and stop any automatic reconnect.

        Idempotent and safe to call before any connect(). In-flight
        publishes resolve to ``False``.
        """
        client = self._client
        if client is None:
            return
        was_connected = self._connected
        self._teardown_client()
        self._log.warning("Device %s disconnected from %s", self._device_id, self.endpoint)
        if was_connected:
            self._notify_disconnected()

    # ------------------------------------------------------------------
    # paho callbacks (network thread) -> event loop
    # ------------------------------------------------------------------

    def _dispatch(self, handler: Callable[..., None], *args: Any) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(handler, *args)

    def _on_connect(self, client, userdata, flags, reason_code, properties) -> None:
        self._dispatch(self._handle_connect, client, reason_code)

    def _on_connect_fail(self, client, userdata) -> None:
        if not self.auto_reconnect:
            client.loop_stop()
        self._dispatch(self._handle_connect_fail, client)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties) -> None:
        if not self.auto_reconnect:
            client.loop_stop()
        self._dispatch(self._handle_disconnect, client, reason_code)

    def _on_subscribe(self, client, userdata, mid, reason_code_list, properties) -> None:
        self._dispatch(self._handle_subscribe, client, mid, list(reason_code_list))

    def _on_message(self, client, userdata, message) -> None:
        self._dispatch(self._handle_message, client, message.topic, bytes(message.payload))

    def _on_publish(self, client, userdata, mid, reason_code, properties) -> None:
        self._dispatch(self._handle_publish, client, mid, reason_code)

    # ------------------------------------------------------------------
    # Event handlers (event loop thread)
    # ------------------------------------------------------------------

    def _handle_connect(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        if reason_code.is_failure:
            self._report_error(
                TransportError(f"Broker {self.endpoint} refused connection: {reason_code}")
            )
            return

        self._connected = True
        self._subscriptions_failed = False
        self._pending_subscriptions.clear()
        self._log.info("Device %s connected to %s", self._device_id, self.endpoint)

        for topic, qos in ((self.errors_topic, ERRORS_QOS), (self.config_topic, CONFIG_QOS)):
            result, mid = client.subscribe(topic, qos=qos)
            if result != mqtt.MQTT_ERR_SUCCESS:
                self._subscriptions_failed = True
                self._report_error(
                    TransportError(
                        f"Subscribe to {topic} failed: {mqtt.error_string(result)}"
                    )
                )
                continue
            self._pending_subscriptions.add(mid)
            self._log.info("Subscribing to %s (qos=%d)", topic, qos)

    def _handle_connect_fail(self, client: mqtt.Client) -> None:
        if client is not self._client:
            return
        self._report_error(TransportError(f"Could not reach broker {self.endpoint}"))
        if not self.auto_reconnect:
            self._client = None
            self._notify_disconnected()

    def _handle_disconnect(self, client: mqtt.Client, reason_code: Any) -> None:
        if client is not self._client:
            return
        self._connected = False
        self._pending_subscriptions.clear()
        self._fail_pending_publishes()
        if not self.auto_reconnect:
            self._client = None
        self._log.warning(
            "Device %s disconnected from %s (%s)", self._device_id, self.endpoint, reason_code
        )
        self._notify_disconnected()

    def _handle_subscribe(self, client: mqtt.Client, mid: int, reason_codes: list[Any]) -> None:
        if client is not self._client or mid not in self._pending_subscriptions:
            return
        self._pending_subscriptions.discard(mid)
        refused = [rc for rc in reason_codes if rc.is_failure]
        if refused:
            self._subscriptions_failed = True
            self._report_error(TransportError(f"Subscription mid={mid} refused: {refused}"))
            return
        if self._pending_subscriptions or self._subscriptions_failed or not self._connected:
            return
        self._log.info("Subscribed to %s and %s", self.errors_topic, self.config_topic)
        callbacks = self._callbacks
        if callbacks is not None and callbacks.on_connected is not None:
            callbacks.on_connected()

    def _handle_message(self, client: mqtt.Client, topic: str, payload: bytes) -> None:
        if client is not self._client or self._callbacks is None:
            return
        if topic not in (self.errors_topic, self.config_topic):
            self._log.debug("Ignoring message on unexpected topic %s", topic)
            return
        try:
            text = self._decode(payload)
        except MalformedMessageError as exc:
            self._log.warning("Dropping message on topic %s: %s", topic, exc)
            return

        if topic == self.errors_topic:
            self._log.error("Error received on topic %s: %s", topic, text)
        else:
            self._log.info("Message received on config topic %s", topic)
        self._callbacks.on_message(topic, text)

    def _handle_publish(self, client: mqtt.Client, mid: int, reason_code: Any) -> None:
        if client is not self._client:
            return
        future = self._pending_publishes.get(mid)
        if future is not None and not future.done():
            future.set_result(not reason_code.is_failure)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _fail_connect_attempt(self, exc: Exception) -> None:
        self._report_error(exc)
        self._notify_disconnected()

    def _report_error(self, exc: Exception) -> None:
        self._log.error("Broker %s: %s", self.endpoint, exc)
        callbacks = self._callbacks
        if callbacks is not None and callbacks.on_error is not None:
            callbacks.on_error(exc)

    def _notify_disconnected(self) -> None:
        callbacks = self._callbacks
        if callbacks is not None and callbacks.on_disconnected is not None:
            callbacks.on_disconnected()

    def _fail_pending_publishes(self) -> None:
        for future in self._pending_publishes.values():
            if not future.done():
                future.set_result(False)

    def _teardown_client(self) -> None:
        """Drop the current client without emitting events for it."""
        client = self._client
        self._client = None
        self._connected = False
        self._pending_subscriptions.clear()
        self._fail_pending_publishes()
        if client is not None:
            client.disconnect()
            client.loop_stop()


# ---------------------------------------------------------------------------
# Cloud IoT bridge
# ---------------------------------------------------------------------------


class CloudBrokerConnection(BrokerConnection):
    """Connection to the Cloud IoT MQTT bridge.

    A fresh JWT is requested from the credential manager at every connect.
    The paho loop stops as soon as the connection drops or a connect
    attempt fails; the owner schedules the next connect().
    """

    auto_reconnect = False
    keepalive_s = CLOUD_KEEPALIVE_S

    def __init__(
        self,
        config: CloudProviderConfig,
        identity: DeviceIdentity,
        credentials: CredentialManager,
        *,
        publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
        log: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            identity,
            config.hostname,
            config.port,
            publish_timeout_s=publish_timeout_s,
            log=log,
        )
        self._config = config
        self._credentials = credentials

    @property
    def client_id(self) -> str:
        c = self._config
        return (
            f"projects/{c.project_id}/locations/{c.region}"
            f"/registries/{c.registry_id}/devices/{self._device_id}"
        )

    def _build_client(self) -> mqtt.Client:
        token = self._credentials.get_token()
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        # The bridge ignores the username but requires it to be non-empty.
        client.username_pw_set("unused", token.signed_value)
        context = ssl.create_default_context()
        context.minimum_version = ssl.TLSVersion.TLSv1_2
        client.tls_set_context(context)
        return client

    def _encode(self, text: str) -> str:
        return text

    def _decode(self, payload: bytes) -> str:
        try:
            return payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedMessageError(f"payload is not UTF-8 text: {exc}") from exc


# ---------------------------------------------------------------------------
# Local Mosquitto broker
# ---------------------------------------------------------------------------


class LocalBrokerConnection(BrokerConnection):
    """Connection to a local Mosquitto broker with native reconnect."""

    auto_reconnect = True
    keepalive_s = LOCAL_KEEPALIVE_S

    def __init__(
        self,
        config: LocalBrokerConfig,
        identity: DeviceIdentity,
        *,
        publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
        log: logging.Logger | None = None,
    ) -> None:
        super().__init__(
            identity,
            config.hostname,
            config.port,
            publish_timeout_s=publish_timeout_s,
            log=log,
        )
        self._protocol = config.protocol

    def _build_client(self) -> mqtt.Client:
        transport = "websockets" if self._protocol in ("ws", "wss") else "tcp"
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self._device_id,
            protocol=mqtt.MQTTv5,
            transport=transport,
        )
        if self._protocol in ("mqtts", "wss"):
            # Local brokers run with self-signed certificates.
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            client.tls_set_context(context)
        client.reconnect_delay_set(
            min_delay=LOCAL_RECONNECT_INTERVAL_S, max_delay=LOCAL_RECONNECT_INTERVAL_S
        )
        return client

    def _connect_options(self) -> dict[str, Any]:
        return {"clean_start": True}

    def _encode(self, text: str) -> str:
        return base64.b64encode(text.encode("utf-8")).decode("ascii")

    def _decode(self, payload: bytes) -> str:
        try:
            return base64.b64decode(payload, validate=True).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError) as exc:
            raise MalformedMessageError(f"payload is not base64 text: {exc}") from exc


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------


def build_connection(
    broker_config: BrokerConfig,
    identity: DeviceIdentity,
    *,
    private_key_file: str | Path,
    publish_timeout_s: float = DEFAULT_PUBLISH_TIMEOUT_S,
    log: logging.Logger | None = None,
) -> BrokerConnection:
    """Build the connection variant selected by the configured provider."""
    if isinstance(broker_config, CloudProviderConfig):
        credentials = CredentialManager(
            private_key_file, broker_config.project_id, log=log
        )
        return CloudBrokerConnection(
            broker_config,
            identity,
            credentials,
            publish_timeout_s=publish_timeout_s,
            log=log,
        )
    return LocalBrokerConnection(
        broker_config, identity, publish_timeout_s=publish_timeout_s, log=log
    )
