"""
Pydantic models for the local store API and the broker wire format.

The local store and the broker both speak camelCase JSON, so every model
uses a camelCase alias generator and accepts either spelling on input.
Serialise with ``by_alias=True`` when writing back to the wire.

CHANGELOG:
- 2026-10-14: Preserve unknown sensor fields so records republish verbatim
- 2026-10-12: Initial creation (STORY-102)

TODO:
- None
"""

from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator
from pydantic.alias_generators import to_camel

UNSET_DEVICE_ID = "unset"
"""Placeholder device id the local store reports before provisioning."""


class _WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Device identity
# ---------------------------------------------------------------------------


class DeviceIdentity(_WireModel):
    """Identity of this device, created once by the local store.

    Attributes:
        app_name: Name of the application that provisioned the device.
        device_id: Unique device identifier; scopes all broker topics.
        device_name: Human-readable device name.
        hostname: Network hostname of the device.
    """

    model_config = ConfigDict(frozen=True)

    app_name: str
    device_id: str
    device_name: str
    hostname: str

    @property
    def is_provisioned(self) -> bool:
        """False while the local store still reports the placeholder id."""
        return bool(self.device_id) and self.device_id != UNSET_DEVICE_ID


# ---------------------------------------------------------------------------
# Local configuration
# ---------------------------------------------------------------------------


class CloudProviderConfig(_WireModel):
    """Cloud IoT MQTT bridge settings (JWT-authenticated, TLS)."""

    model_config = ConfigDict(frozen=True)

    provider: Literal["GCP"] = "GCP"
    hostname: str
    port: int
    project_id: str
    region: str
    registry_id: str


class LocalBrokerConfig(_WireModel):
    """Local Mosquitto broker settings.

    ``protocol`` is one of ``mqtt``, ``mqtts``, ``ws`` or ``wss``.
    """

    model_config = ConfigDict(frozen=True)

    provider: Literal["Mosquitto"] = "Mosquitto"
    hostname: str
    port: int
    protocol: Literal["mqtt", "mqtts", "ws", "wss"] = "mqtt"


BrokerConfig = Annotated[
    Union[CloudProviderConfig, LocalBrokerConfig],
    Field(discriminator="provider"),
]


class LocalConfig(_WireModel):
    """Locally persisted configuration.

    The broker section selects the provider and is fixed for the lifetime
    of the process. Only ``parameters`` changes at runtime.
    """

    broker: BrokerConfig = Field(alias="mqttConfig")
    parameters: dict[str, Any] = Field(default_factory=dict)

    def with_parameters(self, parameters: dict[str, Any]) -> LocalConfig:
        """Return a copy carrying *parameters* and the same broker section."""
        return self.model_copy(update={"parameters": dict(parameters)})


# ---------------------------------------------------------------------------
# Sensor records
# ---------------------------------------------------------------------------


class SensorRecord(_WireModel):
    """A single timestamped sensor reading.

    Records are named by their capture timestamp, which sorts lexically.
    Fields the daemon does not know about are kept as-is.
    """

    model_config = ConfigDict(extra="allow")

    timestamp: str
    pressure: float | None = None
    temperature_from_pressure: float | None = None
    temperature_from_humidity: float | None = None
    humidity: float | None = None


class UnsentBatch(_WireModel):
    """Records fetched in one poll, with their deletion handles.

    ``files[i]`` is the local store file holding ``data[i]``.
    """

    data: list[SensorRecord] = Field(default_factory=list)
    files: list[str] = Field(default_factory=list)

    @model_validator(mode="after")
    def _files_align_with_data(self) -> UnsentBatch:
        if len(self.data) != len(self.files):
            raise ValueError(
                f"unsent batch misaligned: {len(self.data)} records, "
                f"{len(self.files)} files"
            )
        return self

    @property
    def is_empty(self) -> bool:
        return not self.data

    def __len__(self) -> int:
        return len(self.data)

    def entries(self) -> list[tuple[SensorRecord, str]]:
        """Return ``(record, origin_file)`` pairs in fetch order."""
        return list(zip(self.data, self.files, strict=True))


# ---------------------------------------------------------------------------
# Broker payloads
# ---------------------------------------------------------------------------


class Telemetry(_WireModel):
    """Telemetry payload published on the device events topic."""

    data: list[SensorRecord]

    def to_json(self) -> str:
        return self.model_dump_json(by_alias=True, exclude_unset=True)


class ConfigPush(_WireModel):
    """Body of a message received on the device config topic."""

    parameters: dict[str, Any]
