"""
Shared test fixtures for sync daemon tests.

Provides environment isolation for SyncSettings tests, sample wire payloads
for the local store API, and a freshly generated EC key pair for the
credential tests.

CHANGELOG:
- 2026-10-13: Add EC key pair fixture (STORY-103)
- 2026-10-12: Initial creation (STORY-101)

TODO:
- None
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

# All SyncSettings environment variable names, used for cleanup.
_ALL_SYNC_ENV_VARS = (
    "LOCAL_API_BASE_URL",
    "LOCAL_API_TIMEOUT_S",
    "DATA_FOLDER",
    "KEY_PROVISIONING_URL",
    "PRIVATE_KEY_FILE",
    "PUBLISH_INTERVAL_S",
    "PUBLISH_TIMEOUT_S",
    "STARTUP_RETRY_INTERVAL_S",
    "STARTUP_MAX_ATTEMPTS",
    "RECONNECT_DELAY_S",
    "CONFIG_RETRY_DELAY_S",
    "HEALTH_PATH",
    "LOG_LEVEL",
)


@pytest.fixture(autouse=True)
def _clean_sync_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """Remove all sync env vars and isolate from .env files before each test.

    Changes working directory to tmp_path so no .env file is accidentally
    loaded by Pydantic BaseSettings.
    """
    for var in _ALL_SYNC_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)


@pytest.fixture()
def identity_body() -> dict[str, Any]:
    """A ``GET /info`` response body for a provisioned device."""
    return {
        "appName": "sensor-app",
        "deviceId": "dev-42",
        "deviceName": "rooftop-1",
        "hostname": "rooftop-1.local",
    }


@pytest.fixture()
def cloud_config_body() -> dict[str, Any]:
    """A ``GET /local-config`` response body selecting the cloud bridge."""
    return {
        "mqttConfig": {
            "provider": "GCP",
            "hostname": "mqtt.googleapis.com",
            "port": 8883,
            "projectId": "proj-1",
            "region": "europe-west1",
            "registryId": "reg-1",
        },
        "parameters": {"telemetryRefreshInterval": 300, "stateRefreshInterval": 60},
    }


@pytest.fixture()
def local_config_body() -> dict[str, Any]:
    """A ``GET /local-config`` response body selecting a local broker."""
    return {
        "mqttConfig": {
            "provider": "Mosquitto",
            "hostname": "broker.local",
            "port": 1883,
            "protocol": "mqtt",
        },
        "parameters": {"telemetryRefreshInterval": 300},
    }


@pytest.fixture()
def ec_key_pair(tmp_path: Path) -> tuple[Path, bytes]:
    """Write a fresh P-256 private key to disk.

    Returns:
        ``(private_key_path, public_key_pem)``.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    private_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    public_pem = key.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    path = tmp_path / "ec_private.pem"
    path.write_bytes(private_pem)
    return path, public_pem
