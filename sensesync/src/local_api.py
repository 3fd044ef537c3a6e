"""
Async HTTP client for the local store API.

The local store is a small file-backed HTTP service on the device. It owns
the device identity, the local configuration and the queue of unsent sensor
records (one JSON file per record, named by capture timestamp). This client
is a thin typed wrapper over it; it never retries. Callers decide the retry
policy.

Endpoints (relative to the base URL, which includes the ``/api`` prefix):
- GET    /info                          -> DeviceIdentity
- GET    /local-config                  -> LocalConfig
- PATCH  /local-config                  -> {"message": ...}
- GET    /sensors/unprocessed           -> {"data": [...], "files": [...]}
- DELETE /sensors/unprocessed/{file}    -> {"status": ..., "message": ...}

Every failure (connection error, timeout, non-2xx status, unusable body)
raises :class:`~sensesync.src.errors.UnavailableError`.

CHANGELOG:
- 2026-10-19: Validate queued records one by one (STORY-113)
- 2026-10-15: Treat 404 on delete as already deleted (STORY-108)
- 2026-10-12: Initial creation (STORY-104)

TODO:
- None
"""

from __future__ import annotations

import logging
from typing import Any
from urllib.parse import quote

import httpx
from pydantic import ValidationError
from sensesync.src.errors import UnavailableError
from sensesync.src.models import DeviceIdentity, LocalConfig, SensorRecord, UnsentBatch

logger = logging.getLogger(__name__)

_DEFAULT_TIMEOUT_S = 10.0


class LocalApiClient:
    """Typed client for the local store API.

    Args:
        base_url: Base URL of the local API, e.g. ``http://localhost:8080/api``.
        timeout_s: Per-request timeout in seconds.
        client: Pre-built ``httpx.AsyncClient`` to use instead of creating
            one. The caller then owns its lifecycle.
        log: Logger to use; defaults to the module logger.

    Usage::

        async with LocalApiClient("http://localhost:8080/api") as api:
            identity = await api.fetch_identity()
            batch = await api.fetch_unsent()
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout_s: float = _DEFAULT_TIMEOUT_S,
        client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._log = log or logger
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s)

    async def close(self) -> None:
        """Close the underlying HTTP client if this instance created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> LocalApiClient:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: object,
    ) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def fetch_identity(self) -> DeviceIdentity:
        """Return the device identity (``GET /info``).

        Raises:
            UnavailableError: On any transport, status or body failure.
        """
        body = await self._request("GET", "/info")
        return self._parse(DeviceIdentity, body, "GET /info")

    async def fetch_config(self) -> LocalConfig:
        """Return the local configuration (``GET /local-config``).

        Raises:
            UnavailableError: On any transport, status or body failure.
        """
        body = await self._request("GET", "/local-config")
        return self._parse(LocalConfig, body, "GET /local-config")

    async def write_config(self, config: LocalConfig) -> None:
        """Persist *config* in the local store (``PATCH /local-config``).

        Raises:
            UnavailableError: On any transport or status failure.
        """
        await self._request(
            "PATCH",
            "/local-config",
            json=config.model_dump(mode="json", by_alias=True),
        )

    async def fetch_unsent(self) -> UnsentBatch:
        """Return every readable record not yet acknowledged by the broker.

        An empty queue yields an empty batch, not an error. Records are
        validated one by one: an unreadable record is logged with its file
        name and left in the local store, and the rest of the batch is
        still returned.

        Raises:
            UnavailableError: On any transport or status failure, or when
                the body is not a pair of aligned ``data``/``files`` lists.
        """
        endpoint = "GET /sensors/unprocessed"
        body = await self._request("GET", "/sensors/unprocessed")
        if not body:
            return UnsentBatch()

        data = body.get("data") if isinstance(body, dict) else None
        files = body.get("files") if isinstance(body, dict) else None
        if not isinstance(data, list) or not isinstance(files, list):
            raise UnavailableError(
                f"{endpoint} returned an invalid UnsentBatch: expected data and files lists"
            )
        if len(data) != len(files):
            raise UnavailableError(
                f"{endpoint} returned an invalid UnsentBatch: "
                f"{len(data)} records, {len(files)} files"
            )

        records: list[SensorRecord] = []
        kept_files: list[Any] = []
        for raw, origin_file in zip(data, files, strict=True):
            try:
                record = SensorRecord.model_validate(raw)
            except ValidationError as exc:
                self._log.warning(
                    "Skipping unreadable queued record %s: %d error(s)",
                    origin_file,
                    exc.error_count(),
                )
                continue
            records.append(record)
            kept_files.append(origin_file)

        return self._parse(UnsentBatch, {"data": records, "files": kept_files}, endpoint)

    async def delete_unsent(self, origin_file: str) -> None:
        """Delete one sent record from the local queue.

        Idempotent: deleting a record that is already gone (404) succeeds.

        Args:
            origin_file: Deletion handle from :attr:`UnsentBatch.files`.

        Raises:
            UnavailableError: On any transport or non-404 status failure.
        """
        path = f"/sensors/unprocessed/{quote(origin_file, safe='')}"
        await self._request("DELETE", path, allow_not_found=True)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        allow_not_found: bool = False,
    ) -> Any:
        """Send one request and return the decoded JSON body (or None)."""
        url = f"{self._base_url}{path}"
        self._log.debug("%s %s", method, url)
        try:
            response = await self._client.request(method, url, json=json)
        except httpx.HTTPError as exc:
            raise UnavailableError(f"{method} {path} failed: {exc!r}") from exc

        if allow_not_found and response.status_code == 404:
            self._log.debug("%s %s -> 404, treating as already done", method, path)
            return None

        if not response.is_success:
            raise UnavailableError(f"{method} {path} returned HTTP {response.status_code}")

        if not response.content:
            return None
        try:
            return response.json()
        except ValueError as exc:
            raise UnavailableError(f"{method} {path} returned a non-JSON body") from exc

    @staticmethod
    def _parse(model: Any, body: Any, endpoint: str) -> Any:
        try:
            return model.model_validate(body)
        except ValidationError as exc:
            raise UnavailableError(
                f"{endpoint} returned an invalid {model.__name__}: "
                f"{exc.error_count()} error(s)"
            ) from exc
