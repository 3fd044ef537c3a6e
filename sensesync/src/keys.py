"""
Key material provisioning for the cloud broker.

The cloud bridge authenticates devices with an EC key pair. On a fresh
device the pair is not on disk yet, so it is downloaded once from the
provisioning location and persisted under ``{data_folder}/keys``.

Failures here are never fatal: they are logged and the connect attempt
proceeds. The connect then fails on its own when the key is unusable.

CHANGELOG:
- 2026-10-19: Write key files atomically, create the keys folder (STORY-113)
- 2026-10-15: Download the public key from its own URL (STORY-109)
- 2026-10-13: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import contextlib
import logging
import os
import tempfile
from pathlib import Path

import httpx

logger = logging.getLogger(__name__)

PRIVATE_KEY_FILENAME = "ec_private.pem"
PUBLIC_KEY_FILENAME = "ec_public.pem"

_DOWNLOAD_TIMEOUT_S = 30.0


class KeyProvisioner:
    """Ensures the device key pair exists locally.

    Args:
        data_folder: Daemon data folder; keys live in its ``keys`` subfolder.
        url_template: Download URL with ``{device_id}`` and ``{filename}``
            placeholders.
        private_key_file: Where the private key is expected. Defaults to
            ``{data_folder}/keys/ec_private.pem``.
        client: Pre-built ``httpx.AsyncClient``; one is created per call
            otherwise.
        log: Logger to use; defaults to the module logger.
    """

    def __init__(
        self,
        data_folder: str | Path,
        url_template: str,
        *,
        private_key_file: str | Path | None = None,
        client: httpx.AsyncClient | None = None,
        log: logging.Logger | None = None,
    ) -> None:
        self.data_folder = Path(data_folder)
        self.key_folder = self.data_folder / "keys"
        self.private_key_file = (
            Path(private_key_file)
            if private_key_file
            else self.key_folder / PRIVATE_KEY_FILENAME
        )
        self.public_key_file = self.private_key_file.with_name(PUBLIC_KEY_FILENAME)
        self._url_template = url_template
        self._client = client
        self._log = log or logger

    async def ensure_keys(self, device_id: str) -> Path:
        """Download whichever key files are missing.

        Args:
            device_id: Device id used to build the download URLs.

        Returns:
            Path of the private key file. It may still be missing if the
            download failed.
        """
        for folder in (self.key_folder, self.private_key_file.parent):
            try:
                folder.mkdir(parents=True, exist_ok=True)
            except OSError as exc:
                self._log.error("Could not create key folder %s: %s", folder, exc)
                return self.private_key_file

        for path, mode in ((self.private_key_file, 0o600), (self.public_key_file, 0o644)):
            if path.exists():
                self._log.info("Found key file: %s", path)
                continue
            await self._download(device_id, path, mode)
        return self.private_key_file

    async def _download(self, device_id: str, path: Path, mode: int) -> None:
        url = self._url_template.format(device_id=device_id, filename=path.name)
        try:
            if self._client is not None:
                response = await self._client.get(url)
            else:
                async with httpx.AsyncClient(verify=True, timeout=_DOWNLOAD_TIMEOUT_S) as client:
                    response = await client.get(url)
        except httpx.HTTPError as exc:
            self._log.error("Could not download key file from %s: %s", url, exc)
            return

        if response.status_code != 200 or not response.content:
            self._log.error(
                "Empty or failed key download from %s (HTTP %d)", url, response.status_code
            )
            return

        try:
            fd, tmp_name = tempfile.mkstemp(
                dir=path.parent, prefix=f".{path.name}.", suffix=".tmp"
            )
        except OSError as exc:
            self._log.error("Key file %s could not be written: %s", path, exc)
            return
        try:
            with os.fdopen(fd, "wb") as fh:
                os.fchmod(fh.fileno(), mode)
                fh.write(response.content)
            os.replace(tmp_name, path)
        except OSError as exc:
            with contextlib.suppress(OSError):
                os.unlink(tmp_name)
            self._log.error("Key file %s could not be written: %s", path, exc)
            return
        self._log.info("Downloaded %s from %s", path, url)
