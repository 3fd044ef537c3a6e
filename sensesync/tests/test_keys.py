"""
Unit tests for the key provisioner.

Tests verify:
- Missing key files are downloaded from the templated URL.
- The private key is written with owner-only permissions.
- Existing key files are never downloaded again.
- Download failures (transport error, HTTP error, empty body) are logged,
  not raised, and leave no file behind.
- A write that fails midway leaves neither the key nor a temp file, so
  the next run downloads it again.
- Both {data_folder}/keys and the private key folder are created.

CHANGELOG:
- 2026-10-19: Cover interrupted key writes and folder creation (STORY-113)
- 2026-10-15: Public key has its own URL (STORY-109)
- 2026-10-13: Initial creation (STORY-107)

TODO:
- None
"""

from __future__ import annotations

import errno
import logging
import os
import stat
from pathlib import Path
from typing import Any

import httpx
import pytest
from sensesync.src.keys import KeyProvisioner

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TEMPLATE = "https://keys.example.com/certs/{device_id}/{filename}"


def _make_provisioner(
    tmp_path: Path, handler: httpx.MockTransport
) -> KeyProvisioner:
    client = httpx.AsyncClient(transport=handler)
    return KeyProvisioner(tmp_path / "data", _TEMPLATE, client=client)


class TestDownload:
    """Missing files are fetched."""

    @pytest.mark.asyncio
    async def test_downloads_both_keys(self, tmp_path: Path) -> None:
        urls: list[str] = []

        def _serve(request: httpx.Request) -> httpx.Response:
            urls.append(str(request.url))
            return httpx.Response(200, content=f"PEM {request.url.path}".encode())

        provisioner = _make_provisioner(tmp_path, httpx.MockTransport(_serve))

        private_key = await provisioner.ensure_keys("dev-42")

        assert private_key == tmp_path / "data" / "keys" / "ec_private.pem"
        assert urls == [
            "https://keys.example.com/certs/dev-42/ec_private.pem",
            "https://keys.example.com/certs/dev-42/ec_public.pem",
        ]
        assert private_key.read_bytes() == b"PEM /certs/dev-42/ec_private.pem"
        assert stat.S_IMODE(private_key.stat().st_mode) == 0o600
        assert provisioner.public_key_file.exists()

    @pytest.mark.asyncio
    async def test_existing_keys_kept(self, tmp_path: Path) -> None:
        def _fail(request: httpx.Request) -> httpx.Response:
            raise AssertionError(f"unexpected download of {request.url}")

        provisioner = _make_provisioner(tmp_path, httpx.MockTransport(_fail))
        provisioner.key_folder.mkdir(parents=True)
        provisioner.private_key_file.write_bytes(b"existing")
        provisioner.public_key_file.write_bytes(b"existing")

        await provisioner.ensure_keys("dev-42")

        assert provisioner.private_key_file.read_bytes() == b"existing"

    def test_custom_private_key_location(self, tmp_path: Path) -> None:
        provisioner = KeyProvisioner(
            tmp_path, _TEMPLATE, private_key_file=tmp_path / "elsewhere" / "ec_private.pem"
        )
        assert provisioner.public_key_file == tmp_path / "elsewhere" / "ec_public.pem"


class TestDownloadFailures:
    """Failures are logged and never raised."""

    @pytest.mark.asyncio
    async def test_transport_error(
        self, tmp_path: Path, caplog: pytest.LogCaptureFixture
    ) -> None:
        def _refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("no route", request=request)

        provisioner = _make_provisioner(tmp_path, httpx.MockTransport(_refuse))

        with caplog.at_level(logging.ERROR):
            await provisioner.ensure_keys("dev-42")

        assert not provisioner.private_key_file.exists()
        assert "Could not download" in caplog.text

    @pytest.mark.asyncio
    @pytest.mark.parametrize(("status_code", "content"), [(404, b"missing"), (200, b"")])
    async def test_bad_response(
        self, tmp_path: Path, status_code: int, content: bytes
    ) -> None:
        provisioner = _make_provisioner(
            tmp_path,
            httpx.MockTransport(lambda _: httpx.Response(status_code, content=content)),
        )

        await provisioner.ensure_keys("dev-42")

        assert not provisioner.private_key_file.exists()
        assert not provisioner.public_key_file.exists()

    @pytest.mark.asyncio
    async def test_interrupted_write_leaves_no_partial_file(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        real_fdopen = os.fdopen

        class _DiskFull:
            def __init__(self, fh: Any) -> None:
                self._fh = fh

            def __enter__(self) -> _DiskFull:
                return self

            def __exit__(self, *exc_info: object) -> None:
                self._fh.close()

            def fileno(self) -> int:
                return self._fh.fileno()

            def write(self, data: bytes) -> int:
                self._fh.write(data[:5])
                self._fh.flush()
                raise OSError(errno.ENOSPC, "No space left on device")

        def _serve(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=f"PEM {request.url.path}".encode())

        provisioner = _make_provisioner(tmp_path, httpx.MockTransport(_serve))

        with monkeypatch.context() as m:
            m.setattr(
                "sensesync.src.keys.os.fdopen",
                lambda fd, mode: _DiskFull(real_fdopen(fd, mode)),
            )
            await provisioner.ensure_keys("dev-42")

        assert not provisioner.private_key_file.exists()
        assert not provisioner.public_key_file.exists()
        assert list(provisioner.key_folder.iterdir()) == []

        await provisioner.ensure_keys("dev-42")

        assert provisioner.private_key_file.read_bytes() == b"PEM /certs/dev-42/ec_private.pem"
        assert provisioner.public_key_file.read_bytes() == b"PEM /certs/dev-42/ec_public.pem"


class TestFolders:
    """Key folders are created before any download."""

    @pytest.mark.asyncio
    async def test_creates_keys_folder_and_custom_parent(self, tmp_path: Path) -> None:
        custom = tmp_path / "elsewhere" / "ec_private.pem"
        provisioner = KeyProvisioner(
            tmp_path / "data",
            _TEMPLATE,
            private_key_file=custom,
            client=httpx.AsyncClient(transport=httpx.MockTransport(lambda _: httpx.Response(404))),
        )

        await provisioner.ensure_keys("dev-42")

        assert (tmp_path / "data" / "keys").is_dir()
        assert custom.parent.is_dir()
