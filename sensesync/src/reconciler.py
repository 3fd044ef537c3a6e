"""
Reconciles broker-pushed parameters into the locally persisted config.

Two states:
- IDLE: the in-memory parameters match what the local store holds.
- WRITE_PENDING: a newer value is being written, or waits for its retry.

A push that differs from the current target starts a new generation. It
cancels the pending retry timer and writes the newest value. Writes are
serialised, and an attempt whose generation is no longer current is skipped
or discarded, so the store always ends on the last pushed value and values
are never merged. A failed write is retried after a fixed delay.

The broker section of the config is never touched here.

CHANGELOG:
- 2026-10-16: Skip superseded attempts instead of writing them (STORY-111)
- 2026-10-14: Initial creation (STORY-108)

TODO:
- None
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import TYPE_CHECKING, Any

from sensesync.src.errors import UnavailableError

if TYPE_CHECKING:
    from sensesync.src.local_api import LocalApiClient
    from sensesync.src.models import LocalConfig

logger = logging.getLogger(__name__)

DEFAULT_RETRY_DELAY_S: float = 60.0


class ReconcilerState(enum.Enum):
    IDLE = "idle"
    WRITE_PENDING = "write_pending"


class ConfigReconciler:
    """Last-writer-wins write-back of pushed ``parameters``.

    Args:
        local_api: Client used to persist the config.
        config: The config fetched at startup; the reconciler owns the
            in-memory copy from then on.
        retry_delay_s: Delay before retrying a failed write.
        log: Logger to use; defaults to the module logger.
    """

    def __init__(
        self,
        local_api: LocalApiClient,
        config: LocalConfig,
        *,
        retry_delay_s: float = DEFAULT_RETRY_DELAY_S,
        log: logging.Logger | None = None,
    ) -> None:
        self._local_api = local_api
        self._config = config
        self._retry_delay_s = retry_delay_s
        self._log = log or logger

        self._generation = 0
        self._pending: dict[str, Any] | None = None
        self._retry_handle: asyncio.TimerHandle | None = None
        self._write_lock = asyncio.Lock()
        self._tasks: set[asyncio.Task[None]] = set()
        self.write_attempts = 0

    @property
    def config(self) -> LocalConfig:
        """The config as last confirmed written to the local store."""
        return self._config

    @property
    def state(self) -> ReconcilerState:
        if self._pending is None:
            return ReconcilerState.IDLE
        return ReconcilerState.WRITE_PENDING

    @property
    def retry_scheduled(self) -> bool:
        return self._retry_handle is not None

    async def submit(self, parameters: dict[str, Any]) -> bool:
        """Reconcile a pushed ``parameters`` map.

        Compares by value against the pending value if a write is pending,
        otherwise against the in-memory parameters.

        Returns:
            ``True`` if the push started a new write, ``False`` if it
            matched the current target and was ignored.
        """
        target = self._pending if self._pending is not None else self._config.parameters
        if parameters == target:
            self._log.debug("Pushed parameters match the local config, nothing to do")
            return False

        self._cancel_retry()
        self._generation += 1
        self._pending = dict(parameters)
        await self._attempt(self._generation)
        return True

    def close(self) -> None:
        """Cancel the pending retry and any scheduled attempt."""
        self._cancel_retry()
        for task in list(self._tasks):
            task.cancel()

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _attempt(self, generation: int) -> None:
        async with self._write_lock:
            if generation != self._generation or self._pending is None:
                self._log.info("Old update request for local config cancelled")
                return

            candidate = self._config.with_parameters(self._pending)
            self.write_attempts += 1
            try:
                await self._local_api.write_config(candidate)
            except UnavailableError as exc:
                if generation != self._generation:
                    return
                self._log.error(
                    "Unable to update local config (attempt %d): %s. Retrying in %.0fs",
                    self.write_attempts,
                    exc,
                    self._retry_delay_s,
                )
                self._schedule_retry(generation)
                return

            if generation != self._generation:
                self._log.info("Local config write superseded by a newer push")
                return
            self._config = candidate
            self._pending = None
            self._log.info("Local config has been updated")

    def _schedule_retry(self, generation: int) -> None:
        loop = asyncio.get_running_loop()
        self._retry_handle = loop.call_later(self._retry_delay_s, self._retry, generation)

    def _retry(self, generation: int) -> None:
        self._retry_handle = None
        task = asyncio.get_running_loop().create_task(self._attempt(generation))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _cancel_retry(self) -> None:
        if self._retry_handle is not None:
            self._retry_handle.cancel()
            self._retry_handle = None
            self._log.info("Pending local config retry cancelled")
