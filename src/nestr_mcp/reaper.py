"""Periodic cleanup of expired pending authorizations, code bindings and sessions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass

from .errors import StorageError
from .storage import CodeBindingStore, PendingAuthorizationStore, SessionStore

logger = logging.getLogger(__name__)

DEFAULT_SWEEP_INTERVAL_SECONDS = 60.0


@dataclass(frozen=True)
class SweepResult:
    pending: int = 0
    codes: int = 0
    sessions: int = 0

    @property
    def total(self) -> int:
        return self.pending + self.codes + self.sessions


class Reaper:
    """Background task sweeping the time-boxed stores on a fixed interval.

    The task is owned by whoever calls ``start``; ``stop`` cancels it and waits
    for it to finish. Use it as an async context manager to tie its lifetime to
    a block.
    """

    def __init__(
        self,
        pending: PendingAuthorizationStore,
        codes: CodeBindingStore,
        sessions: SessionStore,
        *,
        interval: float = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ):
        self.pending = pending
        self.codes = codes
        self.sessions = sessions
        self.interval = interval
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> SweepResult:
        result = SweepResult(
            pending=await self.pending.sweep(),
            codes=await self.codes.sweep(),
            sessions=await self.sessions.sweep(),
        )
        if result.total:
            logger.info(
                "Reaped %d pending authorizations, %d code bindings, %d sessions",
                result.pending,
                result.codes,
                result.sessions,
            )
        return result

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except StorageError as exc:
                logger.error("Sweep failed, retrying next interval: %s", exc)

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="nestr-oauth-reaper")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    async def __aenter__(self) -> Reaper:
        self.start()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.stop()
