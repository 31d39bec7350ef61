"""
Background expiry of stale operations and transfers.

Runs inside the API process (started/stopped from the FastAPI lifespan).
Each tick calls the engine's and the workflow's own expiry methods in a
worker thread; both only move records whose conditional write still
applies, so overlapping ticks, manual triggers and concurrent
signing/execution are all safe.
"""

import asyncio
from typing import Optional
from loguru import logger
from .approval_engine import ApprovalEngine
from .transfer_workflow import TransferWorkflow


class ExpirySweeper:
    def __init__(
        self,
        engine: ApprovalEngine,
        transfers: TransferWorkflow,
        interval_seconds: int = 60,
    ):
        self.engine = engine
        self.transfers = transfers
        self.interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    def run_once(self) -> dict[str, int]:
        """
        Expire everything currently eligible.

        Returns:
            {"operations": <expired operations>, "transfers": <expired transfers>}
        """
        operations = self.engine.expire_old_operations()
        transfers = self.transfers.expire_stale_transfers()
        return {"operations": operations, "transfers": transfers}

    async def start(self) -> None:
        if self._running:
            logger.warning("Expiry sweeper already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info("Expiry sweeper started", interval_seconds=self.interval_seconds)

    async def stop(self) -> None:
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("Expiry sweeper stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                counts = await asyncio.to_thread(self.run_once)
                if counts["operations"] or counts["transfers"]:
                    logger.info("Expiry sweep completed", **counts)
            except Exception as e:
                # A failed tick must not kill the loop; the next tick retries
                logger.error("Expiry sweep failed", error=str(e))

            await asyncio.sleep(self.interval_seconds)
