"""Poll scheduler: one loop per stage with declared start offsets."""

import asyncio
import logging
from typing import Optional

from .stage import Stage

logger = logging.getLogger(__name__)


class StageRegistration:
    """A stage and the delay before its first poll."""

    def __init__(self, stage: Stage, offset_sec: float):
        self.stage = stage
        self.offset_sec = offset_sec
        self.polls = 0

    def __repr__(self) -> str:
        return f"StageRegistration({self.stage.name}, offset={self.offset_sec}s)"


class Scheduler:
    """Fixed-interval ticker for pipeline stages.

    Stages start in registration order: the n-th registered stage first
    polls at ``initial_delay_sec + n * stagger_sec`` and then every
    ``interval_sec``. Each stage has its own loop, so a slow poll only
    delays that stage.
    """

    def __init__(
        self,
        interval_sec: float = 30.0,
        initial_delay_sec: float = 15.0,
        stagger_sec: float = 5.0,
    ):
        """Initialize scheduler.

        Args:
            interval_sec: Seconds between polls of one stage
            initial_delay_sec: Delay before the first stage's first poll
            stagger_sec: Extra delay for each later registration
        """
        self.interval_sec = interval_sec
        self.initial_delay_sec = initial_delay_sec
        self.stagger_sec = stagger_sec
        self.registrations: list[StageRegistration] = []
        self._stop: Optional[asyncio.Event] = None

    def register(self, stage: Stage) -> StageRegistration:
        """Register a stage after those already registered."""
        offset = self.initial_delay_sec + len(self.registrations) * self.stagger_sec
        registration = StageRegistration(stage, offset)
        self.registrations.append(registration)
        logger.debug("Registered stage %s at offset %ss", stage.name, offset)
        return registration

    def offsets(self) -> dict[str, float]:
        return {r.stage.name: r.offset_sec for r in self.registrations}

    async def run_once(self) -> dict[str, dict[str, int]]:
        """Poll every stage once, in registration order.

        Returns:
            Outcome counts per stage name
        """
        results = {}
        for registration in self.registrations:
            results[registration.stage.name] = await self._poll(registration)
        return results

    async def _poll(self, registration: StageRegistration) -> dict[str, int]:
        registration.polls += 1
        try:
            return await registration.stage.poll()
        except Exception:
            logger.exception("Stage %s poll failed", registration.stage.name)
            return {}

    async def _sleep(self, seconds: float) -> bool:
        """Sleep unless stopped first.

        Returns:
            True if the scheduler was stopped
        """
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=max(0.0, seconds))
            return True
        except asyncio.TimeoutError:
            return False

    async def _loop(self, registration: StageRegistration) -> None:
        if await self._sleep(registration.offset_sec):
            return
        while not self._stop.is_set():
            await self._poll(registration)
            if await self._sleep(self.interval_sec):
                return

    async def run(self) -> None:
        """Run every stage loop until ``stop`` is called."""
        self._stop = asyncio.Event()
        logger.info(
            "Scheduler started: %s",
            ", ".join(f"{name}@{offset:g}s" for name, offset in self.offsets().items()),
        )
        await asyncio.gather(*(self._loop(r) for r in self.registrations))
        logger.info("Scheduler stopped")

    def stop(self) -> None:
        if self._stop is not None:
            self._stop.set()
