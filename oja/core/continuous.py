import asyncio
from typing import Awaitable, Callable, Optional

from loguru import logger

RESUME_DELAY_SECONDS = 0.5


class ContinuousConversation:
    """Re-opens the mic automatically after the assistant finishes speaking.

    The short delay keeps the microphone from catching the tail of the
    device's own speech. ``should_resume`` is evaluated both when scheduling
    and again right before listening, so a session closed during the delay
    is never re-opened.
    """

    def __init__(
        self,
        should_resume: Callable[[], bool],
        resume: Callable[[], Awaitable[None]],
        delay: float = RESUME_DELAY_SECONDS,
        enabled: bool = True,
    ):
        self.should_resume = should_resume
        self.resume = resume
        self.delay = delay
        self.enabled = enabled
        self._task: Optional[asyncio.Task] = None

    @property
    def scheduled(self) -> bool:
        return self._task is not None and not self._task.done()

    def schedule(self) -> bool:
        """Schedule a resume if conditions hold. Returns True if scheduled."""
        if not self.enabled or not self.should_resume():
            return False
        self.cancel()
        self._task = asyncio.create_task(self._resume_after_delay())
        logger.debug("Continuous listen scheduled in {:.0f}ms", self.delay * 1000)
        return True

    async def _resume_after_delay(self) -> None:
        await asyncio.sleep(self.delay)
        if not self.should_resume():
            logger.debug("Continuous listen skipped: session no longer eligible")
            return
        try:
            await self.resume()
        except Exception as e:
            logger.error("Continuous listen failed: {}", e)

    def cancel(self) -> None:
        task = self._task
        self._task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
