"""
Watch service: sends the periodic watch beacon for the watched channel.
"""

from __future__ import annotations

import asyncio
import logging
import random
from time import time
from typing import TYPE_CHECKING, NoReturn

from droppilot.config import WATCH_INTERVAL, WATCH_JITTER, ErrorCode
from droppilot.exceptions import AuthInvalid, ExitRequest, RemoteError
from droppilot.models import AuthError, ErrorInfo, HeartbeatStats
from droppilot.utils import ScheduledTask, task_wrapper


if TYPE_CHECKING:
    from droppilot.core.farmer import DropFarmer
    from droppilot.models import WatchingTarget


logger = logging.getLogger("DropPilot")
watch_logger = logging.getLogger("DropPilot.watch")


class WatchHeartbeat:
    """
    Service responsible for the watch beacon.

    Handles:
    - Starting and stopping the ping loop when the watched target changes
    - Jittered ping scheduling
    - Last success / last error bookkeeping
    """

    def __init__(self, farmer: DropFarmer) -> None:
        self._farmer = farmer
        self.target: WatchingTarget | None = None
        self.stats: HeartbeatStats = HeartbeatStats()
        # tunables, in seconds
        self.interval: float = WATCH_INTERVAL.total_seconds()
        self.jitter: float = WATCH_JITTER.total_seconds()
        self._loop: ScheduledTask[None] = ScheduledTask("heartbeat")

    @property
    def watching(self) -> bool:
        return self.target is not None

    def next_delay(self) -> float:
        return self.interval + random.uniform(0, self.jitter)

    def set_target(self, target: WatchingTarget | None) -> None:
        """
        Follow the given target. None stops the loop and resets the stats.
        """
        if target is None:
            self._loop.cancel()
            self.target = None
            self.stats = HeartbeatStats()
            return
        if self.target is not None and self.target.id == target.id and self._loop.active:
            self.target = target
            return
        self.target = target
        self.stats = HeartbeatStats()
        self._loop.start(target.id, self._ping_loop(target))

    @task_wrapper
    async def _ping_loop(self, target: WatchingTarget) -> NoReturn:
        while True:
            await self.ping(target)
            delay = self.next_delay()
            watch_logger.debug(f"Next ping for {target.display_name} in {delay:.1f}s")
            await asyncio.sleep(delay)

    async def ping(self, target: WatchingTarget) -> bool:
        """
        Send one ping. Failures are recorded, never raised.

        Returns:
            True if the ping went through
        """
        try:
            await self._farmer.gateway.send_watch_ping(
                target.channel_id, target.login, target.stream_id
            )
        except ExitRequest:
            raise
        except AuthInvalid as exc:
            watch_logger.warning(f"Watch ping rejected, session is invalid: {exc.message}")
            self._farmer.events.emit(AuthError(exc.message))
            return False
        except RemoteError as exc:
            watch_logger.warning(
                f"Watch ping for {target.display_name} failed: {exc.code.value}: {exc.message}"
            )
            self._record_error(ErrorInfo(exc.code.value, exc.message))
            return False
        except Exception as exc:
            # a gateway that lets something else through must not end the loop
            watch_logger.exception(f"Watch ping for {target.display_name} crashed")
            self._record_error(ErrorInfo(ErrorCode.WATCH_PING_FAILED.value, repr(exc)))
            return False
        now = time()
        watch_logger.info(f"Watch ping ok: {target.display_name}")
        self.stats = HeartbeatStats(last_ok=now, last_error=None, next_at=now + self.interval)
        return True

    def _record_error(self, error: ErrorInfo) -> None:
        self.stats = HeartbeatStats(
            last_ok=self.stats.last_ok, last_error=error, next_at=time() + self.interval
        )

    def stop(self) -> None:
        self.set_target(None)
