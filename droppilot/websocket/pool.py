from __future__ import annotations

import asyncio
import logging
from collections import abc
from time import time
from typing import TYPE_CHECKING

from droppilot.config import MAX_WEBSOCKETS, WS_TOPICS_LIMIT
from droppilot.exceptions import MinerException
from droppilot.models import ConnectionState, PubSubStatus, TrackerState
from droppilot.websocket.websocket import Websocket


if TYPE_CHECKING:
    from droppilot.config import WebsocketTopic
    from droppilot.core.farmer import DropFarmer


logger = logging.getLogger("DropPilot")


class WebsocketPool:
    """
    Manages a pool of websocket connections to distribute topics across multiple connections.

    The remote side limits the number of topics per websocket, so this pool automatically
    creates additional websockets as needed to handle all subscribed topics.
    Websockets left without topics are stopped and dropped.
    """

    def __init__(self, farmer: DropFarmer):
        self._farmer: DropFarmer = farmer
        self._running = asyncio.Event()
        self.websockets: list[Websocket] = []
        self._stopping: set[asyncio.Task[None]] = set()
        self.last_message_at: float | None = None
        self.last_error_at: float | None = None
        self.last_error_message: str | None = None

    @property
    def running(self) -> bool:
        return self._running.is_set()

    @property
    def topics(self) -> frozenset[str]:
        return frozenset(topic for ws in self.websockets for topic in ws.topics)

    def start(self) -> None:
        """Start all websockets in the pool, and any created later on."""
        self._running.set()
        for ws in self.websockets:
            ws.start_nowait()

    async def stop(self, *, clear_topics: bool = False) -> None:
        """
        Stop all websockets in the pool.

        Args:
            clear_topics: If True, clear all topics as well
        """
        self._running.clear()
        await asyncio.gather(*(ws.stop(remove=clear_topics) for ws in self.websockets))
        if clear_topics:
            self.websockets.clear()
        if self._stopping:
            await asyncio.gather(*self._stopping)

    def add_topics(self, topics: abc.Iterable[WebsocketTopic]) -> None:
        """
        Add topics to the pool, distributing across websockets as needed.

        Args:
            topics: Iterable of topics to add

        Raises:
            MinerException: If maximum topics limit is reached
        """
        # ensure no topics end up duplicated
        topics_set = set(topics)
        if not topics_set:
            # nothing to add
            return
        topics_set.difference_update(*(ws.topics.values() for ws in self.websockets))
        if not topics_set:
            # none left to add
            return
        for ws_idx in range(MAX_WEBSOCKETS):
            if ws_idx < len(self.websockets):
                # just read it back
                ws = self.websockets[ws_idx]
            else:
                # create new
                ws = Websocket(self, ws_idx)
                if self.running:
                    ws.start_nowait()
                self.websockets.append(ws)
            # ask websocket to take any topics it can - this modifies the set in-place
            ws.add_topics(topics_set)
            # see if there's any leftover topics for the next websocket connection
            if not topics_set:
                return
        # if we're here, there were leftover topics after filling up all websockets
        raise MinerException("Maximum topics limit has been reached")

    def remove_topics(self, topics: abc.Iterable[str]) -> None:
        """
        Remove topics from the pool.

        Websockets that end up with nothing to do are stopped, and the topics
        of websockets that are no longer needed get moved to the remaining ones.

        Args:
            topics: Iterable of topic strings to remove
        """
        topics_set = set(topics)
        if not topics_set:
            # nothing to remove
            return
        for ws in self.websockets:
            ws.remove_topics(topics_set)
        # count up all the topics - if we happen to have more websockets connected than needed,
        # stop the last one and recycle topics from it - repeat until we have enough
        recycled_topics: list[WebsocketTopic] = []
        while self.websockets:
            count = sum(len(ws.topics) for ws in self.websockets)
            if count <= (len(self.websockets) - 1) * WS_TOPICS_LIMIT:
                ws = self.websockets.pop()
                recycled_topics.extend(ws.topics.values())
                self._stop_nowait(ws)
            else:
                break
        if recycled_topics:
            self.add_topics(recycled_topics)

    def _stop_nowait(self, ws: Websocket) -> None:
        logger.debug(f"Dropping {ws!r}, its topics are no longer needed")
        task = asyncio.create_task(ws.stop(remove=True))
        self._stopping.add(task)
        task.add_done_callback(self._stopping.discard)

    def record_message(self, at: float) -> None:
        self.last_message_at = at

    def record_error(self, message: str) -> None:
        self.last_error_at = time()
        self.last_error_message = message

    def status(self, user_topics: abc.Collection[str] = ()) -> PubSubStatus:
        """
        Summarize the pool state.

        Args:
            user_topics: Topics that have to be submitted for `listening` to hold
        """
        states = {ws.connection_state for ws in self.websockets}
        if ConnectionState.CONNECTED in states:
            connection_state = ConnectionState.CONNECTED
        elif ConnectionState.CONNECTING in states:
            connection_state = ConnectionState.CONNECTING
        else:
            connection_state = ConnectionState.DISCONNECTED
        submitted: set[str] = set()
        for ws in self.websockets:
            submitted.update(ws.submitted)
        if self.last_error_at is not None and (
            self.last_message_at is None or self.last_error_at > self.last_message_at
        ):
            state = TrackerState.ERROR
        elif connection_state is ConnectionState.CONNECTED:
            state = TrackerState.OK
        else:
            state = TrackerState.IDLE
        return PubSubStatus(
            state=state,
            connection_state=connection_state,
            listening=bool(user_topics) and submitted.issuperset(user_topics),
            reconnect_attempts=sum(ws.reconnect_attempts for ws in self.websockets),
            last_message_at=self.last_message_at,
            last_error_at=self.last_error_at,
            last_error_message=self.last_error_message,
        )

    def reset_status(self) -> None:
        self.last_message_at = None
        self.last_error_at = None
        self.last_error_message = None

