import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Set

logger = logging.getLogger(__name__)


@dataclass
class RoundEvent:
    """Something the surrounding app should persist or show to players."""

    type: str  # betting, countdown, playing, tick, cashout, crashed, bet, mines_*
    game: str
    round_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    created_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "game": self.game,
            "round_id": self.round_id,
            "data": self.data,
            "created_at": self.created_at,
        }


class EventBus:
    """
    Fan-out of round events to subscribers (one queue per websocket).

    Publishing never blocks the round clock: a subscriber that falls behind
    loses its oldest events rather than stalling the game.
    """

    def __init__(self, max_queue: int = 256) -> None:
        self._max_queue = max_queue
        self._subscribers: Set[asyncio.Queue] = set()

    def subscribe(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event: RoundEvent) -> None:
        for queue in self._subscribers:
            if queue.full():
                try:
                    queue.get_nowait()
                except asyncio.QueueEmpty:
                    pass
                logger.debug("Subscriber queue full, dropped oldest event")
            queue.put_nowait(event)
