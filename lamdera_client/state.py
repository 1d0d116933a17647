from __future__ import annotations
from collections import deque
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Deque, Optional


class ReadyState(IntEnum):
    CONNECTING = 0
    OPEN = 1
    CLOSING = 2
    CLOSED = 3


@dataclass
class ConnectionState:
    """Everything one LamderaSocket knows about its current connection attempt."""
    session_id: str
    cookie: str
    ready_state: ReadyState = ReadyState.CONNECTING
    connection_id: Optional[str] = None
    client_id: Optional[str] = None
    leader_id: Optional[str] = None
    retry_count: int = 0
    # consecutive promotions without surviving an election as follower
    leader_streak: int = 0
    setup_called: bool = False
    is_ready: bool = False
    buffered_amount: int = 0
    message_queue: Deque[str] = field(default_factory=deque)

    def reset_identity(self) -> None:
        """Forget the server-assigned ids so the next handshake counts as initial."""
        self.connection_id = None
        self.client_id = None
        self.leader_id = None

    def drain_queue(self):
        while self.message_queue:
            yield self.message_queue.popleft()
