"""
Connection State

Online/offline mode shared by the IngestionGateway and the Reconciler.
Transitions are made under a lock and logged once, by whoever makes them.
"""

import threading
from datetime import datetime
from enum import Enum
from typing import Optional

from ..common.logging_setup import get_service_logger, log_mode_change
from .models import utc_now

logger = get_service_logger("gateway")


class Mode(str, Enum):
    """Where writes go"""
    ONLINE = "online"
    OFFLINE = "offline"


class ConnectionState:
    """Lock-guarded mode flag with transition bookkeeping"""

    def __init__(self, mode: Mode = Mode.ONLINE):
        self._lock = threading.Lock()
        self._mode = mode
        self._changed_at: datetime = utc_now()
        self._reason: Optional[str] = None
        self._transitions = 0

    @property
    def mode(self) -> Mode:
        with self._lock:
            return self._mode

    @property
    def is_online(self) -> bool:
        return self.mode == Mode.ONLINE

    def go_offline(self, reason: str) -> bool:
        """Switch to offline. Returns True if this call changed the mode."""
        return self._transition(Mode.OFFLINE, reason)

    def go_online(self, reason: str = "store reachable") -> bool:
        """Switch to online. Returns True if this call changed the mode."""
        return self._transition(Mode.ONLINE, reason)

    def _transition(self, new_mode: Mode, reason: str) -> bool:
        with self._lock:
            old_mode = self._mode
            if old_mode == new_mode:
                return False
            self._mode = new_mode
            self._changed_at = utc_now()
            self._reason = reason
            self._transitions += 1

        log_mode_change(logger, old_mode.value, new_mode.value, reason)
        return True

    def to_dict(self) -> dict:
        with self._lock:
            return {
                "mode": self._mode.value,
                "since": self._changed_at.isoformat(),
                "reason": self._reason,
                "transitions": self._transitions,
            }
