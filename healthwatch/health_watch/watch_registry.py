# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging
import threading
from typing import Dict

from healthwatch.health_watch.types import HealthSystem, NO_HEALTH_SYSTEMS

logger = logging.getLogger(__name__)


class WatchRegistry:
    """Enabled health systems per group.

    The lock is only held for the dict operation itself, never while talking to the
    sample store.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._group_watch_state: Dict[int, HealthSystem] = {}

    def set_mask(self, group_id: int, systems: HealthSystem) -> None:
        """Replace the stored mask. Earlier masks are not merged in."""
        with self._lock:
            self._group_watch_state[group_id] = HealthSystem(systems)

    def get_mask(self, group_id: int) -> HealthSystem:
        with self._lock:
            systems = self._group_watch_state.get(group_id, NO_HEALTH_SYSTEMS)
        if systems:
            logger.debug(
                "Found health systems mask %X for groupId %d", int(systems), group_id
            )
        else:
            logger.debug("Found NO health systems mask for groupId %d", group_id)
        return systems

    def remove(self, group_id: int) -> None:
        with self._lock:
            removed = self._group_watch_state.pop(group_id, None)
        if removed is None:
            logger.debug("OnGroupRemove didn't find groupId %d", group_id)
        else:
            logger.debug("OnGroupRemove found and removed groupId %d", group_id)

    def __len__(self) -> int:
        with self._lock:
            return len(self._group_watch_state)
