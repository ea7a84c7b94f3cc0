# Copyright (c) Meta Platforms, Inc. and affiliates.
# All rights reserved.
import logging
import threading
from typing import FrozenSet, Iterable, Set

from healthwatch.health_watch.fields import FieldId, XID_UNCONTAINED_ERROR
from healthwatch.health_watch.types import EntityRef
from healthwatch.schemas.health_watch.sample import FieldValue

logger = logging.getLogger(__name__)


class UncontainedErrorTracker:
    """Devices that reported XID 95 since the process started.

    Entries are never removed; a device that had an uncontained error fails its memory
    check until the process restarts. Entries are keyed by entity type and id, not by
    id alone: GPU instance and compute instance ids are numbered independently of GPU
    ids, so an XID on GPU instance 1 says nothing about GPU 1. The lock is private to
    the tracker, so ingestion never waits on the watch registry or on an evaluation in
    progress.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._entities: Set[EntityRef] = set()

    def ingest(self, values: Iterable[FieldValue]) -> None:
        for fv in values:
            if not fv.entity.is_gpu_like:
                logger.debug(
                    "Ignoring field %d update for non-device entity %s",
                    fv.field_id,
                    fv.entity,
                )
                continue
            if fv.field_id != FieldId.XID_ERRORS:
                logger.debug("Ignoring update for field %d", fv.field_id)
                continue
            if fv.value != XID_UNCONTAINED_ERROR:
                logger.debug("Ignoring XID %s for %s", fv.value, fv.entity)
                continue

            with self._lock:
                self._entities.add(fv.entity)
            logger.error("%s reported an uncontained error XID", fv.entity)

    def had_uncontained_error(self, entity: EntityRef) -> bool:
        with self._lock:
            return entity in self._entities

    def snapshot(self) -> FrozenSet[EntityRef]:
        with self._lock:
            return frozenset(self._entities)
