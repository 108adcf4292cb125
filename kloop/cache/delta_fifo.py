"""
The DeltaFIFO sits between the reflector and the cache processor. It keeps at
most one pending delta per key, compacting a burst of changes to the same
object into the single delta that takes the cache from its current state to
the newest one.
"""

# Standard
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union
import threading
import time

# First Party
import alog

# Local
from ..resource import Resource, ResourceKey

log = alog.use_channel("DLTFF")


class DeltaType(Enum):
    """The kinds of pending change for one key"""

    ADDED = "Added"
    MODIFIED = "Modified"
    DELETED = "Deleted"

    # The object was observed by a list or replaced under the same name. The
    # processor compares it against the cache to decide what changed
    SYNC = "Sync"


@dataclass
class Delta:
    """The newest observed state of one key and how it got there"""

    type: DeltaType
    resource: Resource


@dataclass
class ListSynced:
    """Marker queued after every object of a list has been queued"""

    resource_version: str


def compact(old: DeltaType, new: DeltaType) -> Optional[DeltaType]:
    """Combine a pending delta with a newer one for the same key

    Args:
        old:  DeltaType
            The type of the pending delta
        new:  DeltaType
            The type of the newly observed delta

    Returns:
        combined:  Optional[DeltaType]
            The single delta type to keep, or None if the two cancel out
    """
    if new == DeltaType.DELETED:
        # An object the cache never saw needs no event at all
        if old == DeltaType.ADDED:
            return None
        return DeltaType.DELETED
    if old == DeltaType.DELETED:
        # The name was deleted and recreated before the cache caught up
        return DeltaType.SYNC
    if old == DeltaType.ADDED:
        return DeltaType.ADDED
    if new == DeltaType.SYNC:
        return DeltaType.SYNC
    return old


class DeltaFIFO:
    """Keyed FIFO of compacted deltas"""

    def __init__(
        self,
        known_objects: Optional[Callable[[], Mapping[ResourceKey, Resource]]] = None,
    ):
        """
        Args:
            known_objects:  Optional[Callable[[], Mapping[ResourceKey, Resource]]]
                Returns the objects the consumer currently knows about. Used by
                replace to find objects that disappeared between lists
        """
        self._known_objects = known_objects or dict
        self._items: Dict[ResourceKey, Delta] = {}
        self._queue: Deque[Union[ResourceKey, ListSynced]] = deque()
        self._condition = threading.Condition()
        self._closed = False

    ## Producers ###############################################################

    def add(self, resource: Resource):
        self._queue_delta(DeltaType.ADDED, resource)

    def update(self, resource: Resource):
        self._queue_delta(DeltaType.MODIFIED, resource)

    def delete(self, resource: Resource):
        self._queue_delta(DeltaType.DELETED, resource)

    def replace(self, resources: Iterable[Resource], resource_version: str):
        """Queue the result of a full list. Every listed object gets a Sync
        delta and every known object missing from the list gets a Deleted
        delta. A ListSynced marker follows them.

        Args:
            resources:  Iterable[Resource]
                The complete list of objects
            resource_version:  str
                The store version of the list
        """
        resources: List[Resource] = list(resources)
        listed_keys = {resource.key for resource in resources}
        with self._condition:
            for resource in resources:
                self._queue_delta(DeltaType.SYNC, resource)

            missing = [
                resource
                for key, resource in self._known_objects().items()
                if key not in listed_keys
            ]
            missing.extend(
                delta.resource
                for key, delta in list(self._items.items())
                if key not in listed_keys and delta.type != DeltaType.DELETED
            )
            for resource in missing:
                log.debug2("Object %s disappeared between lists", resource.key)
                self._queue_delta(DeltaType.DELETED, resource)

            self._queue.append(ListSynced(resource_version=resource_version))
            self._condition.notify()
        log.debug(
            "Replaced with %d objects at version %s", len(resources), resource_version
        )

    ## Consumer ################################################################

    def pop(self, timeout: Optional[float] = None) -> Optional[Union[Delta, ListSynced]]:
        """Block until a delta is available and remove it

        Args:
            timeout:  Optional[float]
                Seconds to wait. If None wait until closed

        Returns:
            item:  Optional[Union[Delta, ListSynced]]
                The next delta or list marker. None on timeout or close
        """
        end_time = time.monotonic() + timeout if timeout is not None else None
        with self._condition:
            while not self._queue and not self._closed:
                remaining = None
                if end_time is not None:
                    remaining = end_time - time.monotonic()
                    if remaining <= 0:
                        return None
                self._condition.wait(remaining)

            if self._closed:
                return None

            item = self._queue.popleft()
            if isinstance(item, ListSynced):
                return item
            return self._items.pop(item)

    def close(self):
        """Wake up and stop the consumer"""
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def __len__(self):
        with self._condition:
            return len(self._items)

    ## Implementation Details ##################################################

    def _queue_delta(self, delta_type: DeltaType, resource: Resource):
        key = resource.key
        with self._condition:
            existing = self._items.get(key)
            if existing is None:
                self._items[key] = Delta(type=delta_type, resource=resource)
                self._queue.append(key)
                self._condition.notify()
                return

            combined = compact(existing.type, delta_type)
            log.debug4(
                "Compacting %s: %s + %s -> %s",
                key,
                existing.type,
                delta_type,
                combined,
            )
            if combined is None:
                del self._items[key]
                self._queue.remove(key)
            else:
                # Keep the newest state but the key keeps its queue position
                self._items[key] = Delta(type=combined, resource=resource)
