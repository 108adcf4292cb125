"""
The InMemoryResourceStore implements the ResourceStoreBase interface without a
cluster. It holds the state of every object in a local map, assigns
monotonically increasing resource versions and keeps a bounded history of
changes so watches can be resumed.
"""

# Standard
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from queue import Empty, Queue
from typing import Deque, Dict, Iterator, List, Optional, Tuple
import copy
import threading
import time
import uuid

# First Party
import alog

# Local
from .. import config
from ..constants import (
    FOREGROUND_DELETION_FINALIZER,
    PROPAGATION_FOREGROUND,
    TIMESTAMP_FORMAT,
)
from ..exceptions import (
    AlreadyExistsError,
    ConflictError,
    ExpiredError,
    InvalidResourceError,
    NotFoundError,
    TransientError,
)
from ..resource import Resource, ResourceKey
from .base import ResourceStoreBase
from .events import WatchEvent, WatchEventType
from .selectors import match_label_selector

log = alog.use_channel("MEMST")

# How often a watch stream wakes up to check for stop or timeout
WATCH_POLL_PERIOD = 0.1

# Top level keys that are not part of the desired state
NON_SPEC_KEYS = ["apiVersion", "kind", "metadata", "status"]

# Metadata fields owned by the store that clients can not change on update
SERVER_MANAGED_METADATA = [
    "uid",
    "creationTimestamp",
    "deletionTimestamp",
    "generation",
    "resourceVersion",
]


@dataclass
class LeaseRecord:
    """The state of one named lease"""

    holder: Optional[str]
    acquire_time: datetime
    renew_time: datetime
    duration: float
    transitions: int = 0

    def is_expired(self, now: datetime) -> bool:
        return now > self.renew_time + timedelta(seconds=self.duration)


@dataclass
class _Watcher:
    """A registered watch stream"""

    kind: str
    namespace: Optional[str]
    label_selector: Optional[str]
    queue: Queue

    def matches(self, resource: Resource) -> bool:
        return (
            resource.kind == self.kind
            and (self.namespace is None or resource.namespace == self.namespace)
            and match_label_selector(resource.labels, self.label_selector)
        )


class _Disconnect:  # pylint: disable=too-few-public-methods
    """Sentinel placed on a watcher queue to break the stream"""


class InMemoryResourceStore(ResourceStoreBase):
    """
    Resource store which keeps the whole cluster in a local map
    """

    def __init__(
        self,
        resources: Optional[List[dict]] = None,
        history_size: Optional[int] = None,
    ):
        """Construct with an optional set of resources to seed the store with

        Args:
            resources:  Optional[List[dict]]
                Manifests to create in the store
            history_size:  Optional[int]
                Number of change events retained for watch resumption. Defaults
                to config.store.history_size
        """
        if history_size is None:
            history_size = config.store.history_size
        self._lock = threading.RLock()
        self._objects: Dict[ResourceKey, dict] = {}
        self._resource_version = 0
        self._history: Deque[Tuple[int, WatchEvent]] = deque(maxlen=history_size)
        self._compacted_version = 0
        self._watchers: List[_Watcher] = []
        self._leases: Dict[str, LeaseRecord] = {}

        # Number of persisted object changes. Lease writes are not counted
        self.write_count = 0

        for resource in resources or []:
            self.create(Resource(copy.deepcopy(resource)))

    ## Reads ###################################################################

    def list(
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Tuple[List[Resource], str]:
        with self._lock:
            resources = [
                Resource(copy.deepcopy(obj))
                for obj in self._objects.values()
                if self._matches(obj, kind, namespace, label_selector)
            ]
            log.debug3(
                "Listed %d %s in %s at version %d",
                len(resources),
                kind,
                namespace,
                self._resource_version,
            )
            return resources, str(self._resource_version)

    def watch(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[WatchEvent]:
        # Register eagerly so that an expired version raises at call time and
        # no change between the call and the first iteration is lost
        watcher = self._open_watch(kind, namespace, resource_version, label_selector)
        return self._stream(watcher, timeout, stop_event)

    def get(self, key: ResourceKey) -> Resource:
        with self._lock:
            obj = self._objects.get(key)
            if obj is None:
                raise NotFoundError(f"{key} not found")
            return Resource(copy.deepcopy(obj))

    ## Writes ##################################################################

    def create(self, resource: Resource) -> Resource:
        resource = Resource(resource).copy()
        with self._lock:
            key = resource.key
            if key in self._objects:
                raise AlreadyExistsError(f"{key} already exists")

            metadata = resource.metadata
            metadata.pop("deletionTimestamp", None)
            metadata["uid"] = str(uuid.uuid4())
            metadata["creationTimestamp"] = _now()
            metadata["generation"] = 1
            self._commit(key, resource.definition, WatchEventType.ADDED)
            log.debug2("Created %s", key)
            return resource.copy()

    def update(self, resource: Resource) -> Resource:
        resource = Resource(resource).copy()
        with self._lock:
            current = self._get_current(resource)
            current_res = Resource(current)
            updated = resource.definition

            # Status is only written through update_status
            updated.pop("status", None)
            if "status" in current:
                updated["status"] = copy.deepcopy(current["status"])

            for field_name in SERVER_MANAGED_METADATA:
                updated["metadata"].pop(field_name, None)
                if field_name in current["metadata"]:
                    updated["metadata"][field_name] = current["metadata"][field_name]

            if current_res.is_terminating:
                new_finalizers = set(resource.finalizers) - set(
                    current_res.finalizers
                )
                if new_finalizers:
                    raise InvalidResourceError(
                        f"Can not add finalizers {sorted(new_finalizers)} to "
                        f"terminating {resource.key}"
                    )

            if updated == current:
                log.debug3("No change to %s", resource.key)
                return Resource(copy.deepcopy(current))

            if _desired_state(updated) != _desired_state(current):
                updated["metadata"]["generation"] = current_res.generation + 1

            # Validate the structure before committing
            updated_res = Resource(updated)
            if updated_res.is_terminating and not updated_res.finalizers:
                log.debug2("Last finalizer removed from %s", updated_res.key)
                self._purge(updated_res.key, updated)
                return updated_res.copy()

            self._commit(updated_res.key, updated, WatchEventType.MODIFIED)
            log.debug2("Updated %s", updated_res.key)
            return updated_res.copy()

    def update_status(self, resource: Resource) -> Resource:
        resource = Resource(resource)
        with self._lock:
            current = self._get_current(resource)
            updated = copy.deepcopy(current)
            updated["status"] = copy.deepcopy(resource.status)
            if updated == current:
                log.debug3("No change to status of %s", resource.key)
                return Resource(copy.deepcopy(current))

            self._commit(resource.key, updated, WatchEventType.MODIFIED)
            log.debug2("Updated status of %s", resource.key)
            return Resource(copy.deepcopy(updated))

    def delete(
        self, key: ResourceKey, propagation_policy: Optional[str] = None
    ) -> Optional[Resource]:
        with self._lock:
            current = self._objects.get(key)
            if current is None:
                raise NotFoundError(f"{key} not found")
            current_res = Resource(copy.deepcopy(current))
            metadata = current_res.metadata

            if current_res.is_terminating:
                log.debug2("%s is already terminating", key)
                return current_res

            if (
                propagation_policy == PROPAGATION_FOREGROUND
                and not current_res.has_finalizer(FOREGROUND_DELETION_FINALIZER)
            ):
                metadata["finalizers"] = current_res.finalizers + [
                    FOREGROUND_DELETION_FINALIZER
                ]

            if current_res.finalizers:
                metadata["deletionTimestamp"] = _now()
                metadata["generation"] = current_res.generation + 1
                self._commit(key, current_res.definition, WatchEventType.MODIFIED)
                log.debug2(
                    "Marked %s for deletion pending %s", key, current_res.finalizers
                )
                return current_res.copy()

            self._purge(key, current_res.definition)
            log.debug2("Deleted %s", key)
            return None

    ## Leases ##################################################################

    def acquire_lease(self, name: str, holder: str, ttl: float) -> bool:
        with self._lock:
            now = datetime.now(timezone.utc)
            record = self._leases.get(name)
            if record is None:
                log.debug2("Creating lease %s for %s", name, holder)
                self._leases[name] = LeaseRecord(
                    holder=holder, acquire_time=now, renew_time=now, duration=ttl
                )
                return True

            if record.holder == holder:
                record.renew_time = now
                record.duration = ttl
                return True

            if record.holder is None or record.is_expired(now):
                log.debug2(
                    "Lease %s taken over by %s from %s", name, holder, record.holder
                )
                record.holder = holder
                record.acquire_time = now
                record.renew_time = now
                record.duration = ttl
                record.transitions += 1
                return True

            log.debug3("Lease %s is held by %s", name, record.holder)
            return False

    def renew_lease(self, name: str, holder: str, ttl: float) -> bool:
        with self._lock:
            record = self._leases.get(name)
            if record is None or record.holder != holder:
                return False
            record.renew_time = datetime.now(timezone.utc)
            record.duration = ttl
            return True

    def release_lease(self, name: str, holder: str) -> bool:
        with self._lock:
            record = self._leases.get(name)
            if record is None or record.holder != holder:
                return False
            log.debug2("Lease %s released by %s", name, holder)
            record.holder = None
            return True

    ## Test Helpers ############################################################

    def get_lease(self, name: str) -> Optional[LeaseRecord]:
        """Get a copy of the current state of a lease"""
        with self._lock:
            record = self._leases.get(name)
            return copy.copy(record) if record else None

    def disconnect_watches(self):
        """Break every open watch stream with a TransientError"""
        with self._lock:
            for watcher in self._watchers:
                watcher.queue.put(_Disconnect)

    def compact(self):
        """Drop all retained history so that any watch resumed from an older
        version raises ExpiredError
        """
        with self._lock:
            self._history.clear()
            self._compacted_version = self._resource_version

    @property
    def resource_version(self) -> str:
        with self._lock:
            return str(self._resource_version)

    ## Implementation Details ##################################################

    @staticmethod
    def _matches(
        obj: dict,
        kind: str,
        namespace: Optional[str],
        label_selector: Optional[str],
    ) -> bool:
        metadata = obj.get("metadata", {})
        return (
            obj.get("kind") == kind
            and (namespace is None or metadata.get("namespace") == namespace)
            and match_label_selector(metadata.get("labels") or {}, label_selector)
        )

    def _get_current(self, resource: Resource) -> dict:
        """Look up the stored object for a write and apply the optimistic
        concurrency preconditions
        """
        current = self._objects.get(resource.key)
        if current is None:
            raise NotFoundError(f"{resource.key} not found")
        current_metadata = current["metadata"]
        if (
            resource.resource_version is not None
            and resource.resource_version != current_metadata["resourceVersion"]
        ):
            raise ConflictError(
                f"{resource.key} resourceVersion {resource.resource_version} "
                f"!= {current_metadata['resourceVersion']}"
            )
        if resource.uid is not None and resource.uid != current_metadata["uid"]:
            raise ConflictError(
                f"{resource.key} uid {resource.uid} != {current_metadata['uid']}"
            )
        return current

    def _next_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _commit(self, key: ResourceKey, obj: dict, event_type: WatchEventType):
        obj["metadata"]["resourceVersion"] = self._next_version()
        self._objects[key] = obj
        self._record(event_type, obj)

    def _purge(self, key: ResourceKey, obj: dict):
        obj["metadata"]["resourceVersion"] = self._next_version()
        self._objects.pop(key, None)
        self._record(WatchEventType.DELETED, obj)

    def _record(self, event_type: WatchEventType, obj: dict):
        """Append a change to the history and fan it out to open watches"""
        self.write_count += 1
        if len(self._history) == self._history.maxlen:
            self._compacted_version = self._history[0][0]
        event = WatchEvent(type=event_type, resource=Resource(copy.deepcopy(obj)))
        self._history.append((self._resource_version, event))
        for watcher in self._watchers:
            if watcher.matches(event.resource):
                watcher.queue.put(_copy_event(event))

    def _open_watch(
        self,
        kind: str,
        namespace: Optional[str],
        resource_version: Optional[str],
        label_selector: Optional[str],
    ) -> _Watcher:
        with self._lock:
            watcher = _Watcher(
                kind=kind,
                namespace=namespace,
                label_selector=label_selector,
                queue=Queue(),
            )

            # With no starting version, the stream begins with the current
            # state of every matching object
            if resource_version is None:
                for obj in self._objects.values():
                    if self._matches(obj, kind, namespace, label_selector):
                        watcher.queue.put(
                            WatchEvent(
                                type=WatchEventType.ADDED,
                                resource=Resource(copy.deepcopy(obj)),
                            )
                        )
            else:
                since = int(resource_version)
                if since < self._compacted_version:
                    raise ExpiredError(
                        f"Resource version {since} is older than the retained "
                        f"history starting at {self._compacted_version}"
                    )
                for version, event in self._history:
                    if version > since and watcher.matches(event.resource):
                        watcher.queue.put(_copy_event(event))

            self._watchers.append(watcher)
            log.debug2("Opened watch on %s from %s", kind, resource_version)
            return watcher

    def _close_watch(self, watcher: _Watcher):
        with self._lock:
            if watcher in self._watchers:
                self._watchers.remove(watcher)
        log.debug2("Closed watch on %s", watcher.kind)

    def _stream(
        self,
        watcher: _Watcher,
        timeout: Optional[float],
        stop_event: Optional[threading.Event],
    ) -> Iterator[WatchEvent]:
        end_time = time.monotonic() + timeout if timeout else None
        try:
            while True:
                if stop_event is not None and stop_event.is_set():
                    return
                if end_time is not None and time.monotonic() >= end_time:
                    return
                try:
                    event = watcher.queue.get(timeout=WATCH_POLL_PERIOD)
                except Empty:
                    continue
                if event is _Disconnect:
                    raise TransientError(f"Watch on {watcher.kind} disconnected")
                yield event
        finally:
            self._close_watch(watcher)


def _copy_event(event: WatchEvent) -> WatchEvent:
    return WatchEvent(
        type=event.type, resource=event.resource.copy(), timestamp=event.timestamp
    )


def _desired_state(obj: dict) -> dict:
    """The body outside of metadata and status. Changes to it bump the
    generation
    """
    return {key: val for key, val in obj.items() if key not in NON_SPEC_KEYS}


def _now() -> str:
    return datetime.now(timezone.utc).strftime(TIMESTAMP_FORMAT)
