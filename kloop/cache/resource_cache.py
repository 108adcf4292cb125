"""
The ResourceCache keeps an eventually-consistent, indexed local mirror of one
kind. A Reflector thread feeds observed changes into a DeltaFIFO, and a single
processor thread applies them to the index and notifies subscribers.

Readers never block the processor: every change swaps in a new immutable
snapshot, and reads take a reference to the current one.
"""

# Standard
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional
import threading

# First Party
import alog

# Local
from ..constants import JOIN_THREAD_TIMEOUT, OWNER_UID_INDEX
from ..exceptions import NotFoundError
from ..resource import Resource, ResourceKey
from ..store import ResourceStoreBase, WatchEventType
from ..store.selectors import match_label_selector
from ..threads import ThreadBase
from .delta_fifo import Delta, DeltaFIFO, DeltaType, ListSynced
from .reflector import Reflector

log = alog.use_channel("RCACHE")

# How long the processor waits on the fifo before checking for shutdown
PROCESSOR_POLL_TIME = 0.5

# An indexer maps a resource to the index values it should be found under
Indexer = Callable[[Resource], List[str]]


def owner_uid_index(resource: Resource) -> List[str]:
    """Index dependents by the uid of every owner"""
    return [ref.uid for ref in resource.owner_references if ref.uid]


@dataclass
class CacheEvent:
    """A change applied to the cache. For MODIFIED events old holds the
    previously cached state and for DELETED events it holds the last cached
    state.
    """

    type: WatchEventType
    resource: Resource
    old: Optional[Resource] = None


@dataclass(frozen=True)
class _Snapshot:
    objects: Dict[ResourceKey, Resource] = field(default_factory=dict)
    indices: Dict[str, Dict[str, FrozenSet[ResourceKey]]] = field(
        default_factory=dict
    )


class ResourceCache:  # pylint: disable=too-many-instance-attributes
    """Indexed local mirror of one kind"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ResourceStoreBase,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        indexers: Optional[Dict[str, Indexer]] = None,
    ):
        """
        Args:
            store:  ResourceStoreBase
                The store to list and watch
            kind:  str
                The kind to mirror
            api_version:  Optional[str]
                The api_version of the kind
            namespace:  Optional[str]
                Only mirror this namespace. If None mirror cluster-wide
            label_selector:  Optional[str]
                Only mirror objects matching this selector
            indexers:  Optional[Dict[str, Indexer]]
                Additional named indexers. owner_uid_index is always present
        """
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace
        self.indexers: Dict[str, Indexer] = {OWNER_UID_INDEX: owner_uid_index}
        self.indexers.update(indexers or {})

        self._snapshot = _Snapshot(indices={name: {} for name in self.indexers})
        self._subscribers: List[Callable[[CacheEvent], None]] = []
        self._synced = threading.Event()
        self.last_sync_version: Optional[str] = None

        self.fifo = DeltaFIFO(known_objects=lambda: self._snapshot.objects)
        self.reflector = Reflector(
            store,
            self.fifo,
            kind,
            api_version=api_version,
            namespace=namespace,
            label_selector=label_selector,
        )
        self.processor = _ProcessorThread(self)

    ## Lifecycle ###############################################################

    def start(self):
        """Start the ingest and processor threads"""
        self.processor.start_thread()
        self.reflector.start_thread()

    def stop(self):
        """Stop both threads and wait for them to exit"""
        self.reflector.stop_thread()
        self.processor.stop_thread()
        self.fifo.close()
        for thread in [self.reflector, self.processor]:
            if thread.ident:
                thread.join(JOIN_THREAD_TIMEOUT)

    @property
    def has_synced(self) -> bool:
        """True once the first full list has been applied"""
        return self._synced.is_set()

    def wait_for_sync(self, timeout: Optional[float] = None) -> bool:
        return self._synced.wait(timeout)

    def subscribe(self, handler: Callable[[CacheEvent], None]):
        """Register a handler called on the processor thread for every applied
        change. Handlers must not modify the resources they receive.
        """
        self._subscribers.append(handler)

    ## Reads ###################################################################

    def get(self, key: ResourceKey) -> Resource:
        """Get a copy of the cached state of one object"""
        resource = self._snapshot.objects.get(key)
        if resource is None:
            raise NotFoundError(f"{key} not found in cache")
        return resource.copy()

    def list(
        self, namespace: Optional[str] = None, label_selector: Optional[str] = None
    ) -> List[Resource]:
        """Get copies of all cached objects, optionally filtered"""
        return [
            resource.copy()
            for resource in self._snapshot.objects.values()
            if (namespace is None or resource.namespace == namespace)
            and match_label_selector(resource.labels, label_selector)
        ]

    def keys(self) -> List[ResourceKey]:
        return list(self._snapshot.objects.keys())

    def by_index(self, index_name: str, value: str) -> List[Resource]:
        """Get copies of the objects filed under a value of a named index"""
        snapshot = self._snapshot
        if index_name not in snapshot.indices:
            raise KeyError(f"Unknown index {index_name}")
        return [
            snapshot.objects[key].copy()
            for key in snapshot.indices[index_name].get(value, frozenset())
        ]

    def __len__(self):
        return len(self._snapshot.objects)

    ## Processing ##############################################################

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Apply the next delta from the fifo and notify subscribers

        Args:
            timeout:  Optional[float]
                Seconds to wait for a delta

        Returns:
            processed:  bool
                False if no delta was available
        """
        item = self.fifo.pop(timeout)
        if item is None:
            return False

        if isinstance(item, ListSynced):
            log.debug("Cache for %s synced at %s", self.kind, item.resource_version)
            self.last_sync_version = item.resource_version
            self._synced.set()
            return True

        for event in self._apply_delta(item):
            log.debug3("Cache event %s for %s", event.type.value, event.resource.key)
            self._notify(event)
        return True

    def _apply_delta(self, delta: Delta) -> List[CacheEvent]:
        resource = delta.resource
        key = resource.key
        old = self._snapshot.objects.get(key)

        if delta.type == DeltaType.DELETED:
            if old is None:
                return []
            self._swap(key, None)
            return [CacheEvent(WatchEventType.DELETED, resource, old)]

        if old is None:
            self._swap(key, resource)
            return [CacheEvent(WatchEventType.ADDED, resource)]

        if old.uid != resource.uid:
            # The name was reused by a new object
            self._swap(key, resource)
            return [
                CacheEvent(WatchEventType.DELETED, old, old),
                CacheEvent(WatchEventType.ADDED, resource),
            ]

        if old.resource_version == resource.resource_version:
            return []

        self._swap(key, resource)
        return [CacheEvent(WatchEventType.MODIFIED, resource, old)]

    def _swap(self, key: ResourceKey, resource: Optional[Resource]):
        """Build and publish the next snapshot. Only the processor thread
        writes.
        """
        current = self._snapshot
        objects = dict(current.objects)
        indices = {name: dict(index) for name, index in current.indices.items()}

        old = objects.pop(key, None)
        if old is not None:
            for name, indexer in self.indexers.items():
                for value in indexer(old):
                    remaining = indices[name].get(value, frozenset()) - {key}
                    if remaining:
                        indices[name][value] = remaining
                    else:
                        indices[name].pop(value, None)

        if resource is not None:
            objects[key] = resource
            for name, indexer in self.indexers.items():
                for value in indexer(resource):
                    indices[name][value] = indices[name].get(
                        value, frozenset()
                    ) | {key}

        self._snapshot = _Snapshot(objects=objects, indices=indices)

    def _notify(self, event: CacheEvent):
        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:  # pylint: disable=broad-except
                log.error(
                    "Cache subscriber %s failed for %s",
                    handler,
                    event.resource.key,
                    exc_info=True,
                )


class _ProcessorThread(ThreadBase):
    """Drains the cache's fifo"""

    def __init__(self, cache: ResourceCache):
        super().__init__(name=f"cache_processor_{cache.kind}", daemon=True)
        self.cache = cache

    def run(self):
        while not self.should_stop():
            self.cache.process_next(timeout=PROCESSOR_POLL_TIME)
        log.debug("Processor for %s stopped", self.cache.kind)
