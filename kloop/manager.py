"""
The ControllerManager wires a Reconciler into a running control loop. It does
the following:

1. Build one ResourceCache per watched kind and route filtered cache events to
   the work queue as primary keys
2. Wait for every cache to sync
3. Start the worker pool and the garbage collector, both gated on leadership
"""

# Standard
from typing import Dict, List, Optional, Type
import logging
import os
import threading
import time

# First Party
import alog

# Local
from . import config
from .cache import CacheEvent, ResourceCache
from .constants import JOIN_THREAD_TIMEOUT
from .exceptions import TransientError
from .filters import DependentWatchFilter, get_configured_filter, passes, to_filter
from .garbage_collector import GarbageCollector
from .leader_election import LeadershipManagerBase, get_leader_election_class
from .log_format import KloopJsonFormatter
from .reconcile import WatchRelation, WatchSpec
from .reconciler import Reconciler
from .resource import ResourceKey
from .store import ResourceStoreBase
from .threads.worker import WorkerThread
from .utils import parse_seconds
from .workqueue import RateLimitingQueue

log = alog.use_channel("CTRLMGR")


class ControllerManager:  # pylint: disable=too-many-instance-attributes
    """Runs one Reconciler against a store"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        reconciler_type: Type[Reconciler],
        store: ResourceStoreBase,
        namespace: Optional[str] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
        workers: Optional[int] = None,
    ):
        """Build the caches, queue, workers and garbage collector

        Args:
            reconciler_type:  Type[Reconciler]
                The reconciler to run
            store:  ResourceStoreBase
                The store to watch and write to
            namespace:  Optional[str]
                Namespace to watch. Defaults to config.watch_namespace, and
                an empty value watches cluster-wide
            leadership_manager:  Optional[LeadershipManagerBase]
                The election gating all writes. Defaults to the configured
                lock type
            workers:  Optional[int]
                Size of the worker pool. Defaults to
                config.max_concurrent_reconciles
        """
        self.reconciler_type = reconciler_type
        self.store = store
        self.namespace = namespace or _configured_namespace()
        self.leadership_manager = (
            leadership_manager or get_leader_election_class()(store)
        )
        self.shutdown = threading.Event()

        self.queue = RateLimitingQueue(name=reconciler_type.kind.lower())

        # One cache per watched kind
        self.watches: List[WatchSpec] = reconciler_type.get_watches()
        self.caches: Dict[str, ResourceCache] = {}
        for watch in self.watches:
            cache = ResourceCache(
                store,
                watch.kind,
                api_version=watch.api_version,
                namespace=watch.namespace or self.namespace,
                label_selector=watch.label_selector,
                indexers=watch.indexers,
            )
            cache.subscribe(self._make_handler(watch))
            self.caches[watch.kind] = cache

        self.reconciler = reconciler_type(store, caches=self.caches)

        worker_count = (
            workers or config.max_concurrent_reconciles or os.cpu_count() or 1
        )
        self.workers = [
            WorkerThread(
                self.reconciler,
                self.queue,
                leadership_manager=self.leadership_manager,
                name=f"worker_{reconciler_type.kind.lower()}_{index}",
            )
            for index in range(worker_count)
        ]

        # The collector watches every owned kind on behalf of the primary
        self.garbage_collector: Optional[GarbageCollector] = None
        owned = [
            watch for watch in self.watches if watch.relation == WatchRelation.OWNED
        ]
        if config.gc.enabled and owned:
            primary_cache = self.caches[reconciler_type.kind]
            self.garbage_collector = GarbageCollector(
                store,
                dependent_caches={watch.kind: self.caches[watch.kind] for watch in owned},
                owner_caches={reconciler_type.kind: primary_cache},
                leadership_manager=self.leadership_manager,
            )
            primary_cache.subscribe(self.garbage_collector.handle_owner_event)
            for watch in owned:
                self.caches[watch.kind].subscribe(
                    self.garbage_collector.handle_dependent_event
                )

    ## Interface ###############################################################

    def start(self) -> bool:
        """Start the caches, wait for them to sync and start the workers

        Returns:
            success:  bool
                False if the manager was stopped while starting
        """
        log.info("Starting ControllerManager for %s", self.reconciler_type.kind)
        for cache in self.caches.values():
            cache.start()

        deadline = time.monotonic() + parse_seconds(config.cache.sync_timeout)
        for kind, cache in self.caches.items():
            remaining = max(deadline - time.monotonic(), 0)
            if not cache.wait_for_sync(remaining):
                self.stop()
                raise TransientError(f"Cache for {kind} did not sync in time")
            log.debug("Cache for %s synced", kind)

        # If the manager has been shut down then exit before starting threads
        if self.shutdown.is_set():
            return False

        # Start campaigning without blocking. Workers wait on leadership
        self.leadership_manager.acquire(timeout=0)
        for worker in self.workers:
            worker.start_thread()
        if self.garbage_collector is not None:
            self.garbage_collector.start_thread()
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for shutdown to be signaled"""
        return self.shutdown.wait(timeout)

    def stop(self):
        """Stop all threads. In-flight reconciles are allowed to finish before
        the caches stop and the lease is released
        """
        log.info("Stopping ControllerManager for %s", self.reconciler_type.kind)
        self.shutdown.set()

        self.queue.shutdown()
        threads = list(self.workers)
        if self.garbage_collector is not None:
            threads.append(self.garbage_collector)
        for thread in threads:
            thread.stop_thread()
        for thread in threads:
            if thread.ident:
                thread.join(JOIN_THREAD_TIMEOUT)

        for cache in self.caches.values():
            cache.stop()
        self.leadership_manager.release()

    ## Event Routing ###########################################################

    def _make_handler(self, watch: WatchSpec):
        """Build the cache subscriber for one watch entry"""
        if watch.filter is not None:
            event_filter = to_filter(watch.filter)
        elif watch.relation == WatchRelation.PRIMARY:
            event_filter = get_configured_filter()
        else:
            event_filter = DependentWatchFilter()
        log.debug2("Filter for %s: %s", watch.kind, event_filter)

        def handler(event: CacheEvent):
            if not passes(event_filter, event):
                log.debug4("Filtered %s event for %s", event.type.value, event.resource)
                return
            key = self.map_event(watch, event)
            if key is not None:
                log.debug3("Queueing %s", key)
                self.queue.add(key)

        return handler

    def map_event(self, watch: WatchSpec, event: CacheEvent) -> Optional[ResourceKey]:
        """Map a cache event to the primary key it concerns. Owned resources
        map to their controlling owner of the reconciled kind.
        """
        resource = event.resource
        if watch.relation == WatchRelation.PRIMARY:
            return resource.key

        ref = resource.controller_reference
        if ref is None or ref.kind != self.reconciler_type.kind:
            return None
        return ResourceKey(
            kind=ref.kind,
            name=ref.name,
            namespace=resource.namespace,
            api_version=ref.api_version,
        )


## Logging #####################################################################


def configure_logging(reconcile_id: Optional[str] = None):
    """Configure alog from the library config, using the KloopJsonFormatter
    when json logging is enabled
    """
    # Keep the existing handler so that test capture handlers survive
    handler_generator = None
    if logging.root.handlers:
        old_handler = logging.root.handlers[0]

        def handler_generator():
            return old_handler

    alog.configure(
        default_level=config.log_level,
        filters=config.log_filters,
        formatter=KloopJsonFormatter(reconcile_id) if config.log_json else "pretty",
        thread_id=config.log_thread_id,
        handler_generator=handler_generator,
    )


## Implementation Details ######################################################


def _configured_namespace() -> Optional[str]:
    namespace = config.watch_namespace
    if not namespace or namespace == "*":
        return None
    return namespace
