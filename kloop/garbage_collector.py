"""
The GarbageCollector deletes dependents whose owners are gone. It runs on its
own thread so owner lookups never sit in the reconcile path, and it is fed in
two ways:

* Opportunistic checks: every observed dependent change and every owner
  deletion enqueues the affected dependents
* Periodic sweeps: every sweep_period all cached dependents are checked,
  which catches anything an event missed

It also completes foreground deletion: an owner that is terminating with the
foregroundDeletion finalizer has its dependents deleted and the finalizer is
removed once no blocking dependent remains.
"""

# Standard
from enum import Enum
from typing import List, Mapping, NamedTuple, Optional

# First Party
import alog

# Local
from . import config
from .cache import CacheEvent, ResourceCache
from .constants import (
    FOREGROUND_DELETION_FINALIZER,
    OWNER_UID_INDEX,
    PROPAGATION_BACKGROUND,
)
from .exceptions import KloopError, NotFoundError
from .finalizer import FinalizerManager
from .leader_election import LeadershipManagerBase
from .resource import OwnerReference, Resource, ResourceKey
from .store import ResourceStoreBase, WatchEventType
from .threads import ThreadBase
from .utils import parse_seconds
from .workqueue import RateLimitingQueue

log = alog.use_channel("GRBGC")

# How long the collector waits on its queue before checking for shutdown
GC_POLL_TIME = 0.5


class GCAction(Enum):
    """The kinds of work the collector's queue holds"""

    CHECK_DEPENDENT = "CheckDependent"
    PROCESS_OWNER = "ProcessOwner"
    SWEEP = "Sweep"


class GCItem(NamedTuple):
    action: GCAction
    key: Optional[ResourceKey] = None


SWEEP_ITEM = GCItem(GCAction.SWEEP)


class GarbageCollector(ThreadBase):  # pylint: disable=too-many-instance-attributes
    """Owner-reference garbage collector for a set of cached dependent kinds"""

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ResourceStoreBase,
        dependent_caches: Mapping[str, ResourceCache],
        owner_caches: Optional[Mapping[str, ResourceCache]] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
        sweep_period: Optional[float] = None,
        conflict_retries: Optional[int] = None,
    ):
        """
        Args:
            store:  ResourceStoreBase
                The store to confirm owners against and delete from
            dependent_caches:  Mapping[str, ResourceCache]
                Caches of the dependent kinds by kind
            owner_caches:  Optional[Mapping[str, ResourceCache]]
                Caches of owner kinds by kind. Owners of other kinds are read
                from the store
            leadership_manager:  Optional[LeadershipManagerBase]
                Only the leader collects
            sweep_period:  Optional[float]
                Seconds between full sweeps. Defaults to config.gc.sweep_period
        """
        super().__init__(
            name="garbage_collector",
            daemon=True,
            store=store,
            leadership_manager=leadership_manager,
        )
        self.dependent_caches = dict(dependent_caches)
        self.owner_caches = dict(owner_caches or {})
        self.sweep_period = (
            sweep_period
            if sweep_period is not None
            else parse_seconds(config.gc.sweep_period)
        )
        self.foreground_finalizer = FinalizerManager(
            store, FOREGROUND_DELETION_FINALIZER, conflict_retries
        )
        self.queue = RateLimitingQueue(name="gc")
        self.timer_thread = self.queue.timer_thread

    ## Thread Interface ########################################################

    def run(self):
        """Sweep once on start and then drain the queue until shutdown"""
        self.queue.add(SWEEP_ITEM)
        self._schedule_sweep()

        while self.check_preconditions():
            item, shutdown = self.queue.get(timeout=GC_POLL_TIME)
            if shutdown:
                break
            if item is None:
                continue
            try:
                self.process(item)
                self.queue.forget(item)
            except KloopError as err:
                log.warning("Garbage collection of %s failed: %s", item.key, err)
                self.queue.add_rate_limited(item)
            # Capture all generic exceptions
            except Exception as err:  # pylint: disable=broad-except
                log.error(
                    "Unhandled error collecting %s: %s", item, err, exc_info=True
                )
                self.queue.add_rate_limited(item)
            finally:
                self.queue.done(item)
        log.debug("Garbage collector stopped")

    def stop_thread(self):
        """Stop the thread, its queue and the sweep timer"""
        super().stop_thread()
        self.queue.shutdown()

    ## Event Handlers ##########################################################

    def handle_dependent_event(self, event: CacheEvent):
        """Check a dependent whenever it is observed. A deleted dependent may
        unblock the foreground deletion of its owners.
        """
        resource = event.resource
        if event.type == WatchEventType.DELETED:
            for ref in resource.owner_references:
                if ref.block_owner_deletion:
                    self.enqueue_owner(ref.owner_key(resource.namespace))
            return
        if resource.owner_references:
            self.enqueue(resource.key)

    def handle_owner_event(self, event: CacheEvent):
        """Enqueue the dependents of a deleted owner and track owners under
        foreground deletion
        """
        owner = event.resource
        if event.type == WatchEventType.DELETED:
            for dependent in self.find_dependents(owner):
                self.enqueue(dependent.key)
            return
        if owner.is_terminating and owner.has_finalizer(
            FOREGROUND_DELETION_FINALIZER
        ):
            self.enqueue_owner(owner.key)

    def enqueue(self, key: ResourceKey):
        """Schedule an opportunistic check of one dependent"""
        self.queue.add(GCItem(GCAction.CHECK_DEPENDENT, key))

    def enqueue_owner(self, key: ResourceKey):
        """Schedule a foreground deletion check of one owner"""
        self.queue.add(GCItem(GCAction.PROCESS_OWNER, key))

    ## Collection ##############################################################

    def process(self, item: GCItem):
        """Run one item from the queue"""
        log.debug3("Processing %s", item)
        if item.action == GCAction.SWEEP:
            self.sweep()
        elif item.action == GCAction.CHECK_DEPENDENT:
            self.check_dependent(item.key)
        elif item.action == GCAction.PROCESS_OWNER:
            try:
                owner = self.store.get(item.key)
            except NotFoundError:
                log.debug2("Owner %s already purged", item.key)
                return
            self.process_foreground(owner)

    def sweep(self) -> int:
        """Check every cached dependent and every owner under foreground
        deletion

        Returns:
            deleted:  int
                The number of dependents deleted
        """
        deleted = 0
        for cache in self.dependent_caches.values():
            for dependent in cache.list():
                if dependent.owner_references and self.check_dependent(
                    dependent.key
                ):
                    deleted += 1
        for cache in self.owner_caches.values():
            for owner in cache.list():
                if owner.is_terminating and owner.has_finalizer(
                    FOREGROUND_DELETION_FINALIZER
                ):
                    self.process_foreground(owner)
        log.debug("Sweep deleted %d dependents", deleted)
        return deleted

    def check_dependent(self, key: ResourceKey) -> bool:
        """Delete a dependent if it is eligible

        Args:
            key:  ResourceKey
                The dependent to check

        Returns:
            deleted:  bool
                True if a delete was issued
        """
        try:
            dependent = self.store.get(key)
        except NotFoundError:
            return False
        if dependent.is_terminating or not self.is_eligible(dependent):
            return False

        log.info(
            "Deleting %s since its owners are gone",
            key,
            extra={"resource": dependent},
        )
        try:
            self.store.delete(key, propagation_policy=PROPAGATION_BACKGROUND)
        except NotFoundError:
            return False
        return True

    def is_eligible(self, dependent: Resource) -> bool:
        """A dependent may be deleted once its controlling owner is gone, or all
        of its owners if none is the controller, and every owner blocking on
        it is gone too

        Args:
            dependent:  Resource
                The dependent to check

        Returns:
            eligible:  bool
                True if the dependent can be deleted
        """
        refs = dependent.owner_references
        if not refs:
            return False

        namespace = dependent.namespace
        controller = dependent.controller_reference
        if controller is not None:
            required_absent = [controller]
        else:
            required_absent = refs
        required_absent = required_absent + [
            ref for ref in refs if ref.block_owner_deletion
        ]
        return not any(self.owner_exists(ref, namespace) for ref in required_absent)

    def owner_exists(self, ref: OwnerReference, namespace: Optional[str]) -> bool:
        """Check whether the owner an owner reference points at exists. A cache
        hit is trusted, while a miss is confirmed with a live read. Either way
        an object that reuses the name with a different uid does not count.

        Args:
            ref:  OwnerReference
                The reference to resolve
            namespace:  Optional[str]
                The dependent's namespace. Owners are either in the same
                namespace or cluster scoped

        Returns:
            exists:  bool
                True if the referenced owner exists
        """
        namespaces = [namespace, None] if namespace is not None else [None]
        cache = self.owner_caches.get(ref.kind)
        if cache is not None:
            for owner_namespace in namespaces:
                try:
                    if cache.get(ref.owner_key(owner_namespace)).uid == ref.uid:
                        return True
                except NotFoundError:
                    continue

        for owner_namespace in namespaces:
            try:
                owner = self.store.get(ref.owner_key(owner_namespace))
            except NotFoundError:
                continue
            if owner.uid == ref.uid:
                return True
        log.debug2("Owner %s/%s (%s) is gone", ref.kind, ref.name, ref.uid)
        return False

    def process_foreground(self, owner: Resource) -> bool:
        """Drive the foreground deletion of an owner. Its dependents are deleted
        and the foregroundDeletion finalizer is removed once no dependent that
        blocks owner deletion remains.

        Args:
            owner:  Resource
                The terminating owner

        Returns:
            released:  bool
                True if the finalizer was removed
        """
        if not owner.is_terminating or not owner.has_finalizer(
            FOREGROUND_DELETION_FINALIZER
        ):
            return False

        blocking = []
        for dependent in self.find_dependents(owner):
            try:
                dependent = self.store.get(dependent.key)
            except NotFoundError:
                continue
            ref = _ref_to(dependent, owner)
            if ref is None:
                continue
            if not dependent.is_terminating:
                log.debug2("Deleting %s for foreground deletion", dependent.key)
                try:
                    dependent = self.store.delete(
                        dependent.key, propagation_policy=PROPAGATION_BACKGROUND
                    )
                except NotFoundError:
                    continue
            if dependent is not None and ref.block_owner_deletion:
                blocking.append(dependent.key)

        if blocking:
            log.debug(
                "Foreground deletion of %s waiting on %d dependents",
                owner.key,
                len(blocking),
            )
            return False

        log.info("Releasing foreground deletion of %s", owner.key)
        return self.foreground_finalizer.remove(owner.key)

    def find_dependents(self, owner: Resource) -> List[Resource]:
        """Find the cached dependents of an owner by its uid"""
        return [
            dependent
            for cache in self.dependent_caches.values()
            for dependent in cache.by_index(OWNER_UID_INDEX, owner.uid)
        ]

    ## Implementation Details ##################################################

    def _schedule_sweep(self):
        self.timer_thread.put_event_after(self.sweep_period, self._sweep_tick)

    def _sweep_tick(self):
        self.queue.add(SWEEP_ITEM)
        self._schedule_sweep()


def _ref_to(dependent: Resource, owner: Resource) -> Optional[OwnerReference]:
    for ref in dependent.owner_references:
        if ref.uid == owner.uid:
            return ref
    return None
