"""
This module holds common helper functions for making testing easy
"""

# Standard
from contextlib import contextmanager
from threading import Event
from typing import Callable, Dict, List, Optional
import copy
import os
import time
import uuid

# First Party
import aconfig
import alog

# Local
from kloop.cache import ResourceCache
from kloop.config import library_config as config_detail_dict
from kloop.exceptions import assert_valid
from kloop.filters import get_configured_filter
from kloop.leader_election import LeaderState, LeadershipManagerBase
from kloop.reconcile import WatchRelation, WatchSpec
from kloop.reconciler import Reconciler
from kloop.resource import Resource, ResourceKey
from kloop.status import READY_CONDITION, make_condition, make_updated_status
from kloop.store import InMemoryResourceStore
from kloop.utils import merge_configs

log = alog.use_channel("TEST")


def configure_logging():
    alog.configure(
        os.environ.get("LOG_LEVEL", "off"),
        os.environ.get("LOG_FILTERS", ""),
        formatter="json"
        if os.environ.get("LOG_JSON", "").lower() == "true"
        else "pretty",
        thread_id=os.environ.get("LOG_THREAD_ID", "").lower() == "true",
    )


configure_logging()

TEST_NAMESPACE = "test"
TEST_API_VERSION = "test.kloop.io/v1"
WIDGET_KIND = "Widget"
REPLICA_KIND = "WidgetReplica"
WIDGET_FINALIZER = "core/cleanup"


@contextmanager
def library_config(**config_overrides):
    """This context manager sets library config values temporarily and reverts
    them on completion. Overrides for a config section are merged onto the
    current section.
    """
    # Override the configs and hang onto the old values
    old_vals = {}
    for key, val in config_overrides.items():
        if key in config_detail_dict:
            old_vals[key] = config_detail_dict[key]
            if isinstance(val, dict) and isinstance(old_vals[key], dict):
                val = aconfig.Config(
                    merge_configs(copy.deepcopy(dict(old_vals[key])), val),
                    override_env_vars=False,
                )
        config_detail_dict[key] = val
    get_configured_filter.cache_clear()

    # Yield to the context
    try:
        yield
    finally:
        # Revert to the old values
        for key in config_overrides:
            if key in old_vals:
                config_detail_dict[key] = old_vals[key]
            else:
                del config_detail_dict[key]
        get_configured_filter.cache_clear()


## Builders ####################################################################


def make_resource(
    kind=WIDGET_KIND,
    namespace=TEST_NAMESPACE,
    api_version=TEST_API_VERSION,
    name="foo",
    spec=None,
    status=None,
    annotations=None,
    labels=None,
    owner_refs=None,
    finalizers=None,
    uid=None,
) -> dict:
    """Build a manifest. Store managed fields are left for the store to set
    unless a uid is given
    """
    metadata = {"name": name}
    if namespace is not None:
        metadata["namespace"] = namespace
    if uid is not None:
        metadata["uid"] = uid
    if annotations:
        metadata["annotations"] = annotations
    if labels:
        metadata["labels"] = labels
    if owner_refs:
        metadata["ownerReferences"] = owner_refs
    if finalizers:
        metadata["finalizers"] = finalizers
    manifest = {"kind": kind, "apiVersion": api_version, "metadata": metadata}
    if spec is not None:
        manifest["spec"] = spec
    if status is not None:
        manifest["status"] = status
    return manifest


def make_ownerref(resource, controller=True, block_owner_deletion=True) -> dict:
    """Build an owner reference dict pointing at a manifest or Resource"""
    resource = Resource(resource).copy()
    return {
        "apiVersion": resource.api_version,
        "kind": resource.kind,
        "name": resource.name,
        "uid": resource.uid or str(uuid.uuid4()),
        "controller": controller,
        "blockOwnerDeletion": block_owner_deletion,
    }


def make_store(*resources: dict) -> InMemoryResourceStore:
    return InMemoryResourceStore(resources=list(resources))


def set_ready(store: InMemoryResourceStore, key: ResourceKey, ready: bool = True):
    """Mark an object's Ready condition through the status path"""
    current = store.get(key)
    current.definition["status"] = make_updated_status(
        current.status, [make_condition(READY_CONDITION, ready, "Test")]
    )
    return store.update_status(current)


def wait_for(
    predicate: Callable[[], bool], timeout: float = 5.0, poll_time: float = 0.01
) -> bool:
    """Poll a predicate until it is true or the timeout passes"""
    end_time = time.monotonic() + timeout
    while time.monotonic() < end_time:
        if predicate():
            return True
        time.sleep(poll_time)
    return predicate()


@contextmanager
def running_cache(cache: ResourceCache, timeout: float = 5.0):
    """Start a cache, wait for the initial sync and stop it on exit"""
    cache.start()
    try:
        assert cache.wait_for_sync(timeout), f"Cache for {cache.kind} did not sync"
        yield cache
    finally:
        cache.stop()


def drain_cache(cache: ResourceCache, timeout: float = 0.1) -> int:
    """Apply every queued delta on the calling thread. Used with a reflector
    that is driven by hand instead of by its thread
    """
    count = 0
    while cache.process_next(timeout=timeout):
        count += 1
    return count


## Reconcilers #################################################################


class WidgetReconciler(Reconciler):
    """Reconciler for the Widget test kind. Each Widget owns one WidgetReplica
    carrying its replica count.
    """

    kind = WIDGET_KIND
    api_version = TEST_API_VERSION
    finalizer = WIDGET_FINALIZER
    watches = [WatchSpec(REPLICA_KIND, TEST_API_VERSION, WatchRelation.OWNED)]

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.cleanup_calls: List[ResourceKey] = []
        self.fail_cleanup = False

    def validate(self, resource: Resource):
        replicas = resource.spec.get("replicas", 1)
        assert_valid(
            isinstance(replicas, int) and replicas >= 0,
            f"spec.replicas must be a non-negative integer, got {replicas}",
        )

    def desired_dependents(self, resource: Resource) -> List[dict]:
        return [
            {
                "kind": REPLICA_KIND,
                "apiVersion": TEST_API_VERSION,
                "metadata": {
                    "name": f"{resource.name}-replica",
                    "labels": {"app": resource.name},
                },
                "spec": {"replicas": resource.spec.get("replicas", 1)},
            }
        ]

    def finalize(self, resource: Resource):
        self.cleanup_calls.append(resource.key)
        if self.fail_cleanup:
            raise RuntimeError("Cleanup failed")


class NoFinalizerWidgetReconciler(WidgetReconciler):
    finalizer = None


## Leadership ##################################################################


class DisabledLeadershipManager(LeadershipManagerBase):
    """Leadership Manager that is never leader"""

    def __init__(self):
        super().__init__()
        self.shutdown_event = Event()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        self.shutdown_event.wait(timeout)
        return False

    def release(self):
        self.shutdown_event.set()

    def is_leader(self) -> bool:
        return False

    @property
    def state(self) -> LeaderState:
        return LeaderState.FOLLOWER


class ToggleLeadershipManager(LeadershipManagerBase):
    """Leadership Manager whose leadership is set by the test"""

    def __init__(self, leader: bool = True):
        super().__init__()
        self.leader = Event()
        if leader:
            self.leader.set()

    def acquire(self, timeout: Optional[float] = None) -> bool:
        return self.leader.wait(timeout)

    def release(self):
        self.leader.clear()

    def is_leader(self) -> bool:
        return self.leader.is_set()

    @property
    def state(self) -> LeaderState:
        return LeaderState.LEADER if self.is_leader() else LeaderState.FOLLOWER


## Stores ######################################################################


class FlakyStore(InMemoryResourceStore):
    """In-memory store that raises queued errors from chosen methods"""

    def __init__(self, *args, **kwargs):
        self.failures: Dict[str, List[Exception]] = {}
        self.calls: Dict[str, int] = {}
        super().__init__(*args, **kwargs)

    def fail_next(self, method: str, error: Exception, count: int = 1):
        """Make the next count calls of method raise error"""
        self.failures.setdefault(method, []).extend([error] * count)

    def _maybe_fail(self, method: str):
        self.calls[method] = self.calls.get(method, 0) + 1
        pending = self.failures.get(method)
        if pending:
            error = pending.pop(0)
            log.debug("Failing %s with %s", method, error)
            raise error

    def get(self, key):
        self._maybe_fail("get")
        return super().get(key)

    def create(self, resource):
        self._maybe_fail("create")
        return super().create(resource)

    def update(self, resource):
        self._maybe_fail("update")
        return super().update(resource)

    def update_status(self, resource):
        self._maybe_fail("update_status")
        return super().update_status(resource)

    def delete(self, key, propagation_policy=None):
        self._maybe_fail("delete")
        return super().delete(key, propagation_policy)

    def renew_lease(self, name, holder, ttl):
        self._maybe_fail("renew_lease")
        return super().renew_lease(name, holder, ttl)

    def acquire_lease(self, name, holder, ttl):
        self._maybe_fail("acquire_lease")
        return super().acquire_lease(name, holder, ttl)
