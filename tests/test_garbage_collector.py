"""
Tests for the owner-reference GarbageCollector
"""

# Standard
from contextlib import contextmanager

# Third Party
import pytest

# Local
from kloop.cache import ResourceCache
from kloop.constants import FOREGROUND_DELETION_FINALIZER, PROPAGATION_FOREGROUND
from kloop.exceptions import NotFoundError
from kloop.garbage_collector import GarbageCollector
from kloop.resource import Resource, ResourceKey
from kloop.test_helpers.helpers import (
    REPLICA_KIND,
    TEST_NAMESPACE,
    WIDGET_KIND,
    ToggleLeadershipManager,
    make_ownerref,
    make_resource,
    make_store,
    running_cache,
    wait_for,
)

################################################################################
## Helpers #####################################################################
################################################################################


def create_owner(store, name="owner", namespace=TEST_NAMESPACE) -> Resource:
    return store.create(Resource(make_resource(name=name, namespace=namespace)))


def create_dependent(store, *owner_refs, name="dep", finalizers=None) -> Resource:
    return store.create(
        Resource(
            make_resource(
                kind=REPLICA_KIND,
                name=name,
                owner_refs=list(owner_refs),
                finalizers=finalizers,
            )
        )
    )


def exists(store, key: ResourceKey) -> bool:
    try:
        store.get(key)
        return True
    except NotFoundError:
        return False


@contextmanager
def collector_with_caches(store, start=False, **kwargs):
    """Build a collector over running caches of both test kinds"""
    dependent_cache = ResourceCache(store, REPLICA_KIND, namespace=TEST_NAMESPACE)
    owner_cache = ResourceCache(store, WIDGET_KIND, namespace=TEST_NAMESPACE)
    collector = GarbageCollector(
        store,
        dependent_caches={REPLICA_KIND: dependent_cache},
        owner_caches={WIDGET_KIND: owner_cache},
        **kwargs,
    )
    dependent_cache.subscribe(collector.handle_dependent_event)
    owner_cache.subscribe(collector.handle_owner_event)
    with running_cache(dependent_cache), running_cache(owner_cache):
        if start:
            collector.start_thread()
        try:
            yield collector
        finally:
            collector.stop_thread()
            if collector.ident:
                collector.join(5)


def make_collector(store) -> GarbageCollector:
    collector = GarbageCollector(store, dependent_caches={})
    collector.queue.shutdown()
    return collector


################################################################################
## Eligibility #################################################################
################################################################################


def test_owner_present_not_collected():
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    assert not make_collector(store).check_dependent(dependent.key)
    assert exists(store, dependent.key)


def test_owner_gone_collected():
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    store.delete(owner.key)
    assert make_collector(store).check_dependent(dependent.key)
    assert not exists(store, dependent.key)


def test_owner_name_reused_collected():
    """Make sure an owner recreated under the same name is not the owner"""
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    store.delete(owner.key)
    create_owner(store)
    assert make_collector(store).check_dependent(dependent.key)


def test_no_owner_refs_never_collected():
    store = make_store()
    dependent = create_dependent(store)
    assert not make_collector(store).is_eligible(dependent)
    assert not make_collector(store).check_dependent(dependent.key)


def test_missing_dependent():
    store = make_store()
    key = ResourceKey(REPLICA_KIND, "dep", TEST_NAMESPACE)
    assert not make_collector(store).check_dependent(key)


@pytest.mark.parametrize(
    ["deleted", "eligible"],
    [[[], False], [["a"], False], [["a", "b"], True]],
)
def test_non_controller_owners(deleted, eligible):
    """Make sure a dependent without a controller waits for every owner"""
    store = make_store()
    owners = {name: create_owner(store, name=name) for name in ["a", "b"]}
    dependent = create_dependent(
        store,
        *[
            make_ownerref(owner, controller=False, block_owner_deletion=False)
            for owner in owners.values()
        ],
    )
    for name in deleted:
        store.delete(owners[name].key)
    assert make_collector(store).is_eligible(dependent) == eligible


def test_controller_gone_other_owner_present():
    """Make sure a dependent goes with its controller even if a non-blocking
    owner remains
    """
    store = make_store()
    controller = create_owner(store, name="controller")
    other = create_owner(store, name="other")
    dependent = create_dependent(
        store,
        make_ownerref(controller),
        make_ownerref(other, controller=False, block_owner_deletion=False),
    )
    store.delete(controller.key)
    assert make_collector(store).is_eligible(dependent)


def test_blocking_owner_present():
    """Make sure a present owner with blockOwnerDeletion keeps the dependent"""
    store = make_store()
    controller = create_owner(store, name="controller")
    blocker = create_owner(store, name="blocker")
    dependent = create_dependent(
        store,
        make_ownerref(controller),
        make_ownerref(blocker, controller=False, block_owner_deletion=True),
    )
    store.delete(controller.key)
    collector = make_collector(store)
    assert not collector.is_eligible(dependent)

    store.delete(blocker.key)
    assert collector.is_eligible(dependent)


def test_cluster_scoped_owner():
    """Make sure owners are also looked up at cluster scope"""
    store = make_store()
    owner = create_owner(store, namespace=None)
    dependent = create_dependent(store, make_ownerref(owner))
    collector = make_collector(store)
    assert not collector.is_eligible(dependent)
    store.delete(owner.key)
    assert collector.is_eligible(dependent)


def test_terminating_dependent_skipped():
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner), finalizers=["hold"])
    store.delete(dependent.key)
    store.delete(owner.key)
    assert not make_collector(store).check_dependent(dependent.key)


################################################################################
## Sweeps and Foreground Deletion ##############################################
################################################################################


@pytest.mark.timeout(10)
def test_sweep_collects_orphans():
    store = make_store()
    owner = create_owner(store)
    kept_owner = create_owner(store, name="kept")
    orphan = create_dependent(store, make_ownerref(owner), name="orphan")
    kept = create_dependent(store, make_ownerref(kept_owner), name="kept")
    store.delete(owner.key)

    with collector_with_caches(store) as collector:
        collector.queue.shutdown()
        assert collector.sweep() == 1
    assert not exists(store, orphan.key)
    assert exists(store, kept.key)


@pytest.mark.timeout(10)
def test_foreground_deletion():
    """Make sure foreground deletion waits on blocking dependents"""
    store = make_store()
    owner = create_owner(store)
    free = create_dependent(store, make_ownerref(owner), name="free")
    held = create_dependent(
        store, make_ownerref(owner), name="held", finalizers=["hold"]
    )
    store.delete(owner.key, propagation_policy=PROPAGATION_FOREGROUND)
    owner = store.get(owner.key)
    assert owner.has_finalizer(FOREGROUND_DELETION_FINALIZER)

    with collector_with_caches(store) as collector:
        collector.queue.shutdown()
        assert wait_for(lambda: len(collector.find_dependents(owner)) == 2)

        # The free dependent is purged and the held one is terminating
        assert not collector.process_foreground(owner)
        assert not exists(store, free.key)
        assert store.get(held.key).is_terminating
        assert exists(store, owner.key)

        # Releasing the held dependent lets the owner go
        held = store.get(held.key)
        held.metadata["finalizers"] = []
        store.update(held)
        assert collector.process_foreground(store.get(owner.key))
    assert not exists(store, owner.key)


@pytest.mark.timeout(10)
def test_collector_thread_collects_on_owner_delete():
    """Make sure the running collector reacts to an owner deletion"""
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    leadership = ToggleLeadershipManager()

    with collector_with_caches(
        store, start=True, leadership_manager=leadership, sweep_period=60
    ):
        assert wait_for(lambda: exists(store, dependent.key))
        store.delete(owner.key)
        assert wait_for(lambda: not exists(store, dependent.key))


@pytest.mark.timeout(10)
def test_collector_thread_not_leader():
    """Make sure a follower never deletes"""
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    store.delete(owner.key)

    with collector_with_caches(
        store,
        start=True,
        leadership_manager=ToggleLeadershipManager(leader=False),
        sweep_period=0.1,
    ):
        assert not wait_for(lambda: not exists(store, dependent.key), timeout=1)


@pytest.mark.timeout(10)
def test_collector_thread_survives_unexpected_error():
    """Make sure an unexpected error is retried instead of ending the thread"""
    store = make_store()
    owner = create_owner(store)
    dependent = create_dependent(store, make_ownerref(owner))
    store.delete(owner.key)

    with collector_with_caches(
        store, leadership_manager=ToggleLeadershipManager(), sweep_period=60
    ) as collector:
        failures = []
        is_eligible = collector.is_eligible

        def fail_once(resource):
            if not failures:
                failures.append(resource.key)
                raise RuntimeError("boom")
            return is_eligible(resource)

        collector.is_eligible = fail_once
        collector.start_thread()
        assert wait_for(lambda: not exists(store, dependent.key))
        assert failures == [dependent.key]
        assert collector.is_alive()
