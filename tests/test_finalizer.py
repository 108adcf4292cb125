"""
Tests for the FinalizerManager
"""

# Standard
import time

# Third Party
import pytest

# Local
from kloop.exceptions import ConflictError, NotFoundError, ReconcileTimeoutError
from kloop.finalizer import FinalizerManager, FinalizerState
from kloop.reconcile import Outcome, ReconcileContext
from kloop.resource import Resource, ResourceKey
from kloop.test_helpers.helpers import (
    TEST_NAMESPACE,
    WIDGET_FINALIZER,
    WIDGET_KIND,
    FlakyStore,
    make_resource,
    make_store,
)

KEY = ResourceKey(WIDGET_KIND, "foo", TEST_NAMESPACE)

## Helpers #####################################################################


def make_manager(store, **kwargs):
    return FinalizerManager(store, WIDGET_FINALIZER, **kwargs)


def make_terminating(store, finalizers):
    """Create a resource with the given tokens and request its deletion"""
    store.create(Resource(make_resource(finalizers=finalizers)))
    store.delete(KEY)
    return store.get(KEY)


## State #######################################################################


def test_state_transitions():
    manager = make_manager(make_store())
    live = make_resource()
    assert manager.state(Resource(live)) == FinalizerState.NO_FINALIZER

    live["metadata"]["finalizers"] = [WIDGET_FINALIZER]
    assert manager.state(Resource(live)) == FinalizerState.FINALIZED

    live["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    assert manager.state(Resource(live)) == FinalizerState.CLEANING_UP

    live["metadata"]["finalizers"] = ["other"]
    assert manager.state(Resource(live)) == FinalizerState.REMOVED
    assert manager.state(None) == FinalizerState.REMOVED


## Ensure ######################################################################


def test_ensure_adds_once():
    """Make sure the token is added after any existing tokens exactly once"""
    store = make_store(make_resource(finalizers=["other"]))
    manager = make_manager(store)
    assert manager.ensure(KEY)
    assert store.get(KEY).finalizers == ["other", WIDGET_FINALIZER]

    write_count = store.write_count
    assert not manager.ensure(KEY)
    assert store.write_count == write_count


def test_ensure_skips_terminating():
    store = make_store()
    make_terminating(store, ["other"])
    assert not make_manager(store).ensure(KEY)
    assert store.get(KEY).finalizers == ["other"]


def test_ensure_retries_conflict():
    store = FlakyStore(resources=[make_resource()])
    store.fail_next("update", ConflictError("stale"))
    assert make_manager(store, conflict_retries=1).ensure(KEY)
    assert store.calls["update"] == 2
    assert store.get(KEY).finalizers == [WIDGET_FINALIZER]


def test_ensure_missing_resource():
    with pytest.raises(NotFoundError):
        make_manager(make_store()).ensure(KEY)


## Remove ######################################################################


def test_remove_only_own_token():
    """Make sure removing one token leaves the others and the resource"""
    store = make_store()
    make_terminating(store, ["a", WIDGET_FINALIZER, "b"])
    assert make_manager(store).remove(KEY)
    resource = store.get(KEY)
    assert resource.finalizers == ["a", "b"]
    assert resource.is_terminating


def test_remove_without_token():
    """Make sure a resource without the token is not written, even if other
    tokens are present
    """
    store = make_store()
    make_terminating(store, ["a", "b"])
    write_count = store.write_count
    assert not make_manager(store).remove(KEY)
    assert store.write_count == write_count
    assert store.get(KEY).finalizers == ["a", "b"]


def test_remove_missing_resource():
    assert not make_manager(make_store()).remove(KEY)


def test_remove_last_token_purges():
    store = make_store()
    make_terminating(store, [WIDGET_FINALIZER])
    assert make_manager(store).remove(KEY)
    with pytest.raises(NotFoundError):
        store.get(KEY)


## Finalize ####################################################################


def test_finalize_runs_cleanup_then_removes():
    store = make_store()
    resource = make_terminating(store, [WIDGET_FINALIZER])
    cleaned = []
    result = make_manager(store).finalize(resource, cleaned.append)
    assert result.outcome == Outcome.DONE
    assert [res.key for res in cleaned] == [KEY]
    with pytest.raises(NotFoundError):
        store.get(KEY)


def test_finalize_failure_keeps_token():
    """Make sure a failing cleanup keeps the token so it runs again"""
    store = make_store()
    resource = make_terminating(store, [WIDGET_FINALIZER])

    def cleanup(_):
        raise RuntimeError("external system down")

    result = make_manager(store).finalize(resource, cleanup)
    assert result.outcome == Outcome.ERROR
    assert isinstance(result.exception, RuntimeError)
    assert store.get(KEY).finalizers == [WIDGET_FINALIZER]


def test_finalize_not_cleaning_up():
    """Make sure cleanup does not run for live resources"""
    store = make_store(make_resource(finalizers=[WIDGET_FINALIZER]))
    cleaned = []
    result = make_manager(store).finalize(store.get(KEY), cleaned.append)
    assert result.outcome == Outcome.DONE
    assert not cleaned
    assert store.get(KEY).finalizers == [WIDGET_FINALIZER]


def test_finalize_past_deadline_keeps_token():
    """Make sure a cleanup that finishes after the deadline is retried"""
    store = make_store()
    resource = make_terminating(store, [WIDGET_FINALIZER])

    def cleanup(_):
        time.sleep(0.2)

    result = make_manager(store).finalize(
        resource, cleanup, ReconcileContext(KEY, timeout=0.05)
    )
    assert result.outcome == Outcome.ERROR
    assert isinstance(result.exception, ReconcileTimeoutError)
    assert store.get(KEY).finalizers == [WIDGET_FINALIZER]
