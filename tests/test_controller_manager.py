"""
End to end tests for the ControllerManager running against the in-memory store
"""

# Standard
from contextlib import contextmanager
from unittest import mock

# Third Party
import pytest

# First Party
import alog

# Local
from kloop import manager as manager_module
from kloop import status
from kloop.cache import CacheEvent
from kloop.exceptions import NotFoundError
from kloop.log_format import KloopJsonFormatter
from kloop.manager import ControllerManager, configure_logging
from kloop.reconcile import WatchRelation
from kloop.resource import Resource, ResourceKey
from kloop.status import AVAILABLE_CONDITION
from kloop.store import WatchEventType
from kloop.test_helpers.helpers import (
    REPLICA_KIND,
    TEST_NAMESPACE,
    WIDGET_FINALIZER,
    WIDGET_KIND,
    DisabledLeadershipManager,
    ToggleLeadershipManager,
    WidgetReconciler,
    library_config,
    make_ownerref,
    make_resource,
    make_store,
    set_ready,
    wait_for,
)
from kloop.utils import retry_on_conflict

log = alog.use_channel("TEST")

WIDGET_KEY = ResourceKey(WIDGET_KIND, "foo", TEST_NAMESPACE)
REPLICA_KEY = ResourceKey(REPLICA_KIND, "foo-replica", TEST_NAMESPACE)

################################################################################
## Helpers #####################################################################
################################################################################


class AlogConfigureMock:
    def __init__(self):
        self.kwargs = None

    def __call__(self, **kwargs):
        self.kwargs = kwargs


@contextmanager
def running_manager(store, **kwargs):
    kwargs.setdefault("leadership_manager", ToggleLeadershipManager())
    kwargs.setdefault("workers", 2)
    ctrl_manager = ControllerManager(
        WidgetReconciler, store, namespace=TEST_NAMESPACE, **kwargs
    )
    try:
        assert ctrl_manager.start()
        yield ctrl_manager
    finally:
        ctrl_manager.stop()


def exists(store, key) -> bool:
    try:
        store.get(key)
        return True
    except NotFoundError:
        return False


def update_replicas(store, replicas):
    """Change the desired replicas, retrying if a status write races"""

    def _update(_attempt):
        widget = store.get(WIDGET_KEY)
        widget.definition["spec"]["replicas"] = replicas
        return store.update(widget)

    return retry_on_conflict(_update, 5)


def is_available(store, key=WIDGET_KEY) -> bool:
    try:
        return status.is_condition_true(AVAILABLE_CONDITION, store.get(key).status)
    except NotFoundError:
        return False


################################################################################
## Tests #######################################################################
################################################################################


@pytest.mark.timeout(20)
def test_manager_converges_and_deletes():
    """Make sure a widget is driven to Available and fully cleaned up on
    deletion
    """
    store = make_store(make_resource(spec={"replicas": 2}))
    with running_manager(store) as ctrl_manager:
        assert wait_for(lambda: exists(store, REPLICA_KEY))
        widget = store.get(WIDGET_KEY)
        assert widget.finalizers == [WIDGET_FINALIZER]
        assert store.get(REPLICA_KEY).controller_reference.uid == widget.uid
        assert not is_available(store)

        # A dependent change is routed back to the owner
        set_ready(store, REPLICA_KEY)
        assert wait_for(lambda: is_available(store))

        # A desired state change reaches the dependent
        update_replicas(store, 3)
        assert wait_for(
            lambda: store.get(REPLICA_KEY).spec == {"replicas": 3}
        )

        # Deletion runs cleanup and the collector removes the dependent
        store.delete(WIDGET_KEY)
        assert wait_for(lambda: not exists(store, WIDGET_KEY))
        assert wait_for(lambda: not exists(store, REPLICA_KEY))
        assert WIDGET_KEY in ctrl_manager.reconciler.cleanup_calls


@pytest.mark.timeout(20)
def test_manager_follower_makes_no_writes():
    store = make_store(make_resource(spec={"replicas": 2}))
    write_count = store.write_count
    with running_manager(store, leadership_manager=DisabledLeadershipManager()):
        assert not wait_for(lambda: store.write_count != write_count, timeout=1)


@pytest.mark.timeout(20)
def test_manager_takes_over_on_leadership():
    """Make sure queued work is processed once leadership is gained"""
    store = make_store(make_resource(spec={"replicas": 2}))
    leadership = ToggleLeadershipManager(leader=False)
    with running_manager(store, leadership_manager=leadership):
        assert not wait_for(lambda: exists(store, REPLICA_KEY), timeout=0.5)
        leadership.leader.set()
        assert wait_for(lambda: exists(store, REPLICA_KEY))


@pytest.mark.timeout(20)
def test_manager_without_gc():
    with library_config(gc={"enabled": False}):
        ctrl_manager = ControllerManager(
            WidgetReconciler,
            make_store(),
            leadership_manager=ToggleLeadershipManager(),
            workers=1,
        )
    assert ctrl_manager.garbage_collector is None
    ctrl_manager.stop()


@pytest.mark.timeout(20)
def test_manager_start_after_stop():
    ctrl_manager = ControllerManager(
        WidgetReconciler,
        make_store(),
        leadership_manager=ToggleLeadershipManager(),
        workers=1,
    )
    ctrl_manager.shutdown.set()
    assert not ctrl_manager.start()
    ctrl_manager.stop()


def test_manager_namespace_from_config():
    with library_config(watch_namespace="other"):
        ctrl_manager = ControllerManager(
            WidgetReconciler,
            make_store(),
            leadership_manager=ToggleLeadershipManager(),
            workers=1,
        )
    assert ctrl_manager.namespace == "other"
    assert all(cache.namespace == "other" for cache in ctrl_manager.caches.values())
    ctrl_manager.stop()

    with library_config(watch_namespace="*"):
        ctrl_manager = ControllerManager(
            WidgetReconciler,
            make_store(),
            leadership_manager=ToggleLeadershipManager(),
            workers=1,
        )
    assert ctrl_manager.namespace is None
    ctrl_manager.stop()


def test_map_event():
    """Make sure owned events map to their controlling owner of the reconciled
    kind only
    """
    ctrl_manager = ControllerManager(
        WidgetReconciler,
        make_store(),
        leadership_manager=ToggleLeadershipManager(),
        workers=1,
    )
    primary_watch, owned_watch = ctrl_manager.watches
    assert owned_watch.relation == WatchRelation.OWNED

    widget = Resource(make_resource(uid="widget-uid"))
    assert (
        ctrl_manager.map_event(
            primary_watch, CacheEvent(WatchEventType.ADDED, widget)
        )
        == WIDGET_KEY
    )

    replica = Resource(
        make_resource(kind=REPLICA_KIND, name="r", owner_refs=[make_ownerref(widget)])
    )
    assert (
        ctrl_manager.map_event(
            owned_watch, CacheEvent(WatchEventType.MODIFIED, replica)
        )
        == WIDGET_KEY
    )

    other_owner = Resource(make_resource(kind="Gadget", uid="gadget-uid"))
    foreign = Resource(
        make_resource(
            kind=REPLICA_KIND, name="r", owner_refs=[make_ownerref(other_owner)]
        )
    )
    orphan = Resource(make_resource(kind=REPLICA_KIND, name="r"))
    for resource in [foreign, orphan]:
        assert (
            ctrl_manager.map_event(
                owned_watch, CacheEvent(WatchEventType.MODIFIED, resource)
            )
            is None
        )
    ctrl_manager.stop()


def test_configure_logging_json():
    """Make sure json logging uses the KloopJsonFormatter"""
    configure_mock = AlogConfigureMock()
    with mock.patch.object(manager_module.alog, "configure", configure_mock):
        with library_config(log_json=True, log_level="debug"):
            configure_logging(reconcile_id="1234")
    assert configure_mock.kwargs["default_level"] == "debug"
    formatter = configure_mock.kwargs["formatter"]
    assert isinstance(formatter, KloopJsonFormatter)
    assert formatter.reconcile_id == "1234"


def test_configure_logging_pretty():
    configure_mock = AlogConfigureMock()
    with mock.patch.object(manager_module.alog, "configure", configure_mock):
        with library_config(log_json=False):
            configure_logging()
    assert configure_mock.kwargs["formatter"] == "pretty"
