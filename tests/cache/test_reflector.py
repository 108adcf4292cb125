"""
Tests for the Reflector's list and watch recovery
"""

# Standard
import threading

# Third Party
import pytest

# Local
from kloop.cache import ResourceCache
from kloop.exceptions import ExpiredError, TransientError
from kloop.resource import Resource, ResourceKey
from kloop.store import InMemoryResourceStore, WatchEventType
from kloop.test_helpers.helpers import (
    TEST_NAMESPACE,
    WIDGET_KIND,
    library_config,
    make_resource,
    running_cache,
    wait_for,
)

## Helpers #####################################################################


class OutageStore(InMemoryResourceStore):
    """Store whose list and watch calls can be made to fail"""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.outage = threading.Event()
        self.expire_next_watch = threading.Event()

    def list(self, *args, **kwargs):
        if self.outage.is_set():
            raise TransientError("store unavailable")
        return super().list(*args, **kwargs)

    def watch(self, *args, **kwargs):
        if self.outage.is_set():
            raise TransientError("store unavailable")
        if self.expire_next_watch.is_set():
            self.expire_next_watch.clear()
            raise ExpiredError("too old")
        return super().watch(*args, **kwargs)


def make_cache(store):
    return ResourceCache(store, WIDGET_KIND, namespace=TEST_NAMESPACE)


## Tests #######################################################################


@pytest.mark.timeout(10)
def test_resume_after_stream_end():
    """Make sure a watch that ends cleanly resumes without relisting"""
    store = OutageStore()
    with library_config(cache={"watch_timeout": "0.1s"}):
        cache = make_cache(store)
    with running_cache(cache):
        assert wait_for(lambda: cache.reflector.last_resource_version is not None)
        store.create(Resource(make_resource()))
        assert wait_for(lambda: len(cache) == 1)
        assert cache.reflector.list_count == 1


@pytest.mark.timeout(10)
def test_expired_relists_immediately():
    store = OutageStore(resources=[make_resource()])
    with library_config(
        cache={"watch_timeout": "0.1s", "relist_backoff_initial": "30s"}
    ):
        cache = make_cache(store)
    with running_cache(cache):
        store.expire_next_watch.set()
        assert wait_for(lambda: cache.reflector.list_count >= 2)
        assert len(cache) == 1


@pytest.mark.timeout(10)
def test_outage_recovers_missed_delete():
    """Make sure a deletion missed while disconnected surfaces as a delete
    event once the relist succeeds
    """
    store = OutageStore(resources=[make_resource(name="a"), make_resource(name="b")])
    deleted = []

    def record_delete(event):
        if event.type == WatchEventType.DELETED:
            deleted.append(event.resource.name)

    with library_config(
        cache={"relist_backoff_initial": "0.01s", "relist_backoff_max": "0.05s"}
    ):
        cache = make_cache(store)
    cache.subscribe(record_delete)

    with running_cache(cache):
        assert len(cache) == 2
        store.outage.set()
        store.disconnect_watches()

        # Delete behind the cache's back while it can not watch
        with store._lock:  # pylint: disable=protected-access
            store._objects.pop(  # pylint: disable=protected-access
                ResourceKey(WIDGET_KIND, "a", TEST_NAMESPACE)
            )
        store.outage.clear()

        assert wait_for(lambda: deleted == ["a"])
        assert [key.name for key in cache.keys()] == ["b"]
        assert cache.reflector.list_count >= 2
