"""
Tests for the DeltaFIFO
"""

# Third Party
import pytest

# Local
from kloop.cache import Delta, DeltaFIFO, DeltaType, ListSynced
from kloop.cache.delta_fifo import compact
from kloop.resource import Resource
from kloop.test_helpers.helpers import make_resource

## Helpers #####################################################################


def make_res(name="foo", version="1", uid="uid-foo"):
    manifest = make_resource(name=name, uid=uid)
    manifest["metadata"]["resourceVersion"] = version
    return Resource(manifest)


## Tests #######################################################################


@pytest.mark.parametrize(
    ["old", "new", "expected"],
    [
        [DeltaType.ADDED, DeltaType.MODIFIED, DeltaType.ADDED],
        [DeltaType.ADDED, DeltaType.SYNC, DeltaType.ADDED],
        [DeltaType.ADDED, DeltaType.DELETED, None],
        [DeltaType.MODIFIED, DeltaType.MODIFIED, DeltaType.MODIFIED],
        [DeltaType.MODIFIED, DeltaType.SYNC, DeltaType.SYNC],
        [DeltaType.MODIFIED, DeltaType.DELETED, DeltaType.DELETED],
        [DeltaType.SYNC, DeltaType.MODIFIED, DeltaType.SYNC],
        [DeltaType.SYNC, DeltaType.DELETED, DeltaType.DELETED],
        [DeltaType.DELETED, DeltaType.ADDED, DeltaType.SYNC],
        [DeltaType.DELETED, DeltaType.MODIFIED, DeltaType.SYNC],
    ],
)
def test_compact(old, new, expected):
    assert compact(old, new) == expected


def test_one_delta_per_key():
    """Make sure a burst of changes keeps the newest state and the original
    queue position
    """
    fifo = DeltaFIFO()
    fifo.add(make_res("a"))
    fifo.add(make_res("b"))
    fifo.update(make_res("a", version="2"))
    fifo.update(make_res("a", version="3"))
    assert len(fifo) == 2

    first = fifo.pop(timeout=0)
    assert first == Delta(DeltaType.ADDED, make_res("a", version="3"))
    assert fifo.pop(timeout=0).resource.name == "b"
    assert fifo.pop(timeout=0.01) is None


def test_add_then_delete_cancels():
    fifo = DeltaFIFO()
    fifo.add(make_res())
    fifo.delete(make_res(version="2"))
    assert len(fifo) == 0
    assert fifo.pop(timeout=0.01) is None


def test_replace_deletes_missing_known_objects():
    """Make sure objects that vanished between lists get a delete"""
    known = make_res("gone")
    fifo = DeltaFIFO(known_objects=lambda: {known.key: known})
    fifo.replace([make_res("kept")], "10")

    kept = fifo.pop(timeout=0)
    assert kept.type == DeltaType.SYNC
    assert kept.resource.name == "kept"
    gone = fifo.pop(timeout=0)
    assert gone.type == DeltaType.DELETED
    assert gone.resource.name == "gone"
    assert fifo.pop(timeout=0) == ListSynced("10")


def test_replace_deletes_missing_pending_objects():
    fifo = DeltaFIFO()
    fifo.update(make_res("pending"))
    fifo.replace([], "5")
    delta = fifo.pop(timeout=0)
    assert delta.type == DeltaType.DELETED
    assert fifo.pop(timeout=0) == ListSynced("5")


@pytest.mark.timeout(5)
def test_close_wakes_consumer():
    fifo = DeltaFIFO()
    fifo.add(make_res())
    fifo.close()
    assert fifo.pop() is None
