"""
Tests for the KloopJsonFormatter
"""

# Standard
import json
import logging

# Local
from kloop.log_format import KloopJsonFormatter
from kloop.resource import Resource, ResourceKey
from kloop.test_helpers.helpers import TEST_NAMESPACE, WIDGET_KIND, make_resource

## Helpers #####################################################################


def make_record(**extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="TEST",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg="Reconciling %s",
        args=("foo",),
        exc_info=None,
    )
    for key, val in extra.items():
        setattr(record, key, val)
    return record


## Tests #######################################################################


def test_resource_fields():
    """Make sure the identity of an attached resource is logged"""
    manifest = make_resource()
    manifest["metadata"]["resourceVersion"] = "7"
    formatted = json.loads(
        KloopJsonFormatter().format(make_record(resource=Resource(manifest)))
    )
    assert formatted["kind"] == WIDGET_KIND
    assert formatted["namespace"] == TEST_NAMESPACE
    assert formatted["resourceName"] == "foo"
    assert formatted["resourceVersion"] == "7"
    assert "reconcileId" not in formatted


def test_resource_key_fields():
    key = ResourceKey(WIDGET_KIND, "foo", TEST_NAMESPACE)
    formatted = json.loads(KloopJsonFormatter().format(make_record(resource=key)))
    assert formatted["kind"] == WIDGET_KIND
    assert formatted["resourceName"] == "foo"
    assert formatted.get("resourceVersion") is None


def test_reconcile_id():
    """Make sure a per-record reconcile id wins over the formatter default"""
    formatter = KloopJsonFormatter(reconcile_id="default-id")
    assert json.loads(formatter.format(make_record()))["reconcileId"] == "default-id"
    formatted = json.loads(formatter.format(make_record(reconcile_id="call-id")))
    assert formatted["reconcileId"] == "call-id"
    assert "kind" not in formatted
