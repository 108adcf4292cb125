"""
Tests for the KubeResourceStore error handling
"""

# Standard
from unittest import mock

# Third Party
from dateutil.parser import parse
from kubernetes import client
import pytest
import urllib3

# Local
from kloop.exceptions import (
    AlreadyExistsError,
    ConflictError,
    ExpiredError,
    NotFoundError,
    PermanentError,
    TransientError,
)
from kloop.resource import ResourceKey
from kloop.store import KubeResourceStore
from kloop.store.kube_store import translate_api_exception
from kloop.test_helpers.helpers import library_config, make_resource

## Helpers #####################################################################


def make_api_exception(status, body=None):
    err = client.exceptions.ApiException(status=status, reason="Testing")
    err.body = body
    return err


## Tests #######################################################################


@pytest.mark.parametrize(
    ["status", "body", "expected"],
    [
        [404, None, NotFoundError],
        [409, '{"reason": "AlreadyExists"}', AlreadyExistsError],
        [409, '{"reason": "Conflict"}', ConflictError],
        [410, None, ExpiredError],
        [400, None, PermanentError],
        [422, None, PermanentError],
        [500, None, TransientError],
        [503, None, TransientError],
    ],
)
def test_translate_api_exception(status, body, expected):
    translated = translate_api_exception(make_api_exception(status, body))
    assert type(translated) is expected  # pylint: disable=unidiomatic-typecheck
    assert str(status) in str(translated)


def test_with_retries_transient():
    """Make sure transient failures are retried and then raised"""
    store = KubeResourceStore(lease_namespace="test")
    operation = mock.Mock(
        side_effect=[make_api_exception(503), urllib3.exceptions.HTTPError(), "ok"]
    )
    with library_config(store={"kube_retries": 2, "retry_backoff_base": "0s"}):
        assert store._with_retries(operation) == "ok"
        assert operation.call_count == 3

        failing = mock.Mock(side_effect=make_api_exception(500))
        with pytest.raises(TransientError):
            store._with_retries(failing)
        assert failing.call_count == 3


def test_with_retries_not_transient():
    store = KubeResourceStore(lease_namespace="test")
    operation = mock.Mock(side_effect=make_api_exception(404))
    with pytest.raises(NotFoundError):
        store._with_retries(operation)
    assert operation.call_count == 1


def test_lease_expired():
    assert KubeResourceStore._lease_expired({}, None)
    spec = {"renewTime": "2024-01-01T00:00:00.000000Z", "leaseDurationSeconds": 10}
    assert not KubeResourceStore._lease_expired(
        spec, parse("2024-01-01T00:00:05.000000Z")
    )
    assert KubeResourceStore._lease_expired(spec, parse("2024-01-01T00:00:11.000000Z"))


def test_requests_are_bounded():
    """Make sure reads and writes carry the configured request timeout"""
    with library_config(store={"request_timeout": "3s"}):
        store = KubeResourceStore(lease_namespace="test")
    handle = mock.Mock()
    handle.get.return_value.to_dict.return_value = make_resource()
    handle.replace.return_value.to_dict.return_value = make_resource()
    with mock.patch.object(store, "_get_resource_handle", return_value=handle):
        store.get(ResourceKey("Widget", "foo", "test"))
        store.update(make_resource())

    assert handle.get.call_args.kwargs["_request_timeout"] == 3
    assert handle.replace.call_args.kwargs["_request_timeout"] == 3
