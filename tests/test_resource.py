"""
Tests for the Resource data model
"""

# Third Party
import pytest

# Local
from kloop.exceptions import InvalidResourceError
from kloop.resource import OwnerReference, Resource, ResourceKey
from kloop.test_helpers.helpers import make_ownerref, make_resource

## ResourceKey #################################################################


def test_key_equality_ignores_api_version():
    """Make sure keys identify objects by kind, namespace and name only"""
    key_a = ResourceKey("Widget", "foo", "test", api_version="a/v1")
    key_b = ResourceKey("Widget", "foo", "test", api_version="a/v2")
    assert key_a == key_b
    assert hash(key_a) == hash(key_b)
    assert key_a != ResourceKey("Widget", "foo", "other")
    assert key_a != ResourceKey("Gadget", "foo", "test")


def test_key_from_manifest():
    key = ResourceKey.from_manifest(make_resource(name="bar"))
    assert key == ResourceKey("Widget", "bar", "test")
    assert key.api_version == "test.kloop.io/v1"
    assert str(key) == "Widget/test/bar"


def test_cluster_scoped_key_str():
    assert str(ResourceKey("Node", "node-1")) == "Node/node-1"


## Resource ####################################################################


def test_resource_accessors():
    """Make sure the manifest fields are exposed"""
    manifest = make_resource(
        spec={"replicas": 3},
        status={"observedGeneration": 1},
        labels={"app": "foo"},
        annotations={"note": "hi"},
        finalizers=["a", "b"],
        uid="1234",
    )
    manifest["metadata"]["generation"] = 2
    manifest["metadata"]["resourceVersion"] = "7"
    resource = Resource(manifest)
    assert resource.key == ResourceKey("Widget", "foo", "test")
    assert resource.uid == "1234"
    assert resource.generation == 2
    assert resource.resource_version == "7"
    assert resource.spec == {"replicas": 3}
    assert resource.observed_generation == 1
    assert resource.labels == {"app": "foo"}
    assert resource.annotations == {"note": "hi"}
    assert resource.finalizers == ["a", "b"]
    assert resource.has_finalizer("a")
    assert not resource.is_terminating


def test_resource_defaults():
    """Make sure optional sections read as empty"""
    resource = Resource(make_resource())
    assert resource.spec == {}
    assert resource.status == {}
    assert resource.labels == {}
    assert resource.owner_references == []
    assert resource.controller_reference is None
    assert resource.finalizers == []
    assert resource.observed_generation is None


def test_resource_terminating():
    manifest = make_resource()
    manifest["metadata"]["deletionTimestamp"] = "2024-01-01T00:00:00Z"
    assert Resource(manifest).is_terminating


@pytest.mark.parametrize(
    "missing_path",
    [["kind"], ["apiVersion"], ["metadata", "name"]],
)
def test_resource_required_fields(missing_path):
    """Make sure structurally invalid manifests are rejected"""
    manifest = make_resource()
    parent = manifest
    for part in missing_path[:-1]:
        parent = parent[part]
    del parent[missing_path[-1]]
    with pytest.raises(InvalidResourceError):
        Resource(manifest)


def test_resource_single_controller():
    """Make sure at most one owner reference can be the controller"""
    owner_a = make_resource(name="a", uid="a")
    owner_b = make_resource(name="b", uid="b")
    manifest = make_resource(
        name="dep",
        owner_refs=[make_ownerref(owner_a), make_ownerref(owner_b)],
    )
    with pytest.raises(InvalidResourceError):
        Resource(manifest)


def test_resource_owner_references():
    owner = make_resource(name="a", uid="a")
    other = make_resource(name="b", uid="b")
    resource = Resource(
        make_resource(
            name="dep",
            owner_refs=[
                make_ownerref(other, controller=False, block_owner_deletion=False),
                make_ownerref(owner),
            ],
        )
    )
    assert [ref.uid for ref in resource.owner_references] == ["b", "a"]
    assert resource.controller_reference == OwnerReference(
        api_version="test.kloop.io/v1",
        kind="Widget",
        name="a",
        uid="a",
        controller=True,
        block_owner_deletion=True,
    )


def test_owner_reference_round_trip_and_key():
    ref = OwnerReference.from_dict(make_ownerref(make_resource(uid="a")))
    assert OwnerReference.from_dict(ref.to_dict()) == ref
    assert ref.owner_key("test") == ResourceKey("Widget", "foo", "test")


def test_resource_copy_is_deep():
    """Make sure copies do not share nested state"""
    resource = Resource(make_resource(spec={"nested": {"value": 1}}))
    copied = resource.copy()
    copied.definition["spec"]["nested"]["value"] = 2
    assert resource.spec["nested"]["value"] == 1
    assert copied != resource
    assert resource.copy() == resource
