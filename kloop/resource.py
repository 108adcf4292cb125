"""
Data model for the objects the runtime mirrors and reconciles. A Resource wraps
a kubernetes-style manifest dict and exposes the identity, versioning,
ownership and deletion fields the control loop needs.
"""

# Standard
from dataclasses import dataclass, field
from typing import List, Optional, Union
import copy

# First Party
import alog

# Local
from .exceptions import assert_resource

log = alog.use_channel("RSRC")


@dataclass(frozen=True)
class ResourceKey:
    """The identity of a resource in a work queue or cache index. Equality is
    based on kind, namespace and name only. The api_version rides along so the
    store can resolve the kind.
    """

    kind: str
    name: str
    namespace: Optional[str] = None
    api_version: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_manifest(cls, manifest: dict) -> "ResourceKey":
        """Build the key for a raw manifest"""
        metadata = manifest.get("metadata", {})
        return cls(
            kind=manifest.get("kind"),
            name=metadata.get("name"),
            namespace=metadata.get("namespace"),
            api_version=manifest.get("apiVersion"),
        )

    def __str__(self):
        if self.namespace:
            return f"{self.kind}/{self.namespace}/{self.name}"
        return f"{self.kind}/{self.name}"


@dataclass(frozen=True)
class OwnerReference:
    """A back-link from a dependent to the resource responsible for its
    lifecycle
    """

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = False
    block_owner_deletion: bool = False

    @classmethod
    def from_dict(cls, owner_ref: dict) -> "OwnerReference":
        return cls(
            api_version=owner_ref.get("apiVersion"),
            kind=owner_ref.get("kind"),
            name=owner_ref.get("name"),
            uid=owner_ref.get("uid"),
            controller=bool(owner_ref.get("controller", False)),
            block_owner_deletion=bool(owner_ref.get("blockOwnerDeletion", False)),
        )

    def to_dict(self) -> dict:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }

    def owner_key(self, namespace: Optional[str] = None) -> ResourceKey:
        """Owners live in the dependent's namespace (or are cluster scoped)"""
        return ResourceKey(
            kind=self.kind,
            name=self.name,
            namespace=namespace,
            api_version=self.api_version,
        )


class Resource:  # pylint: disable=too-many-public-methods
    """Versioned, namespaced-or-cluster-scoped object backed by a manifest
    dict. The definition is owned by the Resource; callers that want to mutate
    a resource they did not create should take a copy() first.
    """

    def __init__(self, definition: Union[dict, "Resource"]):
        if isinstance(definition, Resource):
            definition = definition.definition
        assert_resource(isinstance(definition, dict), "Resource must be a dict")
        self.definition = definition
        self.definition.setdefault("metadata", {})

        assert_resource(self.kind is not None, "No kind found")
        assert_resource(self.api_version is not None, "No apiVersion found")
        assert_resource(self.name is not None, "No name found")

        controllers = [ref for ref in self.owner_references if ref.controller]
        assert_resource(
            len(controllers) <= 1,
            f"{self} has {len(controllers)} controller owner references",
        )

    ## Identity ################################################################

    @property
    def kind(self) -> Optional[str]:
        return self.definition.get("kind")

    @property
    def api_version(self) -> Optional[str]:
        return self.definition.get("apiVersion")

    @property
    def metadata(self) -> dict:
        return self.definition["metadata"]

    @property
    def name(self) -> Optional[str]:
        return self.metadata.get("name")

    @property
    def namespace(self) -> Optional[str]:
        return self.metadata.get("namespace")

    @property
    def uid(self) -> Optional[str]:
        return self.metadata.get("uid")

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(
            kind=self.kind,
            name=self.name,
            namespace=self.namespace,
            api_version=self.api_version,
        )

    ## Versioning ##############################################################

    @property
    def generation(self) -> Optional[int]:
        return self.metadata.get("generation")

    @property
    def resource_version(self) -> Optional[str]:
        return self.metadata.get("resourceVersion")

    ## Body ####################################################################

    @property
    def labels(self) -> dict:
        return self.metadata.get("labels") or {}

    @property
    def annotations(self) -> dict:
        return self.metadata.get("annotations") or {}

    @property
    def spec(self) -> dict:
        return self.definition.get("spec") or {}

    @property
    def status(self) -> dict:
        return self.definition.get("status") or {}

    @property
    def observed_generation(self) -> Optional[int]:
        return self.status.get("observedGeneration")

    ## Ownership ###############################################################

    @property
    def owner_references(self) -> List[OwnerReference]:
        return [
            OwnerReference.from_dict(ref)
            for ref in self.metadata.get("ownerReferences") or []
        ]

    @property
    def controller_reference(self) -> Optional[OwnerReference]:
        """The single owner reference with controller=true, if any"""
        for ref in self.owner_references:
            if ref.controller:
                return ref
        return None

    ## Deletion ################################################################

    @property
    def finalizers(self) -> List[str]:
        return list(self.metadata.get("finalizers") or [])

    @property
    def deletion_timestamp(self) -> Optional[str]:
        return self.metadata.get("deletionTimestamp")

    @property
    def is_terminating(self) -> bool:
        return self.deletion_timestamp is not None

    def has_finalizer(self, finalizer: str) -> bool:
        return finalizer in self.finalizers

    ## Helpers #################################################################

    def get(self, *args, **kwargs):
        """Pass get calls to the objects definition"""
        return self.definition.get(*args, **kwargs)

    def copy(self) -> "Resource":
        """Deep copy of this resource"""
        return Resource(copy.deepcopy(self.definition))

    def to_dict(self) -> dict:
        return copy.deepcopy(self.definition)

    def __str__(self):
        return f"{self.api_version}/{self.key}"

    def __repr__(self):
        return f"Resource({self}@{self.resource_version})"

    def __eq__(self, other):
        if not isinstance(other, Resource):
            return NotImplemented
        return self.definition == other.definition

    def __hash__(self):
        """Hash only on the identity so resources can be used as map keys"""
        return hash((self.key, self.uid))
