"""
This module holds common functionality to manage ownerReferences on the
dependents a reconciler creates
"""

# Standard
from typing import List

# First Party
import alog

# Local
from .exceptions import PermanentError, assert_resource
from .resource import OwnerReference, Resource

log = alog.use_channel("OWNRF")


def make_owner_reference(
    owner: Resource,
    controller: bool = True,
    block_owner_deletion: bool = True,
) -> OwnerReference:
    """Make an owner reference pointing at the given owner

    Args:
        owner:  Resource
            The owning resource. It must have been persisted so it has a uid
        controller:  bool
            Whether this owner is the managing controller of the dependent
        block_owner_deletion:  bool
            Whether foreground deletion of the owner waits for the dependent

    Returns:
        owner_reference:  OwnerReference
            The reference to add to the dependent
    """
    assert_resource(owner.uid is not None, f"Owner {owner} has no uid")
    return OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.uid,
        controller=controller,
        block_owner_deletion=block_owner_deletion,
    )


def stamp_controller_reference(manifest: dict, owner: Resource) -> dict:
    """Set the owner as the controlling owner on a dependent manifest in place.
    Any stale reference to the same owner is replaced and references to other
    owners are kept. A dependent controlled by a different owner can not be
    adopted.

    Args:
        manifest:  dict
            The dependent manifest to update
        owner:  Resource
            The controlling owner

    Returns:
        manifest:  dict
            The updated manifest
    """
    metadata = manifest.setdefault("metadata", {})
    namespace = metadata.get("namespace")
    if owner.namespace and namespace != owner.namespace:
        raise PermanentError(
            f"Namespaced owner {owner} can not own a dependent in namespace {namespace}"
        )

    current_refs: List[dict] = metadata.get("ownerReferences") or []
    for ref in current_refs:
        if ref.get("controller") and ref.get("uid") != owner.uid:
            raise PermanentError(
                f"{manifest.get('kind')}/{metadata.get('name')} is already "
                f"controlled by {ref.get('kind')}/{ref.get('name')}"
            )

    # Replace in place so the order of references is stable across reconciles
    owner_ref = make_owner_reference(owner).to_dict()
    new_refs = [
        owner_ref if ref.get("uid") == owner.uid else ref for ref in current_refs
    ]
    if owner_ref not in new_refs:
        new_refs.append(owner_ref)
    log.debug3("Owner refs for %s: %s", metadata.get("name"), new_refs)
    metadata["ownerReferences"] = new_refs
    return manifest
