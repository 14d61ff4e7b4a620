"""Ownership of objects created by the package operator.

Objects created on behalf of a package carry an owner reference to it and the
managed-by label. Packages record the objects they own in their status as
`OwnedResourceRef` lists.
"""

from .exceptions import InputException
from .manifest import (
    AnyObject,
    KubeObject,
    ObjectMeta,
    OwnedResourceRef,
    OwnerReference,
    split_api_version,
)

__all__ = [
    "MANAGED_BY_LABEL",
    "is_managed",
    "set_managed",
    "owner_reference",
    "set_owner",
    "is_owned_by",
    "to_owned_ref",
    "add_refs",
    "remove_ref",
]

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "kpkg"


def is_managed(metadata: ObjectMeta) -> bool:
    """Return true if the object was created by the package operator."""
    return metadata.labels.get(MANAGED_BY_LABEL) == MANAGED_BY_VALUE


def set_managed(metadata: ObjectMeta) -> None:
    metadata.labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE


def owner_reference(owner: KubeObject, controller: bool = True) -> OwnerReference:
    """Return a reference to the owner for the metadata of a dependent."""
    if not owner.metadata.uid:
        raise InputException(f"Owner {owner.resource_id} has no uid")
    return OwnerReference(
        api_version=owner.api_version,
        kind=owner.kind,
        name=owner.name,
        uid=owner.metadata.uid,
        controller=controller,
        block_owner_deletion=True,
    )


def is_owned_by(metadata: ObjectMeta, owner: KubeObject) -> bool:
    return any(ref.uid == owner.metadata.uid for ref in metadata.owner_references)


def set_owner(metadata: ObjectMeta, owner: KubeObject, controller: bool = True) -> bool:
    """Add an owner reference unless the owner is already referenced."""
    if is_owned_by(metadata, owner):
        return False
    metadata.owner_references.append(owner_reference(owner, controller))
    return True


def to_owned_ref(obj: AnyObject) -> OwnedResourceRef:
    """Return the owned resource reference of an object."""
    group, version = split_api_version(obj.api_version)
    return OwnedResourceRef(
        group=group,
        version=version,
        kind=obj.kind,
        name=obj.name,
        namespace=obj.namespace or "",
    )


def add_refs(refs: list[OwnedResourceRef], *new_refs: OwnedResourceRef) -> bool:
    """Append references that are not in the list yet."""
    changed = False
    for new_ref in new_refs:
        if any(ref.refers_to_same(new_ref) for ref in refs):
            continue
        refs.append(new_ref)
        changed = True
    return changed


def remove_ref(refs: list[OwnedResourceRef], to_remove: OwnedResourceRef) -> bool:
    for i, ref in enumerate(refs):
        if ref.refers_to_same(to_remove):
            del refs[i]
            return True
    return False
