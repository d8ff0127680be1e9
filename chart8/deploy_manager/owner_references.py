"""
This module holds common functionality used to attach ownerReferences from the
resource being reconciled onto the objects rendered for its release
"""

# First Party
import alog

log = alog.use_channel("OWNRF")


def add_owner_reference(owner: dict, child_obj: dict, owner_namespaced: bool = True):
    """Merge an ownerReference for the owner into the child object in place.

    A namespaced owner can only own objects in its own namespace, so children
    in other namespaces or without a namespace are left alone.

    Args:
        owner:  dict
            The full manifest for the owning resource
        child_obj:  dict
            The rendered object that will be applied to the cluster
        owner_namespaced:  bool
                Whether the owner kind is namespace scoped
    """
    _validate_object_struct(owner)
    _validate_object_struct(child_obj)

    owner_md = owner["metadata"]
    child_md = child_obj["metadata"]
    if owner_namespaced and child_md.get("namespace") != owner_md.get("namespace"):
        log.debug2(
            "Not adding owner ref to %s/%s outside of namespace %s",
            child_obj["kind"],
            child_md["name"],
            owner_md.get("namespace"),
        )
        return

    owner_refs = child_md.setdefault("ownerReferences", [])
    if owner_md.get("uid") in [ref.get("uid") for ref in owner_refs]:
        log.debug3("Owner ref already present on %s", child_md["name"])
        return

    log.debug2(
        "Adding owner reference for %s.%s/%s",
        child_obj["apiVersion"],
        child_obj["kind"],
        child_md["name"],
    )
    owner_refs.append(_make_owner_reference(owner))


## Implementation Details ######################################################


def _validate_object_struct(obj: dict):
    """Ensure that the required portions of an object are present (kind,
    apiVersion, metadata.name)
    """
    assert "kind" in obj, "Got object without 'kind'"
    assert "apiVersion" in obj, "Got object without 'apiVersion'"
    metadata = obj.get("metadata")
    assert isinstance(metadata, dict), "Got object with non-dict 'metadata'"
    assert "name" in metadata, "Got object without 'metadata.name'"


def _make_owner_reference(owner: dict) -> dict:
    """Make a controller owner reference for the given resource instance. The
    rendered objects belong to exactly one release, so the owner is marked as
    their controller.
    """
    metadata = owner.get("metadata", {})
    return {
        "apiVersion": owner.get("apiVersion"),
        "kind": owner.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
        "controller": True,
        # The owner will not be deleted until this object completes its
        # deletion
        "blockOwnerDeletion": True,
    }
