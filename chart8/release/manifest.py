"""
Helpers for working with rendered release manifests
"""

# Standard
from typing import List

# Third Party
import yaml

# First Party
import alog

# Local
from ..exceptions import ManifestDecodeError

log = alog.use_channel("MNFST")


def decode_manifest(manifest: str) -> List[dict]:
    """Decode a rendered manifest document stream into generic objects. Empty
    documents are skipped. Every remaining document must be a mapping with a
    kind and apiVersion.

    Args:
        manifest:  str
            The yaml document stream produced by rendering a chart

    Returns:
        objects:  List[dict]
            The decoded objects in manifest order

    Raises:
        ManifestDecodeError: if any document cannot be decoded
    """
    try:
        documents = list(yaml.safe_load_all(manifest or ""))
    except yaml.YAMLError as err:
        raise ManifestDecodeError(f"Failed to parse release manifest: {err}") from err

    objects = []
    for idx, doc in enumerate(documents):
        if doc is None:
            continue
        if not isinstance(doc, dict) or not doc.get("kind") or not doc.get("apiVersion"):
            raise ManifestDecodeError(
                f"Manifest document {idx} is not an object with kind and apiVersion"
            )
        objects.append(doc)

    log.debug3("Decoded %d objects from manifest", len(objects))
    return objects


def encode_manifest(objects: List[dict]) -> str:
    """Encode objects into a manifest document stream"""
    return yaml.safe_dump_all(objects, default_flow_style=False, sort_keys=True)
