"""
The ReleaseManager is the abstraction in charge of rendering a chart for a
resource and installing, upgrading, repairing, and uninstalling the resulting
release.
"""

# Local
from .base import Release, ReleaseManagerBase, ReleaseManagerFactory
from .dry_run_release_manager import DryRunReleaseManager
from .helm_release_manager import HelmReleaseManager
from .manifest import decode_manifest, encode_manifest
