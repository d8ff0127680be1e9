"""
The DryRunReleaseManager renders a chart directory of static templates and
keeps releases in a local store instead of calling out to helm.
"""

# Standard
from string import Template
from typing import Callable, Dict, List, Optional, Tuple
import os

# First Party
import alog

# Local
from ..exceptions import ReleaseError, ReleaseNotFoundError
from .base import Release, ReleaseManagerBase
from .manifest import decode_manifest, encode_manifest

log = alog.use_channel("DRYRL")

# Store of releases keyed by (namespace, name)
ReleaseStore = Dict[Tuple[Optional[str], str], Release]

# Renders (release_name, namespace, values) into a list of objects
Renderer = Callable[[str, Optional[str], dict], List[dict]]


class DryRunReleaseManager(ReleaseManagerBase):
    """Release manager which holds releases in memory and applies the rendered
    objects to the deploy manager directly
    """

    def __init__(
        self,
        *args,
        release_store: Optional[ReleaseStore] = None,
        renderer: Optional[Renderer] = None,
        **kwargs,
    ):
        """
        Kwargs:
            release_store:  Optional[ReleaseStore]
                The store shared by every manager built from the same factory
            renderer:  Optional[Renderer]
                Callable used instead of reading templates from the chart
                directory
        """
        super().__init__(*args, **kwargs)
        self.release_store = release_store if release_store is not None else {}
        self.renderer = renderer or self._render_chart_dir

    ## Implementation ##########################################################

    @property
    def _key(self):
        return (self.namespace, self.release_name)

    def _get_deployed_release(self) -> Optional[Release]:
        return self.release_store.get(self._key)

    def _render(self) -> str:
        return encode_manifest(self.renderer(self.release_name, self.namespace, self.values))

    def _install(self) -> Release:
        if self._key in self.release_store:
            raise ReleaseError(f"Release {self.release_name} already exists")
        release = Release(
            name=self.release_name,
            namespace=self.namespace,
            manifest=self._render(),
            version=1,
            info="Install complete",
        )
        self._apply(release)
        self.release_store[self._key] = release
        return release

    def _upgrade(self) -> Release:
        current = self.release_store.get(self._key)
        if current is None:
            raise ReleaseNotFoundError(f"Release {self.release_name} not found")
        release = Release(
            name=self.release_name,
            namespace=self.namespace,
            manifest=self._render(),
            version=current.version + 1,
            info="Upgrade complete",
        )
        self._apply(release)

        # Remove objects that are no longer part of the release
        new_ids = {_object_id(obj) for obj in self.release_objects(release)}
        stale = [
            obj
            for obj in self.release_objects(current)
            if _object_id(obj) not in new_ids
        ]
        if stale:
            log.debug2("Removing %d objects dropped by the upgrade", len(stale))
            self.deploy_manager.disable(stale)

        self.release_store[self._key] = release
        return release

    def _uninstall(self) -> Release:
        release = self.release_store.get(self._key)
        if release is None:
            raise ReleaseNotFoundError(f"Release {self.release_name} not found")
        success, _ = self.deploy_manager.disable(self.release_objects(release))
        if not success:
            raise ReleaseError(f"Failed to remove objects of {self.release_name}")
        del self.release_store[self._key]
        release.info = "Uninstallation complete"
        return release

    def _apply(self, release: Release):
        success, _ = self.deploy_manager.deploy(self.release_objects(release))
        if not success:
            raise ReleaseError(f"Failed to apply release {self.release_name}")

    def _render_chart_dir(
        self, release_name: str, namespace: Optional[str], values: dict
    ) -> List[dict]:
        """Read each yaml template in the chart directory, substituting
        $release_name, $namespace, and top-level scalar values
        """
        if not os.path.isdir(self.chart):
            raise ReleaseError(f"Chart directory {self.chart} does not exist")
        substitutions = {
            key: val
            for key, val in values.items()
            if isinstance(val, (str, int, float, bool))
        }
        substitutions.update(release_name=release_name, namespace=namespace or "")

        objects = []
        for fname in sorted(os.listdir(self.chart)):
            if not fname.endswith((".yaml", ".yml")):
                continue
            with open(os.path.join(self.chart, fname), encoding="utf-8") as handle:
                content = Template(handle.read()).safe_substitute(substitutions)
            objects.extend(decode_manifest(content))
        return objects


def _object_id(obj: dict) -> Tuple[str, str, Optional[str], str]:
    metadata = obj.get("metadata", {})
    return (obj["apiVersion"], obj["kind"], metadata.get("namespace"), metadata["name"])
