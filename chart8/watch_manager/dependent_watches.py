"""
The DependentWatchRegistry grows the set of kinds observed for an owner kind as
new kinds appear in rendered releases. Watches are only ever added, never
removed, for the lifetime of the process.
"""
# Standard
from typing import Callable, Iterable, Optional, Set

# First Party
import alog

# Local
from ..exceptions import assert_cluster
from ..managed_object import GroupVersionKind, ResourceScope
from ..release import decode_manifest
from ..utils import ReadWriteLock

log = alog.use_channel("DEPWT")

# Resolves the scope of a kind, or None if the kind is unknown
ScopeResolver = Callable[[str, str], Optional[ResourceScope]]

# Starts a watch on a dependent kind for the given owner scope
Subscribe = Callable[[GroupVersionKind, ResourceScope], None]


class DependentWatchRegistry:
    """Registry of the dependent kinds already handled for a single owner kind.

    The seen set is guarded by a read/write lock with a fast-path read check
    before the write lock is taken. Two callers racing on the same new kind may
    both subscribe, so the subscribe callable must be idempotent per kind.
    """

    def __init__(
        self,
        owner_gvk: GroupVersionKind,
        scope_resolver: ScopeResolver,
        subscribe: Subscribe,
    ):
        """
        Args:
            owner_gvk:  GroupVersionKind
                The chart-backed kind owning the dependents
            scope_resolver:  ScopeResolver
                Looks up the scope of a kind from (kind, api_version)
            subscribe:  Subscribe
                Starts a watch that enqueues the owner when the dependent kind
                changes
        """
        self.owner_gvk = owner_gvk
        self._scope_resolver = scope_resolver
        self._subscribe = subscribe
        self._seen: Set[GroupVersionKind] = set()
        self._lock = ReadWriteLock()

    ## Public ##################################################################

    @property
    def seen(self) -> Set[GroupVersionKind]:
        with self._lock.read_lock():
            return set(self._seen)

    def is_seen(self, gvk: GroupVersionKind) -> bool:
        with self._lock.read_lock():
            return gvk in self._seen

    @alog.logged_function(log.debug2)
    def register_release(self, manifest: str):
        """Register watches for every new kind in a release manifest. The whole
        manifest is decoded before any watch is registered, so a decode failure
        leaves the seen set untouched.

        Args:
            manifest:  str
                The multi-document yaml manifest of the release

        Raises:
            ManifestDecodeError: if the manifest can't be decoded
        """
        objects = decode_manifest(manifest)
        self.register_kinds(
            GroupVersionKind.from_api_version(obj["apiVersion"], obj["kind"])
            for obj in objects
        )

    def register_kinds(self, gvks: Iterable[GroupVersionKind]):
        owner_scope = None
        for gvk in gvks:
            if self.is_seen(gvk):
                log.debug3("Dependent kind %s already watched", gvk)
                continue

            if owner_scope is None:
                owner_scope = self._resolve_scope(self.owner_gvk)
            dependent_scope = self._resolve_scope(gvk)

            if (
                owner_scope == ResourceScope.NAMESPACED
                and dependent_scope == ResourceScope.CLUSTER
            ):
                log.info(
                    "Cannot watch cluster-scoped dependent %s owned by namespaced %s",
                    gvk,
                    self.owner_gvk,
                )
            else:
                log.debug("Watching dependent kind %s for %s", gvk, self.owner_gvk)
                self._subscribe(gvk, owner_scope)

            with self._lock.write_lock():
                self._seen.add(gvk)

    ## Implementation ##########################################################

    def _resolve_scope(self, gvk: GroupVersionKind) -> ResourceScope:
        scope = self._scope_resolver(gvk.kind, gvk.api_version)
        assert_cluster(scope is not None, f"Unable to resolve scope of {gvk}")
        return scope
