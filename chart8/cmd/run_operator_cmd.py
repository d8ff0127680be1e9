"""
This is the main entrypoint command for running the operator
"""
# Standard
from typing import List, Optional
import argparse
import os
import signal

# Third Party
import yaml

# First Party
import alog

# Local
from .. import config
from ..deploy_manager import (
    DeployManagerBase,
    DryRunDeployManager,
    OpenshiftDeployManager,
)
from ..finalizer import FinalizerManager
from ..managed_object import GroupVersionKind
from ..reconcile import ReleaseReconciler
from ..release import DryRunReleaseManager, HelmReleaseManager, ReleaseManagerFactory
from ..watch_manager import PythonWatchManager, WatchManagerBase
from ..watch_manager.threads import ReconcileThread, WatchThreadRegistry
from ..watches import WatchEntry, load_watches
from .base import CmdBase

log = alog.use_channel("MAIN")


class RunOperatorCmd(CmdBase):
    __doc__ = __doc__

    ## Interface ##

    def add_subparser(
        self,
        subparsers: argparse._SubParsersAction,
    ) -> argparse.ArgumentParser:
        parser = subparsers.add_parser("run", help=__doc__)
        runtime_args = parser.add_argument_group("Runtime Configuration")
        runtime_args.add_argument(
            "--cr",
            "-c",
            default=None,
            help="(dry run) A CR manifest yaml to apply and reconcile directly",
        )
        runtime_args.add_argument(
            "--resource_dir",
            "-r",
            default=None,
            help="(dry run) Path to a directory of yaml files that should exist in the cluster",
        )
        return parser

    def cmd(self, args: argparse.Namespace):
        # Validate args
        assert args.cr is None or (
            config.dry_run and os.path.isfile(args.cr)
        ), "Can only specify --cr with dry run and it must point to a valid file"
        assert args.resource_dir is None or (
            config.dry_run and os.path.isdir(args.resource_dir)
        ), "Can only specify --resource_dir with dry run and it must point to a valid directory"

        watch_entries = load_watches(config.watches_file)
        resources = self._parse_resource_dir(args.resource_dir)

        if config.dry_run:
            self._run_dry_run(watch_entries, resources, args.cr)
            return

        deploy_manager = OpenshiftDeployManager()
        self._setup_watches(watch_entries, deploy_manager)

        # Register the signal handler to stop the watches
        def do_stop(*_, **__):  # pragma: no cover
            WatchManagerBase.stop_all()

        signal.signal(signal.SIGINT, do_stop)

        log.info("Starting Watches")
        WatchManagerBase.start_all()
        log.info("SHUTTING DOWN")

    ## Impl ##

    @staticmethod
    def _parse_resource_dir(resource_dir: Optional[str]) -> List[dict]:
        """If given, this will parse all yaml files found in the given directory"""
        all_resources = []
        if resource_dir is not None:
            for fname in sorted(os.listdir(resource_dir)):
                if fname.endswith(".yaml") or fname.endswith(".yml"):
                    resource_path = os.path.join(resource_dir, fname)
                    log.debug3("Reading resource file [%s]", resource_path)
                    with open(resource_path, encoding="utf-8") as handle:
                        all_resources.extend(
                            doc for doc in yaml.safe_load_all(handle) if doc
                        )
        return all_resources

    @staticmethod
    def build_reconciler(
        entry: WatchEntry,
        deploy_manager: DeployManagerBase,
        finalizer_manager: Optional[FinalizerManager] = None,
        release_store: Optional[dict] = None,
    ) -> ReleaseReconciler:
        """Construct the reconciler for one watches entry. A release_store
        selects the in-memory release manager.
        """
        if release_store is not None:
            factory = ReleaseManagerFactory(
                DryRunReleaseManager,
                entry.chart,
                deploy_manager,
                override_values=entry.override_values,
                release_store=release_store,
            )
        else:
            factory = ReleaseManagerFactory(
                HelmReleaseManager,
                entry.chart,
                deploy_manager,
                override_values=entry.override_values,
            )
        return ReleaseReconciler(
            gvk=entry.gvk,
            release_manager_factory=factory,
            deploy_manager=deploy_manager,
            finalizer_manager=finalizer_manager,
            reconcile_period=entry.reconcile_period,
        )

    @classmethod
    def _setup_watches(
        cls,
        watch_entries: List[WatchEntry],
        deploy_manager: DeployManagerBase,
    ):
        """Create one watch manager per entry, sharing the reconcile thread and
        the watch threads between them
        """
        reconcile_thread = ReconcileThread(deploy_manager=deploy_manager)
        watch_registry = WatchThreadRegistry()
        for entry in watch_entries:
            log.info(
                "Watching resource %s with reconcile period %s",
                entry.gvk,
                entry.reconcile_period,
            )
            PythonWatchManager(
                cls.build_reconciler(entry, deploy_manager),
                deploy_manager=deploy_manager,
                watch_dependent_resources=entry.watch_dependent_resources,
                reconcile_thread=reconcile_thread,
                watch_registry=watch_registry,
            )

    @classmethod
    def _run_dry_run(
        cls,
        watch_entries: List[WatchEntry],
        resources: List[dict],
        cr_path: Optional[str],
    ) -> DryRunDeployManager:
        """Reconcile every watched resource once against an in-memory cluster"""
        log.info("Running DRY RUN")
        deploy_manager = DryRunDeployManager(resources=resources)
        release_store = {}
        reconcilers = {
            entry.gvk: cls.build_reconciler(
                entry, deploy_manager, release_store=release_store
            )
            for entry in watch_entries
        }

        crs = [
            resource
            for resource in resources
            if cls._gvk_of(resource) in reconcilers
        ]
        if cr_path:
            log.info("Applying CR [%s]", cr_path)
            with open(cr_path, encoding="utf-8") as handle:
                cr_manifest = yaml.safe_load(handle)
            cr_manifest.setdefault("metadata", {}).setdefault("namespace", "default")
            log.debug3(cr_manifest)
            deploy_manager.deploy([cr_manifest])
            crs.append(cr_manifest)

        for cr_manifest in crs:
            reconciler = reconcilers.get(cls._gvk_of(cr_manifest))
            if reconciler is None:
                log.warning("No watch found for %s", cls._gvk_of(cr_manifest))
                continue
            result = reconciler.safe_reconcile(cr_manifest)
            log.info("Dry run reconcile result: %s", result)
        return deploy_manager

    @staticmethod
    def _gvk_of(resource: dict) -> GroupVersionKind:
        return GroupVersionKind.from_api_version(
            resource.get("apiVersion", ""), resource.get("kind", "")
        )
