"""
The HelmReleaseManager drives the helm command line to render, install,
upgrade, and uninstall releases.
"""

# Standard
from typing import List, Optional
import json
import subprocess

# Third Party
import yaml

# First Party
import alog

# Local
from .. import config
from ..exceptions import ReleaseCancelledError, ReleaseError, ReleaseNotFoundError
from .base import Release, ReleaseManagerBase

log = alog.use_channel("HELM")

# Fragment of helm's stderr when a release does not exist
RELEASE_NOT_FOUND = "release: not found"


class HelmReleaseManager(ReleaseManagerBase):
    """Release manager that shells out to the helm binary. Values are passed
    to helm on stdin so that they never touch the filesystem.
    """

    ## Implementation ##########################################################

    def _get_deployed_release(self) -> Optional[Release]:
        try:
            status = json.loads(
                self._run_helm("status", self.release_name, "--output", "json")
            )
            manifest = self._run_helm("get", "manifest", self.release_name)
        except ReleaseNotFoundError:
            log.debug2("No release found for %s", self.release_name)
            return None
        return Release(
            name=self.release_name,
            namespace=self.namespace,
            manifest=manifest,
            version=status.get("version", 1),
            info=status.get("info", {}).get("description", ""),
        )

    def _render(self) -> str:
        """Render with a dry run upgrade so that the manifest is produced the
        same way as the deployed one
        """
        output = self._run_helm(
            "upgrade",
            self.release_name,
            self.chart,
            "--dry-run",
            "--output",
            "json",
            "--values",
            "-",
            stdin=self._values_yaml(),
        )
        return json.loads(output).get("manifest", "")

    def _install(self) -> Release:
        return self._release_from_output(
            self._run_helm(
                "install",
                self.release_name,
                self.chart,
                "--output",
                "json",
                "--timeout",
                config.helm.timeout,
                "--values",
                "-",
                stdin=self._values_yaml(),
            )
        )

    def _upgrade(self) -> Release:
        return self._release_from_output(
            self._run_helm(
                "upgrade",
                self.release_name,
                self.chart,
                "--output",
                "json",
                "--timeout",
                config.helm.timeout,
                "--values",
                "-",
                stdin=self._values_yaml(),
            )
        )

    def _uninstall(self) -> Release:
        deployed = self._deployed_release
        output = self._run_helm(
            "uninstall", self.release_name, "--timeout", config.helm.timeout
        )
        return Release(
            name=self.release_name,
            namespace=self.namespace,
            manifest=deployed.manifest if deployed else "",
            version=deployed.version if deployed else 0,
            info=output.strip(),
        )

    def _values_yaml(self) -> str:
        return yaml.safe_dump(self.values, default_flow_style=False)

    def _release_from_output(self, output: str) -> Release:
        try:
            content = json.loads(output)
        except json.JSONDecodeError as err:
            raise ReleaseError(f"Unable to parse helm output: {err}") from err
        return Release(
            name=content.get("name", self.release_name),
            namespace=content.get("namespace", self.namespace),
            manifest=content.get("manifest", ""),
            version=content.get("version", 1),
            info=content.get("info", {}).get("description", ""),
        )

    def _helm_command(self, args: List[str]) -> List[str]:
        cmd = [config.helm.binary, *args]
        if self.namespace:
            cmd.extend(["--namespace", self.namespace])
        return cmd

    def _run_helm(self, *args: str, stdin: Optional[str] = None) -> str:
        """Run a helm command, polling for cancellation while it runs

        Returns:
            stdout:  str
                The standard output of the command

        Raises:
            ReleaseNotFoundError: if helm reports that the release is missing
            ReleaseCancelledError: if the cancel_event is set while running
            ReleaseError: for any other failure
        """
        cmd = self._helm_command(list(args))
        log.debug2("Running helm command: %s", cmd)
        try:
            proc = subprocess.Popen(  # pylint: disable=consider-using-with
                cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except OSError as err:
            raise ReleaseError(f"Unable to run helm: {err}") from err

        pending_input = stdin
        while True:
            try:
                stdout, stderr = proc.communicate(
                    input=pending_input, timeout=config.helm.poll_interval_seconds
                )
                break
            except subprocess.TimeoutExpired:
                pending_input = None
                if self.cancel_event.is_set():
                    log.info("Cancelling helm command for %s", self.release_name)
                    proc.kill()
                    proc.communicate()
                    raise ReleaseCancelledError(
                        f"helm {args[0]} for {self.release_name} was cancelled"
                    ) from None

        if proc.returncode != 0:
            message = stderr.strip() or stdout.strip()
            log.debug("helm %s failed: %s", args[0], message)
            if RELEASE_NOT_FOUND in message:
                raise ReleaseNotFoundError(message)
            raise ReleaseError(f"helm {args[0]} failed: {message}")
        return stdout
