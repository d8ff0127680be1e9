"""
Tests for the release managers
"""
# Standard
from unittest import mock
import json
import subprocess
import threading

# Third Party
import pytest

# First Party
import aconfig

# Local
from chart8.exceptions import (
    ManifestDecodeError,
    ReleaseCancelledError,
    ReleaseError,
    ReleaseNotFoundError,
)
from chart8.release import (
    DryRunReleaseManager,
    HelmReleaseManager,
    ReleaseManagerFactory,
    decode_manifest,
    encode_manifest,
)
from chart8.test_helpers.helpers import (
    MockDeployManager,
    library_config,
    setup_cr,
    setup_resource,
    widget_renderer,
)

## Helpers #####################################################################

CHART_TEMPLATE = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: $release_name-config
data:
  greeting: "$greeting"
"""


def make_dry_run_manager(dm=None, spec=None, **kwargs):
    dm = dm or MockDeployManager(resources=[setup_cr(spec=spec)])
    kwargs.setdefault("renderer", widget_renderer)
    return DryRunReleaseManager(
        resource=setup_resource(spec=spec),
        chart="unused",
        deploy_manager=dm,
        **kwargs,
    )


class FakeHelm:
    """Fake helm binary keyed by subcommand. Each response is a tuple of
    (returncode, stdout, stderr).
    """

    def __init__(self, responses):
        self.responses = responses
        self.commands = []
        self.inputs = []

    def __call__(self, cmd, **_):
        self.commands.append(cmd)
        subcommand = cmd[1] if cmd[1] != "get" else "get-manifest"
        if subcommand == "upgrade" and "--dry-run" in cmd:
            subcommand = "render"
        returncode, stdout, stderr = self.responses[subcommand]

        proc = mock.Mock()
        proc.returncode = returncode

        def communicate(input=None, timeout=None):  # pylint: disable=redefined-builtin
            self.inputs.append(input)
            return stdout, stderr

        proc.communicate = mock.Mock(side_effect=communicate)
        return proc


def release_json(manifest, description="done", version=1):
    return json.dumps(
        {
            "name": "test-instance",
            "namespace": "test",
            "manifest": manifest,
            "version": version,
            "info": {"description": description},
        }
    )


NOT_FOUND = (1, "", "Error: release: not found")
MANIFEST_V1 = encode_manifest(widget_renderer("test-instance", "test", {}))
MANIFEST_V2 = encode_manifest(widget_renderer("test-instance", "test", {"replicas": 3}))


def make_helm_manager(cancel_event=None):
    return HelmReleaseManager(
        resource=setup_resource(spec={"replicas": 3}),
        chart="/charts/widget",
        deploy_manager=MockDeployManager(),
        override_values={"image": "widget:latest"},
        cancel_event=cancel_event,
    )


##############
## Manifest ##
##############


def test_decode_manifest_skips_empty_documents():
    objects = decode_manifest("---\n" + MANIFEST_V1 + "---\n")
    assert [obj["kind"] for obj in objects] == ["Deployment", "Service"]


def test_decode_manifest_errors():
    with pytest.raises(ManifestDecodeError):
        decode_manifest("kind: [unclosed")
    with pytest.raises(ManifestDecodeError):
        decode_manifest("just a string")
    with pytest.raises(ManifestDecodeError):
        decode_manifest("kind: Service\n")


###################
## Base / DryRun ##
###################


def test_state_requires_sync():
    manager = make_dry_run_manager()
    with pytest.raises(AssertionError):
        manager.is_installed  # pylint: disable=pointless-statement


def test_dry_run_install_upgrade_uninstall():
    """Make sure the dry run manager walks through a release lifecycle"""
    dm = MockDeployManager(resources=[setup_cr(spec={"replicas": 1})])
    store = {}
    manager = make_dry_run_manager(dm, spec={"replicas": 1}, release_store=store)
    manager.sync()
    assert not manager.is_installed
    assert not manager.is_upgrade_required

    release = manager.install_release()
    assert release.version == 1
    assert dm.has_obj("Deployment", "test-instance-deployment", "test")
    with pytest.raises(ReleaseError):
        manager.install_release()

    # A second manager with new values sees the stored release
    upgraded = make_dry_run_manager(dm, spec={"replicas": 4}, release_store=store)
    upgraded.sync()
    assert upgraded.is_installed
    assert upgraded.is_upgrade_required
    assert upgraded.upgrade_release().version == 2
    assert dm.get_obj("Deployment", "test-instance-deployment", "test")["spec"] == {
        "replicas": 4
    }

    upgraded.uninstall_release()
    assert not dm.has_obj("Deployment", "test-instance-deployment", "test")
    assert not store
    with pytest.raises(ReleaseNotFoundError):
        upgraded.uninstall_release()


def test_dry_run_upgrade_removes_dropped_objects():
    """Make sure objects no longer rendered are removed on upgrade"""
    dm = MockDeployManager(resources=[setup_cr()])
    store = {}
    manager = make_dry_run_manager(dm, release_store=store)
    manager.sync()
    manager.install_release()

    def deployment_only(name, namespace, values):
        return widget_renderer(name, namespace, values)[:1]

    upgraded = make_dry_run_manager(dm, release_store=store, renderer=deployment_only)
    upgraded.sync()
    assert upgraded.is_upgrade_required
    upgraded.upgrade_release()
    assert dm.has_obj("Deployment", "test-instance-deployment", "test")
    assert not dm.has_obj("Service", "test-instance-service", "test")


def test_dry_run_upgrade_keeps_unchanged_objects():
    """Make sure an upgrade keeps both the changed and the unchanged objects
    of the release in place
    """
    dm = MockDeployManager(resources=[setup_cr(spec={"replicas": 1})])
    store = {}
    manager = make_dry_run_manager(dm, spec={"replicas": 1}, release_store=store)
    manager.sync()
    manager.install_release()

    upgraded = make_dry_run_manager(dm, spec={"replicas": 4}, release_store=store)
    upgraded.sync()
    assert upgraded.is_upgrade_required
    upgraded.upgrade_release()
    deployment = dm.get_obj("Deployment", "test-instance-deployment", "test")
    assert deployment is not None
    assert deployment["spec"]["replicas"] == 4
    assert dm.has_obj("Service", "test-instance-service", "test")


def test_dry_run_chart_dir(tmp_path):
    """Make sure templates in a chart directory are rendered with the values"""
    (tmp_path / "configmap.yaml").write_text(CHART_TEMPLATE)
    (tmp_path / "README.md").write_text("ignored")
    dm = MockDeployManager(resources=[setup_cr(spec={"greeting": "hello"})])
    manager = DryRunReleaseManager(
        resource=setup_resource(spec={"greeting": "hello"}),
        chart=str(tmp_path),
        deploy_manager=dm,
    )
    manager.sync()
    manager.install_release()
    configmap = dm.get_obj("ConfigMap", "test-instance-config", "test")
    assert configmap["data"] == {"greeting": "hello"}


def test_dry_run_missing_chart_dir(tmp_path):
    manager = DryRunReleaseManager(
        resource=setup_resource(),
        chart=str(tmp_path / "missing"),
        deploy_manager=MockDeployManager(resources=[setup_cr()]),
    )
    manager.sync()
    with pytest.raises(ReleaseError):
        manager.install_release()


def test_reconcile_release_requires_deployed():
    manager = make_dry_run_manager()
    manager.sync()
    with pytest.raises(ReleaseError):
        manager.reconcile_release()


def test_cancelled_operations():
    """Make sure operations refuse to start once cancelled"""
    cancel_event = threading.Event()
    manager = make_dry_run_manager(cancel_event=cancel_event)
    cancel_event.set()
    with pytest.raises(ReleaseCancelledError):
        manager.sync()
    with pytest.raises(ReleaseCancelledError):
        manager.install_release()


def test_release_objects_owner_and_namespace():
    """Make sure namespaced objects get the resource namespace and an owner
    reference while cluster-scoped objects are left alone
    """
    manager = make_dry_run_manager()
    manifest = encode_manifest(
        [
            {"apiVersion": "v1", "kind": "Service", "metadata": {"name": "svc"}},
            {
                "apiVersion": "rbac.authorization.k8s.io/v1",
                "kind": "ClusterRole",
                "metadata": {"name": "role"},
            },
        ]
    )
    release = mock.Mock(manifest=manifest)
    service, cluster_role = manager.release_objects(release)
    assert service["metadata"]["namespace"] == "test"
    assert service["metadata"]["ownerReferences"][0]["name"] == "test-instance"
    assert "namespace" not in cluster_role["metadata"]
    assert "ownerReferences" not in cluster_role["metadata"]


def test_factory_values_override():
    """Make sure override values take precedence over the spec"""
    factory = ReleaseManagerFactory(
        DryRunReleaseManager,
        "unused",
        MockDeployManager(),
        override_values={"replicas": 9, "nested": {"b": 2}},
        renderer=widget_renderer,
    )
    manager = factory.new_manager(
        setup_resource(spec={"replicas": 1, "nested": {"a": 1}})
    )
    assert manager.values == {"replicas": 9, "nested": {"a": 1, "b": 2}}
    assert manager.renderer is widget_renderer


##########
## Helm ##
##########


def test_helm_not_installed():
    fake_helm = FakeHelm({"status": NOT_FOUND})
    with mock.patch("subprocess.Popen", fake_helm):
        manager = make_helm_manager()
        manager.sync()
    assert not manager.is_installed
    assert fake_helm.commands == [
        ["helm", "status", "test-instance", "--output", "json", "--namespace", "test"]
    ]


def test_helm_install():
    fake_helm = FakeHelm(
        {
            "status": NOT_FOUND,
            "install": (0, release_json(MANIFEST_V2, "Install complete"), ""),
        }
    )
    with mock.patch("subprocess.Popen", fake_helm), library_config(
        helm=aconfig.Config(
            {"binary": "/usr/bin/helm", "timeout": "1m", "poll_interval_seconds": 0.1},
            override_env_vars=False,
        )
    ):
        manager = make_helm_manager()
        manager.sync()
        release = manager.install_release()

    assert release.manifest == MANIFEST_V2
    assert release.info == "Install complete"
    assert fake_helm.commands[-1] == [
        "/usr/bin/helm",
        "install",
        "test-instance",
        "/charts/widget",
        "--output",
        "json",
        "--timeout",
        "1m",
        "--values",
        "-",
        "--namespace",
        "test",
    ]

    # The merged values are passed on stdin
    assert "image: widget:latest" in fake_helm.inputs[-1]
    assert "replicas: 3" in fake_helm.inputs[-1]


def test_helm_upgrade_required():
    fake_helm = FakeHelm(
        {
            "status": (0, json.dumps({"version": 1, "info": {"description": "ok"}}), ""),
            "get-manifest": (0, MANIFEST_V1, ""),
            "render": (0, release_json(MANIFEST_V2), ""),
            "upgrade": (0, release_json(MANIFEST_V2, "Upgrade complete", 2), ""),
        }
    )
    with mock.patch("subprocess.Popen", fake_helm):
        manager = make_helm_manager()
        manager.sync()
        assert manager.is_installed
        assert manager.deployed_release.manifest == MANIFEST_V1
        assert manager.is_upgrade_required
        release = manager.upgrade_release()
    assert release.version == 2


def test_helm_uninstall():
    fake_helm = FakeHelm(
        {
            "status": (0, json.dumps({"version": 1}), ""),
            "get-manifest": (0, MANIFEST_V1, ""),
            "render": (0, release_json(MANIFEST_V1), ""),
            "uninstall": (0, 'release "test-instance" uninstalled\n', ""),
        }
    )
    with mock.patch("subprocess.Popen", fake_helm):
        manager = make_helm_manager()
        manager.sync()
        assert not manager.is_upgrade_required
        release = manager.uninstall_release()
    assert release.manifest == MANIFEST_V1
    assert release.info == 'release "test-instance" uninstalled'


def test_helm_uninstall_not_found():
    fake_helm = FakeHelm({"uninstall": NOT_FOUND})
    with mock.patch("subprocess.Popen", fake_helm):
        with pytest.raises(ReleaseNotFoundError):
            make_helm_manager().uninstall_release()


def test_helm_failure():
    fake_helm = FakeHelm(
        {"status": NOT_FOUND, "install": (1, "", "Error: chart not found")}
    )
    with mock.patch("subprocess.Popen", fake_helm):
        manager = make_helm_manager()
        manager.sync()
        with pytest.raises(ReleaseError, match="chart not found"):
            manager.install_release()


def test_helm_bad_output():
    fake_helm = FakeHelm({"status": NOT_FOUND, "install": (0, "not json", "")})
    with mock.patch("subprocess.Popen", fake_helm):
        manager = make_helm_manager()
        manager.sync()
        with pytest.raises(ReleaseError):
            manager.install_release()


def test_helm_missing_binary():
    with mock.patch("subprocess.Popen", side_effect=FileNotFoundError("helm")):
        manager = make_helm_manager()
        with pytest.raises(ReleaseError):
            manager.sync()


def test_helm_cancelled_while_running():
    """Make sure a running helm command is killed once cancelled"""
    cancel_event = threading.Event()
    proc = mock.Mock()

    def communicate(input=None, timeout=None):  # pylint: disable=redefined-builtin
        if timeout is None:
            return "", ""
        cancel_event.set()
        raise subprocess.TimeoutExpired(cmd="helm", timeout=timeout)

    proc.communicate = mock.Mock(side_effect=communicate)
    with mock.patch("subprocess.Popen", return_value=proc):
        manager = make_helm_manager(cancel_event=cancel_event)
        with pytest.raises(ReleaseCancelledError):
            manager.uninstall_release()
    proc.kill.assert_called_once()
