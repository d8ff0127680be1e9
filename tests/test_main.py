"""
Tests for the __main__.py entrypoint to the library as an executable
"""

# Standard
from unittest import mock
import sys

# Third Party
import pytest
import yaml

# First Party
import alog

# Local
from chart8 import config
from chart8.__main__ import main
from chart8.cmd import run_operator_cmd
from chart8.deploy_manager import DryRunDeployManager
from chart8.exceptions import ConfigError
from chart8.status import ConditionStatus, ConditionType
from chart8.test_helpers.helpers import library_config

log = alog.use_channel("TEST")

## Helpers #####################################################################

CHART_TEMPLATE = """
apiVersion: v1
kind: ConfigMap
metadata:
  name: $release_name-config
data:
  greeting: "$greeting"
"""

WIDGET_CR = {
    "apiVersion": "charts.example.com/v1",
    "kind": "Widget",
    "metadata": {"name": "widget", "namespace": "test"},
    "spec": {"greeting": "hello"},
}


@pytest.fixture(autouse=True)
def reset_sys_argv():
    """All tests need to muck with sys.argv, so this fixture will reset it to an
    empty list before each runs
    """
    with mock.patch.object(sys, "argv", ["chart8"]):
        yield


@pytest.fixture
def operator_dir(tmp_path):
    """Directory holding a watches file and the chart it points at"""
    chart_dir = tmp_path / "helm-charts" / "widget"
    chart_dir.mkdir(parents=True)
    (chart_dir / "configmap.yaml").write_text(CHART_TEMPLATE)
    (tmp_path / "watches.yaml").write_text(
        yaml.safe_dump(
            [
                {
                    "group": "charts.example.com",
                    "version": "v1",
                    "kind": "Widget",
                    "chart": "helm-charts/widget",
                }
            ]
        )
    )
    return tmp_path


@pytest.fixture
def deploy_managers():
    """Capture the deploy managers built by the run command"""
    instances = []

    class RecordingDeployManager(DryRunDeployManager):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            instances.append(self)

    with mock.patch.object(
        run_operator_cmd, "DryRunDeployManager", RecordingDeployManager
    ):
        yield instances


def write_yaml(path, content):
    path.write_text(yaml.safe_dump(content))
    return str(path)


def get_obj(dm, kind, name, namespace="test"):
    return dm.get_object_current_state(kind, name, namespace)[1]


## Happy Path Tests ############################################################


def test_dry_run_cr(operator_dir, deploy_managers):
    """Make sure a dry run with --cr installs the chart for the CR"""
    cr_path = write_yaml(operator_dir / "cr.yaml", WIDGET_CR)
    sys.argv.extend(
        [
            "--dry_run",
            "--watches_file",
            str(operator_dir / "watches.yaml"),
            "--cr",
            cr_path,
        ]
    )
    with library_config(dry_run=False, watches_file="watches.yaml"):
        main()
        assert config.dry_run

    dm = deploy_managers[0]
    assert get_obj(dm, "ConfigMap", "widget-config")["data"] == {"greeting": "hello"}
    conditions = {
        cond["type"]: cond["status"]
        for cond in get_obj(dm, "Widget", "widget")["status"]["conditions"]
    }
    assert conditions[ConditionType.DEPLOYED.value] == ConditionStatus.TRUE.value


def test_dry_run_cr_default_namespace(operator_dir, deploy_managers):
    """Make sure a CR without a namespace lands in the default namespace"""
    cr = {key: val for key, val in WIDGET_CR.items() if key != "metadata"}
    cr["metadata"] = {"name": "widget"}
    sys.argv.extend(["--cr", write_yaml(operator_dir / "cr.yaml", cr)])
    with library_config(
        dry_run=True, watches_file=str(operator_dir / "watches.yaml")
    ):
        main()
    assert get_obj(deploy_managers[0], "ConfigMap", "widget-config", "default")


def test_resource_dir(operator_dir, deploy_managers):
    """Make sure resources in --resource_dir exist and watched CRs among them
    are reconciled
    """
    resource_dir = operator_dir / "resources"
    resource_dir.mkdir()
    write_yaml(resource_dir / "cr.yaml", WIDGET_CR)
    write_yaml(
        resource_dir / "other.yml",
        {"apiVersion": "v1", "kind": "Secret", "metadata": {"name": "s", "namespace": "test"}},
    )
    (resource_dir / "README.md").write_text("ignored")
    sys.argv.extend(["run", "--resource_dir", str(resource_dir)])
    with library_config(
        dry_run=True, watches_file=str(operator_dir / "watches.yaml")
    ):
        main()

    dm = deploy_managers[0]
    assert get_obj(dm, "Secret", "s")
    assert get_obj(dm, "ConfigMap", "widget-config")


def test_library_config_args():
    """Make sure nested library config values are exposed as flags"""
    sys.argv.extend(["--helm.timeout", "10m", "--watches_file", "missing.yaml"])
    with library_config(dry_run=True, watches_file="watches.yaml"):
        old_timeout = config.helm.timeout
        try:
            with pytest.raises(ConfigError):
                main()
            assert config.helm.timeout == "10m"
        finally:
            config.helm.timeout = old_timeout


## Error Case Tests ############################################################


def test_resource_dir_not_found():
    """Make sure the --resource_dir argument must point to a valid directory"""
    sys.argv.extend(["--resource_dir", "some/bad/path"])
    with library_config(dry_run=True):
        with pytest.raises(AssertionError):
            main()


def test_cr_not_found():
    """Make sure the --cr argument must point to a file that exists"""
    sys.argv.extend(["--cr", "some/bad/file.yaml"])
    with library_config(dry_run=True):
        with pytest.raises(AssertionError):
            main()


def test_cr_not_yaml(operator_dir):
    """Make sure the --cr argument must point to a file that is valid yaml"""
    cr_path = operator_dir / "cr.yaml"
    cr_path.write_text("{not\nyaml\n  really")
    sys.argv.extend(["--cr", str(cr_path)])
    with library_config(
        dry_run=True, watches_file=str(operator_dir / "watches.yaml")
    ):
        with pytest.raises(yaml.YAMLError):
            main()


def test_cr_without_dry_run(operator_dir):
    """Make sure the --cr argument can only be specified in dry_run"""
    sys.argv.extend(["--cr", write_yaml(operator_dir / "cr.yaml", WIDGET_CR)])
    with library_config(dry_run=False):
        with pytest.raises(AssertionError):
            main()


def test_resource_dir_without_dry_run(operator_dir):
    """Make sure the --resource_dir argument can only be specified in dry_run"""
    sys.argv.extend(["--resource_dir", str(operator_dir)])
    with library_config(dry_run=False):
        with pytest.raises(AssertionError):
            main()
