"""
This module holds the common functionality used to represent the status of
resources whose state is driven by a release

A resource carries the following orthogonal status conditions:

* Initialized: True once the operator has started managing the resource
* Deployed: True while a release for the resource is installed
* ReleaseFailed: True if the latest install, upgrade or uninstall failed
* Irreconcilable: True if the deployed release could not be re-applied

Additionally, the status holds the most recently applied release. The schema
is:
{
    "conditions": [...],
    "deployedRelease": {
        "name": <release name>,
        "manifest": <rendered manifest>,
    }
}
"""

# Standard
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Union
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from .managed_object import ManagedResource

log = alog.use_channel("STTUS")

## Public ######################################################################

# The key in the condition used for the timestamp
TIMESTAMP_KEY = "lastTransitionTime"

# Top level status keys
CONDITIONS_KEY = "conditions"
DEPLOYED_RELEASE_KEY = "deployedRelease"


class ConditionType(Enum):
    """The condition types managed on a release-backed resource"""

    INITIALIZED = "Initialized"
    DEPLOYED = "Deployed"
    RELEASE_FAILED = "ReleaseFailed"
    IRRECONCILABLE = "Irreconcilable"


class ConditionStatus(Enum):
    """The tri-state value of a condition"""

    TRUE = "True"
    FALSE = "False"
    UNKNOWN = "Unknown"


class ConditionReason(Enum):
    """Reason constants attached to conditions"""

    INSTALL_SUCCESSFUL = "InstallSuccessful"
    UPGRADE_SUCCESSFUL = "UpgradeSuccessful"
    UNINSTALL_SUCCESSFUL = "UninstallSuccessful"

    INSTALL_ERROR = "InstallError"
    UPGRADE_ERROR = "UpgradeError"
    RECONCILE_ERROR = "ReconcileError"
    UNINSTALL_ERROR = "UninstallError"


class ReleaseStatus:
    """Mutable view of a resource's status. Conditions are keyed by type so
    that at most one condition of each type is ever present.
    """

    def __init__(self, status: Optional[dict] = None):
        """Construct from the raw status dict of a resource. The dict is copied
        so that changes can be compared against the original.
        """
        self._status = copy.deepcopy(status or {})
        self._status.setdefault(CONDITIONS_KEY, [])

    @classmethod
    def from_resource(cls, resource: ManagedResource) -> "ReleaseStatus":
        return cls(resource.status)

    ## Conditions ##

    @property
    def conditions(self) -> List[dict]:
        return self._status[CONDITIONS_KEY]

    def get_condition(
        self, condition_type: Union[ConditionType, str]
    ) -> Optional[dict]:
        """Get the condition with the given type if present"""
        return get_condition(_value(condition_type), self._status) or None

    def set_condition(
        self,
        condition_type: Union[ConditionType, str],
        status: Union[ConditionStatus, str],
        reason: Optional[Union[ConditionReason, str]] = None,
        message: str = "",
    ) -> bool:
        """Set a condition, replacing any existing condition of the same type.
        The lastTransitionTime is only refreshed when the status value changes.

        Args:
            condition_type:  Union[ConditionType, str]
                The type of the condition to set
            status:  Union[ConditionStatus, str]
                The new status value
            reason:  Optional[Union[ConditionReason, str]]
                Machine readable reason for the status
            message:  str
                Human readable explanation of the status

        Returns:
            changed:  bool
                True if the condition differs from what was present before
        """
        new_condition = {
            "type": _value(condition_type),
            "status": _value(status),
            "reason": _value(reason) if reason is not None else "",
            "message": message or "",
        }
        current = self.get_condition(condition_type)
        if current is not None and current.get("status") == new_condition["status"]:
            new_condition[TIMESTAMP_KEY] = current.get(TIMESTAMP_KEY)
        else:
            new_condition[TIMESTAMP_KEY] = _now()
        if current == new_condition:
            return False

        log.debug2(
            "Setting condition %s=%s (%s)",
            new_condition["type"],
            new_condition["status"],
            new_condition["reason"],
        )
        conditions = [
            cond for cond in self.conditions if cond.get("type") != new_condition["type"]
        ]
        conditions.append(new_condition)
        self._status[CONDITIONS_KEY] = conditions
        return True

    def remove_condition(self, condition_type: Union[ConditionType, str]) -> bool:
        """Remove the condition with the given type. Returns True if one was
        present.
        """
        type_name = _value(condition_type)
        conditions = [cond for cond in self.conditions if cond.get("type") != type_name]
        removed = len(conditions) != len(self.conditions)
        self._status[CONDITIONS_KEY] = conditions
        if removed:
            log.debug2("Removed condition %s", type_name)
        return removed

    ## Deployed Release ##

    @property
    def deployed_release(self) -> Optional[dict]:
        return self._status.get(DEPLOYED_RELEASE_KEY)

    def set_deployed_release(self, name: str, manifest: str):
        self._status[DEPLOYED_RELEASE_KEY] = {"name": name, "manifest": manifest}

    def clear_deployed_release(self):
        self._status.pop(DEPLOYED_RELEASE_KEY, None)

    def to_dict(self) -> dict:
        return copy.deepcopy(self._status)


def update_resource_status(
    deploy_manager: "DeployManagerBase",  # noqa: F821
    resource: ManagedResource,
    status: ReleaseStatus,
) -> dict:
    """Persist the given status onto the resource if it differs from the
    resource's current status

    Args:
        deploy_manager: DeployManagerBase
            The deploy manager used to write the status
        resource: ManagedResource
            The resource whose status is being updated. On success its
            definition holds the new status.
        status: ReleaseStatus
            The desired status

    Returns:
        status_object: dict
            The applied status if successful, empty dict otherwise
    """
    current_status = resource.status
    status_object = status.to_dict()
    if not status_changed(current_status, status_object):
        log.debug3("No meaningful status change for %s", resource)
        return status_object

    log.debug("Found meaningful change. Updating status for %s", resource)
    log.debug2("(current) %s != (updated) %s", current_status, status_object)
    success, _ = deploy_manager.set_status(
        kind=resource.kind,
        name=resource.name,
        namespace=resource.namespace,
        api_version=resource.api_version,
        status=status_object,
    )

    # Since this is just a status update, we don't fail if the update fails,
    # but we do throw a warning
    if not success:
        log.warning(
            "Failed to update status for [%s/%s/%s]",
            resource.namespace,
            resource.kind,
            resource.name,
        )
        return {}

    resource.status = status_object
    return status_object


def status_changed(current_status: dict, new_status: dict) -> bool:
    """Compare two status objects to determine if there is a meaningful change
    between the current status and the proposed new status. A meaningful change
    is defined as any change besides a timestamp.

    Args:
        current_status:  dict
            The raw status dict from the current CR
        new_status:  dict
            The proposed new status

    Returns:
        status_changed:  bool
            True if there is a meaningful change between the current status and
            the new status
    """
    if not isinstance(current_status, dict) or not isinstance(new_status, dict):
        return True

    return bool(
        DeepDiff(
            current_status,
            new_status,
            ignore_order=True,
            exclude_obj_callback=lambda _, path: path.endswith(f"{TIMESTAMP_KEY}']"),
        )
    )


def get_condition(type_name: str, current_status: dict) -> dict:
    """Extract the given condition type from a status object

    Args:
        type_name:  str
            The condition type to fetch
        current_status:  dict
            The dict representation of the status for a given resource

    Returns:
        condition:  dict
            The condition object if found, empty dict otherwise
    """
    cond = [
        cond
        for cond in current_status.get(CONDITIONS_KEY, [])
        if cond.get("type") == type_name
    ]
    if cond:
        assert len(cond) == 1, f"Found multiple condition entries for {type_name}"
        return cond[0]
    return {}


## Implementation Details ######################################################


def _value(val: Union[Enum, str]) -> str:
    return val.value if isinstance(val, Enum) else val


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
