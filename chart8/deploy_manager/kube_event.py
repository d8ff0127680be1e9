"""
Helper module to define shared types related to Kube Events
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

# First Party
import alog

# Local
from ..managed_object import ManagedObject

log = alog.use_channel("KUBEWATCH")


class KubeEventType(Enum):
    """Enum for all possible kubernetes event types"""

    DELETED = "DELETED"
    MODIFIED = "MODIFIED"
    ADDED = "ADDED"


@dataclass
class KubeWatchEvent:
    """DataClass containing the type, resource, and timestamp of a
    particular event"""

    type: KubeEventType
    resource: ManagedObject
    timestamp: datetime = field(default_factory=datetime.now)

    @classmethod
    def from_raw(cls, raw_event: dict) -> Optional["KubeWatchEvent"]:
        """Build an event from a raw watch stream entry. Entries that don't
        describe an object change (BOOKMARK, ERROR) give None.
        """
        try:
            event_type = KubeEventType(raw_event.get("type"))
        except ValueError:
            log.debug3("Ignoring watch entry of type %s", raw_event.get("type"))
            return None
        return cls(event_type, ManagedObject(raw_event["object"]))
