"""
Helpers for testing the PythonWatchManager and its threads
"""
# Standard
from queue import Queue
from typing import List, Optional
from uuid import uuid4
import datetime
import random
import time

# First Party
import alog

# Local
from ..managed_object import GroupVersionKind, ManagedObject, ManagedResource
from ..reconcile import ReconciliationResult
from ..watch_manager.threads import ReconcileThread
from ..watch_manager.types import ReconcileRequest

log = alog.use_channel("TEST")


class MockReconciler:
    """Stand-in for a ReleaseReconciler that returns scripted results and
    records every resource it was asked to reconcile
    """

    def __init__(
        self,
        gvk: GroupVersionKind,
        results: Optional[List[ReconciliationResult]] = None,
        wait_time: float = 0,
        reconcile_period: Optional[datetime.timedelta] = None,
    ):
        self.gvk = gvk
        self.results = list(results or [])
        self.wait_time = wait_time
        self.reconcile_period = reconcile_period
        self.dependent_watches = None
        self.reconciled: "Queue[ManagedResource]" = Queue()

    def safe_reconcile(self, resource, cancel_event=None):
        log.debug("Mock reconcile of %s", resource)
        if self.wait_time:
            time.sleep(self.wait_time)
        self.reconciled.put(resource)
        if self.results:
            return self.results.pop(0)
        return ReconciliationResult(requeue=False)

    def reconciled_names(self) -> List[str]:
        names = []
        while not self.reconciled.empty():
            names.append(self.reconciled.get().name)
        return names


class MockedReconcileThread(ReconcileThread):
    """Subclass of ReconcileThread that records started and finished
    reconciles along with every timer event it creates
    """

    def __init__(self, *args, **kwargs):
        self.requests = Queue()
        self.timer_events = Queue()
        self.reconciles_started = 0
        self.reconciles_finished = 0
        super().__init__(*args, **kwargs)

    def push_request(self, request: ReconcileRequest):
        self.requests.put(request)
        super().push_request(request)

    def _start_reconcile_for_request(self, request: ReconcileRequest) -> bool:
        started = super()._start_reconcile_for_request(request)
        if started:
            self.reconciles_started += 1
        return started

    def _handle_reconcile_end(self, completion) -> str:
        self.reconciles_finished += 1
        return super()._handle_reconcile_end(completion)

    def _create_timer_event_for_request(self, request, result=None):
        timer_event = super()._create_timer_event_for_request(request, result)
        if timer_event:
            self.timer_events.put(timer_event)
        return timer_event


### Helper functions
def make_ownerref(resource: dict) -> dict:
    metadata = resource.get("metadata", {})
    return {
        "apiVersion": resource.get("apiVersion"),
        "kind": resource.get("kind"),
        "name": metadata.get("name"),
        "uid": metadata.get("uid"),
    }


def make_resource(  # pylint: disable=too-many-arguments
    kind="Foo",
    namespace="test",
    api_version="foo.bar.com/v1",
    name="foo",
    spec=None,
    status=None,
    generation=1,
    resource_version=None,
    owner_refs=None,
    uid=None,
):
    return {
        "kind": kind,
        "apiVersion": api_version,
        "metadata": {
            "name": name,
            "namespace": namespace,
            "generation": generation,
            "resourceVersion": str(resource_version or random.randint(1, 1000)),
            "ownerReferences": owner_refs or [],
            "uid": uid or str(uuid4()),
        },
        "spec": spec or {},
        "status": status or {},
    }


def make_managed_object(*args, **kwargs) -> ManagedObject:
    return ManagedObject(make_resource(*args, **kwargs))
