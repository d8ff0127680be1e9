"""
The ReconcileThread is the heart of the PythonWatchManager. It runs reconciles
on a bounded worker pool, making sure only one reconcile per resource runs at
a time, and schedules requeue and periodic reconciles.
"""
# Standard
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Union
import os
import queue
import threading

# First Party
import alog

# Local
from ... import config
from ...deploy_manager import DeployManagerBase, KubeEventType
from ...reconcile import ReconciliationResult
from ..types import ReconcileRequest, ReconcileRequestType, TimerEvent
from .base import ThreadBase
from .timer import TimerThread

log = alog.use_channel("RCLTHRD")


@dataclass
class ReconcileCompletion:
    """Marker pushed to the request queue once a reconcile has finished"""

    request: ReconcileRequest
    result: Optional[ReconciliationResult]


class ReconcileThread(ThreadBase):  # pylint: disable=too-many-instance-attributes
    """This class is the core reconciliation class that hands requests to the
    worker pool, tracks the running reconciles, and handles their results.
    Requests for a resource that is already being reconciled wait in the
    pending map, which keeps only the newest request per resource.
    """

    def __init__(
        self,
        deploy_manager: DeployManagerBase = None,
        max_concurrent_reconciles: Optional[int] = None,
    ):
        """Initialize the required queues, helper threads, and reconcile tracking

        Args:
            deploy_manager: DeployManagerBase = None
                The deploy manager used throughout the thread
            max_concurrent_reconciles: Optional[int] = None
                Size of the worker pool. Defaults to the config value or the
                number of cpus.
        """
        super().__init__(name="reconcile_thread", deploy_manager=deploy_manager)

        self.request_queue: "queue.Queue[Union[ReconcileRequest, ReconcileCompletion]]" = (
            queue.Queue()
        )
        self.timer_thread: TimerThread = TimerThread()

        self.running_reconciles: Dict[str, ReconcileRequest] = {}
        self.pending_reconciles: Dict[str, ReconcileRequest] = {}
        self.event_map: Dict[str, TimerEvent] = {}

        # Set while the worker pool is full
        self.process_overload = threading.Event()

        self.max_concurrent_reconciles = (
            max_concurrent_reconciles
            or config.max_concurrent_reconciles
            or os.cpu_count()
        )
        self.executor = ThreadPoolExecutor(
            max_workers=self.max_concurrent_reconciles,
            thread_name_prefix="reconcile_worker",
        )

    def run(self):
        """Wait for either a new reconcile request or a reconcile completion.
        A new request starts a reconcile unless one is already running for the
        resource or the pool is full, in which case it becomes the pending
        request for the resource. A completion schedules any follow-up event
        and starts pending requests.
        """
        while not self.should_stop():
            items = self._get_all_requests()
            for item in items:
                if isinstance(item, ReconcileCompletion):
                    uid = self._handle_reconcile_end(item)
                    if self.process_overload.is_set():
                        for pending_uid in list(self.pending_reconciles.keys()):
                            if not self._handle_pending_reconcile(pending_uid):
                                break
                    else:
                        self._handle_pending_reconcile(uid)
                    continue

                if item.type == ReconcileRequestType.STOPPED or self.should_stop():
                    return

                log.debug3("Got request %s from queue", item)
                if item.uid() in self.running_reconciles or (
                    not self._start_reconcile_for_request(item)
                ):
                    self._push_to_pending_reconcile(item)

    ## Class Interface #########################################################

    def start_thread(self):
        """Override start_thread to start the timer"""
        self.timer_thread.start_thread()
        super().start_thread()

    def stop_thread(self):
        """Stop accepting requests and wait for running reconciles to finish.
        Running reconciles observe the shutdown event as their cancellation
        signal.
        """
        super().stop_thread()
        self.timer_thread.stop_thread()

        log.debug("Pushing stop reconcile request")
        self.request_queue.put(
            ReconcileRequest(None, ReconcileRequestType.STOPPED, None)
        )
        if self.is_alive() and threading.current_thread() is not self:
            self.join()

        log.info("Waiting for Running Reconciles to end")
        self.executor.shutdown(wait=True)

    ## Public Interface ########################################################

    def push_request(self, request: ReconcileRequest):
        """Push request to reconcile queue

        Args:
            request: ReconcileRequest
                the ReconcileRequest to add to the queue
        """
        log.info(
            "Pushing request '%s' to reconcile queue",
            request.type,
            extra={"resource": request.resource.definition},
        )
        self.request_queue.put(request)

    ## Event Handlers ##########################################################

    def _handle_reconcile_end(self, completion: ReconcileCompletion) -> str:
        """Clear the running reconcile and create a requeue/periodic event if
        one is needed

        Returns:
            uid: str
                The uid of the resource that finished
        """
        request = completion.request
        result = completion.result
        uid = request.uid()
        self.running_reconciles.pop(uid, None)

        log.info(
            "Reconcile completed with result %s",
            result,
            extra={"resource": request.resource.definition},
        )

        # Cancel any existing requeue events
        if uid in self.event_map:
            log.debug2("Marking event as stale: %s", self.event_map[uid])
            self.event_map.pop(uid).cancel()

        event = self._create_timer_event_for_request(request, result)
        if event:
            self.event_map[uid] = event
        return uid

    def _create_timer_event_for_request(
        self, request: ReconcileRequest, result: Optional[ReconciliationResult] = None
    ) -> Optional[TimerEvent]:
        """Enqueue either a requeue or periodic reconcile request for a given
        result.

        Args:
            request: ReconcileRequest
                The original reconcile request
            result: ReconciliationResult = None
                The result of the reconcile

        Returns:
            timer_event: Optional[TimerEvent]
                The timer event if one was created
        """
        reconcile_period = getattr(request.reconciler, "reconcile_period", None)
        if (not result or not result.requeue) and not reconcile_period:
            return None

        if result and not result.requeue and (
            result.deleted or request.type == KubeEventType.DELETED
        ):
            return None

        # A newer request is already waiting
        if request.uid() in self.pending_reconciles:
            return None

        if result and result.requeue:
            requeue_time = datetime.now() + result.requeue_params.requeue_after
            request_type = ReconcileRequestType.REQUEUED
        else:
            requeue_time = datetime.now() + reconcile_period
            request_type = ReconcileRequestType.PERIODIC

        future_request = ReconcileRequest(
            request.reconciler, request_type, request.resource
        )
        log.debug3("Pushing requeue request to timer: %s", future_request)
        return self.timer_thread.put_event(
            requeue_time, self.push_request, future_request
        )

    ## Pending Event Helpers ###################################################

    def _handle_pending_reconcile(self, uid: str) -> bool:
        """Start reconcile for pending request if there is one

        Returns:
            successful_start:bool
                If there was a pending reconcile that got started"""
        if uid in self.running_reconciles or uid not in self.pending_reconciles:
            return False

        request = self.pending_reconciles[uid]
        log.debug4("Got request %s from pending reconciles", request)
        if self._start_reconcile_for_request(request):
            self.pending_reconciles.pop(uid)
            return True
        return False

    def _push_to_pending_reconcile(self, request: ReconcileRequest):
        """Push a request to the pending map if it's newer than the current one"""
        uid = request.uid()
        if uid in self.pending_reconciles:
            if request.timestamp > self.pending_reconciles[uid].timestamp:
                log.debug3("Updating reconcile queue with event %s", request)
                self.pending_reconciles[uid] = request
            else:
                log.debug4("Event in queue is newer than event %s", request)
        else:
            log.debug3("Adding event %s to reconcile queue", request)
            self.pending_reconciles[uid] = request

    ## Worker Functions ########################################################

    def _start_reconcile_for_request(self, request: ReconcileRequest) -> bool:
        """Hand a request to the worker pool

        Returns:
            successfully_started: bool
                If a reconcile could be started
        """
        if self.should_stop():
            return False

        if len(self.running_reconciles) >= self.max_concurrent_reconciles:
            log.warning("Unable to start reconcile, max concurrent jobs reached")
            self.process_overload.set()
            return False

        self.process_overload.clear()
        log.info(
            "Starting reconcile for request %s",
            request.type,
            extra={"resource": request.resource.definition},
        )
        self.running_reconciles[request.uid()] = request
        future: Future = self.executor.submit(self._run_reconcile, request)
        log.debug3("Submitted reconcile future %s", future)
        return True

    def _run_reconcile(self, request: ReconcileRequest):
        """Worker body. The completion is always reported so that the resource
        is released for the next request.
        """
        result = None
        try:
            result = request.reconciler.safe_reconcile(
                request.resource, cancel_event=self.shutdown
            )
        finally:
            self.request_queue.put(ReconcileCompletion(request, result))

    ## Queue Functions #########################################################

    def _get_all_requests(
        self,
    ) -> List[Union[ReconcileRequest, ReconcileCompletion]]:
        """Block for the next item and then drain the rest of the queue. A
        stop request is returned on its own.
        """
        item = self.request_queue.get()
        items = [item]
        while not self._is_stop(item):
            try:
                item = self.request_queue.get(block=False)
            except queue.Empty:
                break
            if self._is_stop(item):
                return [item]
            items.append(item)
        return items

    @staticmethod
    def _is_stop(item) -> bool:
        return (
            isinstance(item, ReconcileRequest)
            and item.type == ReconcileRequestType.STOPPED
        )
