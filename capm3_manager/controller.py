"""Per-kind controller: watch, work queue and bounded reconcile workers."""

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Optional

from kubernetes import client, watch
from kubernetes.client.rest import ApiException

from .config import WATCH_RETRY_SECONDS, WATCH_TIMEOUT_SECONDS
from .metrics import ControllerMetrics
from .scheme import ResourceDefinition

logger = logging.getLogger(__name__)


class Request(NamedTuple):
    """Identifies the object a reconcile is for."""
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}" if self.namespace else self.name


@dataclass(frozen=True)
class Result:
    """Outcome of a reconcile: whether and when to look at the object again."""
    requeue: bool = False
    requeue_after: Optional[float] = None


class Reconciler:
    """Contract every reconciler registered with the manager satisfies."""

    def reconcile(self, request: Request) -> Optional[Result]:
        raise NotImplementedError


class WorkQueue:
    """
    Queue of reconcile requests.

    An item is held at most once while waiting, and is never handed to
    two workers at the same time: adding an item that is being processed
    marks it dirty, and it is queued again when the worker calls done().
    """

    def __init__(self, base_delay: float = 0.005, max_delay: float = 1000.0):
        self._cond = threading.Condition()
        self._queue: deque = deque()
        self._dirty: set = set()
        self._processing: set = set()
        self._waiting: List = []
        self._failures: Dict[Any, int] = {}
        self._seq = itertools.count()
        self._shutting_down = False
        self._base_delay = base_delay
        self._max_delay = max_delay

    def _add_locked(self, item) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify()

    def _promote_waiting(self) -> None:
        now = time.monotonic()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, item = heapq.heappop(self._waiting)
            self._add_locked(item)

    def add(self, item) -> None:
        with self._cond:
            self._add_locked(item)

    def add_after(self, item, delay: float) -> None:
        if delay <= 0:
            self.add(item)
            return
        with self._cond:
            if self._shutting_down:
                return
            heapq.heappush(self._waiting, (time.monotonic() + delay, next(self._seq), item))
            self._cond.notify_all()

    def add_rate_limited(self, item) -> None:
        """Requeue item with per-item exponential backoff."""
        with self._cond:
            failures = self._failures.get(item, 0)
            self._failures[item] = failures + 1
        self.add_after(item, min(self._base_delay * (2 ** min(failures, 32)), self._max_delay))

    def forget(self, item) -> None:
        with self._cond:
            self._failures.pop(item, None)

    def num_requeues(self, item) -> int:
        with self._cond:
            return self._failures.get(item, 0)

    def get(self, timeout: Optional[float] = None):
        """
        Block until an item is available.

        Returns:
            The next item, or None once the queue is shut down or the
            timeout expires
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._cond:
            while True:
                if self._shutting_down:
                    return None
                self._promote_waiting()
                if self._queue:
                    item = self._queue.popleft()
                    self._processing.add(item)
                    self._dirty.discard(item)
                    return item

                wait_for = None
                if self._waiting:
                    wait_for = max(0.0, self._waiting[0][0] - time.monotonic())
                if deadline is not None:
                    remaining = deadline - time.monotonic()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(wait_for)

    def done(self, item) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify()

    def shut_down(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._cond.notify_all()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)


class Controller:
    """
    Watches one resource kind and feeds a bounded pool of reconcile workers.

    At most max_concurrent_reconciles reconciles run at once. Different
    controllers share nothing but the API client.
    """

    def __init__(
        self,
        name: str,
        definition: ResourceDefinition,
        reconciler: Reconciler,
        max_concurrent_reconciles: int,
        custom_api: client.CustomObjectsApi,
        namespace: str = "",
        label_selector: str = "",
        sync_period: float = 600.0,
        metrics: Optional[ControllerMetrics] = None,
    ):
        """
        Initialize the controller.

        Args:
            name: Controller name used in logs and metrics
            definition: Kind being watched
            reconciler: Receives a Request per changed object
            max_concurrent_reconciles: Number of worker threads
            custom_api: Client used for list and watch calls
            namespace: Namespace to watch ("" for all namespaces)
            label_selector: Optional label selector for list and watch
            sync_period: Seconds between full resyncs
            metrics: Shared reconcile counters
        """
        if max_concurrent_reconciles < 1:
            raise ValueError(f"max_concurrent_reconciles must be at least 1, got {max_concurrent_reconciles}")

        self.name = name
        self.definition = definition
        self.reconciler = reconciler
        self.max_concurrent_reconciles = max_concurrent_reconciles
        self.custom_api = custom_api
        self.namespace = namespace if definition.namespaced else ""
        self.label_selector = label_selector
        self.sync_period = sync_period
        self.metrics = metrics or ControllerMetrics()
        self.queue = WorkQueue()

        self._stop_event = threading.Event()
        self._watch: Optional[watch.Watch] = None
        self._watch_lock = threading.Lock()
        self._workers: List[threading.Thread] = []
        self._threads: List[threading.Thread] = []
        self.started = False

        self.metrics.set_max_workers(name, max_concurrent_reconciles)

    def _list_kwargs(self) -> Dict[str, Any]:
        kwargs = {
            "group": self.definition.group,
            "version": self.definition.version,
            "plural": self.definition.plural,
        }
        if self.namespace:
            kwargs["namespace"] = self.namespace
        if self.label_selector:
            kwargs["label_selector"] = self.label_selector
        return kwargs

    def _list_fn(self):
        if self.namespace:
            return self.custom_api.list_namespaced_custom_object
        return self.custom_api.list_cluster_custom_object

    def enqueue_object(self, obj: Dict[str, Any]) -> None:
        metadata = obj.get("metadata", {})
        name = metadata.get("name")
        if not name:
            return
        self.queue.add(Request(metadata.get("namespace", ""), name))

    def resync(self) -> int:
        """
        List every watched object and enqueue it.

        Returns:
            Number of objects enqueued
        """
        response = self._list_fn()(**self._list_kwargs())
        items = response.get("items", [])
        for obj in items:
            self.enqueue_object(obj)
        return len(items)

    def watch_resources(self) -> None:
        """Watch the kind and enqueue every event, reconnecting on errors."""
        logger.info(f"Starting watcher for {self.definition.plural} ({self.name})")

        while not self._stop_event.is_set():
            w = watch.Watch()
            with self._watch_lock:
                self._watch = w
            try:
                for event in w.stream(
                    self._list_fn(),
                    timeout_seconds=WATCH_TIMEOUT_SECONDS,
                    **self._list_kwargs()
                ):
                    if self._stop_event.is_set():
                        break
                    if event["type"] == "ERROR":
                        logger.warning(f"{self.name} watch returned error: {event['object']}")
                        break
                    self.enqueue_object(event["object"])
            except ApiException as e:
                logger.error(f"{self.name} watch error: {e}")
                self._stop_event.wait(WATCH_RETRY_SECONDS)
            except Exception as e:
                logger.error(f"Unexpected error in {self.name} watcher: {e}")
                self._stop_event.wait(WATCH_RETRY_SECONDS)
            finally:
                with self._watch_lock:
                    self._watch = None

    def periodic_resync(self) -> None:
        """Enqueue every object once per sync period."""
        logger.info(f"Starting periodic resync for {self.name} (interval: {self.sync_period}s)")

        while not self._stop_event.wait(self.sync_period):
            try:
                count = self.resync()
                logger.debug(f"{self.name} resync enqueued {count} objects")
            except ApiException as e:
                logger.error(f"{self.name} resync error: {e}")

    def process_next_item(self) -> bool:
        """
        Reconcile one item from the queue.

        Returns:
            False once the queue has shut down
        """
        request = self.queue.get()
        if request is None:
            return False

        self.metrics.worker_started(self.name)
        try:
            result = self.reconciler.reconcile(request)
        except Exception as e:
            logger.error(f"Reconciler error for {self.name} {request}: {e}", exc_info=True)
            self.metrics.observe_reconcile(self.name, "error")
            self.queue.add_rate_limited(request)
        else:
            if result is not None and result.requeue_after:
                self.queue.forget(request)
                self.queue.add_after(request, result.requeue_after)
                self.metrics.observe_reconcile(self.name, "requeue_after")
            elif result is not None and result.requeue:
                self.queue.add_rate_limited(request)
                self.metrics.observe_reconcile(self.name, "requeue")
            else:
                self.queue.forget(request)
                self.metrics.observe_reconcile(self.name, "success")
        finally:
            self.metrics.worker_finished(self.name)
            self.queue.done(request)
        return True

    def _worker(self) -> None:
        while self.process_next_item():
            pass

    def start(self, watch_source: bool = True) -> None:
        """Start the watcher, the resync loop and the worker pool."""
        if self.started:
            raise RuntimeError(f"controller {self.name} already started")
        self.started = True

        logger.info(
            f"Starting controller {self.name} "
            f"(worker count: {self.max_concurrent_reconciles})"
        )

        if watch_source:
            self._threads = [
                threading.Thread(target=self.watch_resources, name=f"{self.name}-watcher", daemon=True),
                threading.Thread(target=self.periodic_resync, name=f"{self.name}-resync", daemon=True),
            ]
        for i in range(self.max_concurrent_reconciles):
            self._workers.append(
                threading.Thread(target=self._worker, name=f"{self.name}-worker-{i}", daemon=True)
            )
        for thread in self._threads + self._workers:
            thread.start()

    def stop(self) -> None:
        """Stop taking new work. In-flight reconciles are left to finish."""
        logger.info(f"Stopping controller {self.name}")
        self._stop_event.set()
        self.queue.shut_down()
        with self._watch_lock:
            if self._watch is not None:
                self._watch.stop()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Join the worker threads, draining in-flight reconciles."""
        for thread in self._workers:
            thread.join(timeout)
        logger.info(f"All workers finished for {self.name}")
