"""Work queue and worker threads driving the reconciler.

The queue guarantees a key is processed by at most one worker at a time. A
key added while it is being processed is marked dirty and handed out again
once the worker calls ``done``. Delayed requeues wait in a heap of deadlines.
"""

import heapq
import itertools
import threading
import time
from collections.abc import Callable

from clusterops.config import CLUSTER_LABEL, CLUSTER_NAMESPACE_LABEL
from clusterops.exceptions import NotFoundError
from clusterops.logging_config import get_logger
from clusterops.models import Cluster, Machine, RecordKey, parse_key
from clusterops.reconciler import ClusterReconciler
from clusterops.result import ReconcileResult
from clusterops.store import ResourceStore, WatchEvent

logger = get_logger(__name__)


class WorkQueue:
    """Deduplicating queue of record keys with delayed re-adds."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._cond = threading.Condition()
        self._queue: list[RecordKey] = []
        self._dirty: set[RecordKey] = set()
        self._processing: set[RecordKey] = set()
        self._waiting: list[tuple[float, int, RecordKey]] = []
        self._counter = itertools.count()
        self._shutdown = False

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        return self._shutdown

    def add(self, key: RecordKey) -> None:
        with self._cond:
            if self._shutdown or key in self._dirty:
                return
            self._dirty.add(key)
            if key in self._processing:
                return
            self._queue.append(key)
            self._cond.notify()

    def add_after(self, key: RecordKey, delay: float) -> None:
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutdown:
                return
            heapq.heappush(self._waiting, (self._clock() + delay, next(self._counter), key))
            self._cond.notify()

    def get(self, timeout: float | None = None) -> RecordKey | None:
        """Block until a key is ready. Returns None on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                self._promote_due()
                if self._queue:
                    key = self._queue.pop(0)
                    self._dirty.discard(key)
                    self._processing.add(key)
                    return key
                if self._shutdown:
                    return None

                wait = None
                if self._waiting:
                    wait = max(self._waiting[0][0] - self._clock(), 0.0)
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait = remaining if wait is None else min(wait, remaining)
                self._cond.wait(wait)

    def done(self, key: RecordKey) -> None:
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty:
                self._queue.append(key)
                self._cond.notify()

    def shutdown(self) -> None:
        with self._cond:
            self._shutdown = True
            self._cond.notify_all()

    def _promote_due(self) -> None:
        now = self._clock()
        while self._waiting and self._waiting[0][0] <= now:
            _, _, key = heapq.heappop(self._waiting)
            if key in self._dirty:
                continue
            self._dirty.add(key)
            if key not in self._processing:
                self._queue.append(key)


class Controller:
    """Runs cluster reconciles on worker threads, fed by store watch events and resync."""

    def __init__(self, reconciler: ClusterReconciler, workers: int | None = None):
        self.reconciler = reconciler
        self.store: ResourceStore = reconciler.store
        self.settings = reconciler.settings
        self.workers = workers or self.settings.workers
        self.queue = WorkQueue()
        self._threads: list[threading.Thread] = []
        self._stop = threading.Event()
        self._unwatch: Callable[[], None] | None = None

    def enqueue_all(self) -> int:
        clusters = self.store.list(Cluster)
        for cluster in clusters:
            self.queue.add(cluster.key())
        return len(clusters)

    def handle_event(self, event: WatchEvent) -> None:
        """Map a store change to the cluster key(s) it may affect."""
        record = event.record
        if isinstance(record, Cluster):
            self.queue.add(record.key())
            return
        if isinstance(record, Machine):
            # freed or new machines can unblock any pending allocation
            self.enqueue_all()
            return

        labels = record.metadata.labels
        name = labels.get(CLUSTER_LABEL)
        if name:
            namespace = labels.get(CLUSTER_NAMESPACE_LABEL, self.settings.namespace)
            self.queue.add(RecordKey(namespace, name))

    def process_next(self, timeout: float | None = None) -> bool:
        """Reconcile one key from the queue. Returns False once the queue is shut down."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return not self.queue.shutting_down
        try:
            result = self.reconciler.reconcile(key)
        except Exception as e:
            logger.error(f"Unexpected error reconciling {key}: {e}", exc_info=True)
            result = ReconcileResult(requeue_after=self.settings.requeue_short)
        finally:
            self.queue.done(key)

        if result.error is not None:
            logger.warning(f"Reconcile of {key}: {result.error.message}")
        if result.requeue:
            self.queue.add_after(key, result.requeue_after)
        return True

    def start(self) -> None:
        self._unwatch = self.store.watch(self.handle_event)
        self.enqueue_all()

        for i in range(self.workers):
            thread = threading.Thread(
                target=self._worker, name=f"reconcile-worker-{i}", daemon=True
            )
            thread.start()
            self._threads.append(thread)

        resync = threading.Thread(target=self._resync, name="resync", daemon=True)
        resync.start()
        self._threads.append(resync)
        logger.info(f"Controller started with {self.workers} workers")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        if self._unwatch is not None:
            self._unwatch()
            self._unwatch = None
        self.queue.shutdown()
        for thread in self._threads:
            thread.join(timeout)
        self._threads.clear()
        logger.info("Controller stopped")

    def run(self) -> None:
        """Start and block until interrupted."""
        self.start()
        try:
            while not self._stop.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("Interrupted, shutting down")
        finally:
            self.stop()

    def _worker(self) -> None:
        while self.process_next():
            pass

    def _resync(self) -> None:
        while not self._stop.wait(self.settings.resync_period):
            count = self.enqueue_all()
            logger.debug(f"Resync queued {count} clusters")


def reconcile_until_settled(
    reconciler: ClusterReconciler,
    key: "str | RecordKey",
    max_passes: int = 50,
    wait: bool = True,
    on_pass: Callable[[int, ReconcileResult], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> ReconcileResult:
    """Reconcile a single cluster in the calling thread.

    A further pass runs whenever a requeue was requested or the pass changed
    the cluster record (which would trigger a watch event in the controller).
    Requested delays are slept unless ``wait`` is False.

    Returns:
        The result of the last pass
    """
    key = parse_key(key)
    result = ReconcileResult()
    for n in range(1, max_passes + 1):
        before = _resource_version(reconciler, key)
        result = reconciler.reconcile(key)
        if on_pass is not None:
            on_pass(n, result)

        if result.requeue:
            if wait and result.requeue_after:
                sleep(result.requeue_after)
            continue
        if _resource_version(reconciler, key) == before:
            break
    return result


def _resource_version(reconciler: ClusterReconciler, key: RecordKey) -> int | None:
    try:
        return reconciler.store.get(Cluster, key.namespace, key.name).metadata.resource_version
    except NotFoundError:
        return None
