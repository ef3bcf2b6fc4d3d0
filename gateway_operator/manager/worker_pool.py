"""
The WorkerPool runs reconciles on a bounded set of worker threads with at most
one reconcile in flight per owner key
"""

# Standard
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import Dict, Iterable, Optional, Set
import threading

# First Party
import alog

# Local
from .. import config
from ..controllers import ControllerBase
from ..deploy_manager import DeployManagerBase
from ..reconcile import ReconcileManager, ReconciliationResult
from .base import OwnerKey
from .timer import TimerEvent, TimerThread

log = alog.use_channel("WRKPL")


class WorkerPool:  # pylint: disable=too-many-instance-attributes
    """Serializes reconciles per owner key and runs distinct keys in parallel.

    A key that is submitted while its reconcile is queued or running is marked
    pending. Every reconcile reads the owner fresh, so a pending mark is all
    that needs to be kept: the newest state always wins. Requeues are
    scheduled on a timer thread and unexpected errors back off exponentially
    per key.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        controllers: Iterable[ControllerBase],
        deploy_manager: DeployManagerBase,
        reconcile_manager: Optional[ReconcileManager] = None,
        max_workers: Optional[int] = None,
        timer_thread: Optional[TimerThread] = None,
    ):
        """
        Args:
            controllers:  Iterable[ControllerBase]
                One controller per owner kind
            deploy_manager:  DeployManagerBase
                Used to read the owner at the start of each reconcile
            reconcile_manager:  Optional[ReconcileManager]
                Runs and classifies the reconciles
            max_workers:  Optional[int]
                The number of keys reconciled at once. Defaults to
                max_concurrent_reconciles.
            timer_thread:  Optional[TimerThread]
                The timer used for requeues
        """
        self.controllers: Dict[str, ControllerBase] = {
            controller.kind: controller for controller in controllers
        }
        self.deploy_manager = deploy_manager
        self.reconcile_manager = reconcile_manager or ReconcileManager()
        self.max_workers = max_workers or config.max_concurrent_reconciles
        self.timer_thread = timer_thread or TimerThread()

        self._executor = ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="reconcile"
        )
        self._lock = threading.Lock()
        self._in_flight: Set[OwnerKey] = set()
        self._pending: Set[OwnerKey] = set()
        self._failures: Dict[OwnerKey, int] = {}
        self._timer_events: Dict[OwnerKey, TimerEvent] = {}
        self._stopped = False
        self._idle = threading.Condition(self._lock)
        # Number of finished reconciles, used to tell whether the pool settled
        self.completed = 0

    ## Public Interface ########################################################

    def start(self):
        self.timer_thread.start_thread()

    def stop(self, wait: bool = True):
        """Stop accepting keys and wait for the running reconciles"""
        with self._lock:
            self._stopped = True
            for event in self._timer_events.values():
                event.cancel()
            self._timer_events.clear()
        self.timer_thread.stop_thread()
        self._executor.shutdown(wait=wait)

    def submit(self, key: OwnerKey) -> bool:
        """Request a reconcile of the owner

        Returns:
            accepted:  bool
                False if the pool is stopped or the kind has no controller
        """
        if key.kind not in self.controllers:
            log.debug2("No controller for %s", key)
            return False
        with self._lock:
            if self._stopped:
                return False
            timer_event = self._timer_events.pop(key, None)
            if timer_event is not None:
                timer_event.cancel()
            if key in self._in_flight:
                log.debug3("Marking %s pending", key)
                self._pending.add(key)
                return True
            self._in_flight.add(key)
            log.debug2("Submitting %s", key)
            self._executor.submit(self._run, key)
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until no reconcile is queued, running or pending

        Returns:
            idle:  bool
                False if the timeout expired first
        """
        with self._idle:
            return self._idle.wait_for(
                lambda: not self._in_flight and not self._pending, timeout=timeout
            )

    ## Implementation Details ##################################################

    def _run(self, key: OwnerKey):
        result = None
        try:
            result = self._reconcile(key)
        # Errors must never escape into the executor where they would be lost
        except Exception as exc:  # pylint: disable=broad-except
            log.error("Unhandled error reconciling %s: %s", key, exc, exc_info=True)
            result = ReconciliationResult(requeue=True, exception=exc, backoff=True)
        finally:
            with self._lock:
                self.completed += 1
                rerun = key in self._pending and not self._stopped
                self._pending.discard(key)
                if rerun:
                    # The key stays in flight so no other worker can take it
                    log.debug3("Rerunning pending %s", key)
                    self._executor.submit(self._run, key)
                else:
                    self._in_flight.discard(key)
                    self._schedule(key, result)
                self._idle.notify_all()

    def _reconcile(self, key: OwnerKey) -> ReconciliationResult:
        controller = self.controllers[key.kind]
        success, content = self.deploy_manager.get_object_current_state(
            kind=key.kind,
            name=key.name,
            namespace=key.namespace,
            api_version=controller.api_version,
        )
        if not success:
            log.warning("Failed to read %s", key)
            return ReconciliationResult(requeue=True, backoff=True)
        if content is None:
            log.debug("%s no longer exists", key)
            return ReconciliationResult(requeue=False)
        return self.reconcile_manager.safe_reconcile(controller, content)

    def _schedule(self, key: OwnerKey, result: Optional[ReconciliationResult]):
        """Schedule the requeue a result asks for. Must hold the lock."""
        if result is None or not result.requeue:
            self._failures.pop(key, None)
            return
        if self._stopped:
            return
        delay = self._requeue_delay(key, result)
        log.debug("Requeueing %s in %s", key, delay)
        event = self.timer_thread.put_event(delay, self.submit, key)
        if event is not None:
            self._timer_events[key] = event

    def _requeue_delay(self, key: OwnerKey, result: ReconciliationResult) -> timedelta:
        if not result.backoff:
            self._failures.pop(key, None)
            return result.requeue_params.requeue_after
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        seconds = min(
            float(config.backoff_base_seconds) * 2 ** (failures - 1),
            float(config.backoff_max_seconds),
        )
        return timedelta(seconds=seconds)
