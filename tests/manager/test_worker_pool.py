"""
Tests for the WorkerPool
"""
# Standard
from datetime import timedelta
from unittest import mock
import threading

# Third Party
import pytest

# Local
from gateway_operator import constants
from gateway_operator.exceptions import ConflictError, ValidationError
from gateway_operator.manager import OwnerKey, WorkerPool
from gateway_operator.reconcile import ReconciliationResult, RequeueParams
from gateway_operator.test_helpers.helpers import (
    TEST_NAMESPACE,
    MockDeployManager,
    library_config,
    setup_owner,
)

## Helpers #####################################################################


class BlockingController:
    """Controller stand-in that records its reconciles and can be held inside
    a reconcile until released
    """

    kind = constants.KIND_DATAPLANE
    api_version = constants.OPERATOR_API_VERSION

    def __init__(self, block=False, error=None, requeue_params=None):
        self.release = threading.Event()
        if not block:
            self.release.set()
        self.started = threading.Semaphore(0)
        self.error = error
        self.requeue_params = requeue_params
        self.lock = threading.Lock()
        self.calls = []
        self.running = {}
        self.max_running = {}

    def reconcile(self, owner):
        with self.lock:
            self.calls.append(owner.name)
            self.running[owner.name] = self.running.get(owner.name, 0) + 1
            self.max_running[owner.name] = max(
                self.max_running.get(owner.name, 0), self.running[owner.name]
            )
        self.started.release()
        self.release.wait(5)
        with self.lock:
            self.running[owner.name] -= 1
        if self.error is not None:
            raise self.error
        return self.requeue_params


def make_pool(controller, *names, **kwargs):
    dm = MockDeployManager(
        resources=[setup_owner(name=name) for name in names or ["test-owner"]]
    )
    timer_thread = mock.MagicMock()
    pool = WorkerPool([controller], dm, timer_thread=timer_thread, **kwargs)
    return pool, timer_thread


def key(name="test-owner", kind=constants.KIND_DATAPLANE):
    return OwnerKey(kind, TEST_NAMESPACE, name)


## Tests #######################################################################


@pytest.mark.timeout(10)
def test_one_reconcile_per_key():
    """Submitting a key while it is reconciled runs it again once afterwards,
    never concurrently
    """
    controller = BlockingController(block=True)
    pool, _ = make_pool(controller)
    try:
        assert pool.submit(key())
        assert controller.started.acquire(timeout=5)
        assert pool.submit(key())
        assert pool.submit(key())
        controller.release.set()
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
    assert controller.calls == ["test-owner", "test-owner"]
    assert controller.max_running["test-owner"] == 1
    assert pool.completed == 2


@pytest.mark.timeout(10)
def test_distinct_keys_run_in_parallel():
    controller = BlockingController(block=True)
    pool, _ = make_pool(controller, "a", "b", max_workers=2)
    try:
        pool.submit(key("a"))
        pool.submit(key("b"))
        assert controller.started.acquire(timeout=5)
        assert controller.started.acquire(timeout=5)
        controller.release.set()
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
    assert sorted(controller.calls) == ["a", "b"]


def test_unknown_kind_rejected():
    pool, _ = make_pool(BlockingController())
    try:
        assert not pool.submit(key(kind="Unknown"))
    finally:
        pool.stop()


def test_stopped_pool_rejects_keys():
    pool, _ = make_pool(BlockingController())
    pool.stop()
    assert not pool.submit(key())


@pytest.mark.timeout(10)
def test_deleted_owner_not_requeued():
    controller = BlockingController()
    pool, timer_thread = make_pool(controller)
    try:
        pool.submit(key("gone"))
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
    assert controller.calls == []
    assert pool.completed == 1
    timer_thread.put_event.assert_not_called()


@pytest.mark.timeout(10)
def test_requeue_scheduled_on_timer():
    requeue_params = RequeueParams(requeue_after=timedelta(seconds=3))
    pool, timer_thread = make_pool(BlockingController(requeue_params=requeue_params))
    try:
        pool.submit(key())
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
    timer_thread.put_event.assert_called_once_with(
        timedelta(seconds=3), pool.submit, key()
    )


@pytest.mark.timeout(10)
def test_conflict_requeued_after_fixed_delay():
    with library_config(conflict_requeue_seconds=0.2):
        pool, timer_thread = make_pool(
            BlockingController(error=ConflictError("stale"))
        )
        try:
            pool.submit(key())
            assert pool.wait_idle(timeout=5)
        finally:
            pool.stop()
    delay = timer_thread.put_event.call_args[0][0]
    assert delay == timedelta(seconds=0.2)


@pytest.mark.timeout(10)
def test_validation_error_not_requeued():
    pool, timer_thread = make_pool(BlockingController(error=ValidationError("bad")))
    try:
        pool.submit(key())
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
    timer_thread.put_event.assert_not_called()


def test_backoff_grows_and_resets():
    """Unexpected errors back off exponentially up to the cap. A result
    without backoff resets the count.
    """
    pool, _ = make_pool(BlockingController())
    failed = ReconciliationResult(requeue=True, backoff=True)
    try:
        with library_config(backoff_base_seconds=1.0, backoff_max_seconds=5.0):
            delays = [pool._requeue_delay(key(), failed) for _ in range(5)]
            assert delays == [
                timedelta(seconds=1),
                timedelta(seconds=2),
                timedelta(seconds=4),
                timedelta(seconds=5),
                timedelta(seconds=5),
            ]
            pool._requeue_delay(
                key(),
                ReconciliationResult(
                    requeue=True,
                    requeue_params=RequeueParams(requeue_after=timedelta(seconds=9)),
                ),
            )
            assert pool._requeue_delay(key(), failed) == timedelta(seconds=1)
            assert pool._requeue_delay(key("other"), failed) == timedelta(seconds=1)
    finally:
        pool.stop()


@pytest.mark.timeout(10)
def test_submit_cancels_pending_requeue():
    """A new event for a key replaces its scheduled requeue"""
    requeue_params = RequeueParams(requeue_after=timedelta(seconds=30))
    pool, timer_thread = make_pool(BlockingController(requeue_params=requeue_params))
    event = mock.MagicMock()
    timer_thread.put_event.return_value = event
    try:
        pool.submit(key())
        assert pool.wait_idle(timeout=5)
        pool.submit(key())
        event.cancel.assert_called_once()
        assert pool.wait_idle(timeout=5)
    finally:
        pool.stop()
