"""
Tests for the WorkerThread
"""

# Standard
from contextlib import contextmanager

# Third Party
import pytest

# Local
from kloop.reconcile import Outcome, ReconcileResult
from kloop.resource import ResourceKey
from kloop.test_helpers.helpers import (
    TEST_NAMESPACE,
    WIDGET_KIND,
    ToggleLeadershipManager,
    make_store,
    wait_for,
)
from kloop.threads.worker import WorkerThread
from kloop.workqueue import ItemExponentialFailureRateLimiter, RateLimitingQueue

KEY = ResourceKey(WIDGET_KIND, "foo", TEST_NAMESPACE)

## Helpers #####################################################################


class ScriptedReconciler:
    """Reconciler stand-in that returns (or raises) queued results in order
    and then reports DONE
    """

    def __init__(self, *results):
        self.store = make_store()
        self.results = list(results)
        self.calls = []
        self.contexts = []

    def reconcile(self, key, ctx):
        self.calls.append(key)
        self.contexts.append(ctx)
        result = self.results.pop(0) if self.results else ReconcileResult.done()
        if isinstance(result, Exception):
            raise result
        return result


@contextmanager
def worker_queue():
    queue = RateLimitingQueue(
        rate_limiter=ItemExponentialFailureRateLimiter(base_delay=0.05, max_delay=1)
    )
    try:
        yield queue
    finally:
        queue.shutdown()


def process_once(worker, queue):
    """Hand the worker one key taken from the queue like its run loop does"""
    queue.add(KEY)
    key, shutdown = queue.get(timeout=1)
    assert key == KEY and not shutdown
    return worker.process(key)


## Outcomes ####################################################################


@pytest.mark.timeout(5)
def test_done_forgets_failures():
    reconciler = ScriptedReconciler(ReconcileResult.error(RuntimeError("x")))
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue)
        process_once(worker, queue)
        assert queue.num_requeues(KEY) == 1

        assert wait_for(lambda: len(queue) == 1)
        key, _ = queue.get(timeout=1)
        assert worker.process(key).outcome == Outcome.DONE
        assert queue.num_requeues(KEY) == 0
        assert len(queue) == 0
        assert not queue.is_processing(KEY)


@pytest.mark.timeout(5)
def test_requeue_after():
    reconciler = ScriptedReconciler(ReconcileResult.requeue_after(0.1))
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue)
        process_once(worker, queue)
        assert len(queue) == 0
        assert queue.num_waiting() == 1
        assert queue.num_requeues(KEY) == 0
        assert wait_for(lambda: len(queue) == 1)


@pytest.mark.timeout(5)
def test_requeue_immediate():
    """Make sure an immediate requeue is available as soon as the key is done"""
    reconciler = ScriptedReconciler(ReconcileResult.requeue_immediate())
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue)
        process_once(worker, queue)
        key, _ = queue.get(timeout=0)
        assert key == KEY


@pytest.mark.timeout(5)
def test_error_backs_off():
    reconciler = ScriptedReconciler(
        ReconcileResult.error(RuntimeError("first")),
        ReconcileResult.error(RuntimeError("second")),
    )
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue)
        process_once(worker, queue)
        assert queue.num_requeues(KEY) == 1
        assert queue.num_waiting() == 1

        assert wait_for(lambda: len(queue) == 1)
        key, _ = queue.get(timeout=1)
        worker.process(key)
        assert queue.num_requeues(KEY) == 2


@pytest.mark.timeout(5)
def test_unhandled_exception_is_error():
    """Make sure an exception escaping the reconciler is treated as an error"""
    reconciler = ScriptedReconciler(ValueError("unexpected"))
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue)
        result = process_once(worker, queue)
        assert result.outcome == Outcome.ERROR
        assert isinstance(result.exception, ValueError)
        assert queue.num_requeues(KEY) == 1
        assert not queue.is_processing(KEY)


def test_reconcile_timeout_passed_to_context():
    reconciler = ScriptedReconciler()
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue, reconcile_timeout=30)
        process_once(worker, queue)
    remaining = reconciler.contexts[0].remaining()
    assert 0 < remaining <= 30


## Run Loop ####################################################################


@pytest.mark.timeout(10)
def test_worker_only_runs_as_leader():
    """Make sure keys wait in the queue while this replica is not the leader"""
    reconciler = ScriptedReconciler()
    leadership = ToggleLeadershipManager(leader=False)
    with worker_queue() as queue:
        worker = WorkerThread(reconciler, queue, leadership_manager=leadership)
        worker.start_thread()
        try:
            queue.add(KEY)
            assert not wait_for(lambda: reconciler.calls, timeout=0.5)
            assert len(queue) == 1

            leadership.leader.set()
            assert wait_for(lambda: reconciler.calls == [KEY])
            assert wait_for(lambda: not queue.is_processing(KEY))
        finally:
            worker.stop_thread()
            worker.join(5)


@pytest.mark.timeout(10)
def test_worker_stops_on_queue_shutdown():
    reconciler = ScriptedReconciler()
    with worker_queue() as queue:
        worker = WorkerThread(
            reconciler, queue, leadership_manager=ToggleLeadershipManager()
        )
        worker.start_thread()
        queue.shutdown()
        worker.join(5)
        assert not worker.is_alive()
