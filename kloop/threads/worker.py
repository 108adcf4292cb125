"""
The WorkerThread pulls keys off the work queue, runs the reconciler and turns
each outcome into a queue decision
"""

# Standard
from typing import Optional

# First Party
import alog

# Local
from .. import config
from ..leader_election import LeadershipManagerBase
from ..reconcile import Outcome, ReconcileContext, ReconcileResult
from ..reconciler import Reconciler
from ..resource import ResourceKey
from ..utils import parse_seconds
from ..workqueue import RateLimitingQueue
from .base import ThreadBase

log = alog.use_channel("WRKTHRD")

# How long a worker waits on the queue before checking for shutdown
WORKER_POLL_TIME = 0.5


class WorkerThread(ThreadBase):
    """One worker of the reconcile pool. Workers only dequeue while this
    replica is the leader, and no reconcile error ever escapes the thread.
    """

    def __init__(
        self,
        reconciler: Reconciler,
        queue: RateLimitingQueue,
        leadership_manager: Optional[LeadershipManagerBase] = None,
        name: Optional[str] = None,
        reconcile_timeout: Optional[float] = None,
    ):
        """
        Args:
            reconciler:  Reconciler
                The reconciler to run for each key
            queue:  RateLimitingQueue
                The shared work queue
            leadership_manager:  Optional[LeadershipManagerBase]
                Gates dequeuing on leadership
            name:  Optional[str]
                The thread name
            reconcile_timeout:  Optional[float]
                Per-call deadline. Defaults to config.reconcile_timeout
        """
        super().__init__(
            name=name or "worker_thread",
            daemon=True,
            store=reconciler.store,
            leadership_manager=leadership_manager,
        )
        self.reconciler = reconciler
        self.queue = queue
        self.reconcile_timeout = (
            reconcile_timeout
            if reconcile_timeout is not None
            else parse_seconds(config.reconcile_timeout)
        )

    def run(self):
        """Process keys until the queue shuts down or the thread is stopped"""
        while self.check_preconditions():
            key, shutdown = self.queue.get(timeout=WORKER_POLL_TIME)
            if shutdown:
                break
            if key is None:
                continue

            # Leadership may have been lost while this worker was blocked
            if not self.leadership_manager.is_leader():
                log.debug2("Not leader. Returning %s to the queue", key)
                self.queue.done(key)
                self.queue.add(key)
                continue

            self.process(key)
        log.debug("%s stopped", self.name)

    def process(self, key: ResourceKey) -> ReconcileResult:
        """Reconcile one key held from the queue and apply the outcome. The key
        is always marked done.
        """
        ctx = ReconcileContext(
            key,
            timeout=self.reconcile_timeout,
            leadership_manager=self.leadership_manager,
        )
        try:
            result = self.reconciler.reconcile(key, ctx)
        # Capture all generic exceptions
        except Exception as err:  # pylint: disable=broad-except
            log.error(
                "Unhandled error reconciling %s: %s",
                key,
                err,
                exc_info=True,
                extra=ctx.log_extra,
            )
            result = ReconcileResult.error(err)

        try:
            self.handle_result(key, result)
        finally:
            self.queue.done(key)
        log.debug("Reconciled %s: %s", key, result, extra=ctx.log_extra)
        return result

    def handle_result(self, key: ResourceKey, result: ReconcileResult):
        """Turn an outcome into a queue decision"""
        if result.outcome == Outcome.DONE:
            self.queue.forget(key)
        elif result.outcome == Outcome.REQUEUE_AFTER:
            self.queue.forget(key)
            self.queue.add_after(key, result.delay)
        elif result.outcome == Outcome.REQUEUE_IMMEDIATE:
            self.queue.forget(key)
            self.queue.add(key)
        else:
            log.debug2(
                "Requeueing %s with backoff after %d failures",
                key,
                self.queue.num_requeues(key),
            )
            self.queue.add_rate_limited(key)
