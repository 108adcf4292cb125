"""
Types shared by everything that runs a reconcile: the outcome a reconcile
reports, the per-call context that bounds it, and the declarative watch
entries a reconciler is wired up with.
"""

# Standard
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional
import time
import uuid

# First Party
import alog

# Local
from .cache import Indexer
from .exceptions import LeadershipLostError, ReconcileTimeoutError
from .filters import Filter
from .leader_election import LeadershipManagerBase
from .resource import ResourceKey

log = alog.use_channel("RCNCL")


## Outcomes ####################################################################


class Outcome(Enum):
    """What the work queue should do with a key after a reconcile"""

    # Nothing further to do
    DONE = "Done"

    # Check again after a delay for level-triggered drift correction
    REQUEUE_AFTER = "RequeueAfter"

    # Run another pass right away
    REQUEUE_IMMEDIATE = "RequeueImmediate"

    # Retry with the key's backoff
    ERROR = "Error"


@dataclass
class ReconcileResult:
    """The outcome of one reconcile"""

    outcome: Outcome
    delay: Optional[float] = None
    exception: Optional[Exception] = None

    @classmethod
    def done(cls) -> "ReconcileResult":
        return cls(Outcome.DONE)

    @classmethod
    def requeue_after(cls, delay: float) -> "ReconcileResult":
        return cls(Outcome.REQUEUE_AFTER, delay=delay)

    @classmethod
    def requeue_immediate(cls) -> "ReconcileResult":
        return cls(Outcome.REQUEUE_IMMEDIATE)

    @classmethod
    def error(cls, exception: Exception) -> "ReconcileResult":
        return cls(Outcome.ERROR, exception=exception)

    def __str__(self):
        if self.outcome == Outcome.REQUEUE_AFTER:
            return f"{self.outcome.value}({self.delay}s)"
        if self.outcome == Outcome.ERROR:
            return f"{self.outcome.value}({self.exception})"
        return self.outcome.value


## Context #####################################################################


class ReconcileContext:
    """Per-invocation context. Threads can not be interrupted, so a reconcile
    is bounded cooperatively: long running reconcilers call check() between
    steps and abort once the deadline has passed or leadership is lost.
    """

    def __init__(
        self,
        key: ResourceKey,
        timeout: Optional[float] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
        reconcile_id: Optional[str] = None,
    ):
        """
        Args:
            key:  ResourceKey
                The key being reconciled
            timeout:  Optional[float]
                Seconds the reconcile may take. If None there is no deadline
            leadership_manager:  Optional[LeadershipManagerBase]
                If given, check() fails once this replica stops leading
            reconcile_id:  Optional[str]
                Id attached to every log line of this reconcile
        """
        self.key = key
        self.deadline = time.monotonic() + timeout if timeout is not None else None
        self.leadership_manager = leadership_manager
        self.reconcile_id = reconcile_id or str(uuid.uuid4())

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline or None if unbounded"""
        if self.deadline is None:
            return None
        return max(self.deadline - time.monotonic(), 0.0)

    def expired(self) -> bool:
        return self.deadline is not None and time.monotonic() >= self.deadline

    def check(self):
        """Raise if the reconcile must stop"""
        if self.expired():
            raise ReconcileTimeoutError(
                f"Reconcile of {self.key} exceeded its deadline"
            )
        if (
            self.leadership_manager is not None
            and not self.leadership_manager.is_leader()
        ):
            raise LeadershipLostError(
                f"Leadership lost while reconciling {self.key}"
            )

    @property
    def log_extra(self) -> dict:
        """extra= kwargs for log calls made on behalf of this reconcile"""
        return {"reconcile_id": self.reconcile_id}


## Watches #####################################################################


class WatchRelation(Enum):
    """How a watched kind relates to the reconciled kind"""

    # The reconciled kind itself
    PRIMARY = "Primary"

    # Dependents carrying a controller reference to a primary
    OWNED = "Owned"


@dataclass
class WatchSpec:
    """One entry of a reconciler's declarative watch list. A filter of None
    uses the configured default filter for primaries and DependentWatchFilter
    for owned kinds.
    """

    kind: str
    api_version: str
    relation: WatchRelation = WatchRelation.OWNED
    filter: Optional[Filter] = None
    indexers: Dict[str, Indexer] = field(default_factory=dict)
    namespace: Optional[str] = None
    label_selector: Optional[str] = None
