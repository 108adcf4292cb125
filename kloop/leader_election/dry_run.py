"""Implementation of the DryRun LeaderElection"""
# Standard
from typing import Optional

# Local
from .base import LeaderState, LeadershipManagerBase


class DryRunLeadershipManager(LeadershipManagerBase):
    """DryRunLeadershipManager implements an empty leadership election manager
    which always acts as a leader. This is useful for dryrun or running a single
    replica without leadership election"""

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Return true as dryrun is always leader
        """
        return True

    def release(self):
        """
        NoOp in DryRun as lock is not real
        """

    def is_leader(self) -> bool:
        """
        DryRunLeadershipManager is always leader
        """
        return True

    @property
    def state(self) -> LeaderState:
        return LeaderState.LEADER
