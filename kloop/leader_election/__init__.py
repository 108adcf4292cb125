"""__init__ file for leadership election classes. Imports all leadership managers
 and defines a generic helper"""
# Standard
from typing import Type

# Local
from .. import config
from .base import LeaderState, LeadershipManagerBase, ThreadedLeaderManagerBase
from .dry_run import DryRunLeadershipManager
from .lease import LeaseLeadershipManager


def get_leader_election_class() -> Type[LeadershipManagerBase]:
    """Get the current configured leadership election"""
    if config.lock.type == "lease":
        return LeaseLeadershipManager
    return DryRunLeadershipManager
