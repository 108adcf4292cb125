"""
Helper module to define shared types related to store watch events
"""

# Standard
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

# Local
from ..resource import Resource


class WatchEventType(Enum):
    """Enum for all possible watch event types"""

    ADDED = "ADDED"
    MODIFIED = "MODIFIED"
    DELETED = "DELETED"


@dataclass
class WatchEvent:
    """DataClass containing the type, resource, and timestamp of a single
    change emitted by a store watch stream
    """

    type: WatchEventType
    resource: Resource
    timestamp: datetime = field(default_factory=datetime.now)
