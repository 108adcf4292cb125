"""
The store package holds the abstract interface to the system of record and
its implementations
"""

# Local
from .base import ResourceStoreBase
from .events import WatchEvent, WatchEventType
from .kube_store import KubeResourceStore
from .memory_store import InMemoryResourceStore
