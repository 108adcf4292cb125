"""
Package exports
"""

# Local
from . import config, status
from .cache import CacheEvent, ResourceCache
from .exceptions import (
    assert_config,
    assert_resource,
    assert_valid,
)
from .finalizer import FinalizerManager, FinalizerState
from .garbage_collector import GarbageCollector
from .manager import ControllerManager, configure_logging
from .reconcile import (
    Outcome,
    ReconcileContext,
    ReconcileResult,
    WatchRelation,
    WatchSpec,
)
from .reconciler import Reconciler
from .resource import OwnerReference, Resource, ResourceKey
from .store import InMemoryResourceStore, KubeResourceStore, ResourceStoreBase
