"""
Indexed local mirror of store contents fed by list and watch
"""

# Local
from .delta_fifo import Delta, DeltaFIFO, DeltaType, ListSynced
from .reflector import Reflector
from .resource_cache import CacheEvent, Indexer, ResourceCache, owner_uid_index
