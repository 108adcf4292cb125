"""
The Reflector is the ingest task of a resource cache. It lists the watched
kind, then follows the store's change stream and feeds everything it observes
into a DeltaFIFO.
"""

# Standard
from typing import Optional

# First Party
import alog

# Local
from .. import config
from ..exceptions import ExpiredError
from ..store import ResourceStoreBase, WatchEventType
from ..threads import ThreadBase
from ..utils import parse_seconds
from .delta_fifo import DeltaFIFO

log = alog.use_channel("RFLCT")


class Reflector(ThreadBase):  # pylint: disable=too-many-instance-attributes
    """List and watch one kind forever. A stream that ends cleanly is resumed
    from the last seen resource version. An expired version causes an
    immediate relist and any other failure causes a relist after a bounded
    exponential backoff. The reflector never exits on its own.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ResourceStoreBase,
        fifo: DeltaFIFO,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
        name: Optional[str] = None,
    ):
        super().__init__(name=name or f"reflector_{kind}", daemon=True, store=store)
        self.fifo = fifo
        self.kind = kind
        self.api_version = api_version
        self.namespace = namespace
        self.label_selector = label_selector

        self.watch_timeout = parse_seconds(config.cache.watch_timeout)
        self.backoff_initial = parse_seconds(config.cache.relist_backoff_initial)
        self.backoff_max = parse_seconds(config.cache.relist_backoff_max)

        # Progress tracking
        self.last_resource_version: Optional[str] = None
        self.list_count = 0
        self._listed_since_failure = False

    def run(self):
        """Relist until the thread is stopped"""
        backoff = self.backoff_initial
        while not self.should_stop():
            try:
                self.list_and_watch()
            except ExpiredError as err:
                log.info("Watch on %s expired. Relisting: %s", self.kind, err)
                backoff = self.backoff_initial
            except Exception as err:  # pylint: disable=broad-except
                if self.should_stop():
                    break
                if self._listed_since_failure:
                    backoff = self.backoff_initial
                self._listed_since_failure = False
                log.warning(
                    "List/watch of %s failed. Relisting in %ss: %s",
                    self.kind,
                    backoff,
                    err,
                )
                self.shutdown.wait(backoff)
                backoff = min(backoff * 2, self.backoff_max)
        log.debug("Reflector for %s stopped", self.kind)

    def list_and_watch(self):
        """Take a full list and then follow the change stream until stopped"""
        resources, resource_version = self.store.list(
            self.kind,
            api_version=self.api_version,
            namespace=self.namespace,
            label_selector=self.label_selector,
        )
        self.fifo.replace(resources, resource_version)
        self.last_resource_version = resource_version
        self.list_count += 1
        self._listed_since_failure = True
        log.debug2(
            "Listed %d %s at version %s", len(resources), self.kind, resource_version
        )

        while not self.should_stop():
            stream = self.store.watch(
                self.kind,
                api_version=self.api_version,
                namespace=self.namespace,
                resource_version=self.last_resource_version,
                label_selector=self.label_selector,
                timeout=self.watch_timeout,
                stop_event=self.shutdown,
            )
            for event in stream:
                resource = event.resource
                if event.type == WatchEventType.ADDED:
                    self.fifo.add(resource)
                elif event.type == WatchEventType.MODIFIED:
                    self.fifo.update(resource)
                elif event.type == WatchEventType.DELETED:
                    self.fifo.delete(resource)
                if resource.resource_version is not None:
                    self.last_resource_version = resource.resource_version
            log.debug3(
                "Watch on %s ended. Resuming from %s",
                self.kind,
                self.last_resource_version,
            )
