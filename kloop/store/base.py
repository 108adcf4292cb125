"""
This defines the base class for all Resource Store types. The store is the
only external collaborator of the runtime: it serves list/watch streams,
persists objects with optimistic concurrency, and holds leader election
leases.
"""

# Standard
from typing import Iterator, List, Optional, Tuple
import abc
import threading

# Local
from ..resource import Resource, ResourceKey
from .events import WatchEvent


class ResourceStoreBase(abc.ABC):
    """
    Base class for resource stores. All methods raise the kloop error taxonomy:
    NotFoundError, ConflictError (AlreadyExistsError), ExpiredError,
    TransientError and PermanentError.
    """

    ## Reads ###################################################################

    @abc.abstractmethod
    def list(
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Tuple[List[Resource], str]:
        """Take a consistent snapshot of all objects of a kind

        Args:
            kind:  str
                The kind to list
            api_version:  Optional[str]
                The api_version of the kind
            namespace:  Optional[str]
                The namespace to list. If None list cluster-wide
            label_selector:  Optional[str]
                A kubernetes label selector to filter the objects

        Returns:
            resources:  List[Resource]
                The matching objects
            resource_version:  str
                The store version of the snapshot. A watch started from this
                version sees every later change exactly once
        """

    @abc.abstractmethod
    def watch(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[WatchEvent]:
        """Stream changes to objects of a kind after the given version

        Args:
            kind:  str
                The kind to watch
            api_version:  Optional[str]
                The api_version of the kind
            namespace:  Optional[str]
                The namespace to watch. If None watch cluster-wide
            resource_version:  Optional[str]
                Only stream changes newer than this version
            label_selector:  Optional[str]
                A kubernetes label selector to filter the objects
            timeout:  Optional[float]
                Seconds after which the stream ends cleanly
            stop_event:  Optional[threading.Event]
                If given, the stream ends once the event is set

        Returns:
            watch_stream:  Iterator[WatchEvent]
                The change events. Raises ExpiredError if resource_version is
                no longer retained
        """

    @abc.abstractmethod
    def get(self, key: ResourceKey) -> Resource:
        """Fetch the current state of one object. Raises NotFoundError"""

    ## Writes ##################################################################

    @abc.abstractmethod
    def create(self, resource: Resource) -> Resource:
        """Create a new object and return the persisted version. Raises
        AlreadyExistsError if the name is taken
        """

    @abc.abstractmethod
    def update(self, resource: Resource) -> Resource:
        """Replace the metadata and spec of an object. The status is left
        untouched. If the resource carries a resourceVersion it must match the
        stored one or ConflictError is raised.
        """

    @abc.abstractmethod
    def update_status(self, resource: Resource) -> Resource:
        """Replace the status of an object through the status write path.
        Same concurrency rules as update
        """

    @abc.abstractmethod
    def delete(
        self, key: ResourceKey, propagation_policy: Optional[str] = None
    ) -> Optional[Resource]:
        """Request deletion of an object. If it carries finalizers it is marked
        with a deletionTimestamp and returned, otherwise it is purged and None
        is returned. Raises NotFoundError.
        """

    ## Leases ##################################################################

    @abc.abstractmethod
    def acquire_lease(self, name: str, holder: str, ttl: float) -> bool:
        """Take the named lease if it is free, expired or already held by
        holder. Returns True if holder owns the lease afterwards
        """

    @abc.abstractmethod
    def renew_lease(self, name: str, holder: str, ttl: float) -> bool:
        """Extend the named lease. Returns False if holder no longer owns it"""

    @abc.abstractmethod
    def release_lease(self, name: str, holder: str) -> bool:
        """Voluntarily give up the named lease. Returns True if it was held"""
