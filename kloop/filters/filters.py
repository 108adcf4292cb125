"""
Filters are used to limit the amount of events being reconciled by a controller.
This is based off of the kubernetes controller runtime's "predicates":
https://pkg.go.dev/sigs.k8s.io/controller-runtime/pkg/predicate#Funcs
The default set of filters is derived from operator-sdk's ansible predicates.

Filters are stateless. Every test is a pure function of the event, which
carries both the previously cached state (event.old) and the new state
(event.resource).
"""

# Standard
from abc import ABC, abstractmethod
from typing import Dict, Optional

# First Party
import alog

# Local
from ..cache import CacheEvent
from ..constants import PAUSE_ANNOTATION_NAME, RESERVED_PLATFORM_ANNOTATIONS
from ..resource import Resource
from ..status import READY_CONDITION, get_condition
from ..store import WatchEventType
from ..utils import nested_get, obj_to_hash

log = alog.use_channel("FILTR")


## Default Types


class Filter(ABC):
    """Generic Filter Interface for subclassing. Every subclass should implement
    a `test` function which returns True when an event should be reconciled,
    False when it should not be, and None to abstain.
    """

    @abstractmethod
    def test(self, event: CacheEvent) -> Optional[bool]:
        """Test whether the event passes the filter

        Args:
            event: CacheEvent
                The cache change being checked

        Returns:
            result: Optional[bool]
                The result of the test or None to abstain
        """

    def __repr__(self):
        return f"{self.__class__.__name__}()"


## Generic Resource filters


class CreationDeletionFilter(Filter):
    """Filter to ensure reconciliation on creation and deletion events"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Return true if event is ADDED or DELETED"""
        if event.type in [WatchEventType.ADDED, WatchEventType.DELETED]:
            return True
        return None


class GenerationChangedFilter(Filter):
    """Filter for reconciling on generation changes for resources that support it"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Return true if resource generation is different than before"""
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        if event.resource.generation is None:
            return None
        return event.old.generation != event.resource.generation


class NoGenerationFilter(Filter):
    """Filter for reconciling changes to the desired state of resources that
    don't support the generation field like pods. It does this by hashing the
    objects excluding status and metadata"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Return True if the desired state hash differs from before"""
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        if event.resource.generation is not None:
            return None

        old_hashes = self._desired_hashes(event.old)
        new_hashes = self._desired_hashes(event.resource)
        if old_hashes != new_hashes:
            log.debug2("Detected desired state change in %s", event.resource.key)
            return True
        return False

    @staticmethod
    def _desired_hashes(resource: Resource) -> Dict[str, int]:
        return {
            key: obj_to_hash(obj)
            for key, obj in resource.definition.items()
            if key not in ["metadata", "status", "kind", "apiVersion"]
        }


class ResourceVersionChangedFilter(Filter):
    """Filter for duplicate resource versions which happen when a watch is
    restarted"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        if event.type == WatchEventType.DELETED:
            return None
        if event.old is None:
            return True
        return event.old.resource_version != event.resource.resource_version


class DeletionRequestedFilter(Filter):
    """Reconcile when deletion of a resource has been requested"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        if event.resource.is_terminating and not event.old.is_terminating:
            return True
        return None


### Metadata Filters


class LabelChangedFilter(Filter):
    """Filter resources to reconcile on label changes"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        return event.old.labels != event.resource.labels


class AnnotationChangedFilter(Filter):
    """Filter resources to reconcile on annotation changes"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Test if a resource's annotation has changed"""
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        return self.get_annotation_hash(event.old) != self.get_annotation_hash(
            event.resource
        )

    def get_annotation_hash(self, resource: Resource) -> int:
        """Helper function to get the annotation hash"""
        return obj_to_hash(resource.annotations)


class UserAnnotationFilter(AnnotationChangedFilter):
    """Filter resources to reconcile on user annotation changes. This excludes
    kubernetes and openshift annotations
    """

    def get_annotation_hash(self, resource: Resource) -> int:
        """Overridden function to exclude common platform annotations from
        the annotation hash"""
        output_annotations = {
            key: value
            for key, value in resource.annotations.items()
            if not self.contains_platform_key(key)
        }
        return obj_to_hash(output_annotations)

    @staticmethod
    def contains_platform_key(key: str) -> bool:
        """Helper to check if the key contains one of the platform annotations"""
        return any(
            reserved_key in key for reserved_key in RESERVED_PLATFORM_ANNOTATIONS
        )


class FieldChangedFilter(Filter):
    """Reconcile when the value at a nested 'foo.bar' path changes"""

    def __init__(self, field_path: str):
        self.field_path = field_path

    def test(self, event: CacheEvent) -> Optional[bool]:
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        return nested_get(event.old.definition, self.field_path) != nested_get(
            event.resource.definition, self.field_path
        )

    def __repr__(self):
        return f"{self.__class__.__name__}({self.field_path})"


class ConditionChangedFilter(Filter):
    """Reconcile when the reason of a status condition changes"""

    def __init__(self, condition_type: str = READY_CONDITION):
        self.condition_type = condition_type

    def test(self, event: CacheEvent) -> Optional[bool]:
        if event.type != WatchEventType.MODIFIED or event.old is None:
            return None
        old_condition = get_condition(self.condition_type, event.old.status)
        new_condition = get_condition(self.condition_type, event.resource.status)
        return old_condition.get("reason") != new_condition.get("reason")


### Runtime Filters


class PauseFilter(Filter):
    """This filter skips resources that have the pause annotation"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Test if a resource has the pause annotation"""
        return not is_paused(event.resource)


def is_paused(resource: Resource) -> bool:
    """Check whether reconciliation of a resource has been paused"""
    return str(resource.annotations.get(PAUSE_ANNOTATION_NAME, "")).lower() == "true"


### Dependent Filters


class DependentWatchFilter(Filter):
    """Don't reconcile creation events as we can assume the owner created
    them"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Return False if event is ADDED"""
        return event.type != WatchEventType.ADDED


### Utility Filters


class LabelSelectorFilter(Filter):
    """Filter for resources that match a set of labels"""

    def __init__(self, labels: Dict[str, str]):
        self.labels = labels

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Return true if a resource matches every requested label"""
        resource_labels = event.resource.labels
        return all(
            resource_labels.get(label) == value for label, value in self.labels.items()
        )

    def __repr__(self):
        return f"{self.__class__.__name__}({self.labels})"


class DisableFilter(Filter):
    """Filter to disable all reconciles"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Always return False"""
        return False


class EnableFilter(Filter):
    """Filter to run all reconciles"""

    def test(self, event: CacheEvent) -> Optional[bool]:
        """Always return True"""
        return True
