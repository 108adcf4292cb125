"""
The Reconciler converges the observed state of one resource toward its desired
state. Subclasses declare the kind they reconcile and the kinds they watch, and
implement desired_dependents to describe what should exist. The base class
owns the rest of the control loop: finalizers, create-or-update of dependents,
status and the translation of errors into requeue decisions.
"""

# Standard
from typing import List, Mapping, Optional, Tuple
import copy

# Third Party
from deepdiff import DeepDiff

# First Party
import alog

# Local
from . import config
from .cache import ResourceCache
from .exceptions import (
    KloopError,
    LeadershipLostError,
    NotFoundError,
    PermanentError,
    assert_config,
)
from .filters import is_paused
from .finalizer import FinalizerManager
from .owner_references import stamp_controller_reference
from .reconcile import (
    ReconcileContext,
    ReconcileResult,
    WatchRelation,
    WatchSpec,
)
from .resource import Resource, ResourceKey
from .status import (
    AVAILABLE_CONDITION,
    DEGRADED_CONDITION,
    READY_CONDITION,
    AvailableReason,
    Condition,
    DegradedReason,
    is_condition_true,
    make_condition,
    make_updated_status,
    status_changed,
)
from .store import ResourceStoreBase
from .utils import parse_seconds, retry_on_conflict

log = alog.use_channel("RCNCLR")

# Top level keys of a dependent manifest that the reconciler never merges
UNMANAGED_KEYS = ["apiVersion", "kind", "metadata", "status"]

# Metadata keys of a dependent manifest that are merged key by key
MERGED_METADATA_KEYS = ["labels", "annotations"]


class Reconciler:
    """Base class for a controller of a single kind.

    Derived classes must set the kind and api_version class attributes. A
    derived class that needs external cleanup before its resources are purged
    sets finalizer and overrides finalize.
    """

    # The reconciled kind
    kind: str = None
    api_version: str = None

    # Finalizer token. If None, deletion needs no cleanup
    finalizer: Optional[str] = None

    # Kinds watched in addition to the primary kind. Owned kinds map their
    # events to the controlling owner
    watches: List[WatchSpec] = []

    # Filter for primary events. If None the configured default is used
    primary_filter = None

    def __init__(
        self,
        store: ResourceStoreBase,
        caches: Optional[Mapping[str, ResourceCache]] = None,
        resync_period: Optional[float] = None,
        conflict_retries: Optional[int] = None,
    ):
        """
        Args:
            store:  ResourceStoreBase
                The store all writes go to
            caches:  Optional[Mapping[str, ResourceCache]]
                Caches by kind used for reads. Kinds without a cache are read
                from the store
            resync_period:  Optional[float]
                Seconds until the level-triggered re-check after a successful
                reconcile. Defaults to config.resync_period
            conflict_retries:  Optional[int]
                Immediate fresh-read retries for conflicting writes. Defaults
                to config.conflict_retries
        """
        assert_config(
            self.kind and self.api_version,
            f"{self.__class__.__name__} must set kind and api_version",
        )
        self.store = store
        self.caches = dict(caches or {})
        self.resync_period = (
            resync_period
            if resync_period is not None
            else parse_seconds(config.resync_period)
        )
        self.conflict_retries = (
            conflict_retries
            if conflict_retries is not None
            else config.conflict_retries
        )
        self.finalizer_manager = (
            FinalizerManager(store, self.finalizer, self.conflict_retries)
            if self.finalizer
            else None
        )

    @classmethod
    def get_watches(cls) -> List[WatchSpec]:
        """The full watch list starting with the primary kind"""
        primary = WatchSpec(
            kind=cls.kind,
            api_version=cls.api_version,
            relation=WatchRelation.PRIMARY,
            filter=cls.primary_filter,
        )
        return [primary] + list(cls.watches)

    ## Hooks ###################################################################

    def desired_dependents(self, resource: Resource) -> List[dict]:
        """Compute the dependent manifests that should exist for the resource.
        Namespaces default to the owner's and the controller reference is
        stamped on every manifest.

        Args:
            resource:  Resource
                The primary resource

        Returns:
            manifests:  List[dict]
                The desired dependents
        """
        return []

    def finalize(self, resource: Resource):
        """Run external cleanup for a resource being deleted. This must be safe
        to run more than once. Raise to keep the finalizer and retry.
        """

    def validate(self, resource: Resource):
        """Raise PermanentError when the desired state can never converge"""

    def dependent_ready(self, dependent: Resource) -> bool:
        """Whether a dependent reports ready. Defaults to its Ready condition"""
        return is_condition_true(READY_CONDITION, dependent.status)

    def make_conditions(
        self, resource: Resource, dependents: List[Resource], created: bool
    ) -> List[Condition]:
        """Compute the conditions for a successful pass

        Args:
            resource:  Resource
                The primary resource
            dependents:  List[Resource]
                The current state of every desired dependent
            created:  bool
                Whether any dependent was created during this pass

        Returns:
            conditions:  List[Condition]
                The conditions to set on the primary's status
        """
        not_ready = [dep for dep in dependents if not self.dependent_ready(dep)]
        if created or not_ready:
            available = make_condition(
                AVAILABLE_CONDITION,
                False,
                AvailableReason.CREATING,
                f"Waiting on {len(not_ready)} of {len(dependents)} dependents",
            )
        else:
            available = make_condition(
                AVAILABLE_CONDITION,
                True,
                AvailableReason.READY,
                "All dependents ready",
            )
        degraded = make_condition(
            DEGRADED_CONDITION, False, DegradedReason.RECONCILED, "Reconciled"
        )
        return [available, degraded]

    ## Reconcile ###############################################################

    def reconcile(
        self, key: ResourceKey, ctx: Optional[ReconcileContext] = None
    ) -> ReconcileResult:
        """Reconcile one key. No exception escapes: every failure is turned
        into an outcome and, where possible, reflected as a Degraded condition.

        Args:
            key:  ResourceKey
                The primary key to reconcile
            ctx:  Optional[ReconcileContext]
                The per-call context. Defaults to one bounded by
                config.reconcile_timeout

        Returns:
            result:  ReconcileResult
                What the work queue should do with the key
        """
        if ctx is None:
            ctx = ReconcileContext(key, timeout=parse_seconds(config.reconcile_timeout))

        try:
            return self.run_reconcile(key, ctx)

        except PermanentError as err:
            log.warning(
                "Invalid desired state for %s: %s", key, err, extra=ctx.log_extra
            )
            self._report_degraded(key, DegradedReason.INVALID_SPEC, err, ctx)
            return ReconcileResult.requeue_after(self.resync_period)

        except LeadershipLostError as err:
            log.warning("Aborting reconcile of %s: %s", key, err, extra=ctx.log_extra)
            return ReconcileResult.error(err)

        except NotFoundError as err:
            try:
                self.store.get(key)
            except NotFoundError:
                log.debug("%s vanished during reconcile", key, extra=ctx.log_extra)
                return ReconcileResult.done()
            except KloopError as get_err:
                log.debug2("Unable to confirm %s exists: %s", key, get_err)
            log.warning(
                "Dependent write for %s not found: %s", key, err, extra=ctx.log_extra
            )
            return ReconcileResult.error(err)

        # Capture all generic exceptions
        except Exception as err:  # pylint: disable=broad-except
            log.warning(
                "Handling caught error in reconcile of %s: %s",
                key,
                err,
                exc_info=True,
                extra=ctx.log_extra,
            )
            self._report_degraded(key, DegradedReason.RECONCILE_ERROR, err, ctx)
            return ReconcileResult.error(err)

    def run_reconcile(self, key: ResourceKey, ctx: ReconcileContext) -> ReconcileResult:
        """The core reconcile path. Errors propagate to reconcile:

            1. Fetch the object. Absent objects are already deleted
            2. Run the cleanup path for an object being deleted
            3. Add a missing finalizer and requeue to act on a fresh read
            4. Create or update each desired dependent
            5. Write status through the status path
            6. Requeue after the resync period
        """
        try:
            resource = self._read(key)
        except NotFoundError:
            log.debug2("%s not found. Treating as deleted", key, extra=ctx.log_extra)
            return ReconcileResult.done()

        extra = {"resource": resource, **ctx.log_extra}
        log.debug("Reconciling %s", resource, extra=extra)

        if is_paused(resource):
            log.info("%s is paused. Skipping reconcile", key, extra=extra)
            return ReconcileResult.done()

        if resource.is_terminating:
            return self._reconcile_deletion(resource, ctx)

        if self.finalizer_manager and not resource.has_finalizer(self.finalizer):
            ctx.check()
            self.finalizer_manager.ensure(key)
            log.debug("Added finalizer to %s. Requeueing", key, extra=extra)
            return ReconcileResult.requeue_immediate()

        self.validate(resource)

        created = False
        dependents = []
        for manifest in self.desired_dependents(resource):
            ctx.check()
            dependent, was_created = self.apply_dependent(resource, manifest)
            dependents.append(dependent)
            created = created or was_created

        ctx.check()
        self.update_status(
            key,
            self.make_conditions(resource, dependents, created),
            observed_generation=resource.generation,
        )

        # A pass that overran its deadline is not reported as converged
        ctx.check()

        if created:
            log.debug("Created dependents for %s. Requeueing", key, extra=extra)
            return ReconcileResult.requeue_immediate()
        return ReconcileResult.requeue_after(self.resync_period)

    ## Dependents ##############################################################

    def apply_dependent(self, owner: Resource, manifest: dict) -> Tuple[Resource, bool]:
        """Create or update one dependent. A write is only made when the
        desired fields differ from the current ones.

        Args:
            owner:  Resource
                The controlling owner
            manifest:  dict
                The desired dependent

        Returns:
            dependent:  Resource
                The current state of the dependent after the write
            created:  bool
                Whether the dependent was created
        """
        desired = copy.deepcopy(manifest)
        metadata = desired.setdefault("metadata", {})
        if owner.namespace:
            metadata.setdefault("namespace", owner.namespace)
        stamp_controller_reference(desired, owner)
        key = Resource(desired).key

        def _apply(attempt: int) -> Tuple[Resource, bool]:
            try:
                current = self._read(key, fresh=attempt > 0)
            except NotFoundError:
                # A create that races another writer fails with
                # AlreadyExistsError and is retried as a conflict
                log.debug2("Creating dependent %s", key)
                return self.store.create(Resource(copy.deepcopy(desired))), True

            if current.is_terminating:
                log.debug2("Dependent %s is terminating. Leaving it alone", key)
                return current, False

            merged = merge_dependent(current.to_dict(), desired)
            stamp_controller_reference(merged, owner)
            diff = DeepDiff(current.definition, merged)
            if not diff:
                log.debug3("Dependent %s is up to date", key)
                return current, False

            log.debug2("Updating dependent %s", key)
            log.debug4("Dependent diff: %s", diff)
            return self.store.update(Resource(merged)), False

        return retry_on_conflict(_apply, self.conflict_retries)

    ## Status ##################################################################

    def update_status(
        self,
        key: ResourceKey,
        conditions: List[Condition],
        observed_generation: Optional[int] = None,
        observe_current: bool = False,
    ) -> bool:
        """Apply conditions to the status of a primary with a fresh read on
        every attempt. With observe_current the generation of the fresh read
        is recorded as observed.

        Returns:
            written:  bool
                False if the status was already up to date
        """

        def _update(_attempt: int) -> bool:
            current = self.store.get(key)
            generation = current.generation if observe_current else observed_generation
            updated_status = make_updated_status(current.status, conditions, generation)
            if not status_changed(current.status, updated_status):
                log.debug3("Status of %s unchanged", key)
                return False
            updated = current.copy()
            updated.definition["status"] = updated_status
            self.store.update_status(updated)
            return True

        return retry_on_conflict(_update, self.conflict_retries)

    ## Implementation Details ##################################################

    def _reconcile_deletion(
        self, resource: Resource, ctx: ReconcileContext
    ) -> ReconcileResult:
        if self.finalizer_manager is None:
            log.debug2("%s is terminating with nothing to clean up", resource.key)
            return ReconcileResult.done()

        ctx.check()
        result = self.finalizer_manager.finalize(resource, self.finalize, ctx)
        if result.exception is not None:
            self._report_degraded(
                resource.key, DegradedReason.CLEANUP_FAILED, result.exception, ctx
            )
        return result

    def _read(self, key: ResourceKey, fresh: bool = False) -> Resource:
        """Read from the kind's cache unless a fresh read is required"""
        cache = self.caches.get(key.kind)
        if cache is not None and not fresh:
            return cache.get(key)
        return self.store.get(key)

    def _report_degraded(
        self,
        key: ResourceKey,
        reason: DegradedReason,
        error: Exception,
        ctx: ReconcileContext,
    ):
        """Best effort write of a Degraded condition for a failed reconcile"""
        condition = make_condition(DEGRADED_CONDITION, True, reason, str(error))
        try:
            self.update_status(
                key,
                [condition],
                observe_current=reason == DegradedReason.INVALID_SPEC,
            )
        except NotFoundError:
            log.debug2("%s is gone. Not reporting %s", key, reason.value)
        except KloopError as err:
            log.warning(
                "Failed to report %s on %s: %s",
                reason.value,
                key,
                err,
                extra=ctx.log_extra,
            )


def merge_dependent(current: dict, desired: dict) -> dict:
    """Merge the desired fields of a dependent onto its current state. Fields
    the desired manifest does not mention are left alone so values defaulted
    by the store or written by other actors do not cause churn.

    Args:
        current:  dict
            The current manifest. It is updated in place
        desired:  dict
            The desired manifest

    Returns:
        merged:  dict
            The current manifest with the desired fields applied
    """
    for key, value in desired.items():
        if key not in UNMANAGED_KEYS:
            current[key] = value

    current_metadata = current.setdefault("metadata", {})
    desired_metadata = desired.get("metadata", {})
    for key in MERGED_METADATA_KEYS:
        if desired_metadata.get(key):
            merged = dict(current_metadata.get(key) or {})
            merged.update(desired_metadata[key])
            current_metadata[key] = merged
    return current
