"""
The FinalizerManager owns one finalizer token on behalf of a controller. It
adds the token to live resources and, once deletion is requested, runs the
controller's cleanup and removes only its own token. The resource is purged by
the store once every token is gone.

States of a resource with respect to the token:

NO_FINALIZER -> FINALIZED -> CLEANING_UP -> REMOVED
"""

# Standard
from enum import Enum
from typing import Callable, Optional

# First Party
import alog

# Local
from . import config
from .exceptions import NotFoundError, ReconcileTimeoutError
from .reconcile import ReconcileContext, ReconcileResult
from .resource import Resource, ResourceKey
from .store import ResourceStoreBase
from .utils import retry_on_conflict

log = alog.use_channel("FINLZ")


class FinalizerState(Enum):
    """Where a resource is in the finalizer lifecycle"""

    # Live without the token
    NO_FINALIZER = "NoFinalizer"

    # Live with the token
    FINALIZED = "Finalized"

    # Deletion requested and the token still present
    CLEANING_UP = "CleaningUp"

    # Deletion requested and the token removed, or already purged
    REMOVED = "Removed"


class FinalizerManager:
    """Manage a single finalizer token with conflict-safe writes"""

    def __init__(
        self,
        store: ResourceStoreBase,
        finalizer: str,
        conflict_retries: Optional[int] = None,
    ):
        """
        Args:
            store:  ResourceStoreBase
                The store to persist finalizer changes to
            finalizer:  str
                The token managed by this instance
            conflict_retries:  Optional[int]
                Immediate fresh-read retries on a write conflict. Defaults to
                config.conflict_retries
        """
        self.store = store
        self.finalizer = finalizer
        self.conflict_retries = (
            conflict_retries
            if conflict_retries is not None
            else config.conflict_retries
        )

    def state(self, resource: Optional[Resource]) -> FinalizerState:
        """Get the lifecycle state of a resource. None means purged"""
        if resource is None:
            return FinalizerState.REMOVED
        has_token = resource.has_finalizer(self.finalizer)
        if resource.is_terminating:
            return FinalizerState.CLEANING_UP if has_token else FinalizerState.REMOVED
        return FinalizerState.FINALIZED if has_token else FinalizerState.NO_FINALIZER

    def ensure(self, key: ResourceKey) -> bool:
        """Add the token to a live resource

        Args:
            key:  ResourceKey
                The resource to add the token to

        Returns:
            added:  bool
                True if a write was made. Terminating resources never get
                the token
        """

        def _add(_attempt: int) -> bool:
            current = self.store.get(key)
            if current.is_terminating or current.has_finalizer(self.finalizer):
                return False
            updated = current.copy()
            updated.metadata["finalizers"] = current.finalizers + [self.finalizer]
            self.store.update(updated)
            log.debug("Added finalizer %s to %s", self.finalizer, key)
            return True

        return retry_on_conflict(_add, self.conflict_retries)

    def remove(self, key: ResourceKey) -> bool:
        """Remove only this token, keeping the order of any others

        Returns:
            removed:  bool
                True if a write was made
        """

        def _remove(_attempt: int) -> bool:
            try:
                current = self.store.get(key)
            except NotFoundError:
                return False
            if not current.has_finalizer(self.finalizer):
                return False
            updated = current.copy()
            updated.metadata["finalizers"] = [
                token for token in current.finalizers if token != self.finalizer
            ]
            self.store.update(updated)
            log.debug("Removed finalizer %s from %s", self.finalizer, key)
            return True

        return retry_on_conflict(_remove, self.conflict_retries)

    def finalize(
        self,
        resource: Resource,
        cleanup: Callable[[Resource], None],
        ctx: Optional[ReconcileContext] = None,
    ) -> ReconcileResult:
        """Run the cleanup path for a terminating resource. The cleanup must be
        safe to repeat since a failure after it succeeded but before the token
        was removed runs it again.

        Args:
            resource:  Resource
                The terminating resource
            cleanup:  Callable[[Resource], None]
                External cleanup. Raising any exception keeps the token and
                retries with backoff
            ctx:  Optional[ReconcileContext]
                The reconcile context. A cleanup that returns after its
                deadline keeps the token and is retried

        Returns:
            result:  ReconcileResult
                DONE once the token is gone and ERROR if cleanup failed or
                overran the deadline
        """
        if self.state(resource) != FinalizerState.CLEANING_UP:
            return ReconcileResult.done()

        log.info(
            "Running cleanup for %s",
            resource.key,
            extra={"resource": resource},
        )
        try:
            cleanup(resource)
        except Exception as err:  # pylint: disable=broad-except
            log.warning(
                "Cleanup of %s failed: %s",
                resource.key,
                err,
                extra={"resource": resource},
            )
            return ReconcileResult.error(err)

        if ctx is not None and ctx.expired():
            log.warning(
                "Cleanup of %s finished past its deadline. Keeping %s",
                resource.key,
                self.finalizer,
                extra={"resource": resource},
            )
            return ReconcileResult.error(
                ReconcileTimeoutError(
                    f"Cleanup of {resource.key} exceeded its deadline"
                )
            )

        self.remove(resource.key)
        return ReconcileResult.done()
