"""Implementation of the Leader-with-Lease LeaderElection"""
# Standard
from typing import Callable, Optional
import time

# First Party
import alog

# Local
from .. import config
from ..exceptions import KloopError, assert_config
from ..identity import get_lock_name, get_pod_name
from ..store import ResourceStoreBase
from ..utils import parse_seconds
from .base import ThreadedLeaderManagerBase

log = alog.use_channel("LDRLSE")


class LeaseLeadershipManager(ThreadedLeaderManagerBase):
    """
    LeaseLeadershipManager holds a named lease in the store and constantly
    renews it. A follower retries acquisition every retry_period and takes over
    once the lease is free or expired. A leader steps down as soon as the store
    reports the lease taken, or once renew_deadline has passed without a
    successful renewal, which is always before the lease itself can expire.
    """

    def __init__(  # pylint: disable=too-many-arguments
        self,
        store: ResourceStoreBase,
        lock_name: Optional[str] = None,
        identity: Optional[str] = None,
        lease_duration: Optional[float] = None,
        renew_deadline: Optional[float] = None,
        retry_period: Optional[float] = None,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize class with the lock name, identity and lease timing. All
        values default to the lock section of the library config.
        """
        if retry_period is None:
            retry_period = parse_seconds(config.lock.retry_period)
        super().__init__(
            store,
            poll_time=retry_period,
            on_started_leading=on_started_leading,
            on_stopped_leading=on_stopped_leading,
        )

        self.lock_name = lock_name or get_lock_name()
        self.lock_identity = identity or get_pod_name()
        self.lease_duration = (
            lease_duration
            if lease_duration is not None
            else parse_seconds(config.lock.lease_duration)
        )
        self.renew_deadline = (
            renew_deadline
            if renew_deadline is not None
            else parse_seconds(config.lock.renew_deadline)
        )
        assert_config(self.lock_name, "Unable to detect lock name")
        assert_config(self.lock_identity, "Unable to detect lock identity")
        assert_config(
            retry_period < self.renew_deadline < self.lease_duration,
            "Lease timing must satisfy retry_period < renew_deadline < lease_duration",
        )

        # Monotonic time of the last successful acquire or renew
        self._last_renew: Optional[float] = None

        # Monotonic time leadership was last lost
        self._last_step_down: Optional[float] = None

    def renew_or_acquire(self):
        """
        Renew the lease when leading, otherwise campaign for it
        """
        now = time.monotonic()
        if self.leader.is_set():
            # A lapse found here ends this pass so the step-down is visible
            if not self.is_leader():
                return
            if self.store.renew_lease(
                self.lock_name, self.lock_identity, self.lease_duration
            ):
                log.debug3("Renewed lease %s", self.lock_name)
                self._last_renew = now
            else:
                log.warning("Lease %s is held by another replica", self.lock_name)
                self._step_down()
            return

        # Sit out at least one retry period after stepping down
        if (
            self._last_step_down is not None
            and now - self._last_step_down < self.poll_time
        ):
            log.debug3("Stepped down recently. Not campaigning yet")
            return

        self.set_candidate()
        if self.store.acquire_lease(
            self.lock_name, self.lock_identity, self.lease_duration
        ):
            log.debug2("Acquired lease %s as %s", self.lock_name, self.lock_identity)
            self._last_renew = now
            self.acquire_lock()
        else:
            self.release_lock()

    def handle_failed_attempt(self):
        """A store failure only costs leadership once the renew deadline has
        passed, which is_leader checks
        """
        if not self.is_leader():
            self.release_lock()

    def is_leader(self) -> bool:
        """Leadership also lapses when the renewal loop has stalled past the
        renew deadline
        """
        if not self.leader.is_set():
            return False
        if self._renew_expired():
            log.warning(
                "No successful renewal of %s within %ss. Stepping down",
                self.lock_name,
                self.renew_deadline,
            )
            self._step_down()
            return False
        return True

    def give_up(self):
        """Voluntarily release the lease so another replica can take over
        without waiting for it to expire
        """
        try:
            self.store.release_lease(self.lock_name, self.lock_identity)
        except KloopError:
            log.warning("Failed to release lease %s", self.lock_name, exc_info=True)

    ## Implementation Details ##################################################

    def _step_down(self):
        self._last_step_down = time.monotonic()
        self.release_lock()

    def _renew_expired(self) -> bool:
        return (
            self._last_renew is None
            or time.monotonic() - self._last_renew > self.renew_deadline
        )
