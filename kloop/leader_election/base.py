"""Base classes for leader election implementations"""

# Standard
from enum import Enum
from typing import Callable, Optional
import abc
import threading

# First Party
import alog

# Local
from ..exceptions import KloopError
from ..store import ResourceStoreBase

log = alog.use_channel("LDRELC")


class LeaderState(Enum):
    """The states of one replica in the election"""

    FOLLOWER = "Follower"
    CANDIDATE = "Candidate"
    LEADER = "Leader"


class LeadershipManagerBase(abc.ABC):
    """
    Base class for leader election. Only the replica holding the global lock may
    run reconciles, garbage collection or any other write path.
    """

    def __init__(
        self,
        store: Optional[ResourceStoreBase] = None,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize Class

        Args:
            store:  Optional[ResourceStoreBase]
                Store holding the lock
            on_started_leading:  Optional[Callable[[], None]]
                Called each time this replica becomes leader
            on_stopped_leading:  Optional[Callable[[], None]]
                Called each time this replica stops being leader
        """
        self.store = store
        self.on_started_leading = on_started_leading
        self.on_stopped_leading = on_stopped_leading

    ## Lock Interface ##########################################################

    @abc.abstractmethod
    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Start campaigning for the lock and wait for leadership

        Args:
            timeout:  Optional[float]
                Seconds to wait. If None wait until leadership is acquired

        Returns:
            success:  bool
                True if this replica is leader
        """

    @abc.abstractmethod
    def release(self):
        """
        Stop campaigning and give up the lock if held
        """

    @abc.abstractmethod
    def is_leader(self) -> bool:
        """
        Determines if current instance is leader

        Returns:
            leader:  bool
                True if instance is leader
        """

    @property
    @abc.abstractmethod
    def state(self) -> LeaderState:
        """The current election state of this replica"""

    ## Helpers #################################################################

    def _notify(self, callback: Optional[Callable[[], None]]):
        """Run a leadership callback without letting it break the election"""
        if callback is None:
            return
        try:
            callback()
        except Exception:  # pylint: disable=broad-except
            log.warning("Leadership callback %s failed", callback, exc_info=True)


class ThreadedLeaderManagerBase(LeadershipManagerBase):
    """
    Base class for threaded leadership election. Child classes only need to
    implement renew_or_acquire, and it will automatically be looped on a
    background thread every poll_time seconds until release is called.
    """

    def __init__(
        self,
        store: ResourceStoreBase,
        poll_time: float,
        on_started_leading: Optional[Callable[[], None]] = None,
        on_stopped_leading: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize class with events to track leadership and shutdown and
        a lock to ensure renew_or_acquire is only ran once at a time.

        Args:
            store:  ResourceStoreBase
                Store holding the lock
            poll_time:  float
                Seconds between renew_or_acquire runs
        """
        super().__init__(store, on_started_leading, on_stopped_leading)

        # Events to track status
        self.leader = threading.Event()
        self.shutdown = threading.Event()
        self._state = LeaderState.FOLLOWER

        # Lock to ensure multiple acquires aren't running at the same time
        self.run_lock = threading.Lock()

        # Lock guarding leadership transitions
        self._state_lock = threading.RLock()

        # Object to track Leadership thread
        self.leadership_thread = self._make_thread()
        self.poll_time = poll_time

    ## Public Interface ########################################################

    def renew_or_acquire(self):
        """
        Renew or acquire leadership lock
        """
        raise NotImplementedError

    def acquire_lock(self):
        """
        Helper function for child classes to mark leadership as held
        """
        with self._state_lock:
            self._state = LeaderState.LEADER
            if self.leader.is_set():
                return
            log.info("Acquired leadership")
            self.leader.set()
        self._notify(self.on_started_leading)

    def release_lock(self):
        """
        Helper function for child classes to mark leadership as lost
        """
        with self._state_lock:
            self._state = LeaderState.FOLLOWER
            if not self.leader.is_set():
                return
            log.warning("Lost leadership")
            self.leader.clear()
        self._notify(self.on_stopped_leading)

    def set_candidate(self):
        """Helper function for child classes to mark a running campaign"""
        with self._state_lock:
            if not self.leader.is_set():
                self._state = LeaderState.CANDIDATE

    ## Lock Interface ##########################################################

    def acquire(self, timeout: Optional[float] = None) -> bool:
        """
        Start the leadership thread if needed and wait for leadership

        Args:
            timeout:  Optional[float]
                Seconds to wait for leadership

        Returns:
            success:  bool
                True on successful acquisition
        """
        if self.shutdown.is_set():
            return False

        if not self.leadership_thread.is_alive():
            # Recreate leadership thread if it has already exited
            if self.leadership_thread.ident:
                self.leadership_thread = self._make_thread()
            log.info(
                "Starting %s: %s", self.__class__.__name__, self.leadership_thread.name
            )
            self.leadership_thread.start()

        return self.leader.wait(timeout) and self.is_leader()

    def release(self):
        """
        Release lock and shutdown leader election thread. The background thread
        is stopped before the lock is given up.
        """
        self.shutdown.set()
        if self.leadership_thread.ident:
            self.leadership_thread.join()
        with self.run_lock:
            if self.leader.is_set():
                self.give_up()
            self.release_lock()

    def is_leader(self) -> bool:
        """
        Return if leader event has been acquired

        Returns:
            leader: bool
                If instance is current leader
        """
        return self.leader.is_set()

    @property
    def state(self) -> LeaderState:
        return self._state

    def give_up(self):
        """Hook for child classes to hand the lock back to the store on release"""

    ## Implementation Details ##################################################

    def _make_thread(self) -> threading.Thread:
        return threading.Thread(
            name="leadership_thread", target=self.run, daemon=True
        )

    def run(self):
        """
        Loop to continuously run renew or acquire every so often
        """
        while True:
            if self.shutdown.is_set():
                log.debug("Shutting down %s Thread", self.__class__.__name__)
                return

            self.run_renew_or_acquire()
            self.shutdown.wait(self.poll_time)

    def run_renew_or_acquire(self):
        """
        Run renew_or_acquire safely and with threaded lock. Store failures count
        as a failed attempt and never stop the loop.
        """
        log.debug3("Running renew or acquire for %s lock", self.__class__.__name__)
        with self.run_lock:
            if self.shutdown.is_set():
                return
            try:
                self.renew_or_acquire()
            except KloopError as err:
                log.warning("Error detected while acquiring leadership lock: %s", err)
                self.handle_failed_attempt()

    def handle_failed_attempt(self):
        """Hook for child classes to react to a failed renew or acquire"""
