"""
Module for the ThreadBase Class
"""

# Standard
from typing import Optional
import threading

# First Party
import alog

# Local
from ..leader_election import DryRunLeadershipManager, LeadershipManagerBase
from ..store import ResourceStoreBase

log = alog.use_channel("TRDUTLS")

# How often a thread waiting on leadership checks for shutdown
LEADERSHIP_POLL_TIME = 0.5


class ThreadBase(threading.Thread):
    """Base class for all other thread classes. This class handles generic
    starting, stopping, and leadership functions"""

    def __init__(
        self,
        name: Optional[str] = None,
        daemon: Optional[bool] = None,
        store: Optional[ResourceStoreBase] = None,
        leadership_manager: Optional[LeadershipManagerBase] = None,
    ):
        """Initialize class and store required instance variables. This function
        is normally overridden by subclasses that pass in static name/daemon
        variables

        Args:
            name:  Optional[str]
                The name of the thread to manage
            daemon:  Optional[bool]
                Whether python should wait for this thread to stop before exiting
            store:  Optional[ResourceStoreBase]
                The store available to this thread
            leadership_manager:  Optional[LeadershipManagerBase]
                The leadership_manager for tracking elections
        """
        self.store = store
        self.leadership_manager = leadership_manager or DryRunLeadershipManager()
        self.shutdown = threading.Event()
        super().__init__(name=name, daemon=daemon)

    ## Abstract Interface ######################################################
    #
    # These functions must be implemented by child classes
    ##
    def run(self):
        """Control loop for the thread. Once this function exits the thread stops"""
        raise NotImplementedError()

    ## Base Class Interface ####################################################
    #
    # These methods MAY be implemented by children, but contain default
    # implementations that are appropriate for simple cases.
    #
    ##

    def start_thread(self):
        """If the thread is not already alive start it"""
        if not self.is_alive():
            log.info("Starting %s: %s", self.__class__.__name__, self.name)
            self.start()

    def stop_thread(self):
        """Set the shutdown event"""
        log.info("Stopping %s: %s", self.__class__.__name__, self.name)
        self.shutdown.set()

    def should_stop(self) -> bool:
        """Helper to determine if a thread should shutdown"""
        return self.shutdown.is_set()

    def check_preconditions(self) -> bool:
        """Helper function to check if the thread should shutdown. Blocks while
        this replica is not the leader.

        Returns:
            should_continue:  bool
                False if the thread is shutting down
        """
        while not self.should_stop():
            if self.leadership_manager.is_leader():
                return True
            log.debug3("Waiting for leadership")
            self.leadership_manager.acquire(timeout=LEADERSHIP_POLL_TIME)
        return False

    def wait_on_precondition(self, timeout: float) -> bool:
        """Helper function to allow threads to wait for a certain period of time
        only being interrupted for preconditions"""
        self.shutdown.wait(timeout)
        return self.check_preconditions()
