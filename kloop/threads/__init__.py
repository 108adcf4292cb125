"""Import the ThreadBase and subclasses"""
# Local
from .base import ThreadBase
from .timer import TimerEvent, TimerThread
