"""Module contains the combinators used to compose filters into a chain"""
# Standard
from typing import List, Optional, Type, Union
import inspect

# First Party
import alog

# Local
from ..cache import CacheEvent
from .filters import Filter

log = alog.use_channel("FLTMAN")

FilterLike = Union[Filter, Type[Filter]]


def to_filter(filter_like: FilterLike) -> Filter:
    """Accept either a filter instance or a filter class with no arguments"""
    if inspect.isclass(filter_like) and issubclass(filter_like, Filter):
        return filter_like()
    if isinstance(filter_like, Filter):
        return filter_like
    raise TypeError(f"{filter_like} is not a Filter")


class AndFilter(Filter):
    """Accepts when no member rejects and at least one member accepts. A chain
    where every member abstains rejects, and an empty chain accepts."""

    def __init__(self, *filters: FilterLike):
        self.filters: List[Filter] = [to_filter(member) for member in filters]

    def test(self, event: CacheEvent) -> Optional[bool]:
        if not self.filters:
            return True
        accepted = False
        for member in self.filters:
            result = member.test(event)
            if result is False:
                log.debug3("Filter %s rejected %s", member, event.resource.key)
                return False
            if result:
                accepted = True
        return accepted

    def __repr__(self):
        return f"AndFilter({', '.join(repr(member) for member in self.filters)})"


class OrFilter(Filter):
    """Accepts when any member accepts"""

    def __init__(self, *filters: FilterLike):
        self.filters: List[Filter] = [to_filter(member) for member in filters]

    def test(self, event: CacheEvent) -> Optional[bool]:
        for member in self.filters:
            if member.test(event):
                return True
        return False

    def __repr__(self):
        return f"OrFilter({', '.join(repr(member) for member in self.filters)})"


class NotFilter(Filter):
    """Inverts a filter. An abstention stays an abstention"""

    def __init__(self, member: FilterLike):
        self.member = to_filter(member)

    def test(self, event: CacheEvent) -> Optional[bool]:
        result = self.member.test(event)
        if result is None:
            return None
        return not result

    def __repr__(self):
        return f"NotFilter({self.member!r})"


def passes(event_filter: Optional[Filter], event: CacheEvent) -> bool:
    """Apply a filter chain to an event. No filter accepts everything and an
    abstaining filter rejects.
    """
    if event_filter is None:
        return True
    return event_filter.test(event) is True
