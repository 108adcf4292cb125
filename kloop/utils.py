"""
Common utilities shared across components in the library
"""

# Standard
from datetime import timedelta
from typing import Any, Callable, Optional
import json
import re

# First Party
import alog

# Local
from . import constants
from .exceptions import ConflictError

log = alog.use_channel("KLUTL")

# Sentinel for missing dict values
__MISSING__ = "__MISSING__"

## Dicts #######################################################################


def merge_configs(base, overrides) -> dict:
    """Helper to perform a deep merge of the overrides into the base. The merge
    is done in place, but the resulting dict is also returned for convenience.

    If both the base and overrides have a key and the type of the key for both
    is a dict, recursively merge, otherwise set the base value to the override
    value.

    Args:
        base:  dict
            The base config that will be updated with the overrides
        overrides:  dict
            The override config

    Returns:
        merged:  dict
            The merged results of overrides merged onto base
    """
    for key, value in overrides.items():
        if (
            key not in base
            or not isinstance(base[key], dict)
            or not isinstance(value, dict)
        ):
            base[key] = value
        else:
            base[key] = merge_configs(base[key], value)

    return base


def nested_get(dct: dict, key: str, dflt=None) -> Any:
    """Helper to get values from a dict using 'foo.bar' key notation

    Args:
        dct:  dict
            The dict to search
        key:  str
            Key that may contain '.' notation indicating dict nesting

    Returns:
        val:  Any
            Whatever is found at the given key or dflt if the key is not found.
            This includes missing intermediate dicts and intermediate values
            that are not dicts.
    """
    parts = key.split(constants.NESTED_DICT_DELIM)
    for part in parts[:-1]:
        dct = dct.get(part, __MISSING__)
        if dct is __MISSING__ or not isinstance(dct, dict):
            return dflt
    return dct.get(parts[-1], dflt)


## Time ########################################################################

# CITE: https://stackoverflow.com/questions/4628122/how-to-construct-a-timedelta-object-from-a-simple-string
_TIME_DELTA_REGEX = re.compile(
    r"^((?P<hours>\d+?)hr)?((?P<minutes>\d+?)m)?((?P<seconds>\d*\.?\d+?)s)?$"
)


def parse_time_delta(
    time_str: str,
) -> Optional[timedelta]:  # pylint: disable=inconsistent-return-statements
    """Parse a string into a timedelta. Accepts values in the following
    formats: 1hr, 5m, 10s, 0.5s, 1m30s

    Args:
        time_str: str
            The string representation of a timedelta

    Returns:
        result: Optional[timedelta]
            The parsed timedelta if one could be found
    """
    if not isinstance(time_str, str):
        return None
    parts = _TIME_DELTA_REGEX.match(time_str)
    if not parts or all(part is None for part in parts.groupdict().values()):
        return None
    time_params = {}
    for name, param in parts.groupdict().items():
        if param:
            time_params[name] = float(param)
    return timedelta(**time_params)


def parse_seconds(time_str: str) -> float:
    """Parse a duration string into float seconds, raising ValueError when the
    string is not a valid duration
    """
    delta = parse_time_delta(time_str)
    if delta is None:
        raise ValueError(f"Invalid duration: {time_str}")
    return delta.total_seconds()


## Hashing #####################################################################


def obj_to_hash(obj: Any) -> int:
    """Get the hash of any jsonable python object

    Args:
        obj: Any
            The object to hash

    Returns:
        hash: int
            The hash of obj
    """
    return hash(json.dumps(obj, sort_keys=True, default=str))


## Retries #####################################################################


def retry_on_conflict(operation: Callable[[int], Any], retries: int) -> Any:
    """Run an optimistic-concurrency operation, retrying immediately when it
    loses a write race. The operation is passed the attempt number so it can
    take a fresh read on every retry.

    Args:
        operation:  Callable[[int], Any]
            The read-modify-write operation
        retries:  int
            The number of retries after the first attempt

    Returns:
        result:  Any
            The return value of the successful attempt. The last ConflictError
            is raised once retries are exhausted
    """
    attempt = 0
    while True:
        try:
            return operation(attempt)
        except ConflictError as err:
            if attempt >= retries:
                log.debug("Conflict retries exhausted: %s", err)
                raise
            attempt += 1
            log.debug2("Retrying after conflict (%d/%d): %s", attempt, retries, err)
