"""
Module to validate values in a loaded config
"""

# Standard
from typing import Any, Dict, List, Optional, Union
import abc

# First Party
import aconfig
import alog

# Local
from .. import constants
from ..utils import nested_get, parse_time_delta

log = alog.use_channel("CONFG")


################################################################################
## Public ######################################################################
################################################################################


def get_invalid_params(
    config: aconfig.Config,
    validation_config: aconfig.Config,
) -> List[str]:
    """Get a list of any params that are invalid

    Args:
        config:  aconfig.Config
            The parsed config with any override values
        validation_config:  aconfig.Config
            The parallel config holding validation setup

    Returns:
        invalid_params:  List[str]
            A list of all string keys for parameters that fail validation
    """
    invalid_params = []
    for val_key, validator in _parse_validation_config(validation_config).items():
        if not validator.validate(nested_get(config, val_key)):
            log.warning("Found invalid config key [%s]", val_key)
            invalid_params.append(val_key)
    return invalid_params


def get_invalid_lock_timing(lock_config: dict) -> List[str]:
    """Leader election is only safe when a leader gives up before its lease can
    be taken by another candidate. This requires
    retry_period < renew_deadline < lease_duration.

    Args:
        lock_config:  dict
            The "lock" section of the library config

    Returns:
        invalid_params:  List[str]
            The lock keys that break the ordering
    """
    retry_period = parse_time_delta(lock_config.get("retry_period"))
    renew_deadline = parse_time_delta(lock_config.get("renew_deadline"))
    lease_duration = parse_time_delta(lock_config.get("lease_duration"))
    if None in [retry_period, renew_deadline, lease_duration]:
        return ["lock"]

    invalid_params = []
    if not renew_deadline < lease_duration:
        log.warning("lock.renew_deadline must be shorter than lock.lease_duration")
        invalid_params.append("lock.renew_deadline")
    if not retry_period < renew_deadline:
        log.warning("lock.retry_period must be shorter than lock.renew_deadline")
        invalid_params.append("lock.retry_period")
    return invalid_params


################################################################################
## Implementation ##############################################################
################################################################################


## Base Class ##################################################################

# pylint: disable=too-few-public-methods


class _ValidatedParameter(abc.ABC):
    """This class represents a parameter with type and value validation"""

    def __init__(
        self,
        valid_types: List[type],
        optional: bool = False,
    ):
        """Construct with the set of valid types

        Args:
            valid_types:  List[type]
                The list of valid types for this parameter
            optional:  bool
                Whether or not the parameter may be None
        """
        assert len(valid_types) > 0, "Must specify at least one valid type"
        self.valid_types = valid_types
        self.optional = optional

    def validate(self, value: Any) -> bool:
        """Run the validation for a read value"""
        if self.optional and value is None:
            return True

        # bool is a subclass of int, so it has to be rejected explicitly for
        # numeric parameters
        if isinstance(value, bool) and bool not in self.valid_types:
            log.warning("Invalid type <%s>", type(value))
            return False

        if not any(isinstance(value, valid_type) for valid_type in self.valid_types):
            log.warning("Invalid type <%s>", type(value))
            return False

        valid_value = self._validate_value(value)
        if not valid_value:
            log.warning("Invalid value [%s]", value)
        return valid_value

    @abc.abstractmethod
    def _validate_value(self, value: Any) -> bool:
        """All child classes must provide value validation that is specific to
        the given type
        """


## Validators ##################################################################


class _NumberParameter(_ValidatedParameter):
    """A parameter that must be a number type and has optional bounds"""

    TYPES = [int, float]
    TYPE_KEY = "number"

    def __init__(
        self,
        *,
        min: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        max: Optional[Union[int, float]] = None,  # pylint: disable=redefined-builtin
        **kwargs,
    ):
        super().__init__(valid_types=self.TYPES, **kwargs)
        self._min = min
        self._max = max

    def _validate_value(self, value: Union[int, float]) -> bool:
        return (self._min is None or value >= self._min) and (
            self._max is None or value <= self._max
        )


class _IntParameter(_NumberParameter):
    """A number parameter that must be an int"""

    TYPES = [int]
    TYPE_KEY = "int"


class _StrParameter(_ValidatedParameter):
    """A parameter that must be of type str"""

    TYPES = [str]
    TYPE_KEY = "str"

    def __init__(self, *, min_len: Optional[int] = None, **kwargs):
        super().__init__(valid_types=self.TYPES, **kwargs)
        self._min_len = min_len

    def _validate_value(self, value: str) -> bool:
        return self._min_len is None or len(value) >= self._min_len


class _BoolParameter(_ValidatedParameter):
    """A parameter that must be a bool"""

    TYPES = [bool]
    TYPE_KEY = "bool"

    def __init__(self, **kwargs):
        super().__init__(valid_types=self.TYPES, **kwargs)

    def _validate_value(self, value: bool) -> bool:
        return True


class _EnumParameter(_ValidatedParameter):
    """A parameter with a fixed set of valid str or int values"""

    TYPES = [str, int]
    TYPE_KEY = "enum"

    def __init__(self, *, values: List[Union[str, int]], **kwargs):
        super().__init__(valid_types=self.TYPES, **kwargs)
        assert (
            isinstance(values, list) and values
        ), "Must specify at least one enum value!"
        self.values = values

    def _validate_value(self, value: Union[str, int]) -> bool:
        return value in self.values


class _DurationParameter(_ValidatedParameter):
    """A parameter holding a duration string such as "5m" or "0.5s" """

    TYPES = [str]
    TYPE_KEY = "duration"

    def __init__(self, **kwargs):
        super().__init__(valid_types=self.TYPES, **kwargs)

    def _validate_value(self, value: str) -> bool:
        return parse_time_delta(value) is not None


# pylint: enable=too-few-public-methods

## Factory #####################################################################


def _create_factory_map(param_class, factory_map=None):
    """Helper to recursively create the factory map from TYPE_KEY to class"""
    factory_map = factory_map or {}
    if not param_class.__abstractmethods__:
        factory_map[param_class.TYPE_KEY] = param_class
    for subclass in param_class.__subclasses__():
        factory_map = _create_factory_map(subclass, factory_map)
    return factory_map


_factory_map = _create_factory_map(_ValidatedParameter)


def _construct_parameter(param_args: Dict[str, Any]) -> Optional[_ValidatedParameter]:
    """Construct a _ValidatedParameter from the given args parsed out of a
    validation file. Unknown types yield None.
    """
    param_type = param_args.get("type")
    if not (isinstance(param_type, str) and param_type in _factory_map):
        return None
    kwargs = {key: val for key, val in param_args.items() if key != "type"}
    return _factory_map[param_type](**kwargs)


## Parsing #####################################################################


def _parse_validation_config(
    validation_config: aconfig.Config,
    prefix_parts: Optional[List[str]] = None,
) -> Dict[str, _ValidatedParameter]:
    """Recursively parse the given validation file into a dict of nested keys
    pointing to _ValidatedParameter instances.
    """
    output_dict = {}
    prefix_parts = prefix_parts or []
    for key, val in validation_config.items():
        assert isinstance(key, str), "Only string keys allowed!"
        if not isinstance(val, dict):
            continue

        key_parts = prefix_parts + [key]
        nested_key = constants.NESTED_DICT_DELIM.join(key_parts)

        # A dict whose "type" is a known parameter type is a leaf. Otherwise
        # (including sections with a nested "type" key) recurse
        param = _construct_parameter(val) if "type" in val else None
        if param:
            log.debug3("Found parameter at %s", nested_key)
            output_dict[nested_key] = param
        else:
            log.debug3("Recursing into %s", nested_key)
            output_dict.update(_parse_validation_config(val, prefix_parts=key_parts))

    return output_dict
