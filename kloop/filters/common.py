"""Common functions used for interacting with filters including default filter classes"""

# Standard
from functools import lru_cache
import importlib
import inspect

# First Party
import alog

# Local
from .. import config
from ..exceptions import ConfigError
from .filters import (
    AnnotationChangedFilter,
    CreationDeletionFilter,
    EnableFilter,
    Filter,
    GenerationChangedFilter,
    NoGenerationFilter,
    PauseFilter,
    ResourceVersionChangedFilter,
    UserAnnotationFilter,
)
from .manager import AndFilter, OrFilter

log = alog.use_channel("FLTCOM")


### Factory Filters

# Usable default filter chains
DEFAULT_FILTER = AndFilter(
    CreationDeletionFilter,
    GenerationChangedFilter,
    NoGenerationFilter,
    ResourceVersionChangedFilter,
    PauseFilter,
)
ANNOTATION_FILTER = AndFilter(
    OrFilter(DEFAULT_FILTER, AnnotationChangedFilter), PauseFilter
)
USER_ANNOTATION_FILTER = AndFilter(
    OrFilter(DEFAULT_FILTER, UserAnnotationFilter), PauseFilter
)

FILTERS = {
    "default": DEFAULT_FILTER,
    "annotation": ANNOTATION_FILTER,
    "user-annotation": USER_ANNOTATION_FILTER,
}


### Factory Filter Functions


# Only compute the filter once to avoid reimporting
@lru_cache(maxsize=1)
def get_configured_filter() -> Filter:
    """Get the default filter that should be applied to primary resources

    Returns:
        default_filter: Filter
            The default filter specified in the config"""
    filter_name = config.filter

    if filter_name in FILTERS:
        filter_obj = FILTERS[filter_name]
    elif isinstance(filter_name, str) and filter_name:
        filter_obj = import_filter(filter_name)
    # If no filter is provided then always enable
    else:
        filter_obj = EnableFilter()

    log.debug2("Found filter: %s", filter_obj)
    return filter_obj


### Helper Functions


def import_filter(filter_name: str) -> Filter:
    """Import a filter from a string reference

    Args:
        filter_name: str
            Filter name in <module>.<filter> form

    Returns:
        imported_filter: Filter
            The filter that was requested. Classes are instantiated
    """
    if "." not in filter_name:
        raise ConfigError(f"Invalid Filter: {filter_name}. Expected <module>.<name>")
    module_path, class_name = filter_name.rsplit(".", 1)
    try:
        filter_module = importlib.import_module(module_path)
        filter_obj = getattr(filter_module, class_name)
    except (ImportError, AttributeError) as exc:
        raise ConfigError(
            f"Invalid Filter: {filter_name}. Module or class not found"
        ) from exc

    if inspect.isclass(filter_obj) and issubclass(filter_obj, Filter):
        return filter_obj()
    if not isinstance(filter_obj, Filter):
        raise ConfigError(f"{filter_obj} is not an instance of {Filter}")
    return filter_obj
