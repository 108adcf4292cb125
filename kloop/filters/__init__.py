"""Filters decide which cache events lead to a reconcile"""
# Local
from .common import (
    ANNOTATION_FILTER,
    DEFAULT_FILTER,
    USER_ANNOTATION_FILTER,
    get_configured_filter,
    import_filter,
)
from .filters import (
    AnnotationChangedFilter,
    ConditionChangedFilter,
    CreationDeletionFilter,
    DeletionRequestedFilter,
    DependentWatchFilter,
    DisableFilter,
    EnableFilter,
    FieldChangedFilter,
    Filter,
    GenerationChangedFilter,
    LabelChangedFilter,
    LabelSelectorFilter,
    NoGenerationFilter,
    PauseFilter,
    ResourceVersionChangedFilter,
    UserAnnotationFilter,
    is_paused,
)
from .manager import AndFilter, NotFilter, OrFilter, passes, to_filter
