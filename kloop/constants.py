"""
Shared module to hold constant values for the library
"""

# Delimiter used for nested dict keys
NESTED_DICT_DELIM = "."

# Annotation which pauses reconciliation of a resource while present
PAUSE_ANNOTATION_NAME = "kloop.io/pause-reconcile"

# Finalizer added by the store for foreground cascading deletion
FOREGROUND_DELETION_FINALIZER = "foregroundDeletion"

# Propagation policies accepted by ResourceStoreBase.delete
PROPAGATION_BACKGROUND = "Background"
PROPAGATION_FOREGROUND = "Foreground"

# Annotation prefixes owned by the platform rather than users
RESERVED_PLATFORM_ANNOTATIONS = [
    "k8s.io",
    "kubernetes.io",
    "openshift.io",
]

# Name of the builtin index mapping owner uids to dependents
OWNER_UID_INDEX = "owner-uid"

# Timestamp format used for metadata and condition times
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"

# Lease api used by the kubernetes store
LEASE_KIND = "Lease"
LEASE_API_VERSION = "coordination.k8s.io/v1"

# Minimum wait time between checks in the timer thread
MIN_SLEEP_TIME = 0.01

# Default timeout when joining threads during shutdown
JOIN_THREAD_TIMEOUT = 5
