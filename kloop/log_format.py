"""
Custom logging formats that contain more detailed kloop logs
"""

# First Party
from alog import AlogJsonFormatter
import alog

log = alog.use_channel("LOGFMT")


class KloopJsonFormatter(AlogJsonFormatter):
    """Custom Log Format that extends AlogJsonFormatter to add the identity of
    the resource being reconciled and the reconcile id. A log call can attach a
    resource with extra={"resource": <Resource or ResourceKey>}
    """

    _FIELDS_TO_PRINT = AlogJsonFormatter._FIELDS_TO_PRINT + [
        "threadName",
        "kind",
        "namespace",
        "resourceName",
        "resourceVersion",
        "reconcileId",
    ]

    def __init__(self, reconcile_id=None):
        super().__init__()
        self.reconcile_id = reconcile_id

    def format(self, record):
        reconcile_id = getattr(record, "reconcile_id", self.reconcile_id)
        if reconcile_id:
            record.reconcileId = reconcile_id

        resource = getattr(record, "resource", None)
        if resource is not None:
            record.kind = getattr(resource, "kind", None)
            record.namespace = getattr(resource, "namespace", None)
            record.resourceName = getattr(resource, "name", None)
            record.resourceVersion = getattr(resource, "resource_version", None)

        return super().format(record)
