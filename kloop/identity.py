"""
Helpers to detect who and where the running controller is
"""

# Standard
import pathlib
import platform

# First Party
import alog

# Local
from . import config

log = alog.use_channel("IDENT")

# File mounted into every pod with the service account's namespace
NAMESPACE_FILE = "/var/run/secrets/kubernetes.io/serviceaccount/namespace"


def get_operator_namespace() -> str:
    """Get the current namespace from a kubernetes file or config"""
    namespace_file = pathlib.Path(NAMESPACE_FILE)
    if namespace_file.is_file():
        return namespace_file.read_text(encoding="utf-8").strip()
    return config.lock.namespace


def get_pod_name() -> str:
    """Get the current pod from env variables, config, or hostname"""
    pod_name = config.pod_name
    if not pod_name:
        log.warning("Pod name not detected, falling back to hostname")
        pod_name = platform.node().split(".")[0]
    return pod_name


def get_lock_name() -> str:
    """The lease name defaults to the operator name"""
    return config.lock.name or config.operator_name
