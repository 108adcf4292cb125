"""
The KubeResourceStore delegates store operations to a live kubernetes cluster
through the kubernetes dynamic client. It is the store used when the runtime is
running in the cluster or outside the cluster against a real api server.
"""

# Standard
from datetime import datetime, timedelta, timezone
from typing import Callable, Iterator, List, Optional, Tuple
import threading
import time

# Third Party
from dateutil.parser import parse
from kubernetes import client
from kubernetes.dynamic import DynamicClient
from kubernetes.dynamic.exceptions import ResourceNotFoundError, ResourceNotUniqueError
from kubernetes.watch import Watch
import kubernetes
import urllib3

# First Party
import alog

# Local
from .. import config
from ..constants import LEASE_API_VERSION, LEASE_KIND
from ..exceptions import (
    AlreadyExistsError,
    ConflictError,
    ExpiredError,
    KloopError,
    NotFoundError,
    PermanentError,
    TransientError,
)
from ..identity import get_operator_namespace
from ..resource import Resource, ResourceKey
from ..utils import parse_seconds
from .base import ResourceStoreBase
from .events import WatchEvent, WatchEventType

log = alog.use_channel("KUBST")

# See this document for value reasonings
# https://github.com/kubernetes-client/python/blob/master/examples/watch/timeout-settings.md
CLIENT_WATCH_TIMEOUT = 30

# Timestamp format of lease times
LEASE_TIME_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def translate_api_exception(err: client.exceptions.ApiException) -> KloopError:
    """Map a kubernetes api failure onto the kloop error taxonomy

    Args:
        err:  client.exceptions.ApiException
            The error raised by the kubernetes client

    Returns:
        translated:  KloopError
            The matching kloop error
    """
    status = err.status
    message = f"[{status}] {err.reason}"
    if status == 404:
        return NotFoundError(message)
    if status == 409:
        if "AlreadyExists" in str(err.body or "") or "already exists" in str(
            err.body or ""
        ):
            return AlreadyExistsError(message)
        return ConflictError(message)
    if status == 410:
        return ExpiredError(message)
    if status in [400, 403, 422]:
        return PermanentError(message)
    return TransientError(message)


class KubeResourceStore(ResourceStoreBase):
    """This store uses the kubernetes DynamicClient to interact with the cluster"""

    def __init__(self, lease_namespace: Optional[str] = None):
        """
        Args:
            lease_namespace:  Optional[str]
                The namespace holding leader election leases. Defaults to the
                namespace the pod is running in
        """
        self._client = None
        self._lease_namespace = lease_namespace
        self.request_timeout = parse_seconds(config.store.request_timeout)

    @property
    def client(self) -> DynamicClient:
        """Lazy property access to the client"""
        if self._client is None:
            self._client = self._setup_client()
        return self._client

    @property
    def lease_namespace(self) -> str:
        if self._lease_namespace is None:
            self._lease_namespace = get_operator_namespace()
        return self._lease_namespace

    ## Reads ###################################################################

    def list(
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        label_selector: Optional[str] = None,
    ) -> Tuple[List[Resource], str]:
        handle = self._get_resource_handle(kind, api_version)
        result = self._with_retries(
            lambda: handle.get(
                namespace=namespace,
                label_selector=label_selector,
                _request_timeout=self.request_timeout,
            ).to_dict()
        )
        resources = []
        for item in result.get("items", []):
            # List items do not carry their kind
            item.setdefault("kind", kind)
            item.setdefault("apiVersion", handle.group_version)
            resources.append(Resource(item))
        return resources, result.get("metadata", {}).get("resourceVersion")

    def watch(  # pylint: disable=too-many-arguments
        self,
        kind: str,
        api_version: Optional[str] = None,
        namespace: Optional[str] = None,
        resource_version: Optional[str] = None,
        label_selector: Optional[str] = None,
        timeout: Optional[float] = None,
        stop_event: Optional[threading.Event] = None,
    ) -> Iterator[WatchEvent]:
        handle = self._get_resource_handle(kind, api_version)
        watch_manager = Watch()
        stream_kwargs = {
            "namespace": namespace,
            "label_selector": label_selector,
            "serialize": False,
            "_request_timeout": CLIENT_WATCH_TIMEOUT,
        }
        if resource_version is not None:
            stream_kwargs["resource_version"] = resource_version
        if timeout:
            stream_kwargs["timeout_seconds"] = int(timeout)
        return self._stream(watch_manager, handle, stream_kwargs, stop_event)

    def get(self, key: ResourceKey) -> Resource:
        handle = self._get_resource_handle(key.kind, key.api_version)
        result = self._with_retries(
            lambda: handle.get(
                name=key.name,
                namespace=key.namespace,
                _request_timeout=self.request_timeout,
            ).to_dict()
        )
        return Resource(result)

    ## Writes ##################################################################

    def create(self, resource: Resource) -> Resource:
        resource = Resource(resource)
        handle = self._get_resource_handle(resource.kind, resource.api_version)
        log.debug2("Creating %s", resource)
        result = self._with_retries(
            lambda: handle.create(
                body=resource.to_dict(),
                namespace=resource.namespace,
                _request_timeout=self.request_timeout,
            ).to_dict()
        )
        return Resource(result)

    def update(self, resource: Resource) -> Resource:
        resource = Resource(resource)
        handle = self._get_resource_handle(resource.kind, resource.api_version)
        log.debug2("Replacing %s", resource)
        result = self._with_retries(
            lambda: handle.replace(
                body=resource.to_dict(),
                namespace=resource.namespace,
                _request_timeout=self.request_timeout,
            ).to_dict()
        )
        return Resource(result)

    def update_status(self, resource: Resource) -> Resource:
        resource = Resource(resource)
        handle = self._get_resource_handle(resource.kind, resource.api_version)
        log.debug2("Replacing status of %s", resource)
        result = self._with_retries(
            lambda: handle.status.replace(
                body=resource.to_dict(),
                namespace=resource.namespace,
                _request_timeout=self.request_timeout,
            ).to_dict()
        )
        return Resource(result)

    def delete(
        self, key: ResourceKey, propagation_policy: Optional[str] = None
    ) -> Optional[Resource]:
        handle = self._get_resource_handle(key.kind, key.api_version)
        body = {}
        if propagation_policy:
            body = {"propagationPolicy": propagation_policy}
        log.debug2("Deleting %s", key)
        self._with_retries(
            lambda: handle.delete(
                name=key.name,
                namespace=key.namespace,
                body=body,
                _request_timeout=self.request_timeout,
            )
        )

        # Objects held by finalizers are still readable after the delete call
        try:
            return self.get(key)
        except NotFoundError:
            return None

    ## Leases ##################################################################

    def acquire_lease(self, name: str, holder: str, ttl: float) -> bool:
        current_time = datetime.now(timezone.utc)
        lease_spec = {
            "holderIdentity": holder,
            "acquireTime": current_time.strftime(LEASE_TIME_FORMAT),
            "leaseDurationSeconds": max(round(ttl), 1),
            "leaseTransitions": 0,
            "renewTime": current_time.strftime(LEASE_TIME_FORMAT),
        }

        lease_obj = self._get_lease(name)
        resource_version = None
        if lease_obj is not None:
            resource_version = lease_obj.resource_version
            current_spec = lease_obj.spec
            lock_holder = current_spec.get("holderIdentity")
            if lock_holder == holder:
                log.debug3("Lease %s already held. Reusing acquireTime", name)
                lease_spec["acquireTime"] = current_spec.get("acquireTime")
                lease_spec["leaseTransitions"] = current_spec.get(
                    "leaseTransitions", 0
                )
            else:
                if lock_holder and not self._lease_expired(current_spec, current_time):
                    log.debug3("Lease %s is held by %s", name, lock_holder)
                    return False
                log.info("Taking leadership of %s from %s", name, lock_holder)
                lease_spec["leaseTransitions"] = (
                    current_spec.get("leaseTransitions") or 0
                ) + 1

        return self._write_lease(name, lease_spec, resource_version)

    def renew_lease(self, name: str, holder: str, ttl: float) -> bool:
        lease_obj = self._get_lease(name)
        if lease_obj is None or lease_obj.spec.get("holderIdentity") != holder:
            return False
        lease_spec = dict(lease_obj.spec)
        lease_spec["renewTime"] = datetime.now(timezone.utc).strftime(
            LEASE_TIME_FORMAT
        )
        lease_spec["leaseDurationSeconds"] = max(round(ttl), 1)
        return self._write_lease(name, lease_spec, lease_obj.resource_version)

    def release_lease(self, name: str, holder: str) -> bool:
        lease_obj = self._get_lease(name)
        if lease_obj is None or lease_obj.spec.get("holderIdentity") != holder:
            return False
        lease_spec = dict(lease_obj.spec)
        lease_spec["holderIdentity"] = None
        return self._write_lease(name, lease_spec, lease_obj.resource_version)

    ## Implementation Helpers ##################################################

    @staticmethod
    def _setup_client() -> DynamicClient:
        """Create a DynamicClient that will work based on where the runtime is
        running
        """
        # Try in-cluster config
        try:
            log.debug2("Running with in-cluster config")
            kube_config = kubernetes.client.Configuration()
            kubernetes.config.load_incluster_config(client_configuration=kube_config)
            return DynamicClient(kubernetes.client.ApiClient(kube_config))

        # Fall back to out-of-cluster config
        except kubernetes.config.ConfigException:
            log.debug2("Running with out-of-cluster config")
            return DynamicClient(kubernetes.config.new_client_from_config())

    def _get_resource_handle(self, kind: str, api_version: Optional[str]):
        """Get the dynamic client resource handle for a kind and api_version"""
        try:
            return self.client.resources.get(kind=kind, api_version=api_version)
        except (ResourceNotFoundError, ResourceNotUniqueError) as err:
            raise PermanentError(
                f"Unable to resolve kind {api_version}/{kind}: {err}"
            ) from err

    def _with_retries(self, operation: Callable):
        """Run a client operation, translating errors and retrying transient
        failures with a linear backoff
        """
        max_retries = config.store.kube_retries
        backoff_base = parse_seconds(config.store.retry_backoff_base)
        attempt = 0
        while True:
            try:
                try:
                    return operation()
                except client.exceptions.ApiException as err:
                    raise translate_api_exception(err) from err
                except urllib3.exceptions.HTTPError as err:
                    raise TransientError(f"Connection failure: {err}") from err
            except TransientError as err:
                if attempt >= max_retries:
                    raise
                attempt += 1
                backoff_duration = backoff_base * attempt
                log.debug2(
                    "Retrying transient failure in %fs (%d/%d): %s",
                    backoff_duration,
                    attempt,
                    max_retries,
                    err,
                )
                time.sleep(backoff_duration)

    def _stream(
        self,
        watch_manager: Watch,
        handle,
        stream_kwargs: dict,
        stop_event: Optional[threading.Event],
    ) -> Iterator[WatchEvent]:
        try:
            for event_obj in watch_manager.stream(handle.get, **stream_kwargs):
                if stop_event is not None and stop_event.is_set():
                    return
                event_type = event_obj.get("type")
                raw_object = event_obj.get("raw_object") or event_obj.get("object")
                if not isinstance(raw_object, dict):
                    raw_object = raw_object.to_dict()
                if event_type == "ERROR":
                    code = raw_object.get("code")
                    if code == 410:
                        raise ExpiredError(raw_object.get("message", ""))
                    raise TransientError(f"Watch error event: {raw_object}")
                if event_type == "BOOKMARK":
                    continue
                yield WatchEvent(
                    type=WatchEventType(event_type), resource=Resource(raw_object)
                )
        except client.exceptions.ApiException as err:
            raise translate_api_exception(err) from err
        except urllib3.exceptions.ReadTimeoutError:
            log.debug4("Watch socket closed for %s", handle.kind)
        except urllib3.exceptions.ProtocolError as err:
            raise TransientError(f"Invalid chunk from server: {err}") from err
        finally:
            watch_manager.stop()

    def _get_lease(self, name: str) -> Optional[Resource]:
        try:
            return self.get(
                ResourceKey(
                    kind=LEASE_KIND,
                    name=name,
                    namespace=self.lease_namespace,
                    api_version=LEASE_API_VERSION,
                )
            )
        except NotFoundError:
            return None

    def _write_lease(
        self, name: str, lease_spec: dict, resource_version: Optional[str]
    ) -> bool:
        lease_resource = Resource(
            {
                "kind": LEASE_KIND,
                "apiVersion": LEASE_API_VERSION,
                "metadata": {"name": name, "namespace": self.lease_namespace},
                "spec": lease_spec,
            }
        )
        try:
            if resource_version is None:
                self.create(lease_resource)
            else:
                lease_resource.metadata["resourceVersion"] = resource_version
                self.update(lease_resource)
        except ConflictError as err:
            log.debug2("Lost lease write race for %s: %s", name, err)
            return False
        return True

    @staticmethod
    def _lease_expired(lease_spec: dict, current_time: datetime) -> bool:
        renew_time = lease_spec.get("renewTime")
        if not renew_time:
            return True
        lease_duration = timedelta(seconds=lease_spec.get("leaseDurationSeconds", 0))
        return parse(renew_time) + lease_duration < current_time
