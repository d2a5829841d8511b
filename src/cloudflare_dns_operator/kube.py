"""Cluster object store.

``ClusterStore`` is the capability the reconciler, resolver, dispatcher and
health checker consume. ``KubernetesClusterStore`` implements it with the
official ``kubernetes`` client. Objects are handed out as plain dicts in their
API (camelCase) shape so the rest of the operator never touches client models.
"""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from kubernetes import client, watch
from kubernetes.client.exceptions import ApiException
from urllib3.exceptions import HTTPError

from cloudflare_dns_operator.errors import ClusterForbidden, ClusterUnavailable, ClusterWriteError
from cloudflare_dns_operator.resources import GROUP, KIND, PLURAL, VERSION

logger = logging.getLogger(__name__)

SERVICE = "Service"
SECRET = "Secret"
CONFIG_MAP = "ConfigMap"
WATCHED_KINDS = (KIND, SERVICE, SECRET, CONFIG_MAP)

MERGE_PATCH = "application/merge-patch+json"


@dataclass(frozen=True)
class WatchEvent:
    """A single add/update/delete notification for one object."""

    type: str
    object: Dict[str, Any]

    @property
    def namespace(self) -> str:
        return (self.object.get("metadata") or {}).get("namespace") or ""

    @property
    def name(self) -> str:
        return (self.object.get("metadata") or {}).get("name") or ""


# =============================================================================
# Interface
# =============================================================================


class ClusterStore(ABC):
    """Read/patch/watch access to the cluster API server."""

    @abstractmethod
    def get_record(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        """Return a CloudflareDNSRecord, or None if it does not exist."""

    @abstractmethod
    def list_records(self) -> List[Dict[str, Any]]:
        """Return all CloudflareDNSRecords in all namespaces."""

    @abstractmethod
    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_config_map(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def get_service(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    def set_finalizers(
        self, resource: Dict[str, Any], finalizers: List[str]
    ) -> Optional[Dict[str, Any]]:
        """Replace the finalizer list, failing if the resource changed meanwhile.

        Returns the updated resource, or None if it no longer exists.
        Raises ClusterWriteError on any other failure.
        """

    @abstractmethod
    def patch_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        """Merge the given fields into the status subresource.

        Fields not present in ``status`` are left untouched. Returns the
        updated resource, or None if it no longer exists. Raises
        ClusterWriteError on any other failure.
        """

    @abstractmethod
    def watch(self, kind: str, stop_event: threading.Event) -> Iterator[WatchEvent]:
        """Yield events for ``kind`` until ``stop_event`` is set.

        Every (re)list yields an ADDED event per existing object.
        """

    def close(self) -> None:
        """Interrupt open watch streams."""


# =============================================================================
# Kubernetes implementation
# =============================================================================


class KubernetesClusterStore(ClusterStore):
    def __init__(
        self,
        api_client: Optional[client.ApiClient] = None,
        request_timeout: float = 10.0,
        watch_timeout_seconds: int = 300,
        retry_delay_seconds: float = 5.0,
    ):
        self._api_client = api_client or client.ApiClient()
        self._core = client.CoreV1Api(self._api_client)
        self._custom = client.CustomObjectsApi(self._api_client)
        self._timeout = request_timeout
        self._watch_timeout = watch_timeout_seconds
        self._retry_delay = retry_delay_seconds
        self._active_watches: Set[watch.Watch] = set()
        self._watch_lock = threading.Lock()

    def _to_dict(self, obj: Any) -> Any:
        return self._api_client.sanitize_for_serialization(obj)

    def _read(self, what: str, fn: Callable[..., Any], *args: Any) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(fn(*args, _request_timeout=self._timeout))
        except ApiException as e:
            if e.status == 404:
                return None
            if e.status in (401, 403):
                raise ClusterForbidden(f"reading {what} is forbidden: {e.reason}")
            raise ClusterUnavailable(f"reading {what} failed: {e.status} {e.reason}")
        except (HTTPError, OSError) as e:
            raise ClusterUnavailable(f"reading {what} failed: {e}")

    def _write(self, what: str, fn: Callable[..., Any], *args: Any) -> Optional[Dict[str, Any]]:
        try:
            return self._to_dict(
                fn(*args, _request_timeout=self._timeout, _content_type=MERGE_PATCH)
            )
        except ApiException as e:
            if e.status == 404:
                return None
            raise ClusterWriteError(f"patching {what} failed: {e.status} {e.reason}")
        except (HTTPError, OSError) as e:
            raise ClusterWriteError(f"patching {what} failed: {e}")

    def get_record(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._read(
            f"{KIND} {namespace}/{name}",
            self._custom.get_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            name,
        )

    def list_records(self) -> List[Dict[str, Any]]:
        listing = self._read(
            f"{KIND} list", self._custom.list_cluster_custom_object, GROUP, VERSION, PLURAL
        )
        return list((listing or {}).get("items") or [])

    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._read(
            f"{SECRET} {namespace}/{name}", self._core.read_namespaced_secret, name, namespace
        )

    def get_config_map(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._read(
            f"{CONFIG_MAP} {namespace}/{name}",
            self._core.read_namespaced_config_map,
            name,
            namespace,
        )

    def get_service(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._read(
            f"{SERVICE} {namespace}/{name}", self._core.read_namespaced_service, name, namespace
        )

    def set_finalizers(
        self, resource: Dict[str, Any], finalizers: List[str]
    ) -> Optional[Dict[str, Any]]:
        metadata = resource.get("metadata") or {}
        namespace, name = metadata.get("namespace"), metadata.get("name")
        body = {
            "metadata": {
                "finalizers": finalizers,
                "resourceVersion": metadata.get("resourceVersion"),
            }
        }
        return self._write(
            f"finalizers of {namespace}/{name}",
            self._custom.patch_namespaced_custom_object,
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            name,
            body,
        )

    def patch_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        return self._write(
            f"status of {namespace}/{name}",
            self._custom.patch_namespaced_custom_object_status,
            GROUP,
            VERSION,
            namespace,
            PLURAL,
            name,
            {"status": status},
        )

    def _list_call(self, kind: str) -> Tuple[Callable[..., Any], Tuple[Any, ...]]:
        if kind == KIND:
            return self._custom.list_cluster_custom_object, (GROUP, VERSION, PLURAL)
        if kind == SERVICE:
            return self._core.list_service_for_all_namespaces, ()
        if kind == SECRET:
            return self._core.list_secret_for_all_namespaces, ()
        if kind == CONFIG_MAP:
            return self._core.list_config_map_for_all_namespaces, ()
        raise ValueError(f"Unsupported watch kind: {kind}")

    def watch(self, kind: str, stop_event: threading.Event) -> Iterator[WatchEvent]:
        list_fn, args = self._list_call(kind)
        resource_version = ""

        while not stop_event.is_set():
            try:
                if not resource_version:
                    listing = self._to_dict(list_fn(*args, _request_timeout=self._timeout))
                    resource_version = (listing.get("metadata") or {}).get("resourceVersion", "")
                    items = listing.get("items") or []
                    logger.debug(f"Listed {len(items)} {kind} object(s) at {resource_version}")
                    for item in items:
                        yield WatchEvent("ADDED", item)

                w = watch.Watch()
                with self._watch_lock:
                    self._active_watches.add(w)
                try:
                    for event in w.stream(
                        list_fn,
                        *args,
                        resource_version=resource_version,
                        timeout_seconds=self._watch_timeout,
                        _request_timeout=self._watch_timeout + self._timeout,
                    ):
                        if stop_event.is_set():
                            break
                        obj = self._to_dict(event["object"])
                        if event["type"] == "ERROR":
                            logger.info(f"{kind} watch expired ({obj.get('message', '')}), re-listing")
                            resource_version = ""
                            break
                        yield WatchEvent(event["type"], obj)
                    else:
                        resource_version = w.resource_version or resource_version
                finally:
                    w.stop()
                    with self._watch_lock:
                        self._active_watches.discard(w)

            except ApiException as e:
                resource_version = ""
                if e.status == 410:
                    logger.info(f"{kind} watch resource version too old, re-listing")
                    continue
                logger.warning(f"{kind} watch failed: {e.status} {e.reason}")
                stop_event.wait(self._retry_delay)
            except (HTTPError, OSError) as e:
                resource_version = ""
                logger.warning(f"{kind} watch connection failed: {e}")
                stop_event.wait(self._retry_delay)

    def close(self) -> None:
        with self._watch_lock:
            active = list(self._active_watches)
        for w in active:
            w.stop()
