"""Resolution of indirect spec values.

Content and zone values can be literal, read from a Secret/ConfigMap key or
derived from a Service's external address. Resolution runs on every
reconcile (nothing is cached between reconciles) and records every secondary
object it touched so the dispatcher can fan out changes to that object.
"""

from __future__ import annotations

import base64
import binascii
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set

from cloudflare_dns_operator.errors import (
    ClusterForbidden,
    NoAddressAvailable,
    ReferenceNotFound,
    ReferencePermissionDenied,
)
from cloudflare_dns_operator.kube import CONFIG_MAP, SECRET, SERVICE, ClusterStore
from cloudflare_dns_operator.resources import (
    FromConfigMap,
    FromSecret,
    Literal,
    ObjectRef,
    RecordType,
    ServiceRef,
)

logger = logging.getLogger(__name__)


@dataclass
class Resolution:
    """Collects the secondary objects read during one reconcile."""

    dependencies: Set[ObjectRef] = field(default_factory=set)


def _decode_base64(value: str, what: str) -> str:
    try:
        return base64.b64decode(value, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as e:
        raise ReferenceNotFound(f"{what} is not valid base64-encoded UTF-8: {e}")


def service_addresses(service: Dict[str, Any]) -> List[str]:
    """Return candidate external addresses of a Service, in priority order.

    Load balancer ingress entries (ip, then hostname) come first, followed by
    ``spec.externalIPs``.
    """
    addresses: List[str] = []
    ingress = ((service.get("status") or {}).get("loadBalancer") or {}).get("ingress") or []
    for entry in ingress:
        if not isinstance(entry, dict):
            continue
        for key in ("ip", "hostname"):
            value = entry.get(key)
            if value and value not in addresses:
                addresses.append(value)
    for value in (service.get("spec") or {}).get("externalIPs") or []:
        if value and value not in addresses:
            addresses.append(value)
    return addresses


def _ip_version(address: str) -> Optional[int]:
    try:
        return ipaddress.ip_address(address).version
    except ValueError:
        return None


def select_address(addresses: List[str], record_type: RecordType) -> Optional[str]:
    """Pick the address best suited for ``record_type``.

    A prefers IPv4, AAAA prefers IPv6, CNAME prefers a hostname. Falls back to
    the first candidate when nothing matches the hint.
    """
    if not addresses:
        return None

    if record_type == RecordType.CNAME:
        hostnames = [a for a in addresses if _ip_version(a) is None]
        return hostnames[0] if hostnames else addresses[0]

    wanted = {RecordType.A: 4, RecordType.AAAA: 6}.get(record_type)
    if wanted is None:
        return addresses[0]

    for address in addresses:
        if _ip_version(address) == wanted:
            return address
    logger.warning(
        f"No IPv{wanted} address among {addresses} for {record_type.value} record, using {addresses[0]}"
    )
    return addresses[0]


class ValueResolver:
    """Resolves Literal / FromSecret / FromConfigMap / ServiceRef values."""

    def __init__(self, store: ClusterStore, default_namespace: Optional[str] = None):
        self._store = store
        self._default_namespace = default_namespace or None

    def _namespace(self, explicit: Optional[str], namespace: str) -> str:
        return explicit or self._default_namespace or namespace

    def resolve(
        self,
        ref: Any,
        namespace: str,
        resolution: Optional[Resolution] = None,
        record_type: RecordType = RecordType.A,
    ) -> str:
        resolution = resolution if resolution is not None else Resolution()

        if isinstance(ref, Literal):
            return ref.value
        if isinstance(ref, FromSecret):
            return self._from_secret(ref, self._namespace(ref.namespace, namespace), resolution)
        if isinstance(ref, FromConfigMap):
            return self._from_config_map(
                ref, self._namespace(ref.namespace, namespace), resolution
            )
        if isinstance(ref, ServiceRef):
            return self._from_service(
                ref, self._namespace(ref.namespace, namespace), resolution, record_type
            )
        raise TypeError(f"Unsupported value reference: {ref!r}")

    def _get(self, kind: str, namespace: str, name: str, resolution: Resolution):
        resolution.dependencies.add(ObjectRef(kind, namespace, name))
        getter = {
            SECRET: self._store.get_secret,
            CONFIG_MAP: self._store.get_config_map,
            SERVICE: self._store.get_service,
        }[kind]
        try:
            obj = getter(namespace, name)
        except ClusterForbidden as e:
            raise ReferencePermissionDenied(f"{kind} {namespace}/{name}: {e.message}")
        if obj is None:
            raise ReferenceNotFound(f"{kind} {namespace}/{name} not found")
        return obj

    def _from_secret(self, ref: FromSecret, namespace: str, resolution: Resolution) -> str:
        secret = self._get(SECRET, namespace, ref.name, resolution)
        what = f"key {ref.key!r} of {SECRET} {namespace}/{ref.name}"

        string_data = secret.get("stringData") or {}
        if ref.key in string_data:
            return str(string_data[ref.key])
        data = secret.get("data") or {}
        if ref.key in data:
            return _decode_base64(data[ref.key], what)
        raise ReferenceNotFound(f"{what} not found")

    def _from_config_map(self, ref: FromConfigMap, namespace: str, resolution: Resolution) -> str:
        config_map = self._get(CONFIG_MAP, namespace, ref.name, resolution)
        what = f"key {ref.key!r} of {CONFIG_MAP} {namespace}/{ref.name}"

        data = config_map.get("data") or {}
        if ref.key in data:
            return str(data[ref.key])
        binary_data = config_map.get("binaryData") or {}
        if ref.key in binary_data:
            return _decode_base64(binary_data[ref.key], what)
        raise ReferenceNotFound(f"{what} not found")

    def _from_service(
        self,
        ref: ServiceRef,
        namespace: str,
        resolution: Resolution,
        record_type: RecordType,
    ) -> str:
        service = self._get(SERVICE, namespace, ref.name, resolution)
        address = select_address(service_addresses(service), record_type)
        if address is None:
            raise NoAddressAvailable(
                f"{SERVICE} {namespace}/{ref.name} has no load balancer or external address"
            )
        return address
