"""Shared fixtures: in-memory cluster store and DNS provider."""

import copy
import itertools
import threading
from typing import Any, Dict, Iterator, List, Optional, Set, Tuple

import pytest

from cloudflare_dns_operator.dispatcher import DependencyIndex
from cloudflare_dns_operator.errors import (
    ClusterForbidden,
    ClusterWriteError,
    ProviderConflict,
    ProviderNotFound,
    ReferenceNotFound,
)
from cloudflare_dns_operator.kube import ClusterStore, WatchEvent
from cloudflare_dns_operator.provider import DNSProvider, RecordSpec, RemoteRecord, effective_ttl
from cloudflare_dns_operator.reconciler import Reconciler
from cloudflare_dns_operator.resolver import ValueResolver
from cloudflare_dns_operator.resources import KIND, RecordType

# =============================================================================
# Fake Cluster Store
# =============================================================================


def _merge_patch(target: Dict[str, Any], patch: Dict[str, Any]) -> Dict[str, Any]:
    result = dict(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = _merge_patch(result[key], value)
        else:
            result[key] = copy.deepcopy(value)
    return result


class FakeClusterStore(ClusterStore):
    """In-memory cluster with call tracking and injectable failures."""

    def __init__(self):
        self.records: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self.objects: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.forbidden: Set[Tuple[str, str, str]] = set()
        self.fail_writes = False
        self.finalizer_calls: List[Tuple[str, str, List[str]]] = []
        self.status_patches: List[Tuple[str, str, Dict[str, Any]]] = []
        self.events: Dict[str, List[WatchEvent]] = {}
        self.closed = False
        self._versions = itertools.count(1)

    # -- helpers --------------------------------------------------------------

    def add_record(
        self,
        name: str,
        spec: Dict[str, Any],
        namespace: str = "default",
        finalizers: Optional[List[str]] = None,
        status: Optional[Dict[str, Any]] = None,
        generation: int = 1,
    ) -> Dict[str, Any]:
        resource: Dict[str, Any] = {
            "apiVersion": "dns.cloudflare.com/v1alpha1",
            "kind": KIND,
            "metadata": {
                "name": name,
                "namespace": namespace,
                "generation": generation,
                "resourceVersion": str(next(self._versions)),
                "finalizers": list(finalizers or []),
            },
            "spec": copy.deepcopy(spec),
        }
        if status is not None:
            resource["status"] = copy.deepcopy(status)
        self.records[(namespace, name)] = resource
        return copy.deepcopy(resource)

    def update_spec(self, namespace: str, name: str, /, **changes: Any) -> None:
        resource = self.records[(namespace, name)]
        resource["spec"].update(changes)
        resource["metadata"]["generation"] += 1
        resource["metadata"]["resourceVersion"] = str(next(self._versions))

    def request_deletion(self, namespace: str, name: str) -> None:
        resource = self.records[(namespace, name)]
        if not resource["metadata"].get("finalizers"):
            del self.records[(namespace, name)]
            return
        resource["metadata"]["deletionTimestamp"] = "2026-01-01T00:00:00Z"
        resource["metadata"]["resourceVersion"] = str(next(self._versions))

    def put(self, kind: str, namespace: str, name: str, **fields: Any) -> None:
        obj = {"metadata": {"name": name, "namespace": namespace}}
        obj.update(copy.deepcopy(fields))
        self.objects[(kind, namespace, name)] = obj

    def remove(self, kind: str, namespace: str, name: str) -> None:
        self.objects.pop((kind, namespace, name), None)

    def status(self, namespace: str, name: str) -> Dict[str, Any]:
        return copy.deepcopy(self.records[(namespace, name)].get("status") or {})

    # -- ClusterStore ---------------------------------------------------------

    def get_record(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        resource = self.records.get((namespace, name))
        return copy.deepcopy(resource) if resource is not None else None

    def list_records(self) -> List[Dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.records.values()]

    def _get(self, kind: str, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        if (kind, namespace, name) in self.forbidden:
            raise ClusterForbidden(f"{kind} {namespace}/{name} is forbidden")
        obj = self.objects.get((kind, namespace, name))
        return copy.deepcopy(obj) if obj is not None else None

    def get_secret(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._get("Secret", namespace, name)

    def get_config_map(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._get("ConfigMap", namespace, name)

    def get_service(self, namespace: str, name: str) -> Optional[Dict[str, Any]]:
        return self._get("Service", namespace, name)

    def set_finalizers(
        self, resource: Dict[str, Any], finalizers: List[str]
    ) -> Optional[Dict[str, Any]]:
        metadata = resource["metadata"]
        namespace, name = metadata["namespace"], metadata["name"]
        self.finalizer_calls.append((namespace, name, list(finalizers)))
        if self.fail_writes:
            raise ClusterWriteError("injected write failure")

        current = self.records.get((namespace, name))
        if current is None:
            return None
        if current["metadata"]["resourceVersion"] != metadata.get("resourceVersion"):
            raise ClusterWriteError("conflict: resource changed")

        current["metadata"]["finalizers"] = list(finalizers)
        current["metadata"]["resourceVersion"] = str(next(self._versions))
        if not finalizers and current["metadata"].get("deletionTimestamp"):
            del self.records[(namespace, name)]
            return None
        return copy.deepcopy(current)

    def patch_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Optional[Dict[str, Any]]:
        self.status_patches.append((namespace, name, copy.deepcopy(status)))
        if self.fail_writes:
            raise ClusterWriteError("injected write failure")

        current = self.records.get((namespace, name))
        if current is None:
            return None
        current["status"] = _merge_patch(current.get("status") or {}, status)
        current["metadata"]["resourceVersion"] = str(next(self._versions))
        return copy.deepcopy(current)

    def watch(self, kind: str, stop_event: threading.Event) -> Iterator[WatchEvent]:
        yield from list(self.events.get(kind, []))
        stop_event.wait()

    def close(self) -> None:
        self.closed = True


# =============================================================================
# Mock DNS Provider
# =============================================================================


def remote_from_spec(record_id: str, record: RecordSpec) -> RemoteRecord:
    return RemoteRecord(
        id=record_id,
        name=record.name,
        type=record.type.value,
        content=record.content,
        ttl=effective_ttl(record.ttl, record.proxied),
        proxied=bool(record.proxied),
        tags=frozenset(record.tags),
        comment=(record.comment or "").strip() or None,
        owner=record.owner or None,
    )


class MockDNSProvider(DNSProvider):
    """Mock DNS provider with in-memory record storage and call tracking."""

    def __init__(self, zones: Optional[Dict[str, str]] = None):
        self.zones: Dict[str, str] = zones if zones is not None else {"example.com": "zone-1"}
        self.records: Dict[str, Tuple[str, RemoteRecord]] = {}
        self.find_calls: List[Tuple[str, str, str]] = []
        self.get_calls: List[Tuple[str, str]] = []
        self.create_calls: List[Tuple[str, RecordSpec]] = []
        self.update_calls: List[Tuple[str, str, RecordSpec]] = []
        self.delete_calls: List[Tuple[str, str]] = []
        self.zone_lookups: List[str] = []
        self.failures: Dict[str, List[Exception]] = {}
        self.unlisted: Set[str] = set()
        self._ids = itertools.count(1)

    def fail_next(self, method: str, error: Exception) -> None:
        self.failures.setdefault(method, []).append(error)

    def _maybe_fail(self, method: str) -> None:
        pending = self.failures.get(method)
        if pending:
            raise pending.pop(0)

    def seed(self, zone_id: str, record: RemoteRecord) -> None:
        self.records[record.id] = (zone_id, record)

    def in_zone(self, zone_id: str) -> List[RemoteRecord]:
        return [r for z, r in self.records.values() if z == zone_id]

    @property
    def name(self) -> str:
        return "MockDNS"

    def test_connection(self) -> bool:
        return True

    def find_zone_id(self, zone_name: str) -> str:
        self.zone_lookups.append(zone_name)
        self._maybe_fail("find_zone_id")
        if zone_name not in self.zones:
            raise ReferenceNotFound(f"zone {zone_name!r} not found")
        return self.zones[zone_name]

    def find(
        self, zone_id: str, name: str, record_type: RecordType, owner: Optional[str] = None
    ) -> Optional[RemoteRecord]:
        self.find_calls.append((zone_id, name, record_type.value))
        self._maybe_fail("find")
        matches = [
            r
            for r in self.in_zone(zone_id)
            if r.name == name and r.type == record_type.value and r.id not in self.unlisted
        ]
        if not matches:
            return None
        for record in matches:
            if owner and record.owner == owner:
                return record
        return matches[0]

    def get(self, zone_id: str, record_id: str) -> Optional[RemoteRecord]:
        self.get_calls.append((zone_id, record_id))
        self._maybe_fail("get")
        stored = self.records.get(record_id)
        if stored is None or stored[0] != zone_id:
            return None
        return stored[1]

    def create(self, zone_id: str, record: RecordSpec) -> str:
        self.create_calls.append((zone_id, record))
        self._maybe_fail("create")
        for existing in self.in_zone(zone_id):
            if existing.name == record.name and existing.type == record.type.value:
                if existing.owner == record.owner:
                    return existing.id
                raise ProviderConflict(f"{record.name} exists")
        record_id = f"rec-{next(self._ids)}"
        self.records[record_id] = (zone_id, remote_from_spec(record_id, record))
        return record_id

    def update(self, zone_id: str, record_id: str, record: RecordSpec) -> None:
        self.update_calls.append((zone_id, record_id, record))
        self._maybe_fail("update")
        if record_id not in self.records:
            raise ProviderNotFound(f"record {record_id} not found")
        self.records[record_id] = (zone_id, remote_from_spec(record_id, record))

    def delete(self, zone_id: str, record_id: str) -> None:
        self.delete_calls.append((zone_id, record_id))
        self._maybe_fail("delete")
        self.records.pop(record_id, None)


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def store() -> FakeClusterStore:
    return FakeClusterStore()


@pytest.fixture
def provider() -> MockDNSProvider:
    return MockDNSProvider()


@pytest.fixture
def index() -> DependencyIndex:
    return DependencyIndex()


@pytest.fixture
def reconciler(
    store: FakeClusterStore, provider: MockDNSProvider, index: DependencyIndex
) -> Reconciler:
    return Reconciler(store, provider, ValueResolver(store), index, resync_interval=60.0)


@pytest.fixture
def literal_spec() -> Dict[str, Any]:
    return {
        "name": "www.example.com",
        "type": "A",
        "content": {"value": "1.2.3.4"},
        "zone": {"name": {"value": "example.com"}},
    }
