"""CloudflareDNSRecord resource model.

Parses the custom resource's ``spec`` into typed values and renders the
``status`` block back. Indirect values are closed sets of variants:

    ValueRef       = Literal | ServiceRef
    IndirectString = Literal | FromSecret | FromConfigMap
    ZoneRef        = ZoneByName | ZoneById
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Union

from cloudflare_dns_operator.errors import InvalidSpec

# =============================================================================
# Resource identity
# =============================================================================

GROUP = "dns.cloudflare.com"
VERSION = "v1alpha1"
KIND = "CloudflareDNSRecord"
PLURAL = "cloudflarednsrecords"
SINGULAR = "cloudflarednsrecord"
FINALIZER = "dns.cloudflare.com/delete-dns-record"


@dataclass(frozen=True, order=True)
class ResourceKey:
    """Identity of a CloudflareDNSRecord, used as the work queue key."""

    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "ResourceKey":
        metadata = resource.get("metadata") or {}
        return cls(namespace=metadata.get("namespace") or "default", name=metadata["name"])


@dataclass(frozen=True, order=True)
class ObjectRef:
    """Identity of a secondary object (Service, Secret or ConfigMap)."""

    kind: str
    namespace: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.namespace}/{self.name}"


# =============================================================================
# Record types
# =============================================================================


class RecordType(Enum):
    A = "A"
    AAAA = "AAAA"
    CNAME = "CNAME"
    MX = "MX"
    TXT = "TXT"
    SRV = "SRV"
    LOC = "LOC"
    SPF = "SPF"
    NS = "NS"

    @classmethod
    def parse(cls, value: Optional[str]) -> "RecordType":
        if value is None:
            return cls.A
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            supported = ", ".join(t.value for t in cls)
            raise InvalidSpec(f"unsupported record type {value!r} (supported: {supported})")


# =============================================================================
# Indirect values
# =============================================================================


@dataclass(frozen=True)
class Literal:
    value: str


@dataclass(frozen=True)
class FromSecret:
    name: str
    key: str
    namespace: Optional[str] = None


@dataclass(frozen=True)
class FromConfigMap:
    name: str
    key: str
    namespace: Optional[str] = None


@dataclass(frozen=True)
class ServiceRef:
    name: str
    namespace: Optional[str] = None


@dataclass(frozen=True)
class ZoneByName:
    ref: "IndirectString"


@dataclass(frozen=True)
class ZoneById:
    ref: "IndirectString"


IndirectString = Union[Literal, FromSecret, FromConfigMap]
ValueRef = Union[Literal, ServiceRef]
ZoneRef = Union[ZoneByName, ZoneById]


def _single_variant(value: Any, field_name: str, variants: List[str]) -> str:
    if not isinstance(value, dict):
        raise InvalidSpec(f"{field_name} must be an object with one of: {', '.join(variants)}")
    present = [v for v in variants if value.get(v) is not None]
    if len(present) != 1:
        raise InvalidSpec(
            f"{field_name} must set exactly one of: {', '.join(variants)} (got {sorted(value)})"
        )
    return present[0]


def _key_selector(value: Any, field_name: str) -> Dict[str, Any]:
    if not isinstance(value, dict) or not value.get("name") or not value.get("key"):
        raise InvalidSpec(f"{field_name} requires both name and key")
    return value


def parse_indirect_string(value: Any, field_name: str) -> IndirectString:
    variant = _single_variant(value, field_name, ["value", "from"])
    if variant == "value":
        return Literal(str(value["value"]))

    source = value["from"]
    source_variant = _single_variant(source, f"{field_name}.from", ["secret", "configMap"])
    selector = _key_selector(source[source_variant], f"{field_name}.from.{source_variant}")
    if source_variant == "secret":
        return FromSecret(
            name=str(selector["name"]),
            key=str(selector["key"]),
            namespace=selector.get("namespace"),
        )
    return FromConfigMap(
        name=str(selector["name"]),
        key=str(selector["key"]),
        namespace=selector.get("namespace"),
    )


def parse_value_ref(value: Any, field_name: str = "content") -> ValueRef:
    variant = _single_variant(value, field_name, ["value", "service"])
    if variant == "value":
        return Literal(str(value["value"]))
    service = value["service"]
    if not isinstance(service, dict) or not service.get("name"):
        raise InvalidSpec(f"{field_name}.service requires a name")
    return ServiceRef(name=str(service["name"]), namespace=service.get("namespace"))


def parse_zone_ref(value: Any, field_name: str = "zone") -> ZoneRef:
    variant = _single_variant(value, field_name, ["name", "id"])
    ref = parse_indirect_string(value[variant], f"{field_name}.{variant}")
    return ZoneByName(ref) if variant == "name" else ZoneById(ref)


# =============================================================================
# Desired state
# =============================================================================


@dataclass(frozen=True)
class DesiredRecord:
    """The user-authored desired state of one DNS record."""

    name: str
    content: ValueRef
    zone: ZoneRef
    type: RecordType = RecordType.A
    ttl: Optional[int] = None
    proxied: Optional[bool] = None
    tags: FrozenSet[str] = frozenset()
    comment: Optional[str] = None

    @classmethod
    def from_spec(cls, spec: Any) -> "DesiredRecord":
        if not isinstance(spec, dict):
            raise InvalidSpec("spec is missing")
        name = str(spec.get("name") or "").strip()
        if not name:
            raise InvalidSpec("spec.name is required")
        if "content" not in spec:
            raise InvalidSpec("spec.content is required")
        if "zone" not in spec:
            raise InvalidSpec("spec.zone is required")

        ttl = spec.get("ttl")
        if ttl is not None:
            try:
                ttl = int(ttl)
            except (TypeError, ValueError):
                raise InvalidSpec(f"spec.ttl must be an integer, got {ttl!r}")

        proxied = spec.get("proxied")
        if proxied is not None and not isinstance(proxied, bool):
            raise InvalidSpec(f"spec.proxied must be a boolean, got {proxied!r}")

        tags = spec.get("tags") or []
        if not isinstance(tags, list):
            raise InvalidSpec("spec.tags must be a list of strings")

        return cls(
            name=name,
            type=RecordType.parse(spec.get("type")),
            content=parse_value_ref(spec["content"]),
            zone=parse_zone_ref(spec["zone"]),
            ttl=ttl,
            proxied=proxied,
            tags=frozenset(str(t) for t in tags),
            comment=spec.get("comment"),
        )


# =============================================================================
# Observed state
# =============================================================================


@dataclass(frozen=True)
class Condition:
    type: str
    status: str
    reason: str
    message: str
    last_transition_time: str
    observed_generation: Optional[int] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        generation = data.get("observedGeneration")
        return cls(
            type=str(data.get("type", "")),
            status=str(data.get("status", "Unknown")),
            reason=str(data.get("reason", "")),
            message=str(data.get("message", "")),
            last_transition_time=str(data.get("lastTransitionTime", "")),
            observed_generation=int(generation) if generation is not None else None,
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "lastTransitionTime": self.last_transition_time,
        }
        if self.observed_generation is not None:
            data["observedGeneration"] = self.observed_generation
        return data


@dataclass(frozen=True)
class ObservedStatus:
    record_id: str = ""
    zone_id: str = ""
    pending: bool = True
    conditions: tuple = field(default_factory=tuple)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ObservedStatus":
        data = data or {}
        pending = data.get("pending")
        return cls(
            record_id=str(data.get("record_id") or ""),
            zone_id=str(data.get("zone_id") or ""),
            pending=True if pending is None else bool(pending),
            conditions=tuple(
                Condition.from_dict(c) for c in data.get("conditions") or [] if isinstance(c, dict)
            ),
        )

    def condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "zone_id": self.zone_id,
            "pending": self.pending,
            "conditions": [c.to_dict() for c in self.conditions],
        }


# =============================================================================
# Lifecycle
# =============================================================================


class LifecycleState(Enum):
    """Ownership state derived from (finalizer present, deletion requested)."""

    UNINITIALIZED = "Uninitialized"
    OWNED = "Owned"
    DELETING = "Deleting"
    GONE = "Gone"


def has_finalizer(resource: Dict[str, Any]) -> bool:
    return FINALIZER in ((resource.get("metadata") or {}).get("finalizers") or [])


def lifecycle_state(resource: Optional[Dict[str, Any]]) -> LifecycleState:
    if resource is None:
        return LifecycleState.GONE
    deleting = bool((resource.get("metadata") or {}).get("deletionTimestamp"))
    owned = has_finalizer(resource)
    if owned and deleting:
        return LifecycleState.DELETING
    if owned:
        return LifecycleState.OWNED
    if deleting:
        return LifecycleState.GONE
    return LifecycleState.UNINITIALIZED


# =============================================================================
# CustomResourceDefinition
# =============================================================================


def _indirect_string_schema() -> Dict[str, Any]:
    selector = {
        "type": "object",
        "required": ["name", "key"],
        "properties": {
            "name": {"type": "string"},
            "key": {"type": "string"},
            "namespace": {"type": "string", "nullable": True},
        },
    }
    return {
        "type": "object",
        "oneOf": [{"required": ["value"]}, {"required": ["from"]}],
        "properties": {
            "value": {"type": "string"},
            "from": {
                "type": "object",
                "oneOf": [{"required": ["configMap"]}, {"required": ["secret"]}],
                "properties": {"configMap": selector, "secret": selector},
            },
        },
    }


def crd_manifest() -> Dict[str, Any]:
    """Return the CustomResourceDefinition for CloudflareDNSRecord."""
    condition_schema = {
        "type": "object",
        "required": ["lastTransitionTime", "message", "reason", "status", "type"],
        "properties": {
            "lastTransitionTime": {"type": "string", "format": "date-time"},
            "message": {"type": "string"},
            "observedGeneration": {"type": "integer", "format": "int64"},
            "reason": {"type": "string"},
            "status": {"type": "string"},
            "type": {"type": "string"},
        },
    }
    spec_schema = {
        "type": "object",
        "required": ["content", "name", "zone"],
        "properties": {
            "name": {"type": "string", "description": "The name of the record (e.g example.com)"},
            "type": {
                "type": "string",
                "nullable": True,
                "enum": [t.value for t in RecordType],
                "description": "The type of the record. Defaults to A.",
            },
            "ttl": {"type": "integer", "format": "int64", "nullable": True},
            "proxied": {"type": "boolean", "nullable": True},
            "comment": {"type": "string", "nullable": True},
            "tags": {"type": "array", "nullable": True, "items": {"type": "string"}},
            "content": {
                "type": "object",
                "oneOf": [{"required": ["value"]}, {"required": ["service"]}],
                "properties": {
                    "value": {"type": "string"},
                    "service": {
                        "type": "object",
                        "required": ["name"],
                        "properties": {
                            "name": {"type": "string"},
                            "namespace": {"type": "string", "nullable": True},
                        },
                    },
                },
            },
            "zone": {
                "type": "object",
                "oneOf": [{"required": ["name"]}, {"required": ["id"]}],
                "properties": {
                    "name": _indirect_string_schema(),
                    "id": _indirect_string_schema(),
                },
            },
        },
    }
    status_schema = {
        "type": "object",
        "nullable": True,
        "properties": {
            "record_id": {"type": "string"},
            "zone_id": {"type": "string"},
            "pending": {"type": "boolean"},
            "conditions": {"type": "array", "nullable": True, "items": condition_schema},
        },
    }
    return {
        "apiVersion": "apiextensions.k8s.io/v1",
        "kind": "CustomResourceDefinition",
        "metadata": {"name": f"{PLURAL}.{GROUP}"},
        "spec": {
            "group": GROUP,
            "names": {"kind": KIND, "plural": PLURAL, "singular": SINGULAR},
            "scope": "Namespaced",
            "versions": [
                {
                    "name": VERSION,
                    "served": True,
                    "storage": True,
                    "subresources": {"status": {}},
                    "schema": {
                        "openAPIV3Schema": {
                            "type": "object",
                            "title": KIND,
                            "required": ["spec"],
                            "properties": {"spec": spec_schema, "status": status_schema},
                        }
                    },
                }
            ],
        },
    }
