"""DNS provider interface and the Cloudflare implementation.

Records are addressed by (zone_id, name, type). Records created by the
operator carry an owner stamp at the end of their comment
(``cloudflare-dns-operator/owner=<namespace>/<name>``) so a repeated create,
e.g. after a crash between create and status write, is recognised instead of
duplicated, and records created by someone else are never adopted silently.
"""

from __future__ import annotations

import email.utils
import ipaddress
import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

import requests

from cloudflare_dns_operator.errors import (
    InvalidSpec,
    ProviderAuthError,
    ProviderConflict,
    ProviderNotFound,
    ProviderRateLimited,
    ProviderRejected,
    ProviderUnavailable,
    ReferenceNotFound,
)
from cloudflare_dns_operator.resources import RecordType

logger = logging.getLogger(__name__)

OWNER_STAMP_PREFIX = "cloudflare-dns-operator/owner="
AUTOMATIC_TTL = 1

# =============================================================================
# Data Classes
# =============================================================================


def stamp_comment(comment: Optional[str], owner: str) -> Optional[str]:
    """Append the owner stamp to a user comment."""
    comment = (comment or "").strip()
    if not owner:
        return comment or None
    stamp = f"{OWNER_STAMP_PREFIX}{owner}"
    return f"{comment} {stamp}" if comment else stamp


def split_comment(comment: Optional[str]) -> Tuple[Optional[str], Optional[str]]:
    """Split a remote comment into (user comment, owner)."""
    if not comment:
        return None, None
    index = comment.rfind(OWNER_STAMP_PREFIX)
    if index < 0:
        return comment, None
    owner = comment[index + len(OWNER_STAMP_PREFIX) :].strip() or None
    user_comment = comment[:index].strip() or None
    return user_comment, owner


def _split_fields(content: str, count: int, record_type: RecordType) -> List[str]:
    parts = content.split(None, count - 1)
    if len(parts) != count:
        raise InvalidSpec(f"{record_type.value} content {content!r} must have {count} fields")
    for field in parts[:-1]:
        if not (field.isascii() and field.isdigit()) or int(field) > 65535:
            raise InvalidSpec(
                f"{record_type.value} content {content!r}: {field!r} is not a number from 0 to 65535"
            )
    return parts


def check_content(record_type: RecordType, content: str) -> None:
    """Raise InvalidSpec if ``content`` cannot be sent as a record of this type."""
    if record_type == RecordType.MX:
        _split_fields(content.strip(), 2, record_type)
    elif record_type == RecordType.SRV:
        _split_fields(content.strip(), 4, record_type)


def effective_ttl(ttl: Optional[int], proxied: Optional[bool]) -> int:
    """TTL as Cloudflare stores it. Proxied records always report automatic."""
    if proxied or ttl is None:
        return AUTOMATIC_TTL
    return ttl


def normalize_content(record_type: RecordType, content: str) -> str:
    """Canonical form of a record's content for drift comparison."""
    content = (content or "").strip()
    if record_type in (RecordType.A, RecordType.AAAA):
        try:
            return ipaddress.ip_address(content).compressed
        except ValueError:
            return content
    if record_type in (RecordType.CNAME, RecordType.NS):
        return content.lower().rstrip(".")
    if record_type in (RecordType.MX, RecordType.SRV):
        parts = content.split()
        if parts:
            parts[-1] = parts[-1].lower().rstrip(".")
        return " ".join(parts)
    if record_type in (RecordType.TXT, RecordType.SPF):
        if len(content) >= 2 and content.startswith('"') and content.endswith('"'):
            return content[1:-1]
    return content


def _normalize_name(name: str) -> str:
    return (name or "").strip().lower().rstrip(".")


@dataclass(frozen=True)
class RecordSpec:
    """A fully resolved record as it should exist at the provider."""

    name: str
    type: RecordType
    content: str
    ttl: Optional[int] = None
    proxied: Optional[bool] = None
    tags: FrozenSet[str] = frozenset()
    comment: Optional[str] = None
    owner: str = ""


@dataclass(frozen=True)
class RemoteRecord:
    """A record as reported by the provider."""

    id: str
    name: str
    type: str
    content: str
    ttl: int = AUTOMATIC_TTL
    proxied: bool = False
    tags: FrozenSet[str] = frozenset()
    comment: Optional[str] = None
    owner: Optional[str] = None

    def same_identity(self, spec: RecordSpec) -> bool:
        """True if this record has the name and type ``spec`` addresses."""
        return _normalize_name(self.name) == _normalize_name(spec.name) and self.type == spec.type.value

    def matches(self, spec: RecordSpec) -> bool:
        """True if replacing this record with ``spec`` would change nothing."""
        if not self.same_identity(spec):
            return False
        if normalize_content(spec.type, self.content) != normalize_content(spec.type, spec.content):
            return False
        if self.ttl != effective_ttl(spec.ttl, spec.proxied):
            return False
        if self.proxied != bool(spec.proxied):
            return False
        if self.tags != frozenset(spec.tags):
            return False
        if (self.comment or None) != ((spec.comment or "").strip() or None):
            return False
        return (self.owner or "") == spec.owner


# =============================================================================
# DNS Provider Interface
# =============================================================================


class DNSProvider(ABC):
    """Abstract base class for DNS providers."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Return the provider name for logging."""
        pass

    @abstractmethod
    def test_connection(self) -> bool:
        """Check that the provider is reachable and the credential is valid."""
        pass

    @abstractmethod
    def find_zone_id(self, zone_name: str) -> str:
        """Look up a zone id by zone name."""
        pass

    @abstractmethod
    def find(
        self, zone_id: str, name: str, record_type: RecordType, owner: Optional[str] = None
    ) -> Optional[RemoteRecord]:
        """Return the record with this name and type, preferring one stamped with ``owner``."""
        pass

    @abstractmethod
    def get(self, zone_id: str, record_id: str) -> Optional[RemoteRecord]:
        """Return the record with this id, or None if the zone has no such record."""
        pass

    @abstractmethod
    def create(self, zone_id: str, record: RecordSpec) -> str:
        """Create a record and return its id."""
        pass

    @abstractmethod
    def update(self, zone_id: str, record_id: str, record: RecordSpec) -> None:
        """Replace an existing record."""
        pass

    @abstractmethod
    def delete(self, zone_id: str, record_id: str) -> None:
        """Delete a record. Deleting a missing record succeeds."""
        pass


# =============================================================================
# Cloudflare
# =============================================================================

# https://developers.cloudflare.com/api/ error codes
NOT_FOUND_CODES = {7003, 81044}
DUPLICATE_CODES = {81053, 81057, 81058}
AUTH_CODES = {6003, 6111, 9109, 10000}


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass
    try:
        parsed = email.utils.parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    return max(0.0, parsed.timestamp() - time.time())


def record_payload(record: RecordSpec) -> Dict[str, Any]:
    """Build the Cloudflare request body for a record."""
    payload: Dict[str, Any] = {
        "name": record.name,
        "type": record.type.value,
        "ttl": effective_ttl(record.ttl, record.proxied),
        "proxied": bool(record.proxied),
        "comment": stamp_comment(record.comment, record.owner),
        "tags": sorted(record.tags),
    }
    content = record.content.strip()
    if record.type == RecordType.MX:
        priority, exchange = _split_fields(content, 2, record.type)
        payload["priority"] = int(priority)
        payload["content"] = exchange
    elif record.type == RecordType.SRV:
        priority, weight, port, target = _split_fields(content, 4, record.type)
        payload["data"] = {
            "priority": int(priority),
            "weight": int(weight),
            "port": int(port),
            "target": target,
        }
    else:
        payload["content"] = content
    return payload


def remote_record(item: Dict[str, Any]) -> RemoteRecord:
    """Build a RemoteRecord from a Cloudflare API record object."""
    record_type = str(item.get("type") or "")
    content = str(item.get("content") or "")
    priority = item.get("priority")
    if record_type == "MX" and priority is not None:
        content = f"{priority} {content}"
    elif record_type == "SRV":
        data = item.get("data") or {}
        if data:
            content = f"{data.get('priority')} {data.get('weight')} {data.get('port')} {data.get('target')}"
        elif priority is not None:
            content = f"{priority} {content}"

    comment, owner = split_comment(item.get("comment"))
    return RemoteRecord(
        id=str(item["id"]),
        name=str(item.get("name") or ""),
        type=record_type,
        content=content,
        ttl=int(item.get("ttl") or AUTOMATIC_TTL),
        proxied=bool(item.get("proxied")),
        tags=frozenset(item.get("tags") or []),
        comment=comment,
        owner=owner,
    )


class CloudflareDNSProvider(DNSProvider):
    """Cloudflare v4 API DNS provider implementation."""

    API_URL = "https://api.cloudflare.com/client/v4"

    def __init__(self, api_token: str, url: str = API_URL, timeout_seconds: float = 10.0):
        self._url = url.rstrip("/")
        self._timeout = timeout_seconds
        self._session = requests.Session()
        self._session.headers.update(
            {"Authorization": f"Bearer {api_token}", "Content-Type": "application/json"}
        )

    @property
    def name(self) -> str:
        return "Cloudflare"

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        body: Optional[Dict[str, Any]] = None,
    ) -> Any:
        what = f"{method} {path}"
        try:
            response = self._session.request(
                method, f"{self._url}{path}", params=params, json=body, timeout=self._timeout
            )
        except requests.exceptions.Timeout as e:
            raise ProviderUnavailable(f"{what} timed out: {e}")
        except requests.exceptions.RequestException as e:
            raise ProviderUnavailable(f"{what} failed: {e}")

        try:
            payload = response.json()
        except ValueError:
            payload = {}
        if not isinstance(payload, dict):
            payload = {}

        status = response.status_code
        if 200 <= status < 300 and payload.get("success", True):
            return payload.get("result")

        errors = [e for e in payload.get("errors") or [] if isinstance(e, dict)]
        codes = {e.get("code") for e in errors}
        detail = "; ".join(f"{e.get('code')}: {e.get('message')}" for e in errors) or response.reason
        message = f"{what} returned {status}: {detail}"

        if status == 429:
            retry_after = _parse_retry_after(response.headers.get("Retry-After"))
            raise ProviderRateLimited(message, retry_after=retry_after)
        if status in (401, 403) or codes & AUTH_CODES:
            raise ProviderAuthError(message)
        if status == 404 or codes & NOT_FOUND_CODES:
            raise ProviderNotFound(message)
        if codes & DUPLICATE_CODES:
            raise ProviderConflict(message)
        if status >= 500:
            raise ProviderUnavailable(message)
        raise ProviderRejected(message)

    def test_connection(self) -> bool:
        try:
            result = self._request("GET", "/user/tokens/verify") or {}
        except (ProviderAuthError, ProviderRejected, ProviderUnavailable, ProviderRateLimited) as e:
            logger.error(f"Failed to verify {self.name} API token: {e}")
            return False
        if result.get("status") not in (None, "active"):
            logger.error(f"{self.name} API token is {result.get('status')}")
            return False
        logger.info(f"{self.name} API token verified")
        return True

    def list_zones(self) -> List[Dict[str, str]]:
        zones: List[Dict[str, str]] = []
        page = 1
        while True:
            result = self._request("GET", "/zones", params={"page": page, "per_page": 50}) or []
            zones.extend(
                {"id": z.get("id", ""), "name": z.get("name", ""), "status": z.get("status", "")}
                for z in result
            )
            if len(result) < 50:
                return zones
            page += 1

    def find_zone_id(self, zone_name: str) -> str:
        wanted = _normalize_name(zone_name)
        result = self._request("GET", "/zones", params={"name": wanted}) or []
        for zone in result:
            if _normalize_name(zone.get("name", "")) == wanted:
                return str(zone["id"])
        raise ReferenceNotFound(f"zone {zone_name!r} not found or not visible to the API token")

    def find(
        self, zone_id: str, name: str, record_type: RecordType, owner: Optional[str] = None
    ) -> Optional[RemoteRecord]:
        result = self._request(
            "GET",
            f"/zones/{zone_id}/dns_records",
            params={"name": _normalize_name(name), "type": record_type.value, "per_page": 100},
        )
        records = [remote_record(item) for item in result or [] if isinstance(item, dict)]
        records = [
            r
            for r in records
            if r.type == record_type.value and _normalize_name(r.name) == _normalize_name(name)
        ]
        if not records:
            return None
        if owner:
            for record in records:
                if record.owner == owner:
                    return record
        return records[0]

    def get(self, zone_id: str, record_id: str) -> Optional[RemoteRecord]:
        try:
            result = self._request("GET", f"/zones/{zone_id}/dns_records/{record_id}")
        except ProviderNotFound:
            return None
        if not isinstance(result, dict):
            return None
        return remote_record(result)

    def create(self, zone_id: str, record: RecordSpec) -> str:
        existing = self.find(zone_id, record.name, record.type, owner=record.owner)
        if existing is not None:
            if record.owner and existing.owner == record.owner:
                logger.info(
                    f"{record.type.value} {record.name} already exists as {existing.id}, not creating again"
                )
                return existing.id
            raise ProviderConflict(
                f"{record.type.value} record {record.name} already exists ({existing.id}) "
                f"and is not managed by {record.owner or 'this operator'}"
            )

        result = self._request("POST", f"/zones/{zone_id}/dns_records", body=record_payload(record))
        record_id = str((result or {}).get("id") or "")
        logger.info(f"Created {record.type.value} {record.name} -> {record.content} ({record_id})")
        return record_id

    def update(self, zone_id: str, record_id: str, record: RecordSpec) -> None:
        self._request(
            "PUT", f"/zones/{zone_id}/dns_records/{record_id}", body=record_payload(record)
        )
        logger.info(f"Updated {record.type.value} {record.name} -> {record.content} ({record_id})")

    def delete(self, zone_id: str, record_id: str) -> None:
        try:
            self._request("DELETE", f"/zones/{zone_id}/dns_records/{record_id}")
        except ProviderNotFound:
            logger.info(f"Record {record_id} in zone {zone_id} already gone")
            return
        logger.info(f"Deleted record {record_id} in zone {zone_id}")
