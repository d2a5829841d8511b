"""Reconciliation of one CloudflareDNSRecord.

Lifecycle, derived from (finalizer present, deletion requested):

    Uninitialized -> Owned -> Deleting -> Gone

Every ``OperatorError`` raised while resolving values or talking to the
provider ends up as a ``Synced=False`` condition. Only a failure to read the
resource itself or to persist its finalizer/status escapes ``reconcile``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from cloudflare_dns_operator.conditions import (
    Outcome,
    compute_status,
    reconciler_fields,
)
from cloudflare_dns_operator.dispatcher import DependencyIndex
from cloudflare_dns_operator.errors import (
    InvalidSpec,
    OperatorError,
    ProviderConflict,
    ProviderNotFound,
)
from cloudflare_dns_operator.kube import ClusterStore
from cloudflare_dns_operator.provider import DNSProvider, RecordSpec, RemoteRecord, check_content
from cloudflare_dns_operator.resolver import Resolution, ValueResolver
from cloudflare_dns_operator.resources import (
    FINALIZER,
    DesiredRecord,
    LifecycleState,
    ObservedStatus,
    ResourceKey,
    ZoneById,
    ZoneRef,
    lifecycle_state,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReconcileResult:
    requeue_after: Optional[float] = None
    error: Optional[OperatorError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


@dataclass
class _Progress:
    """Record/zone ids as known so far in this reconcile."""

    record_id: str
    zone_id: str


class Reconciler:
    def __init__(
        self,
        store: ClusterStore,
        provider: DNSProvider,
        resolver: ValueResolver,
        index: DependencyIndex,
        resync_interval: float = 60.0,
    ):
        self._store = store
        self._provider = provider
        self._resolver = resolver
        self._index = index
        self._resync_interval = resync_interval

    def reconcile(self, key: ResourceKey) -> ReconcileResult:
        """Drive one resource one step toward its desired state.

        Raises ClusterError if the resource cannot be read or its finalizer or
        status cannot be written; the caller retries with backoff.
        """
        resource = self._store.get_record(key.namespace, key.name)
        state = lifecycle_state(resource)
        logger.debug(f"{key}: reconciling ({state.value})")

        if state == LifecycleState.GONE:
            self._index.remove(key)
            return ReconcileResult()

        if state == LifecycleState.UNINITIALIZED:
            resource = self._initialize(key, resource)
            if resource is None:
                self._index.remove(key)
                return ReconcileResult()
            state = lifecycle_state(resource)

        if state == LifecycleState.DELETING:
            return self._delete(key, resource)
        return self._apply(key, resource)

    # -------------------------------------------------------------------------
    # Uninitialized
    # -------------------------------------------------------------------------

    def _initialize(self, key: ResourceKey, resource: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        finalizers = list((resource.get("metadata") or {}).get("finalizers") or [])
        updated = self._store.set_finalizers(resource, finalizers + [FINALIZER])
        if updated is None:
            return None
        logger.info(f"{key}: added finalizer {FINALIZER}")

        current = updated.get("status") or {}
        initial = ObservedStatus.from_dict(current).to_dict()
        if current != initial:
            patched = self._store.patch_status(key.namespace, key.name, initial)
            if patched is None:
                return None
            updated = patched
        return updated

    # -------------------------------------------------------------------------
    # Owned
    # -------------------------------------------------------------------------

    def _resolve_zone(
        self,
        zone: ZoneRef,
        namespace: str,
        resolution: Resolution,
        zone_ids: Dict[str, str],
    ) -> str:
        value = self._resolver.resolve(zone.ref, namespace, resolution).strip()
        if not value:
            raise InvalidSpec("zone resolved to an empty value")
        if isinstance(zone, ZoneById):
            return value
        if value not in zone_ids:
            zone_ids[value] = self._provider.find_zone_id(value)
        return zone_ids[value]

    def _delete_stale(self, key: ResourceKey, progress: _Progress, zone_id: str) -> None:
        stale_zone = progress.zone_id or zone_id
        logger.info(f"{key}: removing previous record {progress.record_id} from zone {stale_zone}")
        self._provider.delete(stale_zone, progress.record_id)
        progress.record_id = ""
        progress.zone_id = zone_id

    def _lookup(self, progress: _Progress, zone_id: str, record: RecordSpec) -> Optional[RemoteRecord]:
        existing = self._provider.find(zone_id, record.name, record.type, owner=record.owner)
        if existing is not None or not progress.record_id:
            return existing
        if progress.zone_id and progress.zone_id != zone_id:
            return None

        # find can lag behind writes; ask for the recorded id before treating it as moved.
        recorded = self._provider.get(zone_id, progress.record_id)
        if recorded is None:
            progress.record_id = ""
            return None
        return recorded if recorded.same_identity(record) else None

    def _sync(self, key: ResourceKey, progress: _Progress, zone_id: str, record: RecordSpec) -> str:
        existing = self._lookup(progress, zone_id, record)

        if existing is None:
            if progress.record_id:
                self._delete_stale(key, progress, zone_id)
            progress.record_id = self._provider.create(zone_id, record)
            progress.zone_id = zone_id
            return "created"

        if existing.owner != record.owner and existing.id != progress.record_id:
            raise ProviderConflict(
                f"{record.type.value} record {record.name} already exists ({existing.id}) "
                f"and is not managed by {key}"
            )

        if progress.record_id and progress.record_id != existing.id:
            self._delete_stale(key, progress, zone_id)
        progress.record_id = existing.id
        progress.zone_id = zone_id

        if existing.matches(record):
            return "unchanged"

        try:
            self._provider.update(zone_id, existing.id, record)
        except ProviderNotFound:
            progress.record_id = ""
            raise
        return "updated"

    def _apply(self, key: ResourceKey, resource: Dict[str, Any]) -> ReconcileResult:
        previous = ObservedStatus.from_dict(resource.get("status"))
        progress = _Progress(record_id=previous.record_id, zone_id=previous.zone_id)
        resolution = Resolution()
        error: Optional[OperatorError] = None
        action = ""
        message = ""

        try:
            desired = DesiredRecord.from_spec(resource.get("spec"))
            zone_id = self._resolve_zone(desired.zone, key.namespace, resolution, {})
            content = self._resolver.resolve(
                desired.content, key.namespace, resolution, record_type=desired.type
            )
            record = RecordSpec(
                name=desired.name,
                type=desired.type,
                content=content,
                ttl=desired.ttl,
                proxied=desired.proxied,
                tags=desired.tags,
                comment=desired.comment,
                owner=str(key),
            )
            check_content(record.type, record.content)
            message = f"{record.type.value} {record.name} -> {record.content}"
            action = self._sync(key, progress, zone_id, record)
        except OperatorError as e:
            error = e
            logger.warning(f"{key}: {e.reason}: {e.message}")
        finally:
            self._index.replace(key, resolution.dependencies)

        if error is None:
            log = logger.debug if action == "unchanged" else logger.info
            log(f"{key}: {action} {message}")
        outcome = Outcome(
            record_id=progress.record_id,
            zone_id=progress.zone_id,
            error=error,
            message=message,
        )
        self._write_status(key, resource, previous, outcome)
        return ReconcileResult(requeue_after=self._resync_interval, error=error)

    def _write_status(
        self,
        key: ResourceKey,
        resource: Dict[str, Any],
        previous: ObservedStatus,
        outcome: Outcome,
    ) -> None:
        generation = (resource.get("metadata") or {}).get("generation")
        status = compute_status(previous, outcome, generation)
        fields = reconciler_fields(status)
        if fields == reconciler_fields(previous):
            return
        self._store.patch_status(key.namespace, key.name, fields)
        logger.debug(f"{key}: status updated")

    # -------------------------------------------------------------------------
    # Deleting
    # -------------------------------------------------------------------------

    def _find_orphan(self, key: ResourceKey, resource: Dict[str, Any], zone_id: str) -> Optional[str]:
        """Find a record this resource created but never recorded in its status."""
        try:
            desired = DesiredRecord.from_spec(resource.get("spec"))
            if not zone_id:
                zone_id = self._resolve_zone(desired.zone, key.namespace, Resolution(), {})
        except InvalidSpec as e:
            logger.warning(f"{key}: cannot determine zone for cleanup ({e.message}), skipping")
            return None

        existing = self._provider.find(zone_id, desired.name, desired.type, owner=str(key))
        if existing is not None and existing.owner == str(key):
            self._provider.delete(zone_id, existing.id)
            return existing.id
        return None

    def _delete(self, key: ResourceKey, resource: Dict[str, Any]) -> ReconcileResult:
        previous = ObservedStatus.from_dict(resource.get("status"))

        try:
            if previous.record_id:
                zone_id = previous.zone_id
                if not zone_id:
                    desired = DesiredRecord.from_spec(resource.get("spec"))
                    zone_id = self._resolve_zone(desired.zone, key.namespace, Resolution(), {})
                self._provider.delete(zone_id, previous.record_id)
                logger.info(f"{key}: deleted record {previous.record_id}")
            else:
                orphan = self._find_orphan(key, resource, previous.zone_id)
                if orphan:
                    logger.info(f"{key}: deleted unrecorded record {orphan}")
        except OperatorError as e:
            logger.warning(f"{key}: deletion failed, keeping finalizer: {e.reason}: {e.message}")
            self._write_status(key, resource, previous, Outcome(error=e))
            return ReconcileResult(error=e)

        finalizers = [
            f for f in (resource.get("metadata") or {}).get("finalizers") or [] if f != FINALIZER
        ]
        self._store.set_finalizers(resource, finalizers)
        self._index.remove(key)
        logger.info(f"{key}: removed finalizer {FINALIZER}")
        return ReconcileResult()
