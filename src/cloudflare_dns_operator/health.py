"""Periodic DNS resolution check.

For every owned record with a provider id, asks the configured nameserver for
(name, type) and mirrors the answer into ``status.pending``. The record is
live (``pending=false``) when the answer contains the record's resolved
content. NXDOMAIN, no answer, a timeout or an answer with other data means it
is not (``pending=true``). Proxied records resolve to Cloudflare's edge
addresses, so for them any answer counts. Only ``pending`` is written, and
only when it changed; the record is then queued for reconcile.
"""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

import dns.exception
import dns.resolver

from cloudflare_dns_operator.errors import ClusterError, InvalidSpec, OperatorError
from cloudflare_dns_operator.kube import ClusterStore
from cloudflare_dns_operator.provider import normalize_content
from cloudflare_dns_operator.resolver import ValueResolver
from cloudflare_dns_operator.resources import (
    DesiredRecord,
    LifecycleState,
    ObservedStatus,
    RecordType,
    ResourceKey,
    lifecycle_state,
)
from cloudflare_dns_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)


def answer_values(answer, record_type: RecordType) -> List[str]:
    """Normalized content of every rdata in a dnspython answer."""
    values = []
    for rdata in answer:
        if record_type in (RecordType.TXT, RecordType.SPF) and hasattr(rdata, "strings"):
            text = b"".join(rdata.strings).decode("utf-8", errors="replace")
        else:
            text = rdata.to_text() if hasattr(rdata, "to_text") else str(rdata)
        values.append(normalize_content(record_type, text))
    return values


class DNSHealthChecker:
    def __init__(
        self,
        store: ClusterStore,
        interval: float,
        nameserver: str = "1.1.1.1",
        port: int = 53,
        timeout: float = 10.0,
        resolver: Optional[dns.resolver.Resolver] = None,
        values: Optional[ValueResolver] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self._store = store
        self._interval = interval
        if resolver is None:
            resolver = dns.resolver.Resolver(configure=False)
            resolver.port = port
            resolver.nameservers = [nameserver]
            resolver.lifetime = timeout
            resolver.timeout = timeout
        self._resolver = resolver
        self._nameserver = f"{nameserver}:{port}"
        self._values = values if values is not None else ValueResolver(store)
        self._queue = queue

    def bind(self, values: ValueResolver, queue: WorkQueue) -> None:
        """Use the controller's value resolver and queue records whose result flips."""
        self._values = values
        self._queue = queue

    def check(self, name: str, record_type: RecordType, expected: Optional[str] = None) -> bool:
        """Return True if the nameserver answers for (name, type) with ``expected`` among the data."""
        try:
            answer = self._resolver.resolve(name, record_type.value)
        except dns.resolver.NXDOMAIN:
            logger.debug(f"{record_type.value} {name}: NXDOMAIN")
            return False
        except dns.resolver.NoAnswer:
            logger.debug(f"{record_type.value} {name}: no answer")
            return False
        except dns.exception.Timeout:
            logger.debug(f"{record_type.value} {name}: timed out asking {self._nameserver}")
            return False
        except dns.exception.DNSException as e:
            logger.warning(f"{record_type.value} {name}: lookup at {self._nameserver} failed: {e}")
            return False

        if expected is None:
            return True
        found = answer_values(answer, record_type)
        if normalize_content(record_type, expected) in found:
            return True
        logger.debug(f"{record_type.value} {name}: answer {found} does not contain {expected!r}")
        return False

    def check_all(self) -> int:
        """Check every eligible record once. Returns the number of status writes."""
        try:
            records = self._store.list_records()
        except ClusterError as e:
            logger.warning(f"DNS check skipped, cannot list records: {e.message}")
            return 0

        written = 0
        for resource in records:
            if lifecycle_state(resource) != LifecycleState.OWNED:
                continue
            status = ObservedStatus.from_dict(resource.get("status"))
            if not status.record_id:
                continue

            key = ResourceKey.from_resource(resource)
            try:
                desired = DesiredRecord.from_spec(resource.get("spec"))
            except InvalidSpec:
                continue

            expected = None
            if not desired.proxied:
                try:
                    expected = self._values.resolve(
                        desired.content, key.namespace, record_type=desired.type
                    )
                except OperatorError as e:
                    logger.warning(f"{key}: cannot resolve content for DNS check: {e.message}")
                    continue

            pending = not self.check(desired.name, desired.type, expected)
            if pending == status.pending:
                continue
            try:
                self._store.patch_status(key.namespace, key.name, {"pending": pending})
            except ClusterError as e:
                logger.warning(f"{key}: failed to update pending: {e.message}")
                continue
            written += 1
            if pending:
                logger.warning(f"{key}: {desired.type.value} {desired.name} no longer resolves")
            else:
                logger.info(f"{key}: {desired.type.value} {desired.name} resolves")
            if self._queue is not None:
                self._queue.add(key)
        return written

    def run(self, stop_event: threading.Event) -> None:
        logger.info(f"DNS resolution check every {self._interval:g}s against {self._nameserver}")
        while not stop_event.is_set():
            try:
                self.check_all()
            except Exception as e:
                logger.error(f"DNS check failed: {e}", exc_info=True)
            stop_event.wait(self._interval)

    def start(self, stop_event: threading.Event) -> threading.Thread:
        thread = threading.Thread(
            target=self.run, args=(stop_event,), name="dns-health", daemon=True
        )
        thread.start()
        return thread
