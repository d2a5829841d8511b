"""Watch event dispatch.

Events for CloudflareDNSRecords enqueue the record itself. Events for
Services, Secrets and ConfigMaps enqueue every record whose last reconcile
read that object, looked up through the ``DependencyIndex``.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, FrozenSet, Iterable, List, Set

from cloudflare_dns_operator.kube import WATCHED_KINDS, ClusterStore, WatchEvent
from cloudflare_dns_operator.resources import KIND, ObjectRef, ResourceKey
from cloudflare_dns_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)


class DependencyIndex:
    """Reverse index from secondary object to the records that read it."""

    def __init__(self):
        self._lock = threading.Lock()
        self._by_key: Dict[ResourceKey, FrozenSet[ObjectRef]] = {}
        self._by_ref: Dict[ObjectRef, Set[ResourceKey]] = {}

    def _drop_locked(self, key: ResourceKey) -> None:
        for ref in self._by_key.pop(key, frozenset()):
            dependents = self._by_ref.get(ref)
            if dependents is None:
                continue
            dependents.discard(key)
            if not dependents:
                del self._by_ref[ref]

    def replace(self, key: ResourceKey, refs: Iterable[ObjectRef]) -> None:
        """Make ``refs`` the complete dependency set of ``key``."""
        refs = frozenset(refs)
        with self._lock:
            self._drop_locked(key)
            if not refs:
                return
            self._by_key[key] = refs
            for ref in refs:
                self._by_ref.setdefault(ref, set()).add(key)

    def remove(self, key: ResourceKey) -> None:
        with self._lock:
            self._drop_locked(key)

    def dependents(self, ref: ObjectRef) -> Set[ResourceKey]:
        with self._lock:
            return set(self._by_ref.get(ref, ()))

    def dependencies(self, key: ResourceKey) -> FrozenSet[ObjectRef]:
        with self._lock:
            return self._by_key.get(key, frozenset())


class WatchDispatcher:
    def __init__(
        self,
        store: ClusterStore,
        queue: WorkQueue,
        index: DependencyIndex,
        kinds: Iterable[str] = WATCHED_KINDS,
        retry_delay_seconds: float = 5.0,
    ):
        self._store = store
        self._queue = queue
        self._index = index
        self._kinds = list(kinds)
        self._retry_delay = retry_delay_seconds

    def handle(self, kind: str, event: WatchEvent) -> None:
        if event.type not in ("ADDED", "MODIFIED", "DELETED") or not event.name:
            return

        if kind == KIND:
            key = ResourceKey(event.namespace or "default", event.name)
            logger.debug(f"{kind} {key} {event.type.lower()}")
            self._queue.add(key)
            return

        ref = ObjectRef(kind, event.namespace, event.name)
        dependents = self._index.dependents(ref)
        if dependents:
            logger.debug(
                f"{kind} {event.namespace}/{event.name} {event.type.lower()}, "
                f"re-queueing {', '.join(str(k) for k in sorted(dependents))}"
            )
        for key in dependents:
            self._queue.add(key)

    def _run(self, kind: str, stop_event: threading.Event) -> None:
        logger.info(f"Watching {kind} objects")
        while not stop_event.is_set():
            try:
                for event in self._store.watch(kind, stop_event):
                    self.handle(kind, event)
            except Exception as e:
                logger.error(f"{kind} watch loop failed: {e}", exc_info=True)
                stop_event.wait(self._retry_delay)
        logger.debug(f"Stopped watching {kind} objects")

    def start(self, stop_event: threading.Event) -> List[threading.Thread]:
        threads = []
        for kind in self._kinds:
            thread = threading.Thread(
                target=self._run, args=(kind, stop_event), name=f"watch-{kind}", daemon=True
            )
            thread.start()
            threads.append(thread)
        return threads
