"""Controller wiring: watch threads feed the work queue, worker threads drain it."""

from __future__ import annotations

import logging
import threading
from typing import List, Optional

from cloudflare_dns_operator.dispatcher import DependencyIndex, WatchDispatcher
from cloudflare_dns_operator.errors import OperatorError
from cloudflare_dns_operator.health import DNSHealthChecker
from cloudflare_dns_operator.kube import ClusterStore
from cloudflare_dns_operator.provider import DNSProvider
from cloudflare_dns_operator.reconciler import Reconciler
from cloudflare_dns_operator.resolver import ValueResolver
from cloudflare_dns_operator.workqueue import WorkQueue

logger = logging.getLogger(__name__)


class Controller:
    def __init__(
        self,
        store: ClusterStore,
        provider: DNSProvider,
        *,
        workers: int = 4,
        resync_interval: float = 60.0,
        default_namespace: Optional[str] = None,
        health_checker: Optional[DNSHealthChecker] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.store = store
        self.provider = provider
        self.workers = max(1, workers)
        self.queue = queue if queue is not None else WorkQueue()
        self.index = DependencyIndex()
        values = ValueResolver(store, default_namespace)
        self.reconciler = Reconciler(
            store,
            provider,
            values,
            self.index,
            resync_interval=resync_interval,
        )
        self.dispatcher = WatchDispatcher(store, self.queue, self.index)
        self.health_checker = health_checker
        if health_checker is not None:
            health_checker.bind(values, self.queue)
        self._stop_event = threading.Event()
        self._threads: List[threading.Thread] = []

    def process_next(self, timeout: Optional[float] = None) -> bool:
        """Reconcile one queued key. Returns False once the queue is shut down or empty."""
        key = self.queue.get(timeout=timeout)
        if key is None:
            return False

        try:
            result = self.reconciler.reconcile(key)
        except OperatorError as e:
            delay = self.queue.add_rate_limited(key)
            logger.warning(f"{key}: {e.reason}: {e.message}, retrying in {delay:g}s")
        except Exception as e:
            delay = self.queue.add_rate_limited(key)
            logger.error(f"{key}: unexpected error, retrying in {delay:g}s: {e}", exc_info=True)
        else:
            if result.failed:
                delay = self.queue.add_rate_limited(
                    key, getattr(result.error, "retry_after", None)
                )
                logger.debug(f"{key}: retrying in {delay:g}s")
            else:
                self.queue.forget(key)
            if result.requeue_after is not None:
                self.queue.add_after(key, result.requeue_after)
        finally:
            self.queue.done(key)
        return True

    def _worker(self) -> None:
        while self.process_next():
            pass

    def start(self) -> None:
        self._stop_event.clear()
        self._threads.extend(self.dispatcher.start(self._stop_event))
        if self.health_checker is not None:
            self._threads.append(self.health_checker.start(self._stop_event))
        for i in range(self.workers):
            thread = threading.Thread(target=self._worker, name=f"worker-{i}", daemon=True)
            thread.start()
            self._threads.append(thread)
        logger.info(f"Controller started with {self.workers} worker(s)")

    def run(self) -> None:
        """Start and block until ``stop`` is called."""
        self.start()
        while not self._stop_event.wait(1.0):
            pass
        self.join()

    def stop(self) -> None:
        """Stop watches, timers and the queue. In-flight reconciles finish."""
        if self._stop_event.is_set():
            return
        logger.info("Stopping controller...")
        self._stop_event.set()
        self.queue.shutdown()
        self.store.close()

    def join(self, timeout: float = 30.0) -> None:
        for thread in self._threads:
            thread.join(timeout)
        self._threads = []
