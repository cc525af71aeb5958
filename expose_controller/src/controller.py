from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable

from kubernetes.client import AppsV1Api, CoreV1Api

from expose_controller.src.cache import Informer, wait_for_cache_sync
from expose_controller.src.config import ControllerConfig
from expose_controller.src.keys import InvalidKeyError
from expose_controller.src.kube import ServiceClient
from expose_controller.src.metrics import METRICS
from expose_controller.src.notifier import ChangeNotifier
from expose_controller.src.reconciler import (
    ExposureReconciler,
    ServiceConflictError,
    SyncError,
    SyncOutcome,
)
from expose_controller.src.workqueue import ItemExponentialRateLimiter, RateLimitingQueue

QUEUE_NAME = "deploy-expose"


class CacheSyncError(RuntimeError):
    """Raised when the informer caches cannot complete their initial sync."""


class ExposeController:
    """Runs the Deployment -> Service reconcile loop on a fixed worker pool.

    Deployment notifications are turned into keys by a
    :class:`ChangeNotifier`; Service changes are only cached, never
    enqueued, so the controller does not react to its own writes.

    Lifecycle, driven by :meth:`run`:

    1. Start the Deployment and Service informers.
    2. Block until both caches have synced.
    3. Start ``workers`` threads, each looping over :meth:`process_next_item`.
    4. Block until the shared stop event fires.
    5. Shut down the queue (releasing blocked workers) and stop the
       informers, then return without waiting for in-flight syncs.
    """

    def __init__(
        self,
        queue: RateLimitingQueue,
        reconciler: ExposureReconciler,
        deployment_informer: Informer,
        service_informer: Informer,
        worker_restart_seconds: float = 30.0,
        logger: logging.Logger | None = None,
    ) -> None:
        self.queue = queue
        self.reconciler = reconciler
        self.deployment_informer = deployment_informer
        self.service_informer = service_informer
        self.worker_restart_seconds = worker_restart_seconds
        self.logger = logger or logging.getLogger(__name__)
        self.notifier = ChangeNotifier(queue)
        self.deployment_informer.add_handler(self.notifier.handle)
        self.ready = threading.Event()

    @property
    def informers(self) -> tuple[Informer, Informer]:
        return self.deployment_informer, self.service_informer

    def readiness_checks(self) -> dict[str, Callable[[], bool]]:
        """Named probes reported by ``/readyz`` next to the ``ready`` gate."""
        checks: dict[str, Callable[[], bool]] = {
            f"{informer.resource}_synced": informer.has_synced for informer in self.informers
        }
        checks["queue_running"] = lambda: not self.queue.shutting_down
        return checks

    def process_next_item(self) -> bool:
        """Take one key off the queue and sync it.

        Returns ``False`` once the queue has shut down. The key is always
        released with ``done``; a failed sync is re-added with backoff and a
        successful one resets the key's backoff.
        """
        key, shutdown = self.queue.get()
        if shutdown:
            return False

        self.logger.debug("Processing key: %s", key)
        outcome: SyncOutcome | None = None
        conflict = False
        started = time.monotonic()
        try:
            outcome = self.reconciler.sync(key)
        except ServiceConflictError as exc:
            conflict = True
            self.logger.info("Requeueing %s after conflict: %s", key, exc)
        except (SyncError, InvalidKeyError) as exc:
            self.logger.error("Error syncing %s: %s", key, exc)
        except Exception:
            self.logger.exception("Unexpected error syncing %s", key)
        finally:
            METRICS.reconcile_duration_seconds.observe(time.monotonic() - started)
            self.queue.done(key)

        if outcome is None:
            METRICS.reconcile_total.labels(outcome="conflict" if conflict else "error").inc()
            self.queue.add_rate_limited(key)
            return True

        METRICS.reconcile_total.labels(outcome=outcome.value).inc()
        self.queue.forget(key)
        return True

    def _run_worker(self, stop_event: threading.Event) -> None:
        while not stop_event.is_set():
            try:
                while self.process_next_item():
                    pass
                return
            except Exception:
                self.logger.exception(
                    "Worker loop crashed; restarting in %.0fs", self.worker_restart_seconds
                )
                stop_event.wait(timeout=self.worker_restart_seconds)

    def _shutdown(self) -> None:
        self.ready.clear()
        self.queue.shutdown()
        for informer in self.informers:
            informer.stop()

    def run(self, workers: int, stop_event: threading.Event) -> None:
        """Start informers and workers, then block until *stop_event* fires.

        Raises :class:`CacheSyncError` when an informer gives up before the
        initial sync (for example on RBAC denial).
        """
        if workers < 1:
            raise ValueError("workers must be >= 1")

        for informer in self.informers:
            self.logger.info("Starting %s informer", informer.resource)
            threading.Thread(
                target=informer.run,
                args=(stop_event,),
                name=f"informer-{informer.resource}",
                daemon=True,
            ).start()

        self.logger.info("Waiting for caches to sync")
        if not wait_for_cache_sync(stop_event, *self.informers):
            self._shutdown()
            if stop_event.is_set():
                self.logger.info("Stopped before caches synced")
                return
            raise CacheSyncError("informer caches did not sync")
        self.logger.info("Caches synced")

        for index in range(workers):
            threading.Thread(
                target=self._run_worker,
                args=(stop_event,),
                name=f"worker-{index}",
                daemon=True,
            ).start()
        self.ready.set()
        self.logger.info("Controller running with %d worker(s)", workers)

        while not stop_event.wait(timeout=1.0):
            pass

        self.logger.info("Shutdown signal received, stopping controller")
        self._shutdown()


def build_controller(
    core_api: CoreV1Api, apps_api: AppsV1Api, config: ControllerConfig
) -> ExposeController:
    """Wire informers, queue and reconciler for *config*."""
    if config.namespace:
        list_kwargs = {"namespace": config.namespace}
        list_deployments = apps_api.list_namespaced_deployment
        list_services = core_api.list_namespaced_service
    else:
        list_kwargs = {}
        list_deployments = apps_api.list_deployment_for_all_namespaces
        list_services = core_api.list_service_for_all_namespaces

    deployment_informer = Informer(
        "deployments",
        list_deployments,
        list_kwargs=list_kwargs,
        resync_seconds=config.resync_seconds,
    )
    service_informer = Informer("services", list_services, list_kwargs=list_kwargs)
    queue = RateLimitingQueue(
        ItemExponentialRateLimiter(
            base_delay=config.retry_base_delay_seconds,
            max_delay=config.retry_max_delay_seconds,
        ),
        name=QUEUE_NAME,
    )
    reconciler = ExposureReconciler(
        deployments=deployment_informer.store,
        services=service_informer.store,
        service_client=ServiceClient(core_api),
    )
    return ExposeController(queue, reconciler, deployment_informer, service_informer)
