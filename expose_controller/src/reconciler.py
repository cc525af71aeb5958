from __future__ import annotations

import logging
from enum import Enum

from kubernetes.client import ApiException

from expose_controller.src.cache import NotFoundError, ObjectStore
from expose_controller.src.exposure import desired_exposure, exposure_name, service_matches
from expose_controller.src.keys import InvalidKeyError, ObjectKey
from expose_controller.src.kube import ServiceClient


class SyncError(RuntimeError):
    """A Kubernetes API call failed during a sync; the key should be retried."""


class ServiceConflictError(SyncError):
    """The API server rejected a write with ``409 Conflict``.

    Raised when the Service cache lags behind a write: the Service already
    exists on create, or its ``resourceVersion`` is stale on update. The next
    sync sees fresher state.
    """


def _write_failed(verb: str, namespace: str, service_name: str, exc: ApiException) -> SyncError:
    error_class = ServiceConflictError if exc.status == 409 else SyncError
    return error_class(f"failed to {verb} service {namespace}/{service_name}: {exc.reason}")


class SyncOutcome(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"


class ExposureReconciler:
    """Converges the ``<name>-expose`` Service toward its Deployment.

    Every call re-reads both objects from the cache and decides from scratch,
    so running :meth:`sync` again after a failure or a duplicate notification
    reproduces the same decision.
    """

    def __init__(
        self,
        deployments: ObjectStore,
        services: ObjectStore,
        service_client: ServiceClient,
        logger: logging.Logger | None = None,
    ) -> None:
        self.deployments = deployments
        self.services = services
        self.service_client = service_client
        self.logger = logger or logging.getLogger(__name__)

    def sync(self, key: ObjectKey | str) -> SyncOutcome:
        key = ObjectKey.coerce(key)
        if not key.namespace:
            raise InvalidKeyError(f"deployment key must be namespaced: {key}")

        namespace, name = key.namespace, key.name
        service_name = exposure_name(name)

        try:
            deployment = self.deployments.get(namespace, name)
        except NotFoundError:
            self.logger.info(
                "Deployment %s/%s deleted, cleaning up service %s", namespace, name, service_name
            )
            return self._remove_service(namespace, service_name)

        try:
            service = self.services.get(namespace, service_name)
        except NotFoundError:
            service = None

        desired = desired_exposure(deployment)
        if desired is None:
            self.logger.warning(
                "Deployment %s/%s has no pod template labels, cannot expose it", namespace, name
            )
            return SyncOutcome.SKIPPED

        if service is None:
            self.logger.info("Service %s/%s missing, creating", namespace, service_name)
            try:
                self.service_client.create(desired)
            except ApiException as exc:
                raise _write_failed("create", namespace, service_name, exc) from exc
            self.logger.info("Service %s/%s created", namespace, service_name)
            return SyncOutcome.CREATED

        if service_matches(service, desired):
            self.logger.debug("Service %s/%s already up to date", namespace, service_name)
            return SyncOutcome.UNCHANGED

        self.logger.info("Service %s/%s requires update", namespace, service_name)
        try:
            self.service_client.update(service, desired)
        except ApiException as exc:
            raise _write_failed("update", namespace, service_name, exc) from exc
        self.logger.info("Service %s/%s updated", namespace, service_name)
        return SyncOutcome.UPDATED

    def _remove_service(self, namespace: str, service_name: str) -> SyncOutcome:
        try:
            existed = self.service_client.delete(namespace, service_name)
        except ApiException as exc:
            raise _write_failed("delete", namespace, service_name, exc) from exc
        if existed:
            self.logger.info("Service %s/%s deleted", namespace, service_name)
        else:
            self.logger.debug("Service %s/%s already absent", namespace, service_name)
        return SyncOutcome.DELETED
