from __future__ import annotations

from dataclasses import dataclass
from types import SimpleNamespace
from typing import Any

import pytest
from kubernetes.client import ApiException

from expose_controller.src.cache import ObjectStore
from expose_controller.src.keys import ObjectKey
from expose_controller.src.kube import ServiceClient
from expose_controller.src.reconciler import ExposureReconciler


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCoreApi:
    """In-memory Service API that mirrors successful writes into the service store.

    Writing straight into the store stands in for the watch event the real
    informer would receive after each mutation.
    """

    def __init__(self, services: ObjectStore) -> None:
        self.services = services
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[str, list[int]] = {}
        self._resource_version = 0

    def fail_next(self, verb: str, status: int = 500, times: int = 1) -> None:
        self._failures.setdefault(verb, []).extend([status] * times)

    def _maybe_fail(self, verb: str) -> None:
        pending = self._failures.get(verb)
        if pending:
            raise ApiException(status=pending.pop(0), reason=f"{verb} failed")

    def _bump(self, body: Any) -> None:
        self._resource_version += 1
        body.metadata.resource_version = str(self._resource_version)

    def create_namespaced_service(self, namespace: str, body: Any) -> Any:
        self._maybe_fail("create")
        key = ObjectKey(namespace, body.metadata.name)
        if self.services.get_by_key(key) is not None:
            raise ApiException(status=409, reason="AlreadyExists")
        self._bump(body)
        self.services.upsert(body)
        self.calls.append(("create", str(key)))
        return body

    def replace_namespaced_service(self, name: str, namespace: str, body: Any) -> Any:
        self._maybe_fail("replace")
        self._bump(body)
        self.services.upsert(body)
        self.calls.append(("replace", f"{namespace}/{name}"))
        return body

    def delete_namespaced_service(self, name: str, namespace: str) -> None:
        self._maybe_fail("delete")
        existing = self.services.get_by_key(ObjectKey(namespace, name))
        if existing is None:
            raise ApiException(status=404, reason="NotFound")
        self.services.delete(existing)
        self.calls.append(("delete", f"{namespace}/{name}"))

    def verbs(self) -> list[str]:
        return [verb for verb, _ in self.calls]


def make_deployment(
    namespace: str = "ns",
    name: str = "foo",
    labels: dict[str, str] | None = None,
    uid: str | None = None,
) -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(namespace=namespace, name=name, uid=uid or f"uid-{name}"),
        spec=SimpleNamespace(
            template=SimpleNamespace(metadata=SimpleNamespace(labels=labels))
        ),
    )


@dataclass
class FakeCluster:
    deployments: ObjectStore
    services: ObjectStore
    core_api: FakeCoreApi
    reconciler: ExposureReconciler

    def apply_deployment(
        self,
        namespace: str,
        name: str,
        labels: dict[str, str] | None,
        uid: str | None = None,
    ) -> SimpleNamespace:
        deployment = make_deployment(namespace=namespace, name=name, labels=labels, uid=uid)
        self.deployments.upsert(deployment)
        return deployment

    def delete_deployment(self, namespace: str, name: str) -> SimpleNamespace:
        deployment = self.deployments.get(namespace, name)
        self.deployments.delete(deployment)
        return deployment

    def service(self, namespace: str, name: str) -> Any | None:
        return self.services.get_by_key(ObjectKey(namespace, name))


@pytest.fixture
def cluster() -> FakeCluster:
    deployments = ObjectStore("deployments")
    services = ObjectStore("services")
    core_api = FakeCoreApi(services)
    reconciler = ExposureReconciler(
        deployments=deployments,
        services=services,
        service_client=ServiceClient(core_api),  # type: ignore[arg-type]
    )
    return FakeCluster(
        deployments=deployments,
        services=services,
        core_api=core_api,
        reconciler=reconciler,
    )
