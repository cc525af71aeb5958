from __future__ import annotations

import copy
import logging
import os
from typing import Any

from kubernetes import client, config
from kubernetes.client import (
    ApiException,
    AppsV1Api,
    CoreV1Api,
    V1ObjectMeta,
    V1OwnerReference,
    V1Service,
    V1ServicePort,
    V1ServiceSpec,
)
from kubernetes.config.config_exception import ConfigException

from expose_controller.src.exposure import (
    MANAGED_BY_LABEL,
    MANAGED_BY_VALUE,
    ExposureSpec,
)

LOGGER = logging.getLogger(__name__)


def load_kube_configuration(kubeconfig: str | None = None, master: str | None = None) -> None:
    """Load Kubernetes client configuration.

    An explicit *kubeconfig* path wins. Otherwise in-cluster config is tried
    first (running inside a pod), falling back to the local kubeconfig for
    development. *master* overrides the API server address either way.
    """
    if kubeconfig:
        path = os.path.normpath(kubeconfig)
        config.load_kube_config(config_file=path)
        LOGGER.info("Loaded kubeconfig %s", path)
    else:
        try:
            config.load_incluster_config()
            LOGGER.info("Loaded in-cluster Kubernetes configuration")
        except ConfigException:
            config.load_kube_config()
            LOGGER.info("Loaded local kubeconfig")

    if master:
        configuration = client.Configuration.get_default_copy()
        configuration.host = master
        client.Configuration.set_default(configuration)
        LOGGER.info("Using API server override %s", master)


def build_clients() -> tuple[CoreV1Api, AppsV1Api]:
    """Return CoreV1 and AppsV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api()


def build_service_ports(spec: ExposureSpec, existing_ports: Any = None) -> list[V1ServicePort]:
    """Render the desired ports, keeping node ports the API server already allocated."""
    allocated = {
        getattr(port, "name", None): getattr(port, "node_port", None)
        for port in existing_ports or ()
    }
    return [
        V1ServicePort(
            name=port.name,
            port=port.port,
            target_port=port.target_port,
            protocol=port.protocol,
            node_port=allocated.get(port.name),
        )
        for port in spec.ports
    ]


def build_owner_references(
    spec: ExposureSpec, existing_references: Any = None
) -> list[Any] | None:
    """Point the controlling ownerReference at *spec*'s Deployment.

    Non-controller references already on the Service are kept. Without a
    known owner UID the existing references are returned unchanged.
    """
    kept = list(existing_references or ())
    if not (spec.owner_uid and spec.owner_name):
        return kept or None
    kept = [reference for reference in kept if not getattr(reference, "controller", False)]
    kept.append(
        V1OwnerReference(
            api_version="apps/v1",
            kind="Deployment",
            name=spec.owner_name,
            uid=spec.owner_uid,
            controller=True,
        )
    )
    return kept


def build_service(spec: ExposureSpec) -> V1Service:
    """Render a new ``V1Service`` for *spec*, owned by its Deployment when the UID is known."""
    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=V1ObjectMeta(
            name=spec.name,
            namespace=spec.namespace,
            labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            owner_references=build_owner_references(spec),
        ),
        spec=V1ServiceSpec(
            type=spec.service_type,
            selector=dict(spec.selector),
            ports=build_service_ports(spec),
        ),
    )


class ServiceClient:
    """Mutating calls for exposure Services.

    ``ApiException`` propagates to the caller except for ``404`` on delete,
    which means the Service is already gone.
    """

    def __init__(self, core_api: CoreV1Api) -> None:
        self.core_api = core_api

    def create(self, spec: ExposureSpec) -> Any:
        return self.core_api.create_namespaced_service(
            namespace=spec.namespace,
            body=build_service(spec),
        )

    def update(self, existing: Any, spec: ExposureSpec) -> Any:
        """Replace *existing* with type, selector, ports and controlling owner from *spec*.

        Metadata, including ``resourceVersion``, is carried over so a stale
        cache read surfaces as a ``409 Conflict`` instead of a lost update.
        """
        updated = copy.deepcopy(existing)
        updated.metadata.owner_references = build_owner_references(
            spec, existing_references=getattr(updated.metadata, "owner_references", None)
        )
        updated.spec.type = spec.service_type
        updated.spec.selector = dict(spec.selector)
        updated.spec.ports = build_service_ports(spec, existing_ports=existing.spec.ports)
        return self.core_api.replace_namespaced_service(
            name=spec.name,
            namespace=spec.namespace,
            body=updated,
        )

    def delete(self, namespace: str, name: str) -> bool:
        """Delete a Service; return ``False`` if it did not exist."""
        try:
            self.core_api.delete_namespaced_service(name=name, namespace=namespace)
        except ApiException as exc:
            if exc.status == 404:
                return False
            raise
        return True
