from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

SERVICE_SUFFIX = "-expose"
SERVICE_TYPE = "NodePort"
MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "expose-controller"


@dataclass(frozen=True)
class ServicePortSpec:
    """The controller-owned fields of a Service port.

    Server-assigned fields such as ``nodePort`` are not tracked.
    """

    name: str
    port: int
    target_port: int | str
    protocol: str = "TCP"


HTTP_PORT = ServicePortSpec(name="http", port=80, target_port=80)


@dataclass(frozen=True)
class ExposureSpec:
    """Desired state of the Service exposing one Deployment."""

    namespace: str
    name: str
    selector: Mapping[str, str] = field(default_factory=dict)
    ports: tuple[ServicePortSpec, ...] = (HTTP_PORT,)
    service_type: str = SERVICE_TYPE
    owner_name: str | None = None
    owner_uid: str | None = None


def exposure_name(deployment_name: str) -> str:
    return deployment_name + SERVICE_SUFFIX


def pod_template_labels(deployment: Any) -> dict[str, str]:
    """Extract ``spec.template.metadata.labels`` from a deployment object safely."""
    spec = getattr(deployment, "spec", None)
    template = getattr(spec, "template", None)
    metadata = getattr(template, "metadata", None)
    labels = getattr(metadata, "labels", None)
    if not isinstance(labels, Mapping):
        return {}
    return {str(k): str(v) for k, v in labels.items()}


def desired_exposure(deployment: Any) -> ExposureSpec | None:
    """Return the Service a deployment should have, or ``None`` without pod labels.

    A Service with an empty selector would match nothing useful, so
    unlabelled deployments have no desired exposure.
    """
    selector = pod_template_labels(deployment)
    if not selector:
        return None

    metadata = getattr(deployment, "metadata", None)
    name = getattr(metadata, "name", None) or ""
    return ExposureSpec(
        namespace=getattr(metadata, "namespace", None) or "",
        name=exposure_name(name),
        selector=selector,
        owner_name=name or None,
        owner_uid=getattr(metadata, "uid", None),
    )


def _normalize_target_port(value: Any) -> int | str:
    if isinstance(value, str) and value.isdigit():
        return int(value)
    return value


def normalize_ports(raw_ports: Iterable[Any] | None) -> tuple[ServicePortSpec, ...]:
    """Coerce observed ``V1ServicePort`` objects into comparable specs.

    An unset protocol is the API server default ``TCP``; an unset target
    port defaults to the port itself.
    """
    normalized = []
    for raw in raw_ports or ():
        port = getattr(raw, "port", None)
        target_port = getattr(raw, "target_port", None)
        normalized.append(
            ServicePortSpec(
                name=getattr(raw, "name", None) or "",
                port=port,
                target_port=_normalize_target_port(port if target_port is None else target_port),
                protocol=getattr(raw, "protocol", None) or "TCP",
            )
        )
    return tuple(normalized)


def selectors_equal(observed: Mapping[str, str] | None, desired: Mapping[str, str] | None) -> bool:
    """Label maps are equal when they hold the same key/value pairs, in any order."""
    return dict(observed or {}) == dict(desired or {})


def ports_equal(
    observed: Iterable[ServicePortSpec], desired: Iterable[ServicePortSpec]
) -> bool:
    """Port lists are equal only when the full ordered sequences match."""
    return tuple(observed) == tuple(desired)


def controller_owner_uid(obj: Any) -> str | None:
    """Return the UID of the ownerReference marked ``controller``, if any."""
    metadata = getattr(obj, "metadata", None)
    for reference in getattr(metadata, "owner_references", None) or ():
        if getattr(reference, "controller", False):
            return getattr(reference, "uid", None)
    return None


def service_matches(service: Any, desired: ExposureSpec) -> bool:
    """Compare the fields the controller owns: type, controlling owner, selector and ports.

    A Deployment recreated under the same name has a new UID, so a Service
    still pointing at the old one is stale and would be garbage collected.
    """
    spec = getattr(service, "spec", None)
    if getattr(spec, "type", None) != desired.service_type:
        return False
    if desired.owner_uid and controller_owner_uid(service) != desired.owner_uid:
        return False
    return selectors_equal(getattr(spec, "selector", None), desired.selector) and ports_equal(
        normalize_ports(getattr(spec, "ports", None)), desired.ports
    )
