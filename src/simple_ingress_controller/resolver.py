"""Desired-state resolution: which Ingress, if any, a Service asks for."""

from __future__ import annotations

from typing import Any

import structlog

from simple_ingress_controller.errors import PermanentConfigError
from simple_ingress_controller.models import (
    EXPOSE_INGRESS_KEY,
    INGRESS_NAME_SUFFIX,
    DesiredIngress,
    IngressTemplate,
)

logger = structlog.get_logger(__name__)


def wants_ingress(service: Any) -> bool:
    """True iff the Service carries ``exposeIngress: "true"`` (exact, case-sensitive)."""
    annotations: dict[str, str] = service.metadata.annotations or {}
    return annotations.get(EXPOSE_INGRESS_KEY) == "true"


def ingress_name_for(service_name: str) -> str:
    """Derived name of the Ingress managed on behalf of *service_name*."""
    return service_name + INGRESS_NAME_SUFFIX


class IngressResolver:
    """Turns a Service into a :class:`DesiredIngress` using a fixed template.

    Parameters
    ----------
    template:
        Host, class, path and port shared by every generated Ingress.
    """

    def __init__(self, template: IngressTemplate | None = None) -> None:
        self._template = template or IngressTemplate()

    @property
    def template(self) -> IngressTemplate:
        return self._template

    def resolve(self, service: Any) -> DesiredIngress | None:
        """Return the desired Ingress for *service*, or ``None`` if none is wanted.

        Raises
        ------
        PermanentConfigError
            If the template cannot be rendered for this Service.
        """
        if not wants_ingress(service):
            return None

        name = service.metadata.name
        namespace = service.metadata.namespace
        tpl = self._template

        try:
            host = tpl.host.format(name=name, namespace=namespace)
        except (KeyError, IndexError, ValueError) as exc:
            raise PermanentConfigError(f"Cannot render ingress host {tpl.host!r}: {exc}") from exc

        port = tpl.port if tpl.port is not None else _first_service_port(service)
        if port is None:
            raise PermanentConfigError(f"Service {namespace}/{name} declares no ports to route to")

        return DesiredIngress(
            namespace=namespace,
            name=ingress_name_for(name),
            service_name=name,
            host=host,
            ingress_class_name=tpl.ingress_class_name,
            path=tpl.path,
            path_type=tpl.path_type,
            port=port,
        )


def _first_service_port(service: Any) -> int | None:
    spec = getattr(service, "spec", None)
    if spec is None or not spec.ports:
        return None
    for p in spec.ports:
        if p.port:
            return p.port
    return None
