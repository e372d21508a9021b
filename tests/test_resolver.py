"""Tests for desired-state resolution and the Ingress template."""

from __future__ import annotations

import pytest
from kubernetes import client
from pydantic import ValidationError

from simple_ingress_controller.errors import PermanentConfigError
from simple_ingress_controller.models import (
    EXPOSE_INGRESS_KEY,
    IngressTemplate,
    PathType,
)
from simple_ingress_controller.resolver import IngressResolver, ingress_name_for, wants_ingress


def _make_service(
    name: str = "foo",
    namespace: str = "ns",
    annotations: dict[str, str] | None = None,
    ports: list[int] | None = None,
) -> client.V1Service:
    return client.V1Service(
        api_version="v1",
        kind="Service",
        metadata=client.V1ObjectMeta(name=name, namespace=namespace, uid=f"uid-{name}", annotations=annotations),
        spec=client.V1ServiceSpec(ports=[client.V1ServicePort(port=p) for p in (ports or [])]),
    )


class TestWantsIngress:
    def test_true_is_desired(self) -> None:
        assert wants_ingress(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"})) is True

    @pytest.mark.parametrize("value", ["True", "TRUE", "yes", "1", "false", "", " true"])
    def test_only_exact_lowercase_true(self, value: str) -> None:
        assert wants_ingress(_make_service(annotations={EXPOSE_INGRESS_KEY: value})) is False

    def test_absent_annotations(self) -> None:
        assert wants_ingress(_make_service(annotations=None)) is False


class TestResolve:
    def test_default_template(self) -> None:
        desired = IngressResolver().resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}))
        assert desired is not None
        assert desired.namespace == "ns"
        assert desired.name == "foo-ingress"
        assert desired.service_name == "foo"
        assert desired.host == "simple-controller.nameof.com"
        assert desired.ingress_class_name == "nginx"
        assert desired.path == "/"
        assert desired.path_type == PathType.PREFIX
        assert desired.port == 80

    def test_not_desired_returns_none(self) -> None:
        assert IngressResolver().resolve(_make_service()) is None

    def test_host_placeholders(self) -> None:
        resolver = IngressResolver(IngressTemplate(host="{name}.{namespace}.apps.example.com"))
        desired = resolver.resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}))
        assert desired.host == "foo.ns.apps.example.com"

    def test_unknown_host_placeholder_is_permanent_error(self) -> None:
        resolver = IngressResolver(IngressTemplate(host="{cluster}.example.com"))
        with pytest.raises(PermanentConfigError):
            resolver.resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}))

    def test_port_from_service(self) -> None:
        resolver = IngressResolver(IngressTemplate(port=None))
        desired = resolver.resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}, ports=[8080, 9090]))
        assert desired.port == 8080

    def test_port_from_service_without_ports_is_permanent_error(self) -> None:
        resolver = IngressResolver(IngressTemplate(port=None))
        with pytest.raises(PermanentConfigError):
            resolver.resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}))

    def test_name_derivation(self) -> None:
        assert ingress_name_for("web") == "web-ingress"


class TestIngressTemplate:
    def test_relative_path_rejected(self) -> None:
        with pytest.raises(ValidationError):
            IngressTemplate(path="api")

    def test_port_range(self) -> None:
        with pytest.raises(ValidationError):
            IngressTemplate(port=70000)


class TestDesiredIngressBody:
    def test_single_rule_single_path(self) -> None:
        desired = IngressResolver().resolve(_make_service(annotations={EXPOSE_INGRESS_KEY: "true"}))
        body = desired.to_body()

        assert body.kind == "Ingress"
        assert body.api_version == "networking.k8s.io/v1"
        assert body.metadata.name == "foo-ingress"
        assert body.metadata.namespace == "ns"
        assert body.spec.ingress_class_name == "nginx"
        assert len(body.spec.rules) == 1
        rule = body.spec.rules[0]
        assert rule.host == "simple-controller.nameof.com"
        assert len(rule.http.paths) == 1
        path = rule.http.paths[0]
        assert path.path == "/"
        assert path.path_type == "Prefix"
        assert path.backend.service.name == "foo"
        assert path.backend.service.port.number == 80
