"""Configuration management for the Simple Ingress Controller.

Settings are loaded from (highest priority wins):
1. Environment variables  (``INGRESS_CONTROLLER_*``)
2. Defaults
"""

from __future__ import annotations

from typing import Annotated

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode

from simple_ingress_controller.models import (
    DEFAULT_INGRESS_HOST,
    IngressTemplate,
    LookupStrategy,
    OwnershipScheme,
    PathType,
)


class ControllerSettings(BaseSettings):
    """All configurable knobs for the controller.

    Values can be set via environment variables with the ``INGRESS_CONTROLLER_``
    prefix, e.g. ``INGRESS_CONTROLLER_WORKERS``, ``INGRESS_CONTROLLER_INGRESS_HOST``.
    """

    # Kubernetes watching -------------------------------------------------------
    watch_namespaces: Annotated[list[str], NoDecode] = Field(
        default_factory=list,
        description=(
            "Namespaces to watch. Empty list means watch all namespaces. "
            "Comma-separated string also accepted via env var."
        ),
    )
    resync_period: int = Field(
        default=300,
        ge=0,
        description="Seconds between full re-enqueues of every cached Service. 0 disables resync.",
    )
    watch_timeout_seconds: int = Field(
        default=300,
        ge=1,
        description="Server-side timeout of a single watch request.",
    )
    cache_sync_timeout: float = Field(
        default=60.0,
        gt=0,
        description="Seconds to wait for the initial list before giving up.",
    )

    # Ingress template ----------------------------------------------------------
    ingress_host: str = Field(
        default=DEFAULT_INGRESS_HOST,
        description="Host of the generated rule; {name} and {namespace} are substituted.",
    )
    ingress_class_name: str = Field(default="nginx", description="IngressClass of generated Ingresses.")
    ingress_path: str = Field(default="/", description="HTTP path of the single rule.")
    ingress_path_type: PathType = Field(default=PathType.PREFIX, description="Path match type.")
    ingress_port: int | None = Field(
        default=80,
        description="Backend Service port. Unset (empty) means the Service's first declared port.",
    )

    # Ownership -----------------------------------------------------------------
    ownership_scheme: OwnershipScheme = Field(
        default=OwnershipScheme.OWNER_REFERENCE,
        description="'owner-reference' (cascade delete) or 'annotation' (ownerServiceName).",
    )
    lookup_strategy: LookupStrategy = Field(
        default=LookupStrategy.NAME,
        description="'name' (get by derived name) or 'scan' (filter namespace by owner).",
    )

    # Work queue / workers ------------------------------------------------------
    workers: int = Field(default=2, ge=1, description="Number of parallel reconcile workers.")
    max_retries: int = Field(
        default=15,
        ge=0,
        description="Rate-limited requeues of a failing key before it is dropped until the next notification.",
    )
    backoff_base_delay: float = Field(default=0.005, gt=0, description="First retry delay in seconds.")
    backoff_max_delay: float = Field(default=1000.0, gt=0, description="Retry delay cap in seconds.")
    rate_limit_qps: float = Field(default=10.0, gt=0, description="Overall retry rate.")
    rate_limit_burst: int = Field(default=100, ge=1, description="Overall retry burst.")

    # Observability -------------------------------------------------------------
    metrics_port: int = Field(default=8080, ge=0, le=65535, description="Prometheus port. 0 disables.")
    log_level: str = Field(
        default="INFO",
        description="Log level (DEBUG, INFO, WARNING, ERROR).",
    )
    log_format: str = Field(
        default="json",
        description="Log format: 'json' (structured) or 'console' (human-readable).",
    )

    # ---- Validators -----------------------------------------------------------

    @field_validator("watch_namespaces", mode="before")
    @classmethod
    def _parse_comma_separated(cls, v: str | list[str]) -> list[str]:
        if isinstance(v, str):
            return [ns.strip() for ns in v.split(",") if ns.strip()]
        return v

    @field_validator("ingress_port", mode="before")
    @classmethod
    def _empty_port_means_service_port(cls, v: object) -> object:
        if isinstance(v, str) and not v.strip():
            return None
        return v

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, v: str) -> str:
        return v.upper()

    # ---- Derived objects ------------------------------------------------------

    def ingress_template(self) -> IngressTemplate:
        """Build the validated template used for every generated Ingress."""
        return IngressTemplate(
            host=self.ingress_host,
            ingress_class_name=self.ingress_class_name,
            path=self.ingress_path,
            path_type=self.ingress_path_type,
            port=self.ingress_port,
        )

    # ---- Pydantic-settings config ---------------------------------------------

    model_config = {
        "env_prefix": "INGRESS_CONTROLLER_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


def load_settings() -> ControllerSettings:
    """Load and validate controller settings from the environment.

    Raises
    ------
    pydantic.ValidationError
        If a setting or the resulting ingress template is invalid.
    """
    settings = ControllerSettings()
    # Fail fast on a template that could never render
    settings.ingress_template()
    return settings
