"""Entry point for ``python -m simple_ingress_controller``.

Reads ``INGRESS_CONTROLLER_*`` settings, then runs the Service -> Ingress
controller until SIGINT or SIGTERM. Exit codes: 0 after a clean shutdown,
1 when the settings are invalid or the informer caches never sync.
"""

from __future__ import annotations

import signal
import sys
from typing import Any

import structlog

__version__ = "0.1.0"


def _configure_logging(log_level: str, log_format: str) -> None:
    """Set up structlog with the chosen format and level."""
    import logging

    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, log_level.upper(), logging.INFO),
    )

    processors: list[structlog.types.Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def _start_metrics_server(port: int, logger: Any) -> None:
    """Expose the Prometheus registry on *port*; 0 leaves it off."""
    if not port:
        logger.info("metrics_server_disabled")
        return
    from prometheus_client import start_http_server

    start_http_server(port)
    logger.info("metrics_server_started", port=port)


def _install_signal_handlers(controller: Any, logger: Any) -> None:
    """Route SIGINT and SIGTERM to a graceful, draining stop."""

    def _on_signal(signum: int, _frame: object) -> None:
        logger.info("shutdown_signal", signal=signal.Signals(signum).name)
        controller.stop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        signal.signal(sig, _on_signal)


def main() -> None:
    """Run the controller; never returns normally (always ``sys.exit``)."""
    from simple_ingress_controller.config import load_settings
    from simple_ingress_controller.controller import IngressController
    from simple_ingress_controller.errors import CacheSyncError

    try:
        settings = load_settings()
    except Exception as exc:
        # structlog is not configured yet
        print(f"ERROR: invalid INGRESS_CONTROLLER_* settings: {exc}", file=sys.stderr)
        sys.exit(1)

    _configure_logging(settings.log_level, settings.log_format)
    logger = structlog.get_logger("main")
    template = settings.ingress_template()
    logger.info(
        "simple_ingress_controller_starting",
        version=__version__,
        namespaces=settings.watch_namespaces or ["all"],
        ownership_scheme=settings.ownership_scheme.value,
        lookup_strategy=settings.lookup_strategy.value,
        ingress_host=template.host,
        ingress_class=template.ingress_class_name,
        workers=settings.workers,
        max_retries=settings.max_retries,
        resync_period=settings.resync_period,
    )

    _start_metrics_server(settings.metrics_port, logger)
    controller = IngressController(settings)
    _install_signal_handlers(controller, logger)

    exit_code = 0
    try:
        controller.start()
    except CacheSyncError as exc:
        logger.error("cache_sync_failed", error=str(exc))
        exit_code = 1
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
    finally:
        controller.stop()
    logger.info("simple_ingress_controller_exited", exit_code=exit_code)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
