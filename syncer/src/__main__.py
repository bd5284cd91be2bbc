from __future__ import annotations

import json
import logging
import os
import re
import signal
import sys
import threading

from kubernetes.config.config_exception import ConfigException

from syncer.src.controller import build_controller_from_env, env_int
from syncer.src.health import start_health_server
from syncer.src.kube import build_core_api, load_kube_configuration
from syncer.src.metrics import METRICS

RUNTIME_VERSION = "0.1.0"
HUMAN_READABLE_FORMAT = "%(asctime)s %(levelname)-7s %(name)s: %(message)s"
_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


class RedactingFormatter(logging.Formatter):
    """Plain-text formatter that applies the same redaction as :class:`JSONFormatter`."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))


def _parse_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def configure_logging() -> None:
    """Install the root handler from ``LOG_LEVEL``, ``DEBUG`` and ``HUMAN_READABLE_LOGS``."""
    if _parse_bool_env("DEBUG"):
        level = logging.DEBUG
    else:
        log_level = os.getenv("LOG_LEVEL", "INFO").upper()
        level = getattr(logging, log_level, logging.INFO)

    log_handler = logging.StreamHandler()
    if _parse_bool_env("HUMAN_READABLE_LOGS"):
        log_handler.setFormatter(RedactingFormatter(HUMAN_READABLE_FORMAT))
    else:
        log_handler.setFormatter(JSONFormatter())
    logging.root.addHandler(log_handler)
    logging.root.setLevel(level)
    # The API client logs full request bodies at DEBUG, Secret payloads included.
    logging.getLogger("kubernetes").setLevel(max(level, logging.INFO))
    logging.getLogger("urllib3").setLevel(max(level, logging.INFO))


def main() -> None:
    """Syncer entrypoint: configure logging, connect to the cluster and run the controller."""
    configure_logging()
    logger = logging.getLogger(__name__)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        load_kube_configuration(
            kubeconfig=os.getenv("KUBECONFIG") or None,
            master_url=os.getenv("KUBE_MASTER_URL") or None,
        )
    except (ConfigException, OSError):
        logger.exception("Error building Kubernetes client configuration")
        sys.exit(1)

    core_api = build_core_api()
    controller = build_controller_from_env(core_api=core_api)

    health_port = env_int("HEALTH_PORT", 8080, minimum=1, maximum=65535)
    health_server = start_health_server(
        ready=controller.ready,
        port=health_port,
        cache_status=controller.readiness,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        logger.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    if controller.failed.is_set():
        logger.error("Syncer stopped after a fatal error")
        sys.exit(1)
    logger.info("Syncer stopped")


if __name__ == "__main__":
    main()
