"""Process entry point and wiring.

Builds the collaborators for a reconciliation target (cluster client,
context, state store, reconciler) and runs the operator mode: reconcile on
an interval until SIGTERM/SIGINT.

    python -m converge.main     # configured from CONVERGE_* environment variables
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import signal
import sys
from datetime import UTC, datetime
from pathlib import Path

from .client import ClusterAPIError, ClusterClient, KubernetesClusterClient
from .config import Config, ConfigurationError
from .context import ReconcileContext
from .ignore_rules import IgnoreRulesError
from .reconciler import Reconciler
from .state_store import StateStore

# LogRecord attributes that are not structured fields
_RESERVED_LOG_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


class JsonFormatter(logging.Formatter):
    """Format logs as JSON for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }

        for key, value in record.__dict__.items():
            if key not in _RESERVED_LOG_ATTRS:
                log_data[key] = value

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data, default=str)


def setup_logging(level: int = logging.INFO, log_format: str | None = None) -> None:
    """Configure logging on stdout.

    JSON by default; CONVERGE_LOG_FORMAT=text (or log_format="text") gives
    plain lines for interactive use.
    """
    log_format = log_format or os.environ.get("CONVERGE_LOG_FORMAT", "json")

    handler = logging.StreamHandler(sys.stdout)
    if log_format == "text":
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    else:
        handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers = [handler]
    root_logger.setLevel(level)

    # Reduce noise from the Kubernetes client
    logging.getLogger("kubernetes_asyncio").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


async def connect(config: Config) -> KubernetesClusterClient:
    """Open a cluster client for the configured kubeconfig/context.

    Raises:
        ClusterAPIError: If the cluster cannot be reached or configured.
    """
    return await KubernetesClusterClient.connect(
        kubeconfig=config.kubeconfig, context=config.kube_context
    )


def build_reconciler(
    config: Config,
    client: ClusterClient,
    working_dir: Path | None = None,
) -> Reconciler:
    """Wire a reconciler for one target.

    Raises:
        IgnoreRulesError: If the configured rules file is invalid.
    """
    context = ReconcileContext(
        config=config,
        client=client,
        working_dir=working_dir or Path.cwd(),
    )
    store = StateStore(config.state_file, config.audit_file)
    return Reconciler(context, store)


def install_signal_handlers(reconciler: Reconciler) -> None:
    """Shut the reconciler down gracefully on SIGTERM/SIGINT."""
    logger = logging.getLogger(__name__)
    loop = asyncio.get_running_loop()

    def signal_handler(sig: signal.Signals) -> None:
        logger.info("Received signal", extra={"signal": sig.name})
        reconciler.shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, lambda s=sig: signal_handler(s))


def remove_signal_handlers() -> None:
    """Undo install_signal_handlers on the running loop."""
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.remove_signal_handler(sig)


async def run_operator(config: Config) -> int:
    """Reconcile on an interval until a shutdown signal arrives.

    Returns:
        Exit code (0 on clean shutdown, 1 on failure, 2 on bad configuration).
    """
    logger = logging.getLogger(__name__)

    try:
        client = await connect(config)
    except ClusterAPIError as e:
        logger.error("Failed to connect to cluster", extra={"error": str(e)})
        return 1

    try:
        try:
            reconciler = build_reconciler(config, client)
        except IgnoreRulesError as e:
            logger.error("Invalid ignore rules", extra={"error": str(e)})
            return 2

        install_signal_handlers(reconciler)

        try:
            await reconciler.run()
        except Exception as e:
            logger.exception("Unhandled exception", extra={"error": str(e)})
            return 1
    finally:
        await client.close()

    logger.info("Operator stopped")
    return 0


async def main() -> int:
    """Run the operator from environment configuration."""
    setup_logging()
    logger = logging.getLogger(__name__)

    try:
        config = Config.from_env()
    except ConfigurationError as e:
        logger.error("Configuration error", extra={"error": str(e)})
        return 2

    logger.info(
        "Starting converge operator",
        extra={
            "target": config.target,
            "manifests_dir": str(config.manifests_dir),
            "interval_seconds": config.watch_interval_seconds,
        },
    )
    return await run_operator(config)


def run() -> None:
    """Entry point for the operator process."""
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
