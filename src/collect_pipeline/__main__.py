"""
Entry point for pulling forms from a data collection server.

Usage:
    # Pull every form listed by the configured server
    python -m collect_pipeline

    # Pull some forms only, starting over instead of resuming
    python -m collect_pipeline --form census --form household --from-start

    # Use another config file and expose metrics
    python -m collect_pipeline --config /etc/collect.yaml --metrics-port 8000

Configuration comes from config.yaml (see collect_pipeline.config) with
COLLECT_* environment variables taking precedence.

Exit code is 0 when every form was pulled without errors, 1 otherwise.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Optional

from prometheus_client import start_http_server

from core.download.http_client import HttpClient
from core.errors.exceptions import PipelineError
from core.logging.setup import generate_run_id, setup_logging
from core.logging.utilities import get_logger

from collect_pipeline.config import CollectConfig, load_config
from collect_pipeline.crypto.cipher import load_private_key
from collect_pipeline.service import PullService, create_pull_service, decrypt_form, select_forms
from collect_pipeline.storage.metadata import DEFAULT_METADATA_FILENAME, JsonFileMetadataStore

# Placeholder logger until setup_logging() is called in main()
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Pull forms and submissions from a data collection server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Path to the YAML config file (default: ./config.yaml)",
    )

    parser.add_argument(
        "--form",
        action="append",
        dest="forms",
        default=None,
        help="Form ID to pull; repeat for several (default: from config, else all forms)",
    )

    parser.add_argument(
        "--from-start",
        action="store_true",
        help="Ignore saved cursors and enumerate submissions from the beginning",
    )

    parser.add_argument(
        "--metrics-port",
        type=int,
        default=None,
        help="Port for Prometheus metrics server (default: from config, 0 disables)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Console logging level (default: from config)",
    )

    return parser.parse_args()


def apply_args(config: CollectConfig, args: argparse.Namespace) -> CollectConfig:
    """Command line flags win over the config file and the environment."""
    if args.forms:
        config.pull.forms = list(args.forms)
    if args.from_start:
        config.pull.start_from_last = False
    if args.metrics_port is not None:
        config.metrics.port = args.metrics_port
    if args.log_level:
        config.logging.level = args.log_level
    return config


def setup_signal_handlers(loop: asyncio.AbstractEventLoop, service: PullService) -> None:
    """
    Cancel the pulls on SIGINT/SIGTERM.

    Running pulls finish their in-flight downloads and never save a cursor.
    A second signal cancels every task outright.
    """

    def handle_signal(sig):
        if service.runner.status.is_still_running:
            logger.info(f"Received signal {sig.name}, cancelling pulls...")
            service.cancel()
        else:
            logger.warning("Received second signal, forcing immediate shutdown...")
            for task in asyncio.all_tasks(loop):
                task.cancel()

    # Signal handlers are not supported on Windows
    if sys.platform == "win32":
        return

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda s=sig: handle_signal(s))


async def run(config: CollectConfig) -> bool:
    """Pull the selected forms; True when all of them succeeded."""
    pull_config = config.pull
    store = JsonFileMetadataStore(pull_config.storage_dir / DEFAULT_METADATA_FILENAME)

    async with HttpClient(
        timeout_seconds=pull_config.timeout_seconds,
        connect_timeout_seconds=pull_config.connect_timeout_seconds,
        max_connections=pull_config.max_parallel * 2,
    ) as http:
        service = await create_pull_service(config, http, store)
        forms = select_forms(await service.list_forms(), pull_config.forms)
        if not forms:
            logger.warning("No forms to pull")
            return True

        setup_signal_handlers(asyncio.get_running_loop(), service)
        service.pull_forms(forms)
        results = await service.wait_for_completion()

    if pull_config.private_key_path is not None and service.runner.status.is_still_running:
        private_key = load_private_key(pull_config.private_key_path)
        for result in results:
            decrypt_form(store, pull_config.storage_dir, result.form_id, private_key)

    return service.succeeded


def main():
    """Main entry point."""
    global logger
    args = parse_args()

    try:
        config = apply_args(load_config(args.config), args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(1)

    setup_logging(
        name="collect_pipeline",
        stage="pull",
        domain=config.server.type,
        log_dir=config.logging.log_dir,
        json_format=config.logging.json_format,
        console_level=config.logging.level_number,
        run_id=generate_run_id(),
    )

    # Re-get logger after setup to use new handlers
    logger = get_logger(__name__)

    if config.metrics.port:
        logger.info(f"Starting metrics server on port {config.metrics.port}")
        start_http_server(config.metrics.port)

    ok: Optional[bool] = None
    try:
        ok = asyncio.run(run(config))
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt received, shutting down...")
    except PipelineError as e:
        logger.error(f"Pull failed: {e}")
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
    finally:
        logger.info("Pull run complete")

    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
