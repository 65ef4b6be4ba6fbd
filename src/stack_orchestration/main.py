"""
Main entry point for the stack orchestration API.

Run once by the installer (``--role installer``) and once by the monitoring
console (``--role monitor``, the default). Both read the same installation
record; only the installer writes it.
"""

import argparse
import logging
from pathlib import Path

import uvicorn

from stack_orchestration.api import create_app
from stack_orchestration.core.orchestrator import Role, StackOrchestrator
from stack_orchestration.core.settings import StackSettings
from stack_orchestration.logging_setup import setup_logging, uvicorn_log_config

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Kaspa stack orchestration API")
    parser.add_argument("--role", choices=[r.value for r in Role], default=Role.MONITOR.value,
                        help="installer owns writes to the installation record")
    parser.add_argument("--host", default=None, help="Bind address (overrides KASPA_AIO_API_HOST)")
    parser.add_argument("--port", type=int, default=None, help="Bind port (overrides KASPA_AIO_API_PORT)")
    parser.add_argument("--state-path", default=None, help="Installation record path")
    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point"""
    args = parse_args(argv)
    settings = StackSettings()
    if args.state_path:
        settings = settings.model_copy(update={"state_path": Path(args.state_path)})

    setup_logging(settings.log_level)
    logger.info(f"Starting stack orchestration as {args.role}")

    orchestrator = StackOrchestrator(settings, role=Role(args.role))
    app = create_app(orchestrator)

    host = args.host or settings.api_host
    port = args.port or settings.api_port
    logger.info(f"Starting uvicorn server on {host}:{port}")
    uvicorn.run(app, host=host, port=port, log_config=uvicorn_log_config(settings.log_level))


if __name__ == "__main__":
    main()
