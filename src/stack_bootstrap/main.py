"""
Stack Bootstrapper - Command Line Entry Point

Commands:
    bootstrap   load .env, ensure resources, start the stack, wait for health
    health      poll the health endpoint (optionally check Docker and /tools)
    status      show container status for the compose project
    down        stop the stack

Exit codes:
    0    success
    2    configuration or environment file error
    3    a required resource could not be ensured
    4    health check timed out
    5    container runtime unavailable
    6    compose command failed
    130  cancelled

Usage:
    stack-bootstrap bootstrap --env-file .env
    stack-bootstrap health --url http://localhost:8811/health --timeout 30
"""

import argparse
import json
import logging
import logging.handlers
import os
import signal
import sys
from pathlib import Path
from typing import Any, Dict, List, Optional

import requests

from . import __version__
from .backend import LocalBackend
from .cancellation import CancellationToken, OperationCancelled
from .compose import ComposeError, ComposeRunner
from .config import DEFAULT_ENVIRONMENT, Config
from .diagnostics import check_container_runtime, check_tools_endpoint, tools_url_for
from .env_loader import EnvFileError, load_env_file
from .health import HealthCheckConfig, HealthPoller
from .orchestrator import ExitCode, StackBootstrapper, log_summary

logger = logging.getLogger("stack_bootstrap")


def setup_logging(log_level: str = "INFO", log_dir: Optional[str] = None) -> logging.Logger:
    """
    Configure console logging on stderr and, when ``log_dir`` is set, a
    rotating debug log file.

    Returns:
        Logger instance for the package
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_dir else level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stderr)
    console_handler.setLevel(level)
    console_handler.setFormatter(
        logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    )
    root_logger.addHandler(console_handler)

    if log_dir:
        log_file = os.path.join(log_dir, "stack-bootstrap.log")
        try:
            Path(log_dir).mkdir(parents=True, exist_ok=True)
            file_handler = logging.handlers.RotatingFileHandler(
                log_file, maxBytes=10 * 1024 * 1024, backupCount=5  # 10MB
            )
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(
                logging.Formatter(
                    "%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s"
                )
            )
            root_logger.addHandler(file_handler)
        except OSError as e:
            root_logger.warning(f"Could not set up file logging: {e}")

    # urllib3 logs every retry at DEBUG
    logging.getLogger("urllib3").setLevel(logging.WARNING)

    return logger


def setup_signal_handlers(cancel: CancellationToken) -> None:
    """Translate SIGINT/SIGTERM into cancellation of the running operation."""

    def signal_handler(signum, frame):
        signal_name = signal.Signals(signum).name
        if cancel.cancelled:
            logger.warning(f"Received {signal_name} again, exiting immediately")
            sys.exit(int(ExitCode.CANCELLED))
        logger.info(f"Received {signal_name}, cancelling...")
        cancel.cancel(f"Interrupted by {signal_name}")

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)


def _add_health_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--url", dest="health_url", help="health endpoint URL (default: built from MCP_HOST/MCP_PORT)")
    parser.add_argument("--timeout", dest="health_timeout", type=int, help="seconds to wait for health (default: 30)")
    parser.add_argument("--interval", dest="health_interval", type=int, help="seconds between probes (default: 2)")
    parser.add_argument("--method", dest="health_method", choices=["GET", "HEAD"], type=str.upper, help="probe method")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stack-bootstrap",
        description="Bootstrap, health-check and tear down the local MCP container stack",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("--log-level", dest="log_level", type=str.upper,
                        choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="console log level")
    parser.add_argument("--log-dir", dest="log_dir", help="directory for a rotating debug log")
    parser.add_argument("--project-dir", dest="project_dir", help="directory holding .env and the compose file")
    parser.add_argument("--env-file", dest="env_file", help="environment file (default: .env)")

    subparsers = parser.add_subparsers(dest="command", required=True)

    bootstrap = subparsers.add_parser("bootstrap", help="run the full bootstrap sequence")
    bootstrap.add_argument("--manifest", dest="manifest_file", help="YAML resource manifest")
    bootstrap.add_argument("--compose-file", dest="compose_file", help="compose file (default: docker-compose.yml)")
    bootstrap.add_argument("--project-name", dest="project_name", help="compose project name (default: mcp)")
    bootstrap.add_argument("--require-env-file", dest="require_env_file", action="store_true", default=None,
                           help="fail when the environment file is missing")
    bootstrap.add_argument("--skip-compose", dest="skip_compose", action="store_true", default=None,
                           help="ensure resources and poll health without starting the stack")
    bootstrap.add_argument("--deadline", dest="deadline", type=int,
                           help="abort the whole run after this many seconds")
    bootstrap.add_argument("--json", dest="json_output", action="store_true",
                           help="print the run report as JSON on stdout")
    _add_health_arguments(bootstrap)

    health = subparsers.add_parser("health", help="poll the health endpoint")
    _add_health_arguments(health)
    health.add_argument("--check-docker", action="store_true", help="also check the Docker daemon")
    health.add_argument("--check-tools", action="store_true", help="also probe the /tools endpoint")

    status = subparsers.add_parser("status", help="show container status")
    status.add_argument("--compose-file", dest="compose_file")
    status.add_argument("--project-name", dest="project_name")

    down = subparsers.add_parser("down", help="stop the stack")
    down.add_argument("--compose-file", dest="compose_file")
    down.add_argument("--project-name", dest="project_name")
    down.add_argument("--volumes", action="store_true", help="also remove named volumes")

    return parser


CONFIG_KEYS = (
    "log_level", "log_dir", "project_dir", "env_file", "manifest_file", "compose_file",
    "project_name", "require_env_file", "skip_compose", "deadline",
    "health_url", "health_timeout", "health_interval", "health_method",
)


def config_from_args(args: argparse.Namespace) -> Config:
    overrides: Dict[str, Any] = {key: getattr(args, key, None) for key in CONFIG_KEYS}
    return Config(overrides)


def _compose_runner(config: Config) -> ComposeRunner:
    return ComposeRunner(
        compose_file=config.compose_path,
        project_name=config.project_name,
        timeout_seconds=config.compose_timeout,
    )


def _load_environment(config: Config):
    result = load_env_file(config.env_path, DEFAULT_ENVIRONMENT)
    if not result.file_found:
        logger.warning(f"Environment file not found: {result.source_path}; using defaults")
    return result.environment


def cmd_bootstrap(config: Config, args: argparse.Namespace, cancel: CancellationToken) -> int:
    summary = config.get_startup_summary()
    logger.info(f"stack-bootstrap v{__version__}")
    for key, value in summary.items():
        logger.info(f"  {key}: {value}")

    backend = LocalBackend(base_dir=Path(config.project_dir))
    compose = None if config.skip_compose else _compose_runner(config)
    bootstrapper = StackBootstrapper(config, backend, compose=compose, cancel=cancel)

    report = bootstrapper.run()
    log_summary(report)
    if getattr(args, "json_output", False):
        print(json.dumps(report.to_dict(), indent=2))
    return int(report.exit_code)


def cmd_health(config: Config, args: argparse.Namespace, cancel: CancellationToken) -> int:
    environment = _load_environment(config)
    health_config = HealthCheckConfig(
        url=config.health_url_for(environment),
        timeout_seconds=config.health_timeout,
        poll_interval_seconds=config.health_interval,
        method=config.health_method,
    )

    exit_code = ExitCode.OK
    with requests.Session() as session:
        result = HealthPoller(health_config, session=session).poll(cancel)
        if result.healthy:
            logger.info(f"Server is healthy ({result.elapsed_seconds:.1f}s)")
        else:
            logger.warning("Server is not responding; inspect the logs with 'docker compose logs'")
            exit_code = ExitCode.HEALTH_TIMED_OUT

        if args.check_docker:
            docker_status = check_container_runtime(LocalBackend(base_dir=Path(config.project_dir)))
            if docker_status.available:
                logger.info(f"Docker is accessible (v{docker_status.details.get('server_version')})")
            else:
                logger.error(f"Docker is not accessible: {docker_status.error}")
                if exit_code is ExitCode.OK:
                    exit_code = ExitCode.RUNTIME_UNAVAILABLE

        if args.check_tools:
            tools = check_tools_endpoint(tools_url_for(health_config.url), session=session)
            if tools.available:
                logger.info(f"Tools endpoint is accessible ({tools.details['tool_count']} tools)")
            else:
                logger.warning(f"Tools endpoint not available: {tools.error}")

    return int(exit_code)


def cmd_status(config: Config, args: argparse.Namespace, cancel: CancellationToken) -> int:
    try:
        containers = _compose_runner(config).container_status()
    except ComposeError as e:
        logger.error(str(e))
        return int(ExitCode.RUNTIME_UNAVAILABLE)

    if not containers:
        logger.warning(f"No containers found for project '{config.project_name}'")
    for container in containers:
        ports = ", ".join(f"{p}->{','.join(h)}" for p, h in container.ports.items()) or "-"
        health = container.health or "-"
        print(f"{container.name}\t{container.state}\t{health}\t{ports}")
    return int(ExitCode.OK)


def cmd_down(config: Config, args: argparse.Namespace, cancel: CancellationToken) -> int:
    try:
        environment = _load_environment(config)
        _compose_runner(config).down(environment, remove_volumes=args.volumes, cancel=cancel)
    except ComposeError as e:
        logger.error(str(e))
        return int(ExitCode.COMPOSE_FAILED)
    logger.info("Stack stopped")
    return int(ExitCode.OK)


COMMANDS = {
    "bootstrap": cmd_bootstrap,
    "health": cmd_health,
    "status": cmd_status,
    "down": cmd_down,
}


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return int(ExitCode.CONFIG_ERROR)

    setup_logging(config.log_level, config.log_dir or None)

    errors = config.validate()
    if errors:
        for error in errors:
            logger.error(f"Configuration error: {error}")
        return int(ExitCode.CONFIG_ERROR)

    cancel = CancellationToken(deadline_seconds=config.deadline or None)
    setup_signal_handlers(cancel)

    try:
        return COMMANDS[args.command](config, args, cancel)
    except OperationCancelled as e:
        logger.warning(f"Cancelled: {e}")
        return int(ExitCode.CANCELLED)
    except EnvFileError as e:
        logger.error(str(e))
        return int(ExitCode.CONFIG_ERROR)
    except ValueError as e:
        logger.error(f"Invalid arguments: {e}")
        return int(ExitCode.CONFIG_ERROR)


if __name__ == "__main__":
    sys.exit(main())
