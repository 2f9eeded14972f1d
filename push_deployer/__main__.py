"""
push-deployer CLI entry point.

    push-deployer deploy <revision> [--branch main]   run the pipeline once
    push-deployer serve                               run the trigger gateway
"""

import argparse
import asyncio
import logging
import os
import sys
from pathlib import Path

from push_deployer.audit import configure_audit_log
from push_deployer.config.settings import DeployerConfig, generate_default_config
from push_deployer.exceptions import EXIT_SUCCESS, DeployerError, InputError
from push_deployer.locking import WorkloadLocks
from push_deployer.logging_config import setup_basic_logging
from push_deployer.logging_config import setup_logging as setup_full_logging
from push_deployer.models import Revision
from push_deployer.pipeline import DeploymentPipeline

DEFAULT_CONFIG_PATH = "/etc/push-deployer/config.yml"


def setup_logging(log_dir: str, verbose: bool = False) -> None:
    """Set up file logging, falling back to a user directory or stdout."""
    console_level = "DEBUG" if verbose else "INFO"

    if not os.access(Path(log_dir).parent, os.W_OK) and not os.access(log_dir, os.W_OK):
        log_dir = str(Path.home() / ".local" / "log" / "push-deployer")

    try:
        setup_full_logging(
            log_dir=log_dir,
            console_level=console_level,
            file_level="DEBUG",
            use_json=False,
        )
    except PermissionError:
        # Fall back to basic logging if file logging fails
        setup_basic_logging(console_level)


async def run_deploy(config: DeployerConfig, revision: Revision, branch: str) -> int:
    """Run one deployment while holding the workload lock; returns the exit code."""
    locks = WorkloadLocks(config.paths.resolve_state_dir())
    async with locks.hold(config.workload.name, wait=False):
        pipeline = DeploymentPipeline(config, revision, branch=branch, actor="cli")
        run = await pipeline.run()

    print(f"{run.outcome.value}: {run.workload} {revision.short} (run {run.run_id})")
    if run.message:
        print(run.message)
    return pipeline.exit_code


def run_gateway(config: DeployerConfig) -> None:
    """Serve the trigger gateway until interrupted."""
    import uvicorn

    from push_deployer.gateway import create_app

    app = create_app(config)
    uvicorn.run(
        app,
        host=config.gateway.host,
        port=config.gateway.port,
        log_config=None,
        access_log=False,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="push-deployer",
        description="push-deployer - Push-triggered container deployment with automatic rollback",
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=os.environ.get("PUSH_DEPLOYER_CONFIG", DEFAULT_CONFIG_PATH),
        help="Path to configuration file",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    subparsers = parser.add_subparsers(dest="command")

    deploy = subparsers.add_parser("deploy", help="Deploy one revision now")
    deploy.add_argument("revision", help="Commit hash to deploy (7-40 hex characters)")
    deploy.add_argument("--branch", help="Branch the revision must belong to")

    subparsers.add_parser("serve", help="Run the webhook trigger gateway")
    return parser


def load_config(path: str) -> DeployerConfig:
    """Config file if present, otherwise defaults plus environment."""
    if Path(path).exists():
        return DeployerConfig.from_file(path)
    return DeployerConfig.from_env()


def main() -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    # Handle config generation
    if args.generate_config:
        generate_default_config(args.config)
        print(f"Generated default configuration at: {args.config}")
        return EXIT_SUCCESS

    # Handle config validation
    if args.validate_config:
        try:
            DeployerConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return EXIT_SUCCESS
        except InputError as e:
            print(f"Configuration invalid: {e}")
            return e.exit_code

    if not args.command:
        parser.print_help()
        return InputError.exit_code

    try:
        config = load_config(args.config)
    except InputError as e:
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code

    setup_logging(config.paths.log_dir, args.verbose)
    configure_audit_log(config.paths.audit_log)
    logger = logging.getLogger(__name__)

    try:
        if args.command == "deploy":
            revision = Revision.parse(args.revision)
            return asyncio.run(run_deploy(config, revision, args.branch or config.workload.branch))

        logger.info(f"Starting trigger gateway on {config.gateway.host}:{config.gateway.port}")
        run_gateway(config)

    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return EXIT_SUCCESS
    except DeployerError as e:
        logger.error(e.message)
        print(f"Error: {e}", file=sys.stderr)
        return e.exit_code
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        # Print to stderr for systemd journal
        print(f"Error running push-deployer: {e}", file=sys.stderr)
        return 1

    return EXIT_SUCCESS


if __name__ == "__main__":
    sys.exit(main())
