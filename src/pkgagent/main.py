"""Command-line front end and FastAPI status service for the install agent."""

import argparse
import asyncio
import logging
import shutil
import signal
import tempfile
from contextlib import asynccontextmanager, contextmanager
from pathlib import Path
from typing import Iterator, Optional

from fastapi import FastAPI
import uvicorn

from pkgagent.api.routes import router
from pkgagent.errors import EXIT_SUCCESS, AgentError, exit_code_for
from pkgagent.models.config import AgentConfig
from pkgagent.services.agent import InstallAgent
from pkgagent.utils.lock import InstanceLockedError, instance_lock
from pkgagent.utils.logging import setup_logger

VERSION = "1.0.0"
DEFAULT_LOCK_FILE = "/var/run/pkgagent.lock"
DEFAULT_LOG_FILE = "/var/log/pkgagent.log"

logger = logging.getLogger("pkgagent.main")


def create_app(config: AgentConfig, manifest_url: str) -> FastAPI:
    """Build the status API around an agent for manifest_url."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup/shutdown hooks: log and report where scratch data lives."""
        logger.info(
            f"pkgagent {VERSION} serving status API for {manifest_url} "
            f"(scratch: {config.scratch_root or tempfile.gettempdir()})"
        )
        yield
        logger.info("pkgagent status API shutting down...")

    app = FastAPI(
        title="pkgagent",
        description="Unattended package installation agent",
        version=VERSION,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.agent = InstallAgent.from_config(config, manifest_url)
    app.include_router(router)

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "pkgagent", "version": VERSION}

    return app


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--manifest-url", required=True, help="URL of the JSON manifest")
    common.add_argument("--base-url", help="Base URL for relative package locations")
    common.add_argument("--target-volume", default="/", help="Install target volume")
    common.add_argument("--download-timeout", type=float, help="Per-attempt download timeout (s)")
    common.add_argument("--download-attempts", type=int, help="Download attempts per file")
    common.add_argument("--install-timeout", type=float, help="Host installer timeout (s)")
    common.add_argument("--scratch-dir", help="Parent directory for scratch files")
    common.add_argument("--lock-file", default=DEFAULT_LOCK_FILE, help="Single-instance lock file")
    common.add_argument("--log-file", default=DEFAULT_LOG_FILE, help="Rotating log file ('' for console only)")
    common.add_argument("--log-prefix", default="", help="Text prepended to every log line")
    common.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    parser = argparse.ArgumentParser(
        prog="pkgagent",
        description="Fetch, verify and install the packages of a manifest track.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    install = subparsers.add_parser("install", parents=[common], help="Install a track once and exit")
    install.add_argument("--track", default="stable", help="Manifest track to install")

    serve = subparsers.add_parser("serve", parents=[common], help="Run the status API")
    serve.add_argument("--host", default="127.0.0.1")
    serve.add_argument("--port", type=int, default=12316)
    return parser


def config_from_args(args: argparse.Namespace, scratch_root: Optional[Path]) -> AgentConfig:
    overrides = {
        "download_timeout_seconds": args.download_timeout,
        "download_attempts_max": args.download_attempts,
        "install_timeout_seconds": args.install_timeout,
    }
    return AgentConfig(
        target_volume=args.target_volume,
        scratch_root=scratch_root,
        **{k: v for k, v in overrides.items() if v is not None},
    )


@contextmanager
def process_scratch_root(parent: Optional[str]) -> Iterator[Path]:
    """Create the per-process scratch root and remove it on exit."""
    if parent:
        Path(parent).mkdir(parents=True, exist_ok=True)
    root = Path(tempfile.mkdtemp(prefix="pkgagent.", dir=parent))
    logger.debug(f"Scratch root: {root}")
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


async def install_track(
    config: AgentConfig,
    manifest_url: str,
    track: str,
    base_url: Optional[str] = None,
    agent: Optional[InstallAgent] = None,
) -> int:
    """Run one track install; SIGTERM/SIGINT/SIGHUP cancel it.

    Returns:
        Process exit code
    """
    agent = agent or InstallAgent.from_config(config, manifest_url)
    run_task = asyncio.create_task(agent.run(track, base_url=base_url))

    loop = asyncio.get_running_loop()
    signals = (signal.SIGTERM, signal.SIGINT, signal.SIGHUP)
    for sig in signals:
        loop.add_signal_handler(sig, run_task.cancel)

    try:
        report = await run_task
    except (Exception, asyncio.CancelledError) as e:
        if isinstance(e, asyncio.CancelledError):
            logger.error(f"Run for track {track!r} cancelled")
        elif isinstance(e, AgentError):
            logger.error(f"Run for track {track!r} failed: {e}")
        else:
            logger.exception(f"Unexpected failure installing track {track!r}")
        return exit_code_for(e)
    finally:
        for sig in signals:
            loop.remove_signal_handler(sig)

    if report.nothing_to_do:
        logger.info(f"Nothing to do for track {track!r}")
    else:
        logger.info(f"Installed {len(report.installed)} package(s) from track {track!r}")
    return EXIT_SUCCESS


def configure_logging(args: argparse.Namespace) -> None:
    """Set up the agent logger; fall back to console only if the log file is unusable."""
    level = logging.DEBUG if args.verbose else logging.INFO
    try:
        setup_logger("pkgagent", args.log_file or None, level=level, prefix=args.log_prefix)
    except OSError as e:
        setup_logger("pkgagent", None, level=level, prefix=args.log_prefix)
        raise OSError(f"cannot open log file {args.log_file}: {e}") from e


def main(argv: Optional[list[str]] = None) -> int:
    """Main entry point; returns the process exit code."""
    args = build_parser().parse_args(argv)

    try:
        configure_logging(args)
        with instance_lock(Path(args.lock_file)), process_scratch_root(args.scratch_dir) as root:
            config = config_from_args(args, root)
            if args.command == "serve":
                uvicorn.run(
                    create_app(config, args.manifest_url),
                    host=args.host,
                    port=args.port,
                    log_level="info",
                    access_log=True,
                )
                return EXIT_SUCCESS
            return asyncio.run(
                install_track(config, args.manifest_url, args.track, args.base_url)
            )
    except InstanceLockedError as e:
        logger.error(f"{e}; exiting")
        return exit_code_for(e)
    except (OSError, ValueError) as e:
        # Unusable lock, log or scratch path, or invalid settings
        logger.error(f"Cannot start agent: {e}")
        return exit_code_for(e)


if __name__ == "__main__":
    raise SystemExit(main())
