"""CLI entry point for nsdkit."""

import argparse
import asyncio
import json
import logging
import sys
from datetime import datetime
from pathlib import Path

from .config import Config, LoggingConfig, load_config
from .events import ChannelRegistry
from .manager import ZeroConf
from .platform.mdns import ZeroconfPlatform
from .resolve_queue import ResolveQueue
from .service import ResolvedService

logger = logging.getLogger("nsdkit")


class JSONFormatter(logging.Formatter):
    """One JSON object per line.

    Zeroconf calls back on its own threads, so the thread name is kept.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(timespec="milliseconds"),
            "level": record.levelname.lower(),
            "component": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


def setup_logging(
    config: LoggingConfig,
    verbose: bool = False,
    log_level: str | None = None,
    json_output: bool = False,
) -> None:
    """Configure logging from the config file and command line.

    Args:
        config: Logging section of the config file.
        verbose: Log at debug level (ignored if log_level is set).
        log_level: Explicit log level, overrides config and verbose.
        json_output: Output logs as JSON lines, even if config says otherwise.

    Raises:
        ValueError: If the level is not a logging level name.
    """
    level_name = log_level or ("debug" if verbose else config.level)
    level = logging.getLevelName(level_name.upper())
    if not isinstance(level, int):
        raise ValueError(f"Unknown log level: {level_name!r}")

    handler = logging.StreamHandler()
    if json_output or config.json:
        handler.setFormatter(JSONFormatter())
    else:
        handler.setFormatter(
            logging.Formatter(
                fmt="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )

    logging.basicConfig(level=level, handlers=[handler], force=True)
    # zeroconf logs every malformed packet on the network at debug
    if level < logging.INFO:
        logging.getLogger("zeroconf").setLevel(logging.INFO)


def build_zeroconf(config: Config, platform: ZeroconfPlatform) -> ZeroConf:
    """Wire a ZeroConf facade to a platform using the resolver settings."""
    registry = ChannelRegistry()
    queue = ResolveQueue(
        platform,
        registry,
        deduplicate=config.resolver.deduplicate,
        busy_retry_delay=config.resolver.busy_retry_delay_seconds,
    )
    zc = ZeroConf(platform, queue=queue, registry=registry)

    def show(action: str, service: ResolvedService) -> None:
        txt = ", ".join(
            f"{k.decode(errors='replace')}={v.decode(errors='replace')}"
            for k, v in service.txt.items()
        )
        print(f"{action:8} {service}" + (f" [{txt}]" if txt else ""))

    zc.on_service_added(lambda s: show("added", s))
    zc.on_service_updated(lambda s: show("updated", s))
    zc.on_service_removed(lambda s: show("removed", s))
    zc.on_service_published(lambda: print("Service published"))
    zc.on_service_name_changed(lambda name: print(f"Service renamed to {name!r}"))
    zc.on_error(lambda error: print(f"Error: {error.name}", file=sys.stderr))
    return zc


async def _run_until(timeout: float | None) -> None:
    if timeout:
        await asyncio.sleep(timeout)
    else:
        await asyncio.Event().wait()


async def _serve(config: Config, timeout: float | None) -> int:
    """Browse and/or publish according to config until timeout or Ctrl-C."""
    failed = asyncio.Event()

    async with ZeroconfPlatform(resolve_timeout_ms=config.resolver.timeout_ms) as platform:
        zc = build_zeroconf(config, platform)
        loop = asyncio.get_running_loop()
        zc.on_error(lambda error: loop.call_soon_threadsafe(failed.set))

        if config.discovery.browse:
            print(f"Browsing for {config.discovery.service_type}")
            zc.start_browser(config.discovery.service_type)

        if config.publish.enabled:
            for key, value in config.publish.txt.items():
                zc.add_service_txt_record(key, value)
            print(
                f"Publishing {config.publish.name!r} "
                f"({config.publish.service_type}) on port {config.publish.port}"
            )
            zc.start_service_publish(
                config.publish.name, config.publish.service_type, config.publish.port
            )

        try:
            await _run_until(timeout)
        except asyncio.CancelledError:
            pass
        finally:
            status = zc.resolve_queue.get_status()
            logger.debug(f"Resolve queue: {status}")
            zc.close()

    return 1 if failed.is_set() else 0


async def cmd_browse(args: argparse.Namespace) -> int:
    """Browse for services and print them as they are resolved."""
    config = load_config(args.config)
    if args.service_type:
        config.discovery.service_type = args.service_type
    config.discovery.browse = True
    config.publish.enabled = False
    return await _serve(config, args.timeout)


def _parse_txt_args(values: list[str]) -> dict[str, str | None]:
    txt: dict[str, str | None] = {}
    for item in values:
        key, sep, value = item.partition("=")
        txt[key] = value if sep else None
    return txt


async def cmd_publish(args: argparse.Namespace) -> int:
    """Publish a service until interrupted."""
    config = load_config(args.config)
    config.publish.enabled = True
    config.publish.name = args.name
    config.publish.port = args.port
    if args.service_type:
        config.publish.service_type = args.service_type
    config.publish.txt.update(_parse_txt_args(args.txt))
    config.discovery.browse = args.browse
    if args.browse:
        config.discovery.service_type = config.publish.service_type
    return await _serve(config, args.timeout)


async def cmd_run(args: argparse.Namespace) -> int:
    """Browse and publish as configured."""
    config = load_config(args.config)
    if not config.discovery.browse and not config.publish.enabled:
        print("Nothing to do: enable discovery.browse or publish.enabled", file=sys.stderr)
        return 1
    return await _serve(config, args.timeout)


def main() -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        prog="nsdkit",
        description="Publish, browse and resolve DNS-SD services",
    )
    parser.add_argument(
        "-c", "--config",
        type=Path,
        default=None,
        help="Path to config file",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["warning", "info", "debug"],
        default=None,
        help="Set log level explicitly (overrides -v/--verbose)",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output logs as JSON for machine parsing",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Browse command
    browse_parser = subparsers.add_parser("browse", help="Browse for services")
    browse_parser.add_argument(
        "service_type",
        nargs="?",
        help="Service type, e.g. _http._tcp (default: from config)",
    )
    browse_parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=None,
        help="Stop after this many seconds",
    )
    browse_parser.set_defaults(func=cmd_browse)

    # Publish command
    publish_parser = subparsers.add_parser("publish", help="Publish a service")
    publish_parser.add_argument("name", help="Service instance name")
    publish_parser.add_argument("port", type=int, help="Port the service listens on")
    publish_parser.add_argument(
        "-s", "--service-type",
        default=None,
        help="Service type (default: from config)",
    )
    publish_parser.add_argument(
        "--txt",
        action="append",
        default=[],
        metavar="KEY[=VALUE]",
        help="TXT record, may be repeated",
    )
    publish_parser.add_argument(
        "--browse",
        action="store_true",
        help="Also browse for the same service type",
    )
    publish_parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=None,
        help="Stop after this many seconds",
    )
    publish_parser.set_defaults(func=cmd_publish)

    # Run command
    run_parser = subparsers.add_parser("run", help="Browse and publish as configured")
    run_parser.add_argument(
        "-t", "--timeout",
        type=float,
        default=None,
        help="Stop after this many seconds",
    )
    run_parser.set_defaults(func=cmd_run)

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        return 1

    config = load_config(args.config)
    try:
        setup_logging(config.logging, args.verbose, args.log_level, args.json)
    except ValueError as e:
        parser.error(str(e))

    try:
        return asyncio.run(args.func(args))
    except KeyboardInterrupt:
        print("\nShutting down...")
        return 0


if __name__ == "__main__":
    sys.exit(main())
