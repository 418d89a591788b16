# Why does this file exist, and why not put this in `__main__`?
#
# You might be tempted to import things from `__main__` later,
# but that will cause problems: the code will get executed twice:
#
# - When you run `python -m ubmsc` python will execute
#   `__main__.py` as a script. That means there won't be any
#   `ubmsc.__main__` in `sys.modules`.
# - When you import `__main__` it will get executed again (as a module) because
#   there's no `ubmsc.__main__` in `sys.modules`.
"""Module that contains the command line application."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
from typing import TYPE_CHECKING, Any

from ubmsc import __version__
from ubmsc.config.config_manager import ConfigError, ConfigManager, default_config_dir
from ubmsc.exporter import DEFAULT_LISTEN, MetricsExporter, parse_listen
from ubmsc.format import FORMATS, Outputs, format_outputs, parse_format, render_table
from ubmsc.mqtt import MQTTPublisher, PushLoop
from ubmsc_driver.base.discovery import DeviceLocator
from ubmsc_driver.base.exceptions import BMSError
from ubmsc_driver.base.retry import RetryPolicy
from ubmsc_driver.client import BMSClient, ClientOptions
from ubmsc_driver.jk import JK02_32S
from ubmsc_driver.jk.emulator import EmulatedBus

if TYPE_CHECKING:
    from collections.abc import Callable

LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


def setup_logging(config_manager: ConfigManager, level: str | None = None) -> None:
    """
    Set up basic logging configuration.

    Args:
        config_manager: Supplies ``system.logging.level``.
        level: Level that takes precedence over the config, e.g. from ``--log-level``.
    """
    log_level = (level or config_manager.get_config("system").get("logging", {}).get("level", "INFO")).upper()

    if log_level not in LOG_LEVELS:
        print(f"Warning: Invalid log level '{log_level}', using INFO", file=sys.stderr)  # noqa: T201
        log_level = "INFO"

    # Records go to stderr so stdout carries only command output
    logging.basicConfig(
        level=getattr(logging, log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
        force=True,
    )

    # Reduce noise from external libraries
    logging.getLogger("bleak").setLevel(logging.WARNING)
    logging.getLogger("aiomqtt").setLevel(logging.WARNING)

    logging.getLogger("ubmsc.setup").debug("Logging configured at %s level", log_level)


def _format_arg(value: str) -> str:
    try:
        return parse_format(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _listen(value: str) -> tuple[str, int]:
    try:
        return parse_listen(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _seconds(value: str) -> float:
    try:
        seconds = float(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(f"Not a number of seconds: {value}") from e
    if seconds < 0:
        raise argparse.ArgumentTypeError("Timeout must not be negative")
    return seconds


def get_parser() -> argparse.ArgumentParser:
    """
    Return the CLI argument parser.

    Returns:
        An argparse parser.
    """
    parser = argparse.ArgumentParser(
        prog="ubmsc",
        description="Battery Management System (BMS) interface over Bluetooth LE",
    )
    _ = parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    _ = parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Directory for configuration files (default: $UBMSC_CONFIG_DIR or ~/.config/ubmsc)",
    )
    _ = parser.add_argument(
        "--log-level",
        type=str.upper,
        choices=LOG_LEVELS,
        help="Logging level (default: system.logging.level from config)",
    )
    _ = parser.add_argument(
        "-t",
        "--scan-timeout",
        type=_seconds,
        metavar="SECONDS",
        help="Bluetooth scanning timeout (default from config, 30)",
    )
    _ = parser.add_argument(
        "-r",
        "--request-timeout",
        type=_seconds,
        metavar="SECONDS",
        help="Bluetooth request timeout (default from config, 5)",
    )
    _ = parser.add_argument(
        "-d",
        "--device",
        action="append",
        default=[],
        metavar="ADDRESS|NAME",
        help="Device address or name; repeat for several devices (default: devices.json, else scan)",
    )
    _ = parser.add_argument(
        "--test-mode",
        action="store_true",
        help="Talk to a built-in device emulator instead of Bluetooth hardware",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    scan_parser = subparsers.add_parser("scan", help="List BMS devices in range")
    _ = scan_parser.add_argument(
        "--format",
        choices=["json", "table"],
        default="table",
        help="Output format (default: table)",
    )

    for name, help_text in (
        ("info", "Read device information"),
        ("cells", "Read cell data"),
        ("read", "Read device information and cell data"),
    ):
        read_parser = subparsers.add_parser(name, help=help_text)
        _ = read_parser.add_argument(
            "-f",
            "--format",
            type=_format_arg,
            default="text",
            metavar="FORMAT",
            help=f"Output format: {', '.join(FORMATS)} (default: text)",
        )

    publish_parser = subparsers.add_parser("publish", help="Push records to an MQTT broker periodically")
    _ = publish_parser.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    _ = publish_parser.add_argument(
        "--interval",
        type=_seconds,
        metavar="SECONDS",
        help="Seconds between cycles (default: system.mqtt.interval)",
    )

    serve_parser = subparsers.add_parser("serve", help="Run a Prometheus exporter scraping devices periodically")
    _ = serve_parser.add_argument(
        "-u",
        "--listen",
        type=_listen,
        default=DEFAULT_LISTEN,
        metavar="HOST:PORT",
        help=f"Address to serve /metrics on (default: {DEFAULT_LISTEN})",
    )
    _ = serve_parser.add_argument(
        "-s",
        "--scrape-interval",
        type=_seconds,
        default=60.0,
        metavar="SECONDS",
        help="Seconds between scrapes (default: 60)",
    )

    show_parser = subparsers.add_parser("show", help="Show a config section or key")
    _ = show_parser.add_argument("section", type=str, help="Config section (system/devices)")
    _ = show_parser.add_argument("key", type=str, nargs="*", help="Optional nested key(s)")

    return parser


class Transport:
    """Scanner and client factories, either real Bluetooth or the emulator."""

    def __init__(self, *, test_mode: bool = False) -> None:
        """Initialize the transport; test mode uses a single emulated device."""
        self.bus = EmulatedBus.default() if test_mode else None
        self.scanner_factory: Callable[..., Any] | None = self.bus.scanner if self.bus else None
        self.client_factory: Callable[..., Any] | None = self.bus.client if self.bus else None


def client_options(opts: argparse.Namespace, config_manager: ConfigManager) -> ClientOptions:
    """Merge command-line timeouts over the bluetooth config."""
    bluetooth = config_manager.get_config("system")["bluetooth"]
    return ClientOptions(
        scan_timeout=opts.scan_timeout if opts.scan_timeout is not None else bluetooth["scan_timeout"],
        request_timeout=opts.request_timeout if opts.request_timeout is not None else bluetooth["request_timeout"],
        connect_timeout=bluetooth.get("connect_timeout", 10),
        adapter=bluetooth.get("adapter"),
    )


async def build_clients(
    opts: argparse.Namespace,
    config_manager: ConfigManager,
    transport: Transport,
) -> list[BMSClient]:
    """
    Create one client per requested device.

    Devices come from ``-d``, then from ``devices.json``; when both are empty
    every device found by a scan is used.
    """
    logger = logging.getLogger("ubmsc.cli")
    options = client_options(opts, config_manager)
    locator = DeviceLocator(
        JK02_32S.roles.service_uuid,
        adapter=options.adapter,
        scanner_factory=transport.scanner_factory,
    )
    selectors: list[Any] = list(opts.device) or list(config_manager.get_config("devices")["devices"])
    if not selectors:
        logger.warning("No devices passed. Scan to find all...")
        selectors = await BMSClient.find((), options, locator=locator)
    logger.debug("Use %d device(s)", len(selectors))
    return [
        BMSClient(
            selector,
            options,
            locator=locator,
            client_factory=transport.client_factory,
        )
        for selector in selectors
    ]


async def scan_devices(opts: argparse.Namespace, config_manager: ConfigManager, transport: Transport) -> int:
    """
    Scan for BMS devices and print what was found.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    options = client_options(opts, config_manager)
    locator = DeviceLocator(
        JK02_32S.roles.service_uuid,
        adapter=options.adapter,
        scanner_factory=transport.scanner_factory,
    )
    try:
        found = await locator.scan(opts.device, options.scan_timeout)
    except Exception as e:  # noqa: BLE001
        print(f"Error during device scan: {e}", file=sys.stderr)  # noqa: T201
        return 1

    devices = [{"address": p.address, "name": p.name, "rssi": p.rssi} for p in found]
    if opts.format == "json":
        sys.stdout.write(json.dumps({"devices_found": len(devices), "devices": devices}, indent=2) + "\n")
    elif not devices:
        print("No BMS devices found.")  # noqa: T201
    else:
        rows = [[d["address"], d["name"] or "Unknown", "N/A" if d["rssi"] is None else str(d["rssi"])] for d in devices]
        print(render_table(["Address", "Name", "RSSI"], rows))  # noqa: T201
    return 0


async def read_devices(
    opts: argparse.Namespace,
    config_manager: ConfigManager,
    transport: Transport,
    *,
    device_info: bool,
    cell_data: bool,
) -> int:
    """
    Read records from every device and print them in one document.

    Errors are reported per device; the command fails only when no device
    produced any output.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    logger = logging.getLogger("ubmsc.cli")
    try:
        clients = await build_clients(opts, config_manager, transport)
    except BMSError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        return 1
    if not clients:
        print("No BMS devices found!", file=sys.stderr)  # noqa: T201
        return 1

    outputs = Outputs()
    for client in clients:
        logger.info("Connect to: '%s'", client.device_id)
        try:
            async with client:
                if device_info:
                    outputs.device_info.append((client.device_id, await client.device_info()))
                if cell_data:
                    outputs.cell_data.append((client.device_id, await client.cell_data()))
                logger.info("Disconnect from: '%s'", client.device_id)
        except BMSError as e:
            logger.debug("Device %s failed", client.device_id, extra={"error": e.to_dict()})
            print(f"Error reading {client.device_id}: {e}", file=sys.stderr)  # noqa: T201

    if not outputs:
        return 1
    print(format_outputs(outputs, opts.format))  # noqa: T201
    return 0


async def publish_loop(opts: argparse.Namespace, config_manager: ConfigManager, transport: Transport) -> int:
    """
    Run the MQTT push loop until interrupted, or once with ``--once``.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    mqtt_config = config_manager.get_config("system")["mqtt"]
    if not mqtt_config.get("enabled", False):
        print("MQTT is disabled; set system.mqtt.enabled to true", file=sys.stderr)  # noqa: T201
        return 1
    try:
        clients = await build_clients(opts, config_manager, transport)
    except BMSError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        return 1
    if not clients:
        print("No BMS devices found!", file=sys.stderr)  # noqa: T201
        return 1

    loop = PushLoop(
        clients,
        MQTTPublisher(config_manager),
        opts.interval if opts.interval is not None else mqtt_config["interval"],
        retry=RetryPolicy.from_config(mqtt_config),
        config_manager=config_manager,
    )
    if opts.once:
        try:
            published = await loop.run_once()
        except Exception as e:  # noqa: BLE001
            print(f"Error: {e}", file=sys.stderr)  # noqa: T201
            return 1
        finally:
            await loop.close()
        return 0 if published else 1

    stop_event = asyncio.Event()
    with contextlib.suppress(NotImplementedError):
        running = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            running.add_signal_handler(sig, stop_event.set)
    await loop.run(stop_event)
    return 0


async def serve_metrics(opts: argparse.Namespace, config_manager: ConfigManager, transport: Transport) -> int:
    """
    Run the Prometheus exporter until interrupted.

    Returns:
        Exit code (0 for success, 1 for failure)
    """
    try:
        clients = await build_clients(opts, config_manager, transport)
    except BMSError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        return 1
    if not clients:
        print("No BMS devices found!", file=sys.stderr)  # noqa: T201
        return 1

    exporter = MetricsExporter(clients, opts.scrape_interval)
    host, port = opts.listen
    try:
        exporter.start_server(host, port)
    except OSError as e:
        print(f"Error: Cannot listen on {host}:{port}: {e}", file=sys.stderr)  # noqa: T201
        return 1

    stop_event = asyncio.Event()
    with contextlib.suppress(NotImplementedError):
        running = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            running.add_signal_handler(sig, stop_event.set)
    await exporter.run(stop_event)
    return 0


def show_config(opts: argparse.Namespace, config_manager: ConfigManager) -> int:
    """Print a config section or a nested key of it as JSON."""
    try:
        value: Any = config_manager.get_config(opts.section)
    except KeyError as e:
        print(f"Error: {e}", file=sys.stderr)  # noqa: T201
        return 1
    for k in opts.key:
        if not isinstance(value, dict) or k not in value:
            print(  # noqa: T201
                f"Error: Key '{k}' not found in config section '{opts.section}'",
                file=sys.stderr,
            )
            return 1
        value = value[k]
    print(json.dumps(value, indent=2))  # noqa: T201
    return 0


async def _run_command(opts: argparse.Namespace, config_manager: ConfigManager) -> int:
    transport = Transport(test_mode=opts.test_mode)
    if opts.command == "scan":
        return await scan_devices(opts, config_manager, transport)
    if opts.command == "publish":
        return await publish_loop(opts, config_manager, transport)
    if opts.command == "serve":
        return await serve_metrics(opts, config_manager, transport)
    return await read_devices(
        opts,
        config_manager,
        transport,
        device_info=opts.command in ("info", "read"),
        cell_data=opts.command in ("cells", "read"),
    )


def main(args: list[str] | None = None) -> int:
    """
    Run the main program.

    This function is executed when you type `ubmsc` or `python -m ubmsc`.

    Arguments:
        args: Arguments passed from the command line.

    Returns:
        An exit code.
    """
    parser = get_parser()
    opts = parser.parse_args(args=args)
    try:
        config_manager = ConfigManager(
            config_dir=opts.config_dir or default_config_dir(),
            enable_watchers=opts.command == "publish",
        )
    except ConfigError as e:
        print(f"Error: Failed to initialize config manager: {e}", file=sys.stderr)  # noqa: T201
        return 1
    setup_logging(config_manager, opts.log_level)

    try:
        if opts.command == "show":
            return show_config(opts, config_manager)
        return asyncio.run(_run_command(opts, config_manager))
    except KeyboardInterrupt:
        return 130
    finally:
        config_manager.cleanup()
