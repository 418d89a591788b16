"""
Prometheus pull exporter.

A scrape loop reads every device on a fixed interval, connecting for each
scrape and disconnecting afterwards, and keeps the last records in a
collector. prometheus_client's HTTP server exposes the collector on
``/metrics``.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import TYPE_CHECKING, Any

from prometheus_client import CollectorRegistry, start_http_server

from ubmsc_driver.base.exceptions import BMSError

from .metrics import RecordCollector

if TYPE_CHECKING:
    from collections.abc import Iterable

    from ubmsc_driver.client import BMSClient

DEFAULT_LISTEN = "127.0.0.1:9889"


def parse_listen(value: str) -> tuple[str, int]:
    """
    Split ``host:port`` into its parts; a bare port listens on localhost.

    An ``http://host:port/metrics`` URL is accepted too.

    Raises:
        ValueError: If the port is missing or invalid.
    """
    address = value.removeprefix("http://").split("/", 1)[0]
    host, sep, port_text = address.rpartition(":")
    if not sep:
        host, port_text = "", address
    host = host.strip("[]") or "127.0.0.1"
    try:
        port = int(port_text)
    except ValueError:
        raise ValueError(f"Invalid listen address: {value}") from None
    if not 0 <= port < 65536:
        raise ValueError(f"Invalid listen port: {port}")
    return host, port


class MetricsExporter:
    """Scrape devices periodically and serve their metrics."""

    def __init__(
        self,
        clients: Iterable[BMSClient],
        scrape_interval: float = 60.0,
        registry: CollectorRegistry | None = None,
    ) -> None:
        """
        Initialize the exporter.

        Args:
            clients: One client per device.
            scrape_interval: Seconds between scrapes.
            registry: Registry to expose; a private one by default.
        """
        self.clients = list(clients)
        self.scrape_interval = scrape_interval
        self.collector = RecordCollector()
        self.registry = registry or CollectorRegistry()
        self.registry.register(self.collector)
        self.logger = logging.getLogger("ubmsc.exporter")
        self._server: Any = None
        self._thread: Any = None

    async def scrape_device(self, client: BMSClient) -> bool:
        """
        Connect to one device, store its records and disconnect.

        Returns:
            True if the device's cell data was refreshed.
        """
        device_id = client.device_id
        self.logger.info("Scrape metrics from: '%s'", device_id)
        try:
            await client.open()
        except BMSError as exc:
            self.logger.error("Error while connecting to %s: %s", device_id, exc)  # noqa: TRY400
            return False

        refreshed = False
        try:
            try:
                self.collector.update_device_info(device_id, await client.device_info())
            except BMSError as exc:
                self.logger.error("Error while fetching device info from %s: %s", device_id, exc)  # noqa: TRY400
            try:
                self.collector.update_cell_data(device_id, await client.cell_data())
                refreshed = True
            except BMSError as exc:
                self.logger.error("Error while fetching cell data from %s: %s", device_id, exc)  # noqa: TRY400
        finally:
            await client.close()
        return refreshed

    async def scrape_once(self) -> int:
        """
        Scrape every device once.

        Returns:
            The number of devices whose cell data was refreshed.
        """
        scraped = 0
        for client in self.clients:
            if await self.scrape_device(client):
                scraped += 1
        self.logger.debug("Scraped %d/%d device(s)", scraped, len(self.clients))
        return scraped

    def start_server(self, host: str, port: int) -> tuple[str, int]:
        """
        Start serving the registry over HTTP in a background thread.

        Returns:
            The bound host and port; port 0 picks a free one.

        Raises:
            OSError: If the address cannot be bound.
        """
        self._server, self._thread = start_http_server(port, addr=host, registry=self.registry)
        bound_host, bound_port = self._server.server_address[:2]
        self.logger.info("Start server at: %s:%d", bound_host, bound_port)
        return bound_host, bound_port

    def stop_server(self) -> None:
        """Stop the HTTP server if it runs."""
        if self._server is None:
            return
        self._server.shutdown()
        self._server.server_close()
        self._thread.join(timeout=5)
        self.logger.info("Stop server")
        self._server = None
        self._thread = None

    async def run(self, stop_event: asyncio.Event) -> None:
        """Scrape until ``stop_event`` is set, then close clients and the server."""
        self.logger.info("Start scraper")
        try:
            while not stop_event.is_set():
                await self.scrape_once()
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(stop_event.wait(), timeout=self.scrape_interval)
        finally:
            self.logger.info("Stop scraper")
            for client in self.clients:
                await client.close()
            self.stop_server()
