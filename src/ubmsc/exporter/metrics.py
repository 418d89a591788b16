"""Prometheus metrics built from the latest BMS records of each device."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator

    from prometheus_client.metrics_core import Metric

    from ubmsc_driver.base.records import CellData, DeviceInfo

DEVICE_LABEL = "device"
CELL_LABEL = "cell"


@dataclass(frozen=True)
class MetricField:
    """
    One exported record field.

    ``kind`` is ``counter``, ``gauge``, or ``gauges`` for per-cell
    sequences labelled by cell index.
    """

    name: str
    kind: str
    help: str


DEVICE_INFO_METRICS = (MetricField("poweron_times", "counter", "Number of power-on cycles"),)

CELL_DATA_METRICS = (
    MetricField("cell_voltage", "gauges", "Voltages of cells, V"),
    MetricField("average_cell_voltage", "gauge", "Average voltage of cells, V"),
    MetricField("delta_cell_voltage", "gauge", "Delta voltage of cells, V"),
    MetricField("balance_current", "gauge", "Cells balance current, A"),
    MetricField("cell_resistance", "gauges", "Resistances of cells, Ohm"),
    MetricField("battery_voltage", "gauge", "Voltage of battery, V"),
    MetricField("battery_power", "gauge", "Power of battery, W"),
    MetricField("battery_current", "gauge", "Current of battery, A"),
    MetricField("battery_temperature", "gauges", "Temperatures of battery, C"),
    MetricField("mosfet_temperature", "gauge", "Temperature of mosfet, C"),
    MetricField("remain_percent", "gauge", "Remain capacity of battery, %"),
    MetricField("remain_capacity", "gauge", "Remain capacity of battery, Ah"),
    MetricField("cycle_count", "counter", "Number of battery cycles"),
    MetricField("cycle_capacity", "counter", "Cycle capacity, Ah"),
    MetricField("up_time", "counter", "Time since last power-on, s"),
)


def _family(metric: MetricField, records: Iterable[tuple[str, object]]) -> Metric:
    if metric.kind == "counter":
        family: Metric = CounterMetricFamily(metric.name, metric.help, labels=[DEVICE_LABEL])
    elif metric.kind == "gauge":
        family = GaugeMetricFamily(metric.name, metric.help, labels=[DEVICE_LABEL])
    else:
        family = GaugeMetricFamily(metric.name, metric.help, labels=[DEVICE_LABEL, CELL_LABEL])
    for device_id, record in records:
        value = getattr(record, metric.name)
        if metric.kind == "gauges":
            for index, item in enumerate(value):
                family.add_metric([device_id, str(index)], float(item))
        else:
            family.add_metric([device_id], float(value))
    return family


class RecordCollector:
    """
    Custom collector exposing the last records seen for each device.

    Counters mirror the device's own counters, so a BMS reboot shows up as a
    counter reset. The record maps are replaced rather than mutated because
    collect() runs on the HTTP server thread.
    """

    def __init__(self) -> None:
        """Initialize with no records."""
        self.device_info: dict[str, DeviceInfo] = {}
        self.cell_data: dict[str, CellData] = {}

    def update_device_info(self, device_id: str, record: DeviceInfo) -> None:
        """Store the latest device info of a device."""
        self.device_info = {**self.device_info, device_id: record}

    def update_cell_data(self, device_id: str, record: CellData) -> None:
        """Store the latest cell data of a device."""
        self.cell_data = {**self.cell_data, device_id: record}

    def collect(self) -> Iterator[Metric]:
        """Yield one metric family per exported field that has samples."""
        for fields, records in (
            (DEVICE_INFO_METRICS, self.device_info),
            (CELL_DATA_METRICS, self.cell_data),
        ):
            if not records:
                continue
            for metric in fields:
                yield _family(metric, sorted(records.items()))


def render_metrics(
    device_info: Iterable[tuple[str, DeviceInfo]],
    cell_data: Iterable[tuple[str, CellData]],
) -> str:
    """Render records in the Prometheus text exposition format."""
    collector = RecordCollector()
    for device_id, info in device_info:
        collector.update_device_info(device_id, info)
    for device_id, cells in cell_data:
        collector.update_cell_data(device_id, cells)
    registry = CollectorRegistry()
    registry.register(collector)
    return generate_latest(registry).decode("utf-8")
