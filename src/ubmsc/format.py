"""Rendering of command output in text, JSON, YAML, table and Prometheus formats."""

from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from typing import TYPE_CHECKING, Any

import yaml

from ubmsc.exporter.metrics import render_metrics

if TYPE_CHECKING:
    from ubmsc_driver.base.records import CellData, DeviceInfo

FORMATS = ("text", "text-pretty", "json", "json-pretty", "yaml", "table", "metrics")

# Short forms accepted on the command line
FORMAT_ALIASES = {
    "t": "text",
    "T": "text-pretty",
    "j": "json",
    "J": "json-pretty",
    "y": "yaml",
    "b": "table",
    "m": "metrics",
}

# Columns shown by the table format for cell data
CELL_TABLE_COLUMNS = (
    "cell_count",
    "battery_voltage",
    "battery_current",
    "battery_power",
    "remain_percent",
    "remain_capacity",
    "average_cell_voltage",
    "delta_cell_voltage",
    "mosfet_temperature",
    "cycle_count",
)


def parse_format(name: str) -> str:
    """
    Resolve a format name or alias.

    Raises:
        ValueError: If the name is unknown.
    """
    resolved = FORMAT_ALIASES.get(name, name)
    if resolved not in FORMATS:
        raise ValueError(f"Unknown data format: {name}")
    return resolved


@dataclass
class Outputs:
    """Records collected from every device during one command."""

    device_info: list[tuple[str, DeviceInfo]] = field(default_factory=list)
    cell_data: list[tuple[str, CellData]] = field(default_factory=list)

    def __bool__(self) -> bool:
        """Return True if any record was collected."""
        return bool(self.device_info or self.cell_data)

    def to_dict(self) -> dict[str, list[dict[str, Any]]]:
        """Return the records as JSON-ready dictionaries; empty lists are omitted."""
        data: dict[str, list[dict[str, Any]]] = {}
        if self.device_info:
            data["device_info"] = [{"device": d, **r.to_dict()} for d, r in self.device_info]
        if self.cell_data:
            data["cell_data"] = [{"device": d, **r.to_dict()} for d, r in self.cell_data]
        return data


def _value(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return " ".join(_value(v) for v in value)
    if isinstance(value, float):
        return f"{value:g}"
    return str(value)


def _text(outputs: Outputs, *, pretty: bool) -> str:
    lines: list[str] = []
    for kind, records in (("device_info", outputs.device_info), ("cell_data", outputs.cell_data)):
        for device_id, record in records:
            if not pretty:
                lines.append(f"{device_id} {kind}: {record!r}")
                continue
            lines.append(f"{device_id} {kind}:")
            lines.extend(f"  {f.name}: {_value(getattr(record, f.name))}" for f in fields(record))
    return "\n".join(lines)


def render_table(headers: list[str], rows: list[list[str]]) -> str:
    """Render rows as left-aligned columns separated by two spaces."""
    widths = [max(len(h), *(len(r[i]) for r in rows)) if rows else len(h) for i, h in enumerate(headers)]
    out = ["  ".join(h.ljust(w) for h, w in zip(headers, widths, strict=True)).rstrip()]
    out.extend("  ".join(c.ljust(w) for c, w in zip(row, widths, strict=True)).rstrip() for row in rows)
    return "\n".join(out)


def _table(outputs: Outputs) -> str:
    sections: list[str] = []
    if outputs.device_info:
        columns = [f.name for f in fields(outputs.device_info[0][1])]
        rows = [[d, *(_value(getattr(r, c)) for c in columns)] for d, r in outputs.device_info]
        sections.append(render_table(["device", *columns], rows))
    if outputs.cell_data:
        rows = [[d, *(_value(getattr(r, c)) for c in CELL_TABLE_COLUMNS)] for d, r in outputs.cell_data]
        sections.append(render_table(["device", *CELL_TABLE_COLUMNS], rows))
    return "\n\n".join(sections)


def format_outputs(outputs: Outputs, fmt: str) -> str:
    """
    Serialize collected records.

    Args:
        outputs: Records to render.
        fmt: One of :data:`FORMATS` or an alias.

    Returns:
        The rendered text without a trailing newline.

    Raises:
        ValueError: If the format is unknown.
    """
    fmt = parse_format(fmt)
    if fmt == "json":
        return json.dumps(outputs.to_dict())
    if fmt == "json-pretty":
        return json.dumps(outputs.to_dict(), indent=2)
    if fmt == "yaml":
        return yaml.safe_dump(outputs.to_dict(), sort_keys=False, allow_unicode=True).rstrip("\n")
    if fmt == "metrics":
        return render_metrics(outputs.device_info, outputs.cell_data).rstrip("\n")
    if fmt == "table":
        return _table(outputs)
    return _text(outputs, pretty=fmt == "text-pretty")
