"""Description of a supported device family as plain data."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from .decoder import RecordDecoder

if TYPE_CHECKING:
    from .codec import FrameFormat
    from .decoder import RecordTable


@dataclass(frozen=True)
class GattRoles:
    """GATT identifiers of the command and notification endpoints."""

    service_uuid: str
    write_uuid: str
    notify_uuid: str


@dataclass(frozen=True)
class DeviceFamily:
    """
    Everything the client needs to talk to one family of devices.

    Attributes:
        name: Human-readable family name.
        roles: Service and characteristic UUIDs.
        frame_format: Wire format used for requests and responses.
        device_info_command: Request command for device info.
        cell_data_command: Request command for cell data.
        response_commands: Request command to expected response command.
        device_info_table: Field table of the device info record.
        cell_data_table: Field table of the cell data record.
    """

    name: str
    roles: GattRoles
    frame_format: FrameFormat
    device_info_command: int
    cell_data_command: int
    response_commands: dict[int, int] = field(default_factory=dict)
    device_info_table: RecordTable | None = None
    cell_data_table: RecordTable | None = None

    def response_for(self, command: int) -> int:
        """Return the response command expected for ``command``."""
        return self.response_commands.get(command, command)

    def decoder(self) -> RecordDecoder:
        """Build a record decoder bound to this family's tables."""
        if self.device_info_table is None or self.cell_data_table is None:
            raise ValueError(f"Family {self.name} has no record tables")
        return RecordDecoder(
            self.device_info_table,
            self.cell_data_table,
            {
                self.response_for(self.device_info_command): "device_info",
                self.response_for(self.cell_data_command): "cell_data",
            },
        )
