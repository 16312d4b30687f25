"""Pydantic models for vehicle monitoring data."""

from __future__ import annotations

import json
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from ..constants import VEHICLE_FIELDS


class VehicleRecord(BaseModel):
    """One row of the vehicle state table. Unknown columns go to ``metadata``."""

    model_config = ConfigDict(populate_by_name=True)

    vehicle_cd: str = Field(default="", alias="VehicleCD")
    vehicle_name: str = Field(default="", alias="VehicleName")
    status: str = Field(default="", alias="Status")
    metadata: dict[str, str] = Field(default_factory=dict, alias="Metadata")

    @classmethod
    def from_raw(cls, item: dict[str, Any]) -> "VehicleRecord":
        known = set(VEHICLE_FIELDS.values())
        return cls(
            vehicle_cd=_as_text(item.get(VEHICLE_FIELDS["vehicle_cd"])),
            vehicle_name=_as_text(item.get(VEHICLE_FIELDS["vehicle_name"])),
            status=_as_text(item.get(VEHICLE_FIELDS["status"])),
            metadata={k: json.dumps(v, ensure_ascii=False) for k, v in item.items() if k not in known},
        )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def parse_vehicle_records(raw_data: list) -> list[VehicleRecord]:
    """Convert the raw payload into records, skipping non-object entries."""
    return [VehicleRecord.from_raw(item) for item in raw_data if isinstance(item, dict)]


class DvrNotification(BaseModel):
    """Video event notification (Monitoring_DvrNotification2)."""

    model_config = ConfigDict(populate_by_name=True)

    vehicle_cd: int = Field(default=0, alias="VehicleCD")
    vehicle_name: str = Field(default="", alias="VehicleName")
    serial_no: str = Field(default="", alias="SerialNo")
    file_name: str = Field(default="", alias="FileName")
    file_path: str = Field(default="", alias="FilePath")
    event_type: str = Field(default="", alias="EventType")
    dvr_datetime: str = Field(default="", alias="DvrDatetime")
    driver_name: str = Field(default="", alias="DriverName")


class DvrFileInfo(BaseModel):
    """Recorder file entry (Request_DvrFileList)."""

    model_config = ConfigDict(populate_by_name=True)

    file_path: str = Field(default="", alias="FilePath")
    file_name: str = Field(default="", alias="FileName")


class VideoNotificationResult(BaseModel):
    """A video notification whose mp4 is ready on the server."""

    vehicle_cd: int
    vehicle_name: str = ""
    serial_no: str = ""
    file_name: str = ""
    event_type: str = ""
    dvr_datetime: str = ""
    driver_name: str = ""
    mp4_url: str

    @classmethod
    def from_notification(cls, notification: DvrNotification, mp4_url: str) -> "VideoNotificationResult":
        return cls(
            vehicle_cd=notification.vehicle_cd,
            vehicle_name=notification.vehicle_name,
            serial_no=notification.serial_no,
            file_name=notification.file_name,
            event_type=notification.event_type,
            dvr_datetime=notification.dvr_datetime,
            driver_name=notification.driver_name,
            mp4_url=mp4_url,
        )
