"""
Typed views over Fishbowl transaction payloads.

Each record exposes only the fields this service reads or mutates and keeps
the full payload it was built from, so unknown fields round-trip unchanged
when the record is saved back.
"""
from __future__ import annotations

import copy
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

SERIAL_TRACKING_ID = 4
BARCODE_TRACKING_ID = 5
FINISHED_GOOD_TYPE_ID = 10


def as_list(value: Any) -> List[Any]:
    """Fishbowl returns a bare object where a list has a single element."""
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


@dataclass(frozen=True)
class LocationRef:
    """A physical location as needed by pick lines and work order destinations."""
    location_id: int
    name: str
    location_group_id: int
    location_group_name: str
    type_id: int = 10
    description: str = ""
    counted_as_available: bool = True
    active: bool = True
    pickable: bool = True
    receivable: bool = True
    tag_id: int = -1
    tag_number: str = "-1"
    sort_order: int = 0

    @classmethod
    def from_row(cls, row: Dict[str, Any], default_type_id: int = 10) -> "LocationRef":
        """Build from a data-query row (location/locationgroup/tag columns)."""

        def flag(*keys: str) -> bool:
            for key in keys:
                if key in row and row[key] is not None:
                    return row[key] is not False and row[key] != 0
            return True

        return cls(
            location_id=row["location_id"],
            name=row.get("location_name") or "",
            location_group_id=row.get("locationgroup_id"),
            location_group_name=row.get("locationgroup_name") or "",
            type_id=row.get("location_typeid") or default_type_id,
            description=row.get("location_description") or "",
            counted_as_available=flag("location_counted_as_available", "countedAsAvailable"),
            active=flag("location_active", "activeflag"),
            pickable=flag("location_pickable", "pickable"),
            receivable=flag("location_receivable", "receivable"),
            tag_id=row.get("tag_id") or -1,
            tag_number=str(row.get("tag_num") or "-1"),
            sort_order=row.get("sortorder") or 0,
        )

    def to_payload(self) -> Dict[str, Any]:
        return {
            "LocationID": self.location_id,
            "TypeID": self.type_id,
            "Name": self.name,
            "Description": self.description,
            "CountedAsAvailable": self.counted_as_available,
            "Active": self.active,
            "Pickable": self.pickable,
            "Receivable": self.receivable,
            "LocationGroupID": self.location_group_id,
            "LocationGroupName": self.location_group_name,
            "TagID": self.tag_id,
            "TagNumber": self.tag_number,
            "ParentID": 0,
            "SortOrder": self.sort_order,
        }

    @property
    def label(self) -> str:
        return f"{self.location_group_name}-{self.name}"


def tracking_payload(part_tracking: Dict[str, Any], numbers: Iterable[str]) -> Dict[str, Any]:
    """Tracking block carrying one serial box per number."""
    return {
        "TrackingItem": [
            {
                "PartTracking": part_tracking,
                "SerialBoxList": {
                    "SerialBox": [
                        {
                            "Committed": False,
                            "SerialID": -1,
                            "TagID": -1,
                            "SerialNumList": {
                                "SerialNum": [
                                    {
                                        "Number": number,
                                        "PartTracking": part_tracking,
                                        "SerialID": -1,
                                        "SerialNumID": -1,
                                    }
                                ]
                            },
                        }
                        for number in numbers
                    ]
                },
                "TrackingValue": "",
            }
        ]
    }


class _PartLine:
    """Shared accessors for lines that reference a part with tracking definitions."""

    raw: Dict[str, Any]

    @property
    def part_id(self) -> Optional[int]:
        return (self.raw.get("Part") or {}).get("PartID")

    @property
    def part_num(self) -> str:
        return (self.raw.get("Part") or {}).get("PartNum") or "Unknown"

    def part_trackings(self) -> List[Dict[str, Any]]:
        tracking_list = (self.raw.get("Part") or {}).get("PartTrackingList") or {}
        return [t for t in as_list(tracking_list.get("PartTracking")) if t]

    def serial_tracking(self) -> Optional[Dict[str, Any]]:
        for tracking in self.part_trackings():
            name = str(tracking.get("Name") or "").lower()
            if tracking.get("PartTrackingID") == SERIAL_TRACKING_ID or "serial" in name:
                return tracking
        return None

    def barcode_tracking(self) -> Optional[Dict[str, Any]]:
        for tracking in self.part_trackings():
            if tracking.get("Name") == "Barcode" or tracking.get("PartTrackingID") == BARCODE_TRACKING_ID:
                return tracking
        return None

    def has_tracking(self) -> bool:
        return bool((self.raw.get("Tracking") or {}).get("TrackingItem"))

    def set_tracking(self, part_tracking: Dict[str, Any], numbers: Iterable[str]) -> None:
        self.raw["Tracking"] = tracking_payload(part_tracking, numbers)


class PickItem(_PartLine):
    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw

    @property
    def pick_item_id(self) -> Optional[int]:
        return self.raw.get("PickItemID")

    @property
    def status(self) -> int:
        return int(self.raw.get("Status") or 0)

    def finish(self, status: int, quantity) -> None:
        self.raw["Status"] = status
        self.raw["Quantity"] = format_quantity(quantity)

    def split_copy(self, pick_item_id: int, location: LocationRef, serials: List[str],
                   part_tracking: Dict[str, Any], status: int) -> "PickItem":
        """Copy of this line restricted to one location and its serials."""
        line = PickItem(copy.deepcopy(self.raw))
        line.raw["PickItemID"] = pick_item_id
        line.raw["Quantity"] = str(len(serials))
        line.raw["Status"] = status
        line.raw["Location"] = location.to_payload()
        line.set_tracking(part_tracking, serials)
        part = line.raw.get("Part") or {}
        tracking_list = part.get("PartTrackingList") or {}
        if tracking_list.get("PartTracking") and not isinstance(tracking_list["PartTracking"], list):
            tracking_list["PartTracking"] = [tracking_list["PartTracking"]]
        return line


class Pick:
    """Intermediate transaction (component allocation) of one work order."""

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        self._items = [PickItem(item) for item in as_list((raw.get("PickItems") or {}).get("PickItem"))]

    @property
    def status(self) -> int:
        return int(self.raw.get("Status") or 0)

    @property
    def items(self) -> List[PickItem]:
        return list(self._items)

    def first_item(self) -> Optional[PickItem]:
        return self._items[0] if self._items else None

    def item_for_part(self, part_id: int) -> Optional[PickItem]:
        for item in self._items:
            if item.part_id == part_id:
                return item
        return None

    def set_dates(self, scheduled: str) -> None:
        self.raw["DateScheduled"] = scheduled
        self.raw["DateStarted"] = scheduled

    def replace_items(self, items: List[PickItem]) -> None:
        self._items = list(items)
        self.raw.setdefault("PickItems", {})["PickItem"] = [item.raw for item in items]

    def to_payload(self) -> Dict[str, Any]:
        return self.raw


class WorkOrderItem(_PartLine):
    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw

    @property
    def type_id(self) -> Optional[int]:
        return self.raw.get("TypeID")

    @property
    def is_finished_good(self) -> bool:
        return self.type_id == FINISHED_GOOD_TYPE_ID

    def set_quantity_used(self, quantity) -> None:
        self.raw["QtyUsed"] = format_quantity(quantity)

    def set_destination(self, location: LocationRef) -> None:
        self.raw["DestLocation"] = {"Location": location.to_payload()}


class WorkOrder:
    """Sub-order (work order) with its lines."""

    def __init__(self, raw: Dict[str, Any]):
        self.raw = raw
        self._items = [WorkOrderItem(item) for item in as_list((raw.get("WOItems") or {}).get("WOItem"))]

    @property
    def number(self) -> Optional[str]:
        return self.raw.get("Num") or self.raw.get("Number")

    @property
    def status_id(self) -> int:
        return int(self.raw.get("StatusID") or 0)

    @property
    def items(self) -> List[WorkOrderItem]:
        return list(self._items)

    def finished_good_items(self) -> List[WorkOrderItem]:
        return [item for item in self._items if item.is_finished_good]

    def mark_finished(self, status_id: int, scheduled: str) -> None:
        self.raw["DateScheduled"] = scheduled
        self.raw["DateScheduledToStart"] = scheduled
        self.raw["StatusID"] = status_id

    def to_payload(self) -> Dict[str, Any]:
        return self.raw


def format_quantity(quantity) -> str:
    if isinstance(quantity, float) and quantity.is_integer():
        return str(int(quantity))
    return str(quantity)
