"""In-memory stand-ins shared by the tests."""

from __future__ import annotations

import copy
import re
from collections import Counter, defaultdict
from typing import Any, Callable, Dict, List, Optional

from manufacturing_orchestrator.config import OrchestratorSettings
from manufacturing_orchestrator.control_plane.models import OperationType, QueueItem
from manufacturing_orchestrator.database import Database
from manufacturing_orchestrator.fishbowl.records import Pick, WorkOrder

FG_PART_ID = 900
RAW_PART_ID = 100
BOM_NUM = "BOM-A"
BOM_ID = 7
LOCATION_GROUP_ID = 3

SERIAL_TRACKING = {"PartTrackingID": 4, "Name": "Serial Number", "Abbr": "SN"}
BARCODE_TRACKING = {"PartTrackingID": 5, "Name": "Barcode", "Abbr": "BC"}

_QUOTED = re.compile(r"'((?:[^']|'')*)'")


def _quoted_values(sql: str, marker: str) -> List[str]:
    """Quoted literals after marker, unescaped."""
    tail = sql.split(marker, 1)[1]
    return [value.replace("''", "'") for value in _QUOTED.findall(tail)]


def location_row(location_id: int, name: str = "A1", group: str = "Main", group_id: int = LOCATION_GROUP_ID) -> Dict[str, Any]:
    return {
        "location_id": location_id,
        "location_name": name,
        "locationgroup_id": group_id,
        "locationgroup_name": group,
        "location_typeid": None,
        "tag_id": 1000 + location_id,
        "tag_num": str(1000 + location_id),
    }


async def open_database(settings: OrchestratorSettings) -> Database:
    db = Database(settings)
    await db.init_models()
    return db


def build_item(barcode: str, serials: List[str], **overrides) -> QueueItem:
    values = dict(
        operation_type=OperationType.BUILD,
        barcode=barcode,
        serial_numbers=QueueItem.encode_serials(serials),
        location="Main-Stock",
        raw_goods_part_id=RAW_PART_ID,
        fg_part_id=FG_PART_ID,
        bom_num=BOM_NUM,
        bom_id=BOM_ID,
        location_group_id=LOCATION_GROUP_ID,
    )
    values.update(overrides)
    return QueueItem(**values)


class FakeFishbowl:
    """
    Fishbowl double with the FishbowlClient call surface.

    Parent orders generate one sub-order per configuration when issued.
    Saving a pick starts it; saving a work order with the finish status
    completes it. Every call is counted per method and per sub-order.
    """

    server_url = "http://fishbowl.test"

    def __init__(self) -> None:
        self.calls: Counter = Counter()
        self.calls_by_order: Dict[str, Counter] = defaultdict(Counter)
        self.failures: Dict[str, List[Exception]] = defaultdict(list)
        self.hooks: Dict[str, Callable[..., None]] = {}

        self.parent_orders: Dict[str, Dict[str, Any]] = {}
        self.extra_parent_order_numbers: List[str] = []
        self.picks: Dict[str, Dict[str, Any]] = {}
        self.work_orders: Dict[str, Dict[str, Any]] = {}

        self.serial_locations: Dict[str, Dict[str, Any]] = {}
        self.existing_barcodes: set = set()
        self.location_rows: List[Dict[str, Any]] = [location_row(1, "Stock")]
        self.parts: Dict[int, Dict[str, Any]] = {
            FG_PART_ID: {"part_id": FG_PART_ID, "part_num": "FG-1", "uom_id": 1},
            RAW_PART_ID: {"part_id": RAW_PART_ID, "part_num": "RAW-1", "uom_id": 1},
        }
        self.structures: Dict[str, List[Dict[str, Any]]] = {}
        self.on_hand: List[Dict[str, Any]] = []
        self.bom_fg_parts: Dict[str, int] = {BOM_NUM: FG_PART_ID}

        self.tokens_issued = 0
        self.logged_out: List[str] = []
        self.closed: bool = False
        self._next_id = 1

    # Test controls

    def fail(self, method: str, error: Exception, times: int = 1) -> None:
        self.failures[method].extend([error] * times)

    def add_serials(self, serials: List[str], location_id: int = 1, name: str = "A1") -> None:
        for serial in serials:
            self.serial_locations[serial] = {**location_row(location_id, name), "serial": serial}

    def _call(self, method: str, order: Optional[str] = None) -> None:
        self.calls[method] += 1
        if order is not None:
            self.calls_by_order[order][method] += 1
        if self.failures[method]:
            raise self.failures[method].pop(0)

    def _after(self, method: str, *args) -> None:
        hook = self.hooks.get(method)
        if hook is not None:
            hook(*args)

    def _id(self) -> int:
        value = self._next_id
        self._next_id += 1
        return value

    # Data query

    async def query(self, token: str, sql: str) -> List[Dict[str, Any]]:
        self._call("query")
        if "FROM mo WHERE num LIKE" in sql:
            prefix = _quoted_values(sql, "LIKE")[0].rstrip("%")
            numbers = list(self.parent_orders) + self.extra_parent_order_numbers
            return [{"num": n} for n in numbers if n.startswith(prefix)]
        if "SELECT id FROM mo WHERE num =" in sql:
            number = _quoted_values(sql, "num =")[0]
            order = self.parent_orders.get(number)
            return [{"id": order["id"]}] if order else []
        if "JOIN moitem" in sql:
            number = _quoted_values(sql, "mo.num =")[0]
            order = self.parent_orders.get(number)
            if not order:
                return []
            return [{"num": wo, "id": index} for index, wo in enumerate(order["sub_orders"], start=1)]
        if "serialnum.SerialNum as serial" in sql:
            wanted = set(_quoted_values(sql, "SerialNum IN"))
            rows = [row for serial, row in self.serial_locations.items() if serial in wanted]
            return sorted(rows, key=lambda r: (r["location_id"], r["serial"]))
        if "FROM location" in sql and "JOIN locationgroup" in sql:
            return list(self.location_rows)
        if "part.uomid AS uom_id" in sql:
            ids = [int(v) for v in re.findall(r"\d+", sql.split("part.id IN", 1)[1])]
            return [self.parts[i] for i in ids if i in self.parts]
        if "woitem_type" in sql:
            number = _quoted_values(sql, "wo.num =")[0]
            return list(self.structures.get(number, []))
        if "SELECT bomitem.partid" in sql:
            bom_num = _quoted_values(sql, "bom.num =")[0]
            part_id = self.bom_fg_parts.get(bom_num)
            return [{"partid": part_id}] if part_id else []
        if "sn.SerialNum AS barcode" in sql:
            return list(self.on_hand)
        if "AS barcode FROM serialnum" in sql:
            return [{"barcode": b} for b in _quoted_values(sql, "IN (") if b in self.existing_barcodes]
        if "AS serial FROM serialnum" in sql:
            return [{"serial": s} for s in _quoted_values(sql, "IN (") if s in self.serial_locations]
        raise AssertionError(f"Unexpected query: {sql}")

    # Parent orders

    async def create_manufacture_order(self, token: str, payload: Dict[str, Any]) -> int:
        self._call("create_manufacture_order")
        mo_id = self._id()
        self.parent_orders[payload["number"]] = {
            "id": mo_id,
            "payload": payload,
            "issued": False,
            "closed_short": False,
            "sub_orders": [],
        }
        return mo_id

    def _order_by_id(self, mo_id: int) -> tuple:
        for number, order in self.parent_orders.items():
            if order["id"] == mo_id:
                return number, order
        raise AssertionError(f"Unknown MO id {mo_id}")

    async def issue_manufacture_order(self, token: str, mo_id: int) -> None:
        self._call("issue_manufacture_order")
        number, order = self._order_by_id(mo_id)
        order["issued"] = True
        disassembly = any("items" in config for config in order["payload"]["configurations"])
        for index, _ in enumerate(order["payload"]["configurations"], start=1):
            wo = f"{number}:{index:03d}"
            order["sub_orders"].append(wo)
            if disassembly:
                self.picks[wo], self.work_orders[wo] = self._disassembly_templates(wo)
            else:
                self.picks[wo], self.work_orders[wo] = self._build_templates(wo)

    async def close_short_manufacture_order(self, token: str, mo_id: int) -> None:
        self._call("close_short_manufacture_order")
        _, order = self._order_by_id(mo_id)
        order["closed_short"] = True

    def _build_templates(self, wo: str):
        pick = {
            "PickID": self._id(),
            "Number": wo,
            "Status": 10,
            "PickItems": {
                "PickItem": {
                    "PickItemID": self._id(),
                    "Status": 10,
                    "Quantity": "2",
                    "Part": {
                        "PartID": RAW_PART_ID,
                        "PartNum": "RAW-1",
                        "PartTrackingList": {"PartTracking": SERIAL_TRACKING},
                    },
                    "Location": {"LocationID": 0},
                }
            },
        }
        work_order = {
            "Num": wo,
            "StatusID": 10,
            "WOItems": {
                "WOItem": [
                    {
                        "TypeID": 10,
                        "QtyUsed": "0",
                        "Part": {
                            "PartID": FG_PART_ID,
                            "PartNum": "FG-1",
                            "PartTrackingList": {"PartTracking": [BARCODE_TRACKING]},
                        },
                    },
                    {"TypeID": 20, "QtyUsed": "2", "Part": {"PartID": RAW_PART_ID, "PartNum": "RAW-1"}},
                ]
            },
        }
        return pick, work_order

    def _disassembly_templates(self, wo: str):
        pick = {
            "PickID": self._id(),
            "Number": wo,
            "Status": 10,
            "PickItems": {
                "PickItem": [
                    {
                        "PickItemID": self._id(),
                        "Status": 10,
                        "Quantity": "1",
                        "Part": {
                            "PartID": FG_PART_ID,
                            "PartNum": "FG-1",
                            "PartTrackingList": {"PartTracking": [BARCODE_TRACKING]},
                        },
                    }
                ]
            },
        }
        work_order = {
            "Num": wo,
            "StatusID": 10,
            "WOItems": {
                "WOItem": [
                    {"TypeID": 20, "QtyUsed": "1", "Part": {"PartID": FG_PART_ID, "PartNum": "FG-1"}},
                    {
                        "TypeID": 10,
                        "QtyUsed": "0",
                        "Part": {
                            "PartID": RAW_PART_ID,
                            "PartNum": "RAW-1",
                            "PartTrackingList": {"PartTracking": [SERIAL_TRACKING]},
                        },
                    },
                ]
            },
        }
        return pick, work_order

    # Legacy transactions

    async def get_pick(self, token: str, work_order_number: str) -> Pick:
        self._call("get_pick", work_order_number)
        return Pick(copy.deepcopy(self.picks[work_order_number]))

    async def save_pick(self, token: str, pick: Pick) -> Pick:
        number = pick.raw["Number"]
        self._call("save_pick", number)
        stored = copy.deepcopy(pick.to_payload())
        if int(stored.get("Status") or 0) < 40:
            stored["Status"] = 40
        self.picks[number] = stored
        self._after("save_pick", number)
        return Pick(copy.deepcopy(stored))

    async def get_work_order(self, token: str, work_order_number: str) -> WorkOrder:
        self._call("get_work_order", work_order_number)
        return WorkOrder(copy.deepcopy(self.work_orders[work_order_number]))

    async def save_work_order(self, token: str, work_order: WorkOrder) -> WorkOrder:
        number = work_order.number
        self._call("save_work_order", number)
        stored = copy.deepcopy(work_order.to_payload())
        if int(stored.get("StatusID") or 0) >= 40:
            stored["StatusID"] = 50
        self.work_orders[number] = stored
        self._after("save_work_order", number)
        return WorkOrder(copy.deepcopy(stored))

    # Sessions

    async def login(self, payload: Dict[str, Any]) -> str:
        self._call("login")
        self.tokens_issued += 1
        return f"token-{self.tokens_issued}"

    async def logout(self, token: str, payload: Optional[Dict[str, Any]] = None) -> None:
        self._call("logout")
        self.logged_out.append(token)

    async def aclose(self) -> None:
        self.closed = True
