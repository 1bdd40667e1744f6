"""
SQL for the Fishbowl data-query endpoint.

The endpoint accepts raw SQL text only, so values are quoted and escaped
here rather than bound as parameters. Every builder rejects input it cannot
render safely.
"""
import re
from datetime import date
from typing import Iterable, List, Optional, Sequence, Union

MAX_IN_CLAUSE = 1000
WOITEM_TRACKING_TABLE_ID = -355941248
PARENT_ORDER_SEPARATOR = "|"


def escape(value: str) -> str:
    if not isinstance(value, str):
        raise TypeError("escape only accepts string values")
    return value.replace("'", "''")


def quote(value: str) -> str:
    return f"'{escape(value)}'"


def number(value: Union[int, float, str], field: str) -> Union[int, float]:
    """Validate a numeric value for inlining."""
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        raise ValueError(f"{field} must be a valid number") from None
    if parsed != parsed or parsed in (float("inf"), float("-inf")):
        raise ValueError(f"{field} must be a valid number")
    return int(parsed) if parsed.is_integer() else parsed


def in_clause(values: Sequence, kind: str = "string") -> str:
    values = list(values)
    if not values:
        raise ValueError("IN clause requires at least one value")
    if len(values) > MAX_IN_CLAUSE:
        raise ValueError(f"IN clause limited to {MAX_IN_CLAUSE} values")
    if kind == "string":
        return ", ".join(quote(str(v)) for v in values)
    if kind == "number":
        return ", ".join(str(number(v, "IN clause value")) for v in values)
    raise ValueError("IN clause kind must be 'string' or 'number'")


# Parent order numbers: {bom}|{YYMMDD}|{seq:03d}

def parent_order_date(day: date) -> str:
    return day.strftime("%y%m%d")


def build_parent_order_number(bom_num: str, day: date, sequence: int) -> str:
    return PARENT_ORDER_SEPARATOR.join([bom_num, parent_order_date(day), f"{sequence:03d}"])


def parse_parent_order_sequence(order_number: str) -> Optional[int]:
    """Numeric sequence of a parent order number, or None when malformed."""
    parts = order_number.split(PARENT_ORDER_SEPARATOR)
    if len(parts) != 3:
        return None
    match = re.match(r"^\s*(\d+)", parts[2])
    return int(match.group(1)) if match else None


def next_parent_order_sequence(existing: Iterable[str]) -> int:
    """max + 1 of the existing sequences, compared as integers."""
    sequences = [s for s in (parse_parent_order_sequence(num) for num in existing) if s is not None]
    return max(sequences, default=0) + 1


def parent_order_pattern(bom_num: str, day: date) -> str:
    return f"{bom_num}{PARENT_ORDER_SEPARATOR}{parent_order_date(day)}{PARENT_ORDER_SEPARATOR}%"


# Query builders

def parent_orders_like(pattern: str) -> str:
    return f"SELECT num FROM mo WHERE num LIKE {quote(pattern)}"


def parent_order_id(order_number: str) -> str:
    return f"SELECT id FROM mo WHERE num = {quote(order_number)}"


def sub_orders_for_parent(order_number: str) -> str:
    return f"""
        SELECT wo.num, wo.id FROM wo
        JOIN moitem ON moitem.id = wo.moitemid
        JOIN mo ON mo.id = moitem.moid
        WHERE mo.num = {quote(order_number)}
        ORDER BY wo.id
    """


def serial_locations(bom_num: str, raw_goods_part_id: int, serials: Sequence[str]) -> str:
    return f"""
        SELECT
          serialnum.SerialNum as serial,
          location.id as location_id,
          location.name as location_name,
          locationgroup.id as locationgroup_id,
          locationgroup.name as locationgroup_name,
          location.typeid as location_typeid,
          location.description as location_description,
          location.pickable as location_pickable,
          location.receivable as location_receivable,
          location.activeflag as location_active,
          location.countedAsAvailable as location_counted_as_available,
          tag.id as tag_id,
          tag.num as tag_num
        FROM bom
        JOIN bomitem ON bomitem.bomid = bom.id AND bomitem.typeid = 20
        JOIN part ON part.id = bomitem.partid
        JOIN tag ON tag.partid = part.id
        JOIN serial ON serial.tagid = tag.id
        JOIN serialnum ON serialnum.serialid = serial.id AND serialnum.parttrackingid = 4
        JOIN location ON location.id = tag.locationid
        JOIN locationgroup ON locationgroup.id = location.locationgroupid
        WHERE bom.num = {quote(bom_num)}
          AND part.id = {number(raw_goods_part_id, 'raw_goods_part_id')}
          AND serialnum.SerialNum IN ({in_clause(serials)})
        ORDER BY location.id, serialnum.SerialNum
    """


_LOCATION_COLUMNS = """
          location.id as location_id,
          location.typeid as location_typeid,
          location.name as location_name,
          location.description as location_description,
          location.countedAsAvailable,
          location.activeflag,
          location.pickable,
          location.receivable,
          location.sortorder,
          locationgroup.id as locationgroup_id,
          locationgroup.name as locationgroup_name,
          tag.id as tag_id,
          tag.num as tag_num
"""


def location_lookup(location: str) -> str:
    """Location by "Group-Location" name or by numeric id."""
    location = location.strip()
    if "-" in location:
        group_name, location_name = location.split("-", 1)
        where = (
            f"WHERE locationgroup.name = {quote(group_name)}\n"
            f"          AND location.name = {quote(location_name)}"
        )
    else:
        where = f"WHERE location.id = {number(location, 'location')}"
    return f"""
        SELECT{_LOCATION_COLUMNS}
        FROM location
        JOIN locationgroup ON locationgroup.id = location.locationgroupid
        LEFT JOIN tag ON tag.locationid = location.id
        {where}
    """


def part_details(part_ids: Sequence[int]) -> str:
    return f"""
        SELECT
          part.id AS part_id,
          part.num AS part_num,
          part.description AS part_description,
          part.uomid AS uom_id
        FROM part
        WHERE part.id IN ({in_clause(part_ids, 'number')})
    """


def work_order_structure(work_order_number: str) -> str:
    return f"""
        SELECT
          bomitemtype.name AS woitem_type,
          woitem.partId AS partid,
          woitem.qtyUsed AS woitem_qty,
          GROUP_CONCAT(DISTINCT trackinginfosn.serialNum) AS serial_numbers
        FROM wo
        JOIN woitem ON woitem.woid = wo.id
        JOIN bomitemtype ON bomitemtype.id = woitem.typeid
        LEFT JOIN trackinginfo ON trackinginfo.recordId = woitem.id
          AND trackinginfo.tableid = {WOITEM_TRACKING_TABLE_ID}
        LEFT JOIN trackinginfosn ON trackinginfosn.trackingInfoId = trackinginfo.id
        WHERE wo.num = {quote(work_order_number)}
          AND woitem.qtyused > 0
        GROUP BY bomitemtype.name, woitem.partId, woitem.qtyUsed
        ORDER BY bomitemtype.name, woitem.partId
    """


def finished_good_part(bom_num: str, bom_id: int) -> str:
    return f"""
        SELECT bomitem.partid
        FROM bom
        JOIN bomitem ON bomitem.bomid = bom.id AND bomitem.typeid = 10
        WHERE bom.num = {quote(bom_num)} AND bom.id = {number(bom_id, 'bom_id')}
    """


def finished_goods_on_hand(fg_part_id: int) -> str:
    return f"""
        SELECT DISTINCT
          sn.SerialNum AS barcode,
          p.id AS fg_part_id,
          p.num AS fg_part_num,
          p.description AS fg_description,
          l.name AS location_name,
          lg.name AS location_group_name,
          CONCAT(lg.name, '-', l.name) AS full_location
        FROM part p
        JOIN tag t ON t.partid = p.id
        JOIN serial s ON s.tagid = t.id
        JOIN serialnum sn ON sn.serialid = s.id AND sn.parttrackingid = 5
        JOIN location l ON l.id = t.locationid
        JOIN locationgroup lg ON lg.id = l.locationgroupid
        WHERE p.id = {number(fg_part_id, 'fg_part_id')}
          AND t.qty > 0
    """


def existing_barcodes(barcodes: Sequence[str]) -> str:
    return (
        "SELECT DISTINCT tisn.serialnum AS barcode FROM serialnum tisn "
        "JOIN serial s ON s.id = tisn.serialid JOIN tag t ON t.id = s.tagid "
        f"WHERE tisn.parttrackingid = 5 AND tisn.serialnum IN ({in_clause(barcodes)})"
    )


def existing_serials(serials: Sequence[str]) -> str:
    return (
        "SELECT DISTINCT tisn.serialnum AS serial FROM serialnum tisn "
        "JOIN serial s ON s.id = tisn.serialid JOIN tag t ON t.id = s.tagid "
        f"WHERE tisn.parttrackingid = 4 AND tisn.serialnum IN ({in_clause(serials)})"
    )


def chunked(values: Sequence, size: int = MAX_IN_CLAUSE) -> List[list]:
    """Split values so each IN clause stays under the limit."""
    values = list(values)
    return [values[i:i + size] for i in range(0, len(values), size)]
