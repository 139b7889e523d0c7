# app/hazemon.py
"""
แปลง JSON จาก Hazemon ให้เป็น Reading

ตัวอย่าง payload:
    {"time_aggr": {"5080": {"1704078000": {"PM2.5": ["35.2"],
                                           "datetime(UTC+7)": ["2024-01-01 10:00:00"], ...}}}}

key ชั้นแรกคือ node id, ชั้นที่สองคือ epoch (string) ของแต่ละค่า
"""
import logging
import math
from typing import Any, List, Optional

from app.schemas import Reading

DATETIME_FIELD = "datetime(UTC+7)"
PM25_FIELD = "PM2.5"
PM10_FIELD = "PM10"
PM1_FIELD = "PM1.0"

logger = logging.getLogger("hazemon")


def _to_float(value: Any) -> Optional[float]:
    # Hazemon ห่อค่าไว้ใน list เช่น ["35.2"]
    if isinstance(value, (list, tuple)):
        if len(value) != 1:
            return None
        value = value[0]
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, str) and value.strip() == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def _to_epoch(key: Any) -> Optional[int]:
    try:
        number = float(key)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(number)


def _node_id(record: dict, node_key: str) -> Optional[int]:
    for candidate in (record.get("node_id"), node_key):
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            return int(candidate)
        except (TypeError, ValueError):
            continue
    return None


def _datetime_local(record: dict) -> Optional[str]:
    value = record.get(DATETIME_FIELD)
    if isinstance(value, list) and value:
        first = value[0]
        return str(first) if first is not None else None
    return None


def _node_series(payload: Any):
    """คืน (node_key, {ts_key: record}) ของ node แรก หรือ (None, None)"""
    if not isinstance(payload, dict):
        return None, None
    time_aggr = payload.get("time_aggr")
    if not isinstance(time_aggr, dict) or not time_aggr:
        return None, None
    node_key = next(iter(time_aggr))
    by_timestamp = time_aggr[node_key]
    if not isinstance(by_timestamp, dict):
        return None, None
    return str(node_key), by_timestamp


def to_reading(node_key: str, timestamp: int, record: Any) -> Optional[Reading]:
    if not isinstance(record, dict):
        record = {}
    node_id = _node_id(record, node_key)
    if node_id is None:
        return None
    node_name = record.get("node_name")
    return Reading(
        node_id=node_id,
        node_name=str(node_name) if node_name else None,
        timestamp=timestamp,
        datetime_local=_datetime_local(record),
        pm25=_to_float(record.get(PM25_FIELD)),
        pm10=_to_float(record.get(PM10_FIELD)),
        pm1=_to_float(record.get(PM1_FIELD)),
        raw=record or None,
    )


def parse_series(payload: Any, from_epoch: Optional[int] = None) -> List[Reading]:
    """
    ทุก reading ที่ timestamp parse ได้ เรียงจากเก่าไปใหม่

    key ที่ไม่ใช่ตัวเลขหรือ record ที่หา node id ไม่ได้ จะถูกข้าม ไม่ทำให้ทั้งชุดล้ม
    """
    node_key, by_timestamp = _node_series(payload)
    if node_key is None:
        return []

    readings = {}
    skipped = 0
    for ts_key, record in by_timestamp.items():
        ts = _to_epoch(ts_key)
        if ts is None:
            skipped += 1
            continue
        if from_epoch is not None and ts < from_epoch:
            continue
        reading = to_reading(node_key, ts, record)
        if reading is None:
            skipped += 1
            continue
        readings[ts] = reading

    if skipped:
        logger.debug(f"ข้าม {skipped} record ที่ไม่สมบูรณ์ (node {node_key})")
    return [readings[ts] for ts in sorted(readings)]


def parse_latest(payload: Any) -> Optional[Reading]:
    """
    reading ของ timestamp ที่มากที่สุดเท่านั้น

    ถ้า record นั้นหา node id ไม่ได้ คืน None ไม่ย้อนไปเอา record ที่เก่ากว่า
    """
    node_key, by_timestamp = _node_series(payload)
    if node_key is None:
        return None

    records = {}
    for ts_key, record in by_timestamp.items():
        ts = _to_epoch(ts_key)
        if ts is not None:
            records[ts] = record
    if not records:
        return None

    newest = max(records)
    reading = to_reading(node_key, newest, records[newest])
    if reading is None:
        logger.warning(f"record ล่าสุด ts={newest} ไม่มี node id (node {node_key}) → ไม่มีค่าล่าสุด")
    return reading
