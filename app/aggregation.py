# app/aggregation.py
"""
ค่าเฉลี่ย PM2.5 รายวัน/รายเดือน และการ down-sample time series

วันที่/เดือนอ้างอิงจาก datetime_local ที่ Hazemon ส่งมา (UTC+7) ไม่คำนวณใหม่จาก timestamp
ค่าที่แสดงผลปัดเป็นจำนวนเต็มแบบ round-half-up เสมอ
"""
import math
from datetime import datetime
from typing import Iterable, List, Optional, Sequence
from zoneinfo import ZoneInfo

import pandas as pd

from app.schemas import DailyAverage, MonthlyAverage, Reading, TimeSeriesPoint

TH_TZ = ZoneInfo("Asia/Bangkok")
DAY_SECONDS = 24 * 60 * 60

_DATE_PATTERN = r"^\d{4}-\d{2}-\d{2}"


def round_half_up(value: float) -> int:
    # 10.5 → 11, -0.5 → 0 (ไม่ใช่ banker's rounding แบบ round() ของ Python)
    return int(math.floor(value + 0.5))


def _frame(readings: Iterable[Reading]) -> pd.DataFrame:
    rows = [
        {"timestamp": r.timestamp, "datetime_local": r.datetime_local, "pm25": r.pm25}
        for r in readings
    ]
    df = pd.DataFrame(rows, columns=["timestamp", "datetime_local", "pm25"])
    df["pm25"] = pd.to_numeric(df["pm25"], errors="coerce")
    # NaN และ ±inf ไม่นับเป็นค่า
    return df[df["pm25"].between(-math.inf, math.inf, inclusive="neither")]


def _group_by_prefix(readings: Iterable[Reading], length: int) -> pd.DataFrame:
    df = _frame(readings)
    df = df.dropna(subset=["datetime_local"])
    if df.empty:
        return pd.DataFrame(columns=["mean", "count"])
    df = df[df["datetime_local"].astype(str).str.match(_DATE_PATTERN)]
    if df.empty:
        return pd.DataFrame(columns=["mean", "count"])
    keys = df["datetime_local"].astype(str).str.slice(0, length)
    return df.groupby(keys)["pm25"].agg(["mean", "count"]).sort_index()


def daily_averages(readings: Iterable[Reading]) -> List[DailyAverage]:
    grouped = _group_by_prefix(readings, 10)
    return [
        DailyAverage(date=str(day), avg=round_half_up(row["mean"]), count=int(row["count"]))
        for day, row in grouped.iterrows()
    ]


def monthly_averages(readings: Iterable[Reading], months: Optional[int] = None) -> List[MonthlyAverage]:
    grouped = _group_by_prefix(readings, 7)
    items = [
        MonthlyAverage(key=str(key), avg=round_half_up(row["mean"]), count=int(row["count"]))
        for key, row in grouped.iterrows()
    ]
    return latest_months(items, months)


def latest_months(items: Sequence[MonthlyAverage], months: Optional[int]) -> List[MonthlyAverage]:
    """เอา M เดือนล่าสุด แล้วเรียงเก่า → ใหม่ สำหรับแสดงผล"""
    newest_first = sorted(items, key=lambda m: m.key, reverse=True)
    if months is not None:
        newest_first = newest_first[:months]
    return sorted(newest_first, key=lambda m: m.key)


def bangkok_today(now: datetime):
    if now.tzinfo is None:
        now = now.replace(tzinfo=TH_TZ)
    return now.astimezone(TH_TZ).date()


def pad_daily(daily: Iterable[DailyAverage], days: int, now: datetime) -> List[DailyAverage]:
    """
    คืนรายการยาว `days` พอดี ลงท้ายด้วยวันนี้ (เวลาไทย)
    วันที่ไม่มีข้อมูลใส่ avg=None, count=0
    """
    by_date = {d.date: d for d in daily}
    expected = pd.date_range(end=pd.Timestamp(bangkok_today(now)), periods=days, freq="D")
    out = []
    for day in expected.strftime("%Y-%m-%d"):
        out.append(by_date.get(day) or DailyAverage(date=day, avg=None, count=0))
    return out


def day_windows(days: int, now: datetime):
    """
    [(start_epoch, end_epoch)] ของ `days` วันล่าสุดตามปฏิทินไทย เรียงเก่า → ใหม่
    วันนี้ตัดที่เวลาปัจจุบัน
    """
    if now.tzinfo is None:
        now = now.replace(tzinfo=TH_TZ)
    now_epoch = int(now.timestamp())
    midnight = pd.Timestamp(bangkok_today(now)).tz_localize(TH_TZ)
    windows = []
    for start in pd.date_range(end=midnight, periods=days, freq="D"):
        start_epoch = int(start.timestamp())
        end_epoch = min(start_epoch + DAY_SECONDS - 1, now_epoch)
        windows.append((start_epoch, end_epoch))
    return windows


def to_points(readings: Iterable[Reading]) -> List[TimeSeriesPoint]:
    """ตัดจุดที่ไม่มีค่า pm25 ออก กันกราฟขาดเป็นช่วง ๆ"""
    points = []
    for r in readings:
        if r.pm25 is None or not math.isfinite(r.pm25):
            continue
        points.append(TimeSeriesPoint(timestamp=r.timestamp, datetime_local=r.datetime_local, pm25=r.pm25))
    return points


def downsample(points: Sequence[TimeSeriesPoint], step: Optional[int]) -> List[TimeSeriesPoint]:
    """
    รวมจุดเป็น bucket กว้าง `step` วินาที: floor(ts / step) * step
    ค่าใน bucket = ค่าเฉลี่ยปัดเป็นจำนวนเต็ม, datetime_local = ค่าล่าสุดใน bucket
    step เป็น 0/None → คืนจุดเดิม
    """
    if not step or step <= 0:
        return list(points)

    df = pd.DataFrame(
        [{"timestamp": p.timestamp, "datetime_local": p.datetime_local, "pm25": p.pm25} for p in points],
        columns=["timestamp", "datetime_local", "pm25"],
    )
    df["pm25"] = pd.to_numeric(df["pm25"], errors="coerce")
    df = df[df["pm25"].between(-math.inf, math.inf, inclusive="neither")]
    if df.empty:
        return []

    df = df.sort_values("timestamp", kind="stable")
    df["bucket"] = (df["timestamp"].astype("int64") // step) * step
    grouped = df.groupby("bucket", sort=True).agg(
        pm25=("pm25", "mean"),
        count=("pm25", "count"),
        datetime_local=("datetime_local", "last"),
    )

    out = []
    for bucket, row in grouped.iterrows():
        if row["count"] == 0:
            continue
        dt_local = row["datetime_local"]
        out.append(TimeSeriesPoint(
            timestamp=int(bucket),
            datetime_local=None if pd.isna(dt_local) else str(dt_local),
            pm25=round_half_up(row["pm25"]),
            count=int(row["count"]),
        ))
    return out


def take_latest(points: Sequence[TimeSeriesPoint], limit: int) -> List[TimeSeriesPoint]:
    return list(points[max(0, len(points) - limit):])
