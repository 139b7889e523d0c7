# app/service.py
"""
อ่านข้อมูล PM2.5 แบบ upstream ก่อน แล้วค่อย fallback ไป DB

แหล่งข้อมูลเรียงตามลำดับความสด (Hazemon → DB) แหล่งแรกที่ได้ผลไม่ว่างคือคำตอบ
และแนบชื่อแหล่ง (`source`) ไปกับผลลัพธ์เสมอ
"""
import asyncio
import logging
import math
import time
from datetime import datetime
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

from app import aggregation, crud
from app.aggregation import TH_TZ, DAY_SECONDS
from app.errors import InvalidRequest, UpstreamEmptyResult, UpstreamError, UpstreamUnavailable
from app.hazemon import parse_latest, parse_series
from app.hazemon_url import HazemonUrlBuilder
from app.schemas import (
    DailyAverage,
    HistoryResult,
    LatestResult,
    MonthlyAverage,
    Reading,
    TimeSeriesResult,
)

logger = logging.getLogger("pm25_service")

HAZEMON_SOURCE = "hazemon"
STORE_SOURCE = "store"


# ========================================
#               PARAMS
# ========================================
def clamp_int(value, low: int, high: int, default: int) -> int:
    if value is None or value == "" or isinstance(value, bool):
        return default
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if not math.isfinite(number):
        return default
    return max(low, min(high, int(number)))


def to_epoch_seconds(value) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return int(number) if math.isfinite(number) else None


def aggr_minutes(value) -> Optional[int]:
    """ขนาด bucket (นาที) ต้องเป็นจำนวนบวก ไม่งั้นไม่ใส่ /aggr ต่อท้าย URL"""
    minutes = to_epoch_seconds(value)
    return minutes if minutes is not None and minutes > 0 else None


def _bangkok_now(clock: Callable[[], float]) -> datetime:
    return datetime.fromtimestamp(clock(), TH_TZ)


# ========================================
#               SOURCES
# ========================================
class HazemonSource:
    name = HAZEMON_SOURCE

    def __init__(self, client, builder: HazemonUrlBuilder, settings):
        self.client = client
        self.builder = builder
        self.settings = settings

    async def latest(self, node=None, trace: Optional[list] = None) -> Optional[Reading]:
        url = self.builder.base_url(node)
        response = await self.client.fetch(url, timeout=self.settings.latest_timeout)
        if not response.ok:
            raise UpstreamUnavailable(f"Upstream error {response.status}", status=response.status, url=url)
        latest = parse_latest(response.payload)
        if trace is not None:
            trace.append({"url": url, "status": response.status, "points": 1 if latest else 0})
        return latest

    async def fetch_range(self, after: int, before: int, node=None, aggr=None,
                          trace: Optional[list] = None) -> List[Reading]:
        """
        ดึงช่วง [after, before] ตามลำดับที่ตั้งไว้ ถ้าได้ JSON แต่ไม่มีข้อมูลเลย
        ลองสลับลำดับ before/after อีกครั้ง (HTTP error / timeout ไม่ลองซ้ำ)
        """
        order = self.settings.hazemon_range_order
        for attempt in (order, order.swapped()):
            url = self.builder.range_url(before, after, node=node, aggr_minutes=aggr, order=attempt)
            response = await self.client.fetch(url, timeout=self.settings.range_timeout)
            if not response.ok:
                raise UpstreamUnavailable(f"Upstream error {response.status}", status=response.status, url=url)

            readings = [r for r in parse_series(response.payload, from_epoch=after) if r.timestamp <= before]
            if trace is not None:
                trace.append({"url": url, "status": response.status, "points": len(readings)})
            if readings:
                return readings
            if attempt is order:
                logger.info(f"ช่วง {after}-{before} ว่าง ({attempt.value}) → ลองสลับลำดับ")
        return []

    async def daily(self, days: int, now: datetime, node=None, aggr=None,
                    trace: Optional[list] = None) -> List[DailyAverage]:
        # ยิงทีละวัน เพราะ Hazemon ตัดข้อมูลทิ้งเงียบ ๆ เมื่อขอช่วงยาว
        semaphore = asyncio.Semaphore(self.settings.upstream_concurrency)

        async def one_day(window: Tuple[int, int]) -> List[Reading]:
            async with semaphore:
                return await self.fetch_range(window[0], window[1], node=node, aggr=aggr, trace=trace)

        results = await asyncio.gather(
            *(one_day(w) for w in aggregation.day_windows(days, now)),
            return_exceptions=True,
        )
        readings = []
        for result in results:
            if isinstance(result, BaseException):
                raise result
            readings.extend(result)
        if not readings:
            raise UpstreamEmptyResult(f"No readings in the last {days} days")
        return aggregation.daily_averages(readings)

    async def monthly(self, months: int, now: datetime, node=None, aggr=None,
                      trace: Optional[list] = None) -> List[MonthlyAverage]:
        # lookback ถูกจำกัดไว้ที่ monthly_lookback_days เดือนเก่า ๆ อาจนับได้ไม่ครบ
        lookback_days = min(months * 31, self.settings.monthly_lookback_days)
        before = int(now.timestamp())
        after = before - lookback_days * DAY_SECONDS
        readings = await self.fetch_range(after, before, node=node, aggr=aggr, trace=trace)
        if not readings:
            raise UpstreamEmptyResult(f"No readings in the last {lookback_days} days")
        return aggregation.monthly_averages(readings, months)

    async def series(self, from_epoch: int, to_epoch: int, node=None, aggr=None,
                     trace: Optional[list] = None) -> List[Reading]:
        readings = await self.fetch_range(from_epoch, to_epoch, node=node, aggr=aggr, trace=trace)
        if not readings:
            raise UpstreamEmptyResult(f"No readings between {from_epoch} and {to_epoch}")
        return readings


class StoreSource:
    name = STORE_SOURCE

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def latest(self, node=None, trace=None) -> Optional[Reading]:
        async with self.session_factory() as db:
            return await crud.latest_reading(db)

    async def daily(self, days: int, now: datetime, node=None, aggr=None, trace=None) -> List[DailyAverage]:
        since = aggregation.day_windows(days, now)[0][0]
        async with self.session_factory() as db:
            return await crud.daily_averages(db, since, days)

    async def monthly(self, months: int, now: datetime, node=None, aggr=None, trace=None) -> List[MonthlyAverage]:
        # ช่วงคร่าว ๆ เดือนละ 32 วัน การ group ตาม YYYY-MM จัดการขอบเดือนให้เอง
        since = int(now.timestamp()) - months * 32 * DAY_SECONDS
        async with self.session_factory() as db:
            return await crud.monthly_averages(db, since, months)

    async def series(self, from_epoch: int, to_epoch: int, node=None, aggr=None, trace=None) -> List[Reading]:
        async with self.session_factory() as db:
            return await crud.readings_between(db, from_epoch, to_epoch)


# ========================================
#               QUERY SERVICE
# ========================================
class Pm25Service:
    def __init__(self, sources: Sequence[Any], clock: Callable[[], float] = time.time):
        if not sources:
            raise ValueError("Pm25Service needs at least one source")
        self.sources = list(sources)
        self.clock = clock

    async def _first_available(self, operation: str,
                               call: Callable[[Any], Awaitable[Any]]) -> Tuple[str, Any]:
        """
        ลองทีละแหล่ง: UpstreamError หรือผลว่าง → แหล่งถัดไป
        error อื่น (เช่น DB ล่ม) ส่งต่อให้ผู้เรียก
        """
        result = None
        for source in self.sources:
            try:
                result = await call(source)
            except UpstreamError as e:
                logger.warning(f"[{operation}] {source.name} ใช้ไม่ได้: {e} → fallback")
                continue
            if result:
                return source.name, result
            logger.info(f"[{operation}] {source.name} ไม่มีข้อมูล")
        return self.sources[-1].name, result

    async def get_latest(self, node=None) -> LatestResult:
        source, latest = await self._first_available("latest", lambda s: s.latest(node=node))
        return LatestResult(source=source, latest=latest)

    async def get_history(self, days=None, months=None, node=None, aggr=None, debug: bool = False) -> HistoryResult:
        days = clamp_int(days, 1, 31, 7)
        months = clamp_int(months, 1, 24, 12)
        aggr = aggr_minutes(aggr)
        now = _bangkok_now(self.clock)
        trace = [] if debug else None

        daily_source, daily = await self._first_available(
            "history.daily", lambda s: s.daily(days, now, node=node, aggr=aggr, trace=trace))
        monthly_source, monthly = await self._first_available(
            "history.monthly", lambda s: s.monthly(months, now, node=node, aggr=aggr, trace=trace))

        return HistoryResult(
            source=daily_source,
            monthly_source=monthly_source,
            days=days,
            months=months,
            daily=aggregation.pad_daily(daily or [], days, now),
            monthly=monthly or [],
            debug=trace,
        )

    async def get_timeseries(self, from_=None, to=None, hours=None, step=None, limit=None,
                             node=None, aggr=None) -> TimeSeriesResult:
        from_q = to_epoch_seconds(from_)
        to_q = to_epoch_seconds(to)
        if (from_q is None) != (to_q is None):
            raise InvalidRequest(
                "Provide both from and to (epoch seconds) or neither",
                hint="?from=<epoch_seconds>&to=<epoch_seconds> or ?hours=<n>",
            )

        hours = clamp_int(hours, 1, 72, 24)
        step = clamp_int(step, 0, 6 * 60 * 60, 15 * 60)
        limit = clamp_int(limit, 10, 5000, 2000)
        aggr = aggr_minutes(aggr)

        now_epoch = int(self.clock())
        from_raw = from_q if from_q is not None else now_epoch - hours * 60 * 60
        to_raw = to_q if to_q is not None else now_epoch
        from_epoch, to_epoch = min(from_raw, to_raw), max(from_raw, to_raw)

        source, readings = await self._first_available(
            "timeseries", lambda s: s.series(from_epoch, to_epoch, node=node, aggr=aggr))

        points = aggregation.downsample(aggregation.to_points(readings or []), step)
        return TimeSeriesResult(
            source=source,
            from_epoch=from_epoch,
            to_epoch=to_epoch,
            step=step,
            limit=limit,
            points=aggregation.take_latest(points, limit),
        )


def build_service(client, settings, session_factory, clock: Callable[[], float] = time.time) -> Pm25Service:
    builder = HazemonUrlBuilder(settings)
    return Pm25Service(
        [HazemonSource(client, builder, settings), StoreSource(session_factory)],
        clock=clock,
    )
