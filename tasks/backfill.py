# tasks/backfill.py
"""
เติมข้อมูลย้อนหลังรายวันจาก Hazemon ลง DB

ยิงทีละวัน (Hazemon ตัดข้อมูลเมื่อขอช่วงยาว) ถ้าวันไหนล้มเหลวก็ข้ามไปวันถัดไป

Usage::

    python -m tasks.backfill --days 7
    python -m tasks.backfill --days 30 --node TH-PKN-HuaHin-5132 --aggr 60
"""
import argparse
import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import Callable, Optional

from pydantic import BaseModel

from app.aggregation import TH_TZ, day_windows
from app.config import get_settings, setup_logging
from app.crud import insert_reading_if_absent
from app.db import create_engine_from_settings, create_session_factory, init_db
from app.errors import UpstreamError
from app.hazemon_url import HazemonUrlBuilder
from app.service import HazemonSource
from app.upstream import HazemonClient

logger = logging.getLogger("pm25_backfill")

MAX_BACKFILL_DAYS = 31


class BackfillReport(BaseModel):
    days: int
    saved: int = 0
    duplicate: int = 0
    failed_days: int = 0


async def backfill_days(days: int, source: HazemonSource, session_factory, node=None, aggr=None,
                        clock: Callable[[], float] = time.time) -> BackfillReport:
    days = max(1, min(MAX_BACKFILL_DAYS, int(days)))
    now = datetime.fromtimestamp(clock(), TH_TZ)
    report = BackfillReport(days=days)

    for start, end in day_windows(days, now):
        day_label = datetime.fromtimestamp(start, TH_TZ).strftime("%Y-%m-%d")
        try:
            readings = await source.fetch_range(start, end, node=node, aggr=aggr)
        except UpstreamError as e:
            logger.error(f"ดึง {day_label} ล้มเหลว: {e}")
            report.failed_days += 1
            continue

        async with session_factory() as db:
            for reading in readings:
                if await insert_reading_if_absent(db, reading):
                    report.saved += 1
                else:
                    report.duplicate += 1
        logger.info(f"เติม {day_label} → {len(readings)} แถว")

    logger.info(f"เติมข้อมูลย้อนหลังเสร็จ: +{report.saved} ใหม่, ซ้ำ {report.duplicate}, "
                f"ล้มเหลว {report.failed_days} วัน")
    return report


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Backfill PM2.5 readings from Hazemon, one day per request.")
    parser.add_argument("--days", type=int, default=7, help=f"number of Bangkok calendar days (max {MAX_BACKFILL_DAYS})")
    parser.add_argument("--node", default=None, help="Hazemon node id/slug (defaults to configured node)")
    parser.add_argument("--aggr", type=int, default=None, help="aggregation bucket in minutes")
    return parser.parse_args(argv)


async def main(argv: Optional[list] = None) -> int:
    args = parse_args(argv)
    settings = get_settings()
    setup_logging(settings)

    engine = create_engine_from_settings(settings)
    try:
        await init_db(engine)
        source = HazemonSource(HazemonClient(timeout=settings.range_timeout), HazemonUrlBuilder(settings), settings)
        report = await backfill_days(args.days, source, create_session_factory(engine), node=args.node, aggr=args.aggr)
    finally:
        await engine.dispose()

    print(report.model_dump_json(indent=2))
    return 0 if report.failed_days < report.days else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
