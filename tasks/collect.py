# tasks/collect.py
"""
เก็บค่า PM2.5 ล่าสุดจาก Hazemon ลง DB (หนึ่งแถวต่อ node + timestamp)

ใช้ได้ทั้งจาก endpoint /api/pm25/collect, scheduler ในแอป และรันเดี่ยวผ่าน cron:
    python -m tasks.collect
"""
import asyncio
import logging
import sys
from enum import Enum
from typing import Optional

from pydantic import BaseModel

from app.config import get_settings, setup_logging
from app.crud import insert_reading_if_absent
from app.db import create_engine_from_settings, create_session_factory, init_db
from app.errors import UpstreamUnavailable
from app.hazemon import parse_latest
from app.hazemon_url import HazemonUrlBuilder
from app.schemas import Reading
from app.upstream import HazemonClient

logger = logging.getLogger("pm25_collector")

COLLECT_TIMEOUT = 8.0


class CollectOutcome(str, Enum):
    SAVED = "saved"
    DUPLICATE = "duplicate"
    UPSTREAM_ERROR = "upstream_error"
    NO_DATA = "no_data"


class CollectResult(BaseModel):
    outcome: CollectOutcome
    latest: Optional[Reading] = None
    upstream_status: Optional[int] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome in (CollectOutcome.SAVED, CollectOutcome.DUPLICATE)


async def collect_latest(client, builder: HazemonUrlBuilder, session_factory, node=None) -> CollectResult:
    url = builder.base_url(node)
    try:
        response = await client.fetch(url, timeout=COLLECT_TIMEOUT)
    except UpstreamUnavailable as e:
        logger.warning(f"collect: เรียก Hazemon ไม่ได้ → {e}")
        return CollectResult(outcome=CollectOutcome.UPSTREAM_ERROR, error=str(e))

    if not response.ok:
        logger.warning(f"collect: Hazemon ตอบ {response.status}")
        return CollectResult(outcome=CollectOutcome.UPSTREAM_ERROR, upstream_status=response.status,
                             error="Upstream error")

    latest = parse_latest(response.payload)
    if latest is None:
        logger.info("collect: ไม่มีข้อมูลจาก Hazemon")
        return CollectResult(outcome=CollectOutcome.NO_DATA, upstream_status=response.status)

    async with session_factory() as db:
        saved = await insert_reading_if_absent(db, latest)

    outcome = CollectOutcome.SAVED if saved else CollectOutcome.DUPLICATE
    logger.info(f"collect: {outcome.value} node={latest.node_id} ts={latest.timestamp} "
                f"({latest.datetime_local}) PM2.5={latest.pm25}")
    return CollectResult(outcome=outcome, latest=latest, upstream_status=response.status)


async def main() -> int:
    settings = get_settings()
    setup_logging(settings)

    engine = create_engine_from_settings(settings)
    try:
        await init_db(engine)
        result = await collect_latest(
            HazemonClient(timeout=settings.range_timeout),
            HazemonUrlBuilder(settings),
            create_session_factory(engine),
        )
    finally:
        await engine.dispose()

    print(result.model_dump_json(indent=2, exclude={"latest": {"raw"}}))
    return 0 if result.ok else 1


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
