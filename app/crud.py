# app/crud.py
import logging
from typing import List, Optional

from sqlalchemy import func, insert, literal_column, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.aggregation import latest_months, round_half_up
from app.models import PmReading
from app.schemas import DailyAverage, MonthlyAverage, Reading

logger = logging.getLogger("crud")

_UPSERT_DIALECTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _insert_if_absent_stmt(db: AsyncSession, values: dict):
    dialect_insert = _UPSERT_DIALECTS.get(db.get_bind().dialect.name)
    if dialect_insert is None:
        # dialect อื่นพึ่ง unique constraint แล้วจับ IntegrityError แทน
        return insert(PmReading).values(**values), False
    stmt = (
        dialect_insert(PmReading)
        .values(**values)
        .on_conflict_do_nothing(index_elements=["node_id", "timestamp"])
        .returning(PmReading.id)
    )
    return stmt, True


async def insert_reading_if_absent(db: AsyncSession, reading: Reading) -> bool:
    """
    บันทึกเฉพาะเมื่อยังไม่มี (node_id, timestamp) นี้
    คืน True ถ้าเพิ่มแถวใหม่, False ถ้าซ้ำ (ไม่ถือเป็น error)
    """
    stmt, has_returning = _insert_if_absent_stmt(db, reading.model_dump())
    try:
        result = await db.execute(stmt)
        inserted = result.scalar_one_or_none() is not None if has_returning else True
        await db.commit()
    except IntegrityError:
        # อีก process บันทึก timestamp เดียวกันไปก่อน
        await db.rollback()
        inserted = False

    if not inserted:
        logger.info(f"ข้อมูลซ้ำ node={reading.node_id} ts={reading.timestamp} → ข้าม")
    return inserted


async def latest_reading(db: AsyncSession) -> Optional[Reading]:
    result = await db.execute(select(PmReading).order_by(PmReading.timestamp.desc()).limit(1))
    row = result.scalars().first()
    return Reading.model_validate(row) if row is not None else None


async def readings_between(db: AsyncSession, from_epoch: int, to_epoch: Optional[int] = None) -> List[Reading]:
    stmt = select(PmReading).where(PmReading.timestamp >= from_epoch)
    if to_epoch is not None:
        stmt = stmt.where(PmReading.timestamp <= to_epoch)
    result = await db.execute(stmt.order_by(PmReading.timestamp.asc()))
    return [Reading.model_validate(row) for row in result.scalars().all()]


def _grouped_pm25(prefix_length: int, since_epoch: int, limit: int):
    # ใช้ literal_column ให้ SQL ใน SELECT / GROUP BY เหมือนกันทุกตัวอักษร (PostgreSQL เข้มเรื่องนี้)
    key = func.substr(PmReading.datetime_local, literal_column("1"), literal_column(str(prefix_length)))
    return (
        select(
            key.label("key"),
            func.avg(PmReading.pm25).label("avg"),
            func.count(PmReading.pm25).label("readings"),
        )
        .where(
            PmReading.timestamp >= since_epoch,
            PmReading.pm25.isnot(None),
            PmReading.datetime_local.isnot(None),
        )
        .group_by(key)
        .order_by(key.desc())
        .limit(limit)
    )


async def daily_averages(db: AsyncSession, since_epoch: int, days: int) -> List[DailyAverage]:
    rows = (await db.execute(_grouped_pm25(10, since_epoch, days))).all()
    return [
        DailyAverage(date=row.key, avg=round_half_up(float(row.avg)), count=int(row.readings))
        for row in reversed(rows)
    ]


async def monthly_averages(db: AsyncSession, since_epoch: int, months: int) -> List[MonthlyAverage]:
    rows = (await db.execute(_grouped_pm25(7, since_epoch, months))).all()
    items = [
        MonthlyAverage(key=row.key, avg=round_half_up(float(row.avg)), count=int(row.readings))
        for row in rows
    ]
    return latest_months(items, months)
