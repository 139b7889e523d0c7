"""Test the readings table: insert-if-absent and the fallback queries."""

import unittest

from sqlalchemy import func, select

from app import crud
from app.models import PmReading
from app.schemas import DailyAverage, MonthlyAverage, Reading

from pm25_fixtures import StoreTestCase, bkk_epoch, reading_at


class InsertTests(StoreTestCase):

    async def _count(self):
        async with self.session_factory() as db:
            return (await db.execute(select(func.count()).select_from(PmReading))).scalar_one()

    async def test_second_insert_is_duplicate(self):
        reading = Reading(node_id=42, timestamp=200, datetime_local="2024-01-01 10:05:00", pm25=40.1,
                          raw={"PM2.5": ["40.1"]})
        async with self.session_factory() as db:
            self.assertTrue(await crud.insert_reading_if_absent(db, reading))
        async with self.session_factory() as db:
            self.assertFalse(await crud.insert_reading_if_absent(db, reading))
        self.assertEqual(await self._count(), 1)

    async def test_same_timestamp_other_node(self):
        async with self.session_factory() as db:
            self.assertTrue(await crud.insert_reading_if_absent(db, Reading(node_id=1, timestamp=200)))
            self.assertTrue(await crud.insert_reading_if_absent(db, Reading(node_id=2, timestamp=200)))
        self.assertEqual(await self._count(), 2)

    async def test_raw_payload_round_trips(self):
        raw = {"PM2.5": ["40.1"], "datetime(UTC+7)": ["2024-01-01 10:05:00"]}
        async with self.session_factory() as db:
            await crud.insert_reading_if_absent(db, Reading(node_id=42, timestamp=200, raw=raw))
            latest = await crud.latest_reading(db)
        self.assertEqual(latest.raw, raw)


class QueryTests(StoreTestCase):

    async def asyncSetUp(self):
        await super().asyncSetUp()
        async with self.session_factory() as db:
            for reading in [
                reading_at("2024-01-20 08:00:00", 60),
                reading_at("2024-02-10 08:00:00", 40),
                reading_at("2024-02-11 08:00:00", 41),
                reading_at("2024-03-14 08:00:00", 10),
                reading_at("2024-03-14 09:00:00", 11),
                reading_at("2024-03-15 10:00:00", 20),
                reading_at("2024-03-15 11:00:00", None),
            ]:
                await crud.insert_reading_if_absent(db, reading)

    async def test_latest_reading(self):
        async with self.session_factory() as db:
            latest = await crud.latest_reading(db)
        self.assertEqual(latest.timestamp, bkk_epoch("2024-03-15 11:00:00"))
        self.assertIsNone(latest.pm25)

    async def test_readings_between(self):
        async with self.session_factory() as db:
            readings = await crud.readings_between(db, bkk_epoch("2024-03-14 09:00:00"),
                                                   bkk_epoch("2024-03-15 10:00:00"))
        self.assertEqual([r.datetime_local for r in readings],
                         ["2024-03-14 09:00:00", "2024-03-15 10:00:00"])

    async def test_daily_averages(self):
        async with self.session_factory() as db:
            daily = await crud.daily_averages(db, bkk_epoch("2024-03-01 00:00:00"), 7)
        self.assertEqual(daily, [
            DailyAverage(date="2024-03-14", avg=11, count=2),
            DailyAverage(date="2024-03-15", avg=20, count=1),
        ])

    async def test_daily_averages_limited_to_latest_days(self):
        async with self.session_factory() as db:
            daily = await crud.daily_averages(db, 0, 1)
        self.assertEqual([d.date for d in daily], ["2024-03-15"])

    async def test_monthly_averages(self):
        async with self.session_factory() as db:
            monthly = await crud.monthly_averages(db, bkk_epoch("2024-02-01 00:00:00"), 12)
        self.assertEqual(monthly, [
            MonthlyAverage(key="2024-02", avg=41, count=2),
            MonthlyAverage(key="2024-03", avg=14, count=3),
        ])

    async def test_empty_store(self):
        async with self.session_factory() as db:
            self.assertEqual(await crud.daily_averages(db, bkk_epoch("2025-01-01 00:00:00"), 7), [])
            self.assertEqual(await crud.readings_between(db, bkk_epoch("2025-01-01 00:00:00")), [])


if __name__ == '__main__':
    unittest.main()
