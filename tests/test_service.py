"""Test upstream-first / store-fallback query behaviour."""

import unittest

from app import crud
from app.errors import InvalidRequest, UpstreamUnavailable
from app.hazemon_url import HazemonUrlBuilder, RangeOrder
from app.service import (
    HAZEMON_SOURCE,
    STORE_SOURCE,
    HazemonSource,
    aggr_minutes,
    build_service,
    clamp_int,
    to_epoch_seconds,
)
from app.upstream import UpstreamResponse

from pm25_fixtures import (
    NOW_EPOCH,
    FakeClient,
    StoreTestCase,
    bkk_epoch,
    make_settings,
    payload_at,
    range_bounds,
    reading_at,
)

EMPTY = {"time_aggr": {}}


def unavailable(url):
    return UpstreamUnavailable("Upstream timed out after 8.0s", url=url)


class ParamTests(unittest.TestCase):

    def test_clamp_int(self):
        self.assertEqual(clamp_int(None, 1, 31, 7), 7)
        self.assertEqual(clamp_int("abc", 1, 31, 7), 7)
        self.assertEqual(clamp_int("0", 1, 31, 7), 1)
        self.assertEqual(clamp_int("99", 1, 31, 7), 31)
        self.assertEqual(clamp_int("5.9", 1, 31, 7), 5)
        self.assertEqual(clamp_int("inf", 1, 31, 7), 7)

    def test_to_epoch_seconds(self):
        self.assertIsNone(to_epoch_seconds(""))
        self.assertIsNone(to_epoch_seconds("soon"))
        self.assertEqual(to_epoch_seconds("1710478800"), 1710478800)

    def test_aggr_minutes(self):
        self.assertEqual(aggr_minutes("60"), 60)
        self.assertIsNone(aggr_minutes(None))
        self.assertIsNone(aggr_minutes("0"))
        self.assertIsNone(aggr_minutes("-15"))
        self.assertIsNone(aggr_minutes("hourly"))


class FetchRangeTests(unittest.IsolatedAsyncioTestCase):

    def _source(self, handler, order=RangeOrder.BEFORE_AFTER):
        settings = make_settings(hazemon_range_order=order)
        self.client = FakeClient(handler)
        return HazemonSource(self.client, HazemonUrlBuilder(settings), settings)

    async def test_retries_swapped_order_on_empty_series(self):
        after, before = bkk_epoch("2024-03-15 00:00:00"), bkk_epoch("2024-03-15 23:59:59")

        def handler(url):
            first, second = range_bounds(url)
            # this upstream only understands /<after>/<before>
            if first < second:
                return payload_at(("2024-03-15 08:00:00", 20.0))
            return EMPTY

        readings = await self._source(handler).fetch_range(after, before)
        self.assertEqual(len(readings), 1)
        self.assertEqual(len(self.client.calls), 2)
        self.assertTrue(self.client.calls[0].endswith(f"/{before}/{after}"))
        self.assertTrue(self.client.calls[1].endswith(f"/{after}/{before}"))

    async def test_no_retry_when_first_order_has_data(self):
        source = self._source(lambda url: payload_at(("2024-03-15 08:00:00", 20.0)))
        await source.fetch_range(bkk_epoch("2024-03-15 00:00:00"), NOW_EPOCH)
        self.assertEqual(len(self.client.calls), 1)

    async def test_no_retry_on_http_error(self):
        source = self._source(lambda url: UpstreamResponse(url=url, ok=False, status=500))
        with self.assertRaises(UpstreamUnavailable) as ctx:
            await source.fetch_range(0, NOW_EPOCH)
        self.assertEqual(ctx.exception.status, 500)
        self.assertEqual(len(self.client.calls), 1)

    async def test_no_retry_on_timeout(self):
        source = self._source(unavailable)
        with self.assertRaises(UpstreamUnavailable):
            await source.fetch_range(0, NOW_EPOCH)
        self.assertEqual(len(self.client.calls), 1)

    async def test_points_outside_range_dropped(self):
        source = self._source(lambda url: payload_at(
            ("2024-03-15 07:00:00", 1.0), ("2024-03-15 08:00:00", 2.0), ("2024-03-15 09:00:00", 3.0)))
        readings = await source.fetch_range(bkk_epoch("2024-03-15 08:00:00"), bkk_epoch("2024-03-15 08:30:00"))
        self.assertEqual([r.pm25 for r in readings], [2.0])


class ServiceTests(StoreTestCase):

    def _service(self, handler):
        self.client = FakeClient(handler)
        return build_service(self.client, make_settings(), self.session_factory, clock=lambda: NOW_EPOCH)

    async def _store(self, *readings):
        async with self.session_factory() as db:
            for reading in readings:
                await crud.insert_reading_if_absent(db, reading)

    # ---------- latest ----------
    async def test_latest_from_upstream(self):
        service = self._service(lambda url: payload_at(("2024-03-15 12:00:00", 23.4)))
        result = await service.get_latest()
        self.assertEqual(result.source, HAZEMON_SOURCE)
        self.assertEqual(result.latest.pm25, 23.4)

    async def test_latest_falls_back_to_store(self):
        await self._store(reading_at("2024-03-15 09:00:00", 18.0))
        for handler in (unavailable, lambda url: UpstreamResponse(url=url, ok=False, status=502),
                        lambda url: EMPTY):
            result = await self._service(handler).get_latest()
            self.assertEqual(result.source, STORE_SOURCE)
            self.assertEqual(result.latest.pm25, 18.0)

    async def test_latest_not_found(self):
        result = await self._service(unavailable).get_latest()
        self.assertIsNone(result.latest)

    # ---------- history ----------
    async def test_history_daily_one_request_per_day(self):
        def handler(url):
            before, after = range_bounds(url)
            if after == bkk_epoch("2024-03-14 00:00:00"):
                return payload_at(("2024-03-14 08:00:00", 10.0), ("2024-03-14 09:00:00", 11.0))
            if after == bkk_epoch("2024-03-15 00:00:00") and before == NOW_EPOCH:
                return payload_at(("2024-03-15 08:00:00", 30.0))
            if after < before and before - after > 2 * 86400:
                # monthly lookback request
                return payload_at(("2024-02-10 08:00:00", 40.0), ("2024-03-14 08:00:00", 10.0))
            return EMPTY

        result = await self._service(handler).get_history(days=7, months=2)
        self.assertEqual(result.source, HAZEMON_SOURCE)
        self.assertEqual(len(result.daily), 7)
        self.assertEqual(result.daily[-1].date, "2024-03-15")
        self.assertEqual([(d.date, d.avg, d.count) for d in result.daily[-2:]],
                         [("2024-03-14", 11, 2), ("2024-03-15", 30, 1)])
        self.assertTrue(all(d.avg is None and d.count == 0 for d in result.daily[:5]))

        self.assertEqual(result.monthly_source, HAZEMON_SOURCE)
        self.assertEqual([(m.key, m.avg) for m in result.monthly], [("2024-02", 40), ("2024-03", 10)])

        daily_requests = [url for url in self.client.calls if range_bounds(url)[0] - range_bounds(url)[1] < 86400]
        # 2 days with data answer first time, 5 empty days are retried once with swapped order
        self.assertEqual(len(daily_requests), 2 + 5 * 2)

    async def test_history_monthly_lookback_is_capped(self):
        result = await self._service(lambda url: EMPTY).get_history(days=1, months=24, debug=True)
        monthly_urls = [t["url"] for t in result.debug if abs(range_bounds(t["url"])[0] - range_bounds(t["url"])[1]) > 86400]
        self.assertTrue(monthly_urls)
        first, second = range_bounds(monthly_urls[0])
        self.assertEqual(abs(first - second), 120 * 86400)

    async def test_history_falls_back_to_store(self):
        await self._store(
            reading_at("2024-03-13 08:00:00", 10.0),
            reading_at("2024-03-13 09:00:00", 11.0),
            reading_at("2024-01-13 09:00:00", 70.0),
        )
        result = await self._service(unavailable).get_history(days=3, months=3)
        self.assertEqual(result.source, STORE_SOURCE)
        self.assertEqual([(d.date, d.avg) for d in result.daily],
                         [("2024-03-13", 11), ("2024-03-14", None), ("2024-03-15", None)])
        self.assertEqual(result.monthly_source, STORE_SOURCE)
        self.assertEqual([(m.key, m.avg, m.count) for m in result.monthly],
                         [("2024-01", 70, 1), ("2024-03", 11, 2)])

    async def test_history_clamps_and_pads_with_no_data_anywhere(self):
        result = await self._service(unavailable).get_history(days="500", months="0")
        self.assertEqual((result.days, result.months), (31, 1))
        self.assertEqual(len(result.daily), 31)
        self.assertEqual(result.daily[-1].date, "2024-03-15")
        self.assertEqual(result.monthly, [])
        self.assertIsNone(result.debug)

    # ---------- timeseries ----------
    async def test_timeseries_requires_both_bounds(self):
        service = self._service(lambda url: EMPTY)
        with self.assertRaises(InvalidRequest):
            await service.get_timeseries(from_="100")
        with self.assertRaises(InvalidRequest):
            await service.get_timeseries(to="100")

    async def test_timeseries_defaults(self):
        service = self._service(lambda url: payload_at(
            ("2024-03-15 11:00:00", 10.0), ("2024-03-15 11:05:00", 11.0), ("2024-03-15 11:20:00", 30.0)))
        result = await service.get_timeseries()
        self.assertEqual(result.source, HAZEMON_SOURCE)
        self.assertEqual((result.from_epoch, result.to_epoch), (NOW_EPOCH - 24 * 3600, NOW_EPOCH))
        self.assertEqual((result.step, result.limit), (900, 2000))
        self.assertEqual([(p.timestamp, p.pm25) for p in result.points], [
            (bkk_epoch("2024-03-15 11:00:00"), 11),
            (bkk_epoch("2024-03-15 11:15:00"), 30),
        ])

    async def test_timeseries_swaps_reversed_bounds_and_limits(self):
        samples = [(f"2024-03-15 10:{m:02d}:00", float(m)) for m in range(0, 60, 2)]
        service = self._service(lambda url: payload_at(*samples))
        start, end = bkk_epoch("2024-03-15 10:00:00"), bkk_epoch("2024-03-15 11:00:00")
        result = await service.get_timeseries(from_=str(end), to=str(start), step="0", limit="10")
        self.assertEqual((result.from_epoch, result.to_epoch), (start, end))
        self.assertEqual(len(result.points), 10)
        self.assertEqual(result.points[-1].pm25, 58.0)

    async def test_timeseries_falls_back_to_store(self):
        await self._store(reading_at("2024-03-15 11:00:00", 12.0), reading_at("2024-03-15 11:01:00", None))
        result = await self._service(lambda url: EMPTY).get_timeseries(hours="2", step="0")
        self.assertEqual(result.source, STORE_SOURCE)
        self.assertEqual([p.pm25 for p in result.points], [12.0])
        # empty series was retried once with swapped order before falling back
        self.assertEqual(len(self.client.calls), 2)


if __name__ == '__main__':
    unittest.main()
