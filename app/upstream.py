# app/upstream.py
"""
เรียก Hazemon ผ่าน requests โดยมี deadline เสมอ

requests เป็น blocking จึงรันใน thread แยก (asyncio.to_thread) และครอบด้วย
asyncio.wait_for ส่วน timeout ของ requests เป็นแค่ต่อการอ่านแต่ละครั้ง
upstream ที่ทยอยส่งทีละนิดจึงค้าง thread ได้ไม่จำกัด เมื่อเลย deadline
จึงต้อง shutdown socket ของ response ให้การอ่านที่ค้างอยู่จบทันที
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from app.errors import UpstreamUnavailable

logger = logging.getLogger("hazemon_upstream")

DEFAULT_TIMEOUT = 8.0
USER_AGENT = "hazemon-pm25/1.0"


@dataclass
class UpstreamResponse:
    url: str
    ok: bool
    status: int
    payload: Any = None


def _shutdown(response: requests.Response) -> None:
    try:
        response.raw.shutdown()
    except (OSError, ValueError, RuntimeError) as e:
        # connection ถูกปิดหรือคืน pool ไปแล้ว
        logger.debug(f"shutdown socket ไม่ได้: {type(e).__name__}: {e}")


class _UpstreamCall:
    """GET หนึ่งครั้งที่ event loop สั่งหยุดได้ระหว่างที่ thread ยังอ่านอยู่"""

    def __init__(self, url: str, timeout: float):
        self.url = url
        self.timeout = timeout
        self.response: Optional[requests.Response] = None
        self.aborted = False

    def perform(self) -> UpstreamResponse:
        if self.aborted:
            # หมดเวลาตั้งแต่ยังรอคิว thread
            raise requests.ConnectionError(f"aborted before start: {self.url}")

        with requests.Session() as session:
            session.headers.update({
                "Accept": "application/json",
                "User-Agent": USER_AGENT,
            })
            r = session.get(self.url, timeout=(self.timeout, self.timeout), stream=True)
            self.response = r
            try:
                if self.aborted:
                    _shutdown(r)
                r.content  # อ่าน body ให้จบภายใน thread นี้
            finally:
                r.close()

        try:
            payload = r.json()
        except ValueError:
            if r.ok:
                raise UpstreamUnavailable("Upstream returned invalid JSON", status=r.status_code, url=self.url)
            payload = None
        return UpstreamResponse(url=self.url, ok=r.ok, status=r.status_code, payload=payload)

    def abort(self) -> None:
        self.aborted = True
        if self.response is not None:
            _shutdown(self.response)


class HazemonClient:
    def __init__(self, timeout: float = DEFAULT_TIMEOUT):
        self.timeout = timeout

    async def fetch(self, url: str, timeout: Optional[float] = None) -> UpstreamResponse:
        """
        GET url → UpstreamResponse (status ไม่ใช่ 2xx ไม่ถือเป็น error ให้ผู้เรียกตัดสินใจเอง)

        raise UpstreamUnavailable เมื่อ timeout / network error / JSON เสีย
        """
        timeout = timeout or self.timeout
        call = _UpstreamCall(url, timeout)
        try:
            return await asyncio.wait_for(asyncio.to_thread(call.perform), timeout=timeout)
        except asyncio.TimeoutError:
            call.abort()
            logger.warning(f"Hazemon timeout {timeout}s: {url}")
            raise UpstreamUnavailable(f"Upstream timed out after {timeout}s", url=url)
        except asyncio.CancelledError:
            call.abort()
            raise
        except requests.RequestException as e:
            logger.warning(f"เรียก Hazemon ล้มเหลว: {type(e).__name__}: {e}")
            raise UpstreamUnavailable(f"Upstream request failed: {type(e).__name__}", url=url) from e
