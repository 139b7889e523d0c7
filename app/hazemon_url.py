# app/hazemon_url.py
"""
สร้าง URL สำหรับเรียก Hazemon API

รูปแบบ: <root>/<node>[/<before>/<after>][/<aggr_minutes>]
ลำดับ before/after ของ Hazemon ไม่แน่นอน จึงต้องเลือกได้ทั้งสองแบบ
"""
from enum import Enum
from typing import Optional, Union
from urllib.parse import quote

DEFAULT_API_ROOT = "https://hazemon.in.th/api/time_aggr/hazemon"
DEFAULT_LEGACY_URL = (
    "https://hazemon.in.th/api/time_aggr/hazemon/"
    "TH-NRT-%E0%B8%AA.%E0%B8%84%E0%B8%A7%E0%B8%9A%E0%B8%84%E0%B8%B8%E0%B8%A1"
    "%E0%B9%84%E0%B8%9F%E0%B8%9B%E0%B9%88%E0%B8%B2%E0%B8%9E%E0%B8%A3%E0%B8%B8"
    "%E0%B8%84%E0%B8%A7%E0%B8%99%E0%B9%80%E0%B8%84%E0%B8%A3%E0%B9%87%E0%B8%87-5068"
)

# same set of characters encodeURIComponent leaves alone
_NODE_SAFE_CHARS = "-_.!~*'()"


class RangeOrder(str, Enum):
    BEFORE_AFTER = "before_after"
    AFTER_BEFORE = "after_before"

    @classmethod
    def parse(cls, value, default: Optional["RangeOrder"] = None) -> "RangeOrder":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return default if default is not None else cls.BEFORE_AFTER

    def swapped(self) -> "RangeOrder":
        if self is RangeOrder.BEFORE_AFTER:
            return RangeOrder.AFTER_BEFORE
        return RangeOrder.BEFORE_AFTER


def strip_trailing_slashes(url) -> str:
    return str(url or "").rstrip("/")


def _to_int(value) -> Optional[int]:
    if value is None or value == "" or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def resolve_base_url(
    node=None,
    override_url: Optional[str] = None,
    api_root: str = DEFAULT_API_ROOT,
    default_node: Optional[str] = None,
    legacy_url: str = DEFAULT_LEGACY_URL,
) -> str:
    """
    override URL (ใช้ตามที่ให้มา) > root + node id > legacy URL

    node id อาจเป็นภาษาไทย ต้อง percent-encode ก่อนต่อท้าย path
    """
    if override_url:
        return strip_trailing_slashes(override_url)

    node_id = node or default_node
    if not node_id:
        return strip_trailing_slashes(legacy_url)

    return f"{strip_trailing_slashes(api_root)}/{quote(str(node_id), safe=_NODE_SAFE_CHARS)}"


def build_range_url(
    base_url: str,
    before_epoch=None,
    after_epoch=None,
    aggr_minutes=None,
    order: Union[RangeOrder, str] = RangeOrder.BEFORE_AFTER,
) -> str:
    """
    ต่อช่วงเวลาเข้ากับ base URL

    ถ้าขาดขอบเขตใดขอบเขตหนึ่ง คืน base URL เปล่า ๆ (ค่าล่าสุด)
    """
    base = strip_trailing_slashes(base_url)
    before = _to_int(before_epoch)
    after = _to_int(after_epoch)
    if before is None or after is None:
        return base

    if RangeOrder.parse(order) is RangeOrder.AFTER_BEFORE:
        path = f"{base}/{after}/{before}"
    else:
        path = f"{base}/{before}/{after}"

    aggr = _to_int(aggr_minutes)
    return f"{path}/{aggr}" if aggr is not None else path


class HazemonUrlBuilder:
    def __init__(self, settings):
        self.settings = settings

    def base_url(self, node=None) -> str:
        return resolve_base_url(
            node,
            override_url=self.settings.hazemon_url,
            api_root=self.settings.hazemon_api_root,
            default_node=self.settings.hazemon_node_id,
        )

    def range_url(self, before_epoch, after_epoch, node=None, aggr_minutes=None, order=None) -> str:
        if aggr_minutes is None:
            aggr_minutes = self.settings.hazemon_aggr_minutes
        if order is None:
            order = self.settings.hazemon_range_order
        return build_range_url(
            self.base_url(node),
            before_epoch=before_epoch,
            after_epoch=after_epoch,
            aggr_minutes=aggr_minutes,
            order=order,
        )
