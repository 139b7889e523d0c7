# app/schemas.py
from typing import Any, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class Reading(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    node_id: int
    node_name: Optional[str] = None
    timestamp: int                       # epoch seconds
    datetime_local: Optional[str] = None  # "YYYY-MM-DD HH:mm:ss" UTC+7 ตามที่ Hazemon ส่งมา
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    pm1: Optional[float] = None
    raw: Optional[Any] = None


class DailyAverage(BaseModel):
    date: str                  # YYYY-MM-DD (Bangkok)
    avg: Optional[int] = None
    count: int = 0


class MonthlyAverage(BaseModel):
    key: str                   # YYYY-MM (Bangkok)
    avg: int
    count: int


class TimeSeriesPoint(BaseModel):
    timestamp: int
    datetime_local: Optional[str] = None
    pm25: Union[int, float]
    count: Optional[int] = None  # มีเฉพาะเมื่อรวมเป็น bucket


# ---------- Query results ----------
class LatestResult(BaseModel):
    source: str
    latest: Optional[Reading] = None


class HistoryResult(BaseModel):
    source: str
    monthly_source: str
    days: int
    months: int
    daily: List[DailyAverage]
    monthly: List[MonthlyAverage]
    debug: Optional[List[dict]] = None


class TimeSeriesResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    source: str
    from_epoch: int = Field(serialization_alias="from")
    to_epoch: int = Field(serialization_alias="to")
    step: int
    limit: int
    points: List[TimeSeriesPoint]
