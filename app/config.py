# app/config.py
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

from app.hazemon_url import DEFAULT_API_ROOT, RangeOrder

LOG_FORMAT = "%(asctime)s %(levelname)s: %(message)s"


class Settings(BaseModel):
    hazemon_url: Optional[str] = None
    hazemon_api_root: str = DEFAULT_API_ROOT
    hazemon_node_id: Optional[str] = None
    hazemon_aggr_minutes: Optional[int] = None
    hazemon_range_order: RangeOrder = RangeOrder.BEFORE_AFTER

    cron_secret: Optional[str] = None
    database_url: Optional[str] = None

    latest_timeout: float = 4.0
    range_timeout: float = 8.0
    monthly_lookback_days: int = 120
    upstream_concurrency: int = 4
    collect_interval_minutes: int = 0

    log_level: str = "INFO"
    log_file: Optional[str] = None


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        logging.getLogger("config").warning(f"{name}={value!r} ไม่ใช่ตัวเลข → ใช้ค่าเริ่มต้น {default}")
        return default


def _env_float(name: str, default: float) -> float:
    value = _env_str(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        logging.getLogger("config").warning(f"{name}={value!r} ไม่ใช่ตัวเลข → ใช้ค่าเริ่มต้น {default}")
        return default


def get_settings() -> Settings:
    load_dotenv()
    return Settings(
        hazemon_url=_env_str("HAZEMON_URL"),
        hazemon_api_root=_env_str("HAZEMON_API_ROOT") or DEFAULT_API_ROOT,
        hazemon_node_id=_env_str("HAZEMON_NODE_ID"),
        hazemon_aggr_minutes=_env_int("HAZEMON_AGGR_MINUTES", None),
        hazemon_range_order=RangeOrder.parse(_env_str("HAZEMON_RANGE_ORDER")),
        cron_secret=_env_str("CRON_SECRET"),
        database_url=_env_str("DATABASE_URL"),
        latest_timeout=_env_float("LATEST_TIMEOUT_SECONDS", 4.0),
        range_timeout=_env_float("RANGE_TIMEOUT_SECONDS", 8.0),
        monthly_lookback_days=_env_int("MONTHLY_LOOKBACK_DAYS", 120),
        upstream_concurrency=max(1, _env_int("UPSTREAM_CONCURRENCY", 4)),
        collect_interval_minutes=max(0, _env_int("COLLECT_INTERVAL_MINUTES", 0)),
        log_level=(_env_str("LOG_LEVEL") or "INFO").upper(),
        log_file=_env_str("LOG_FILE"),
    )


def setup_logging(settings: Settings) -> None:
    handlers = [logging.StreamHandler()]
    if settings.log_file:
        handlers.append(logging.FileHandler(settings.log_file, encoding="utf-8"))
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
    )
