import logging
import secrets
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from app.config import Settings, get_settings, setup_logging
from app.db import create_engine_from_settings, create_session_factory, init_db
from app.errors import InvalidRequest, Unauthorized, UpstreamUnavailable
from app.hazemon_url import HazemonUrlBuilder, RangeOrder, build_range_url
from app.service import build_service, to_epoch_seconds
from app.upstream import HazemonClient
from tasks.collect import CollectOutcome, collect_latest

logger = logging.getLogger("pm25_api")

UPSTREAM_PROXY_TIMEOUT = 8.0


def _error(status_code: int, error: str, **extra) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": error, **extra})


def _truthy(value: Optional[str]) -> bool:
    return str(value or "").strip().lower() in ("1", "true", "yes", "on")


# ========================================
#               ENDPOINTS
# ========================================
router = APIRouter(prefix="/api/pm25", tags=["pm25"])


@router.get("/latest")
async def latest(request: Request, node: Optional[str] = None):
    result = await request.app.state.service.get_latest(node=node)
    if result.latest is None:
        return _error(404, "No data")
    return {"success": True, "source": result.source, "latest": result.latest.model_dump()}


@router.get("/history")
async def history(request: Request, days: Optional[str] = None, months: Optional[str] = None,
                  node: Optional[str] = None, aggr: Optional[str] = None, debug: Optional[str] = None):
    result = await request.app.state.service.get_history(
        days=days, months=months, node=node, aggr=aggr, debug=_truthy(debug))
    payload = result.model_dump()
    if payload["debug"] is None:
        payload.pop("debug")
    return {"success": True, **payload}


@router.get("/timeseries")
async def timeseries(request: Request, to: Optional[str] = None, hours: Optional[str] = None,
                     step: Optional[str] = None, limit: Optional[str] = None,
                     node: Optional[str] = None, aggr: Optional[str] = None):
    # "from" เป็น keyword ของ Python อ่านจาก query string ตรง ๆ
    result = await request.app.state.service.get_timeseries(
        from_=request.query_params.get("from"), to=to, hours=hours, step=step,
        limit=limit, node=node, aggr=aggr)
    return {"success": True, **result.model_dump(by_alias=True)}


def _check_cron_secret(request: Request, secret: Optional[str]):
    expected = request.app.state.settings.cron_secret
    provided = request.headers.get("x-cron-secret") or secret
    if not expected or not provided or not secrets.compare_digest(provided, expected):
        raise Unauthorized("Unauthorized", hint="Provide ?secret=<CRON_SECRET> or header x-cron-secret")


@router.api_route("/collect", methods=["GET", "POST"])
async def collect(request: Request, secret: Optional[str] = None, node: Optional[str] = None):
    _check_cron_secret(request, secret)
    state = request.app.state
    result = await collect_latest(state.client, state.builder, state.session_factory, node=node)

    if result.outcome is CollectOutcome.UPSTREAM_ERROR:
        return _error(502, "Upstream error", status=result.upstream_status)
    if result.outcome is CollectOutcome.NO_DATA:
        return _error(404, "No data")
    if result.outcome is CollectOutcome.DUPLICATE:
        return {"success": True, "saved": False, "duplicate": True, "latest": result.latest.model_dump()}
    return {"success": True, "saved": True, "latest": result.latest.model_dump()}


@router.get("/upstream")
async def upstream(request: Request, to: Optional[str] = None, node: Optional[str] = None,
                   aggr: Optional[str] = None, order: Optional[str] = None):
    """ส่งต่อ JSON ดิบจาก Hazemon พร้อม URL ที่ใช้ (สำหรับ debug)"""
    from_q = to_epoch_seconds(request.query_params.get("from"))
    to_q = to_epoch_seconds(to)
    if (from_q is None) != (to_q is None):
        raise InvalidRequest("Provide both from and to (epoch seconds) or neither")

    state = request.app.state
    base = state.builder.base_url(node)
    if from_q is None:
        upstream_url = base
    else:
        upstream_url = build_range_url(
            base,
            before_epoch=max(from_q, to_q),
            after_epoch=min(from_q, to_q),
            aggr_minutes=aggr if aggr is not None else state.settings.hazemon_aggr_minutes,
            order=RangeOrder.parse(order, state.settings.hazemon_range_order),
        )

    try:
        response = await state.client.fetch(upstream_url, timeout=UPSTREAM_PROXY_TIMEOUT)
    except UpstreamUnavailable as e:
        return _error(502, "Upstream unavailable", detail=str(e), upstream_url=upstream_url)
    if not response.ok:
        return _error(502, "Upstream error", status=response.status, upstream_url=upstream_url)
    return {"success": True, "upstream_url": upstream_url, "json": response.payload}


# ========================================
#               FASTAPI APP
# ========================================
def create_app(settings: Optional[Settings] = None, client=None) -> FastAPI:
    settings = settings or get_settings()

    app = FastAPI(
        title="Hazemon PM2.5 API",
        description="ค่าฝุ่น PM2.5 ล่าสุด ค่าเฉลี่ยรายวัน/รายเดือน และ time series จาก Hazemon (fallback ไป DB)",
        version="1.0",
    )
    app.state.settings = settings
    app.state.client = client or HazemonClient(timeout=settings.range_timeout)
    app.state.builder = HazemonUrlBuilder(settings)
    app.include_router(router)

    @app.exception_handler(InvalidRequest)
    async def invalid_request_handler(request: Request, exc: InvalidRequest):
        extra = {"hint": exc.hint} if exc.hint else {}
        return _error(exc.status_code, exc.message, **extra)

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        error = "Method not allowed" if exc.status_code == 405 else str(exc.detail)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "error": error},
                            headers=getattr(exc, "headers", None))

    @app.exception_handler(Exception)
    async def internal_error_handler(request: Request, exc: Exception):
        logger.exception(f"{request.method} {request.url.path} ล้มเหลว")
        return _error(500, "Internal error")

    @app.on_event("startup")
    async def startup_event():
        engine = create_engine_from_settings(settings)
        await init_db(engine)
        app.state.engine = engine
        app.state.session_factory = create_session_factory(engine)
        app.state.service = build_service(app.state.client, settings, app.state.session_factory)

        if settings.collect_interval_minutes > 0:
            scheduler = AsyncIOScheduler(timezone="Asia/Bangkok")
            scheduler.add_job(run_collect, "interval", minutes=settings.collect_interval_minutes,
                              id="pm25_collect", replace_existing=True)
            scheduler.start()
            app.state.scheduler = scheduler
            logger.info(f"Scheduler เริ่มแล้ว → collect ทุก {settings.collect_interval_minutes} นาที")

    @app.on_event("shutdown")
    async def shutdown_event():
        scheduler = getattr(app.state, "scheduler", None)
        if scheduler is not None:
            scheduler.shutdown(wait=False)
        engine = getattr(app.state, "engine", None)
        if engine is not None:
            await engine.dispose()

    async def run_collect():
        try:
            await collect_latest(app.state.client, app.state.builder, app.state.session_factory)
        except Exception:
            logger.exception("collect ตามรอบล้มเหลว")

    @app.get("/")
    async def root():
        return {
            "message": "Hazemon PM2.5 API พร้อมใช้งาน",
            "endpoints": {
                "/api/pm25/latest": "ข้อมูลล่าสุด",
                "/api/pm25/history": "ค่าเฉลี่ยรายวัน/รายเดือน",
                "/api/pm25/timeseries": "กราฟตามช่วงเวลา",
                "/api/pm25/collect": "บันทึกค่าล่าสุดลง DB (ต้องมี secret)",
                "/api/pm25/upstream": "JSON ดิบจาก Hazemon",
            },
        }

    return app


# ========================================
#               LOGGING
# ========================================
_settings = get_settings()
setup_logging(_settings)

app = create_app(_settings)
