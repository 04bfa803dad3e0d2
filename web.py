import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.generation import router as generation_router
from apis.materials import router as materials_router
from apis.questions import router as questions_router
from apis.review import router as review_router
from core.config import cfg, VERSION, API_BASE
from core.db import DB
from core.events import E, log_event
from core.log import get_logger, set_trace_id
from jobs.generation_queue import start_generation_workers

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """自定义 JSON 响应类，确保中文不被转义"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Exam Bank API",
    description="AI 出题与试题审核服务 API 文档",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    swagger_ui_parameters={
        "persistAuthorization": True,
    },
    # 使用自定义 JSONResponse 确保中文不被转义为 \uXXXX
    default_response_class=UnicodeJSONResponse,
)

# CORS配置
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_custom_header(request: Request, call_next):
    tid = set_trace_id(request.headers.get("X-Trace-Id", ""))
    response = await call_next(request)
    response.headers["X-Version"] = VERSION
    response.headers["X-Trace-Id"] = tid
    response.headers["Server"] = cfg.get("app_name", "ExamBank")
    return response


# 创建API路由分组
api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(materials_router)
api_router.include_router(generation_router)
api_router.include_router(review_router)
api_router.include_router(questions_router)
app.include_router(api_router)


@app.on_event("startup")
async def on_startup():
    DB.create_tables()
    log_event(logger, E.SYSTEM_DB_INIT, url=DB.url.split("@")[-1])
    if cfg.get("generation.queue_enabled", True):
        start_generation_workers()
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION)


@app.get("/api/health", tags=["默认"], include_in_schema=False)
async def health():
    return {"status": "ok", "version": VERSION}
