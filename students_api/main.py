# students_api/main.py
import asyncio, logging, time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import APIRouter, Depends, FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from .config import Settings
from .db import StudentStore, create_db_engine
from .instrumentation import QueryInstrumentation, RequestInstrumentation
from .logging_utils import dump_logs, log_event, new_req_id
from .metrics import ServiceMetrics
from .registry import MetricRegistry
from .runtime import ProcessRuntimeSource
from .sampler import PeriodicSampler, connection_probe
from .schemas import (
    HealthResponse,
    MessageResponse,
    StudentIn,
    StudentListResponse,
    StudentResponse,
)

SERVICE = "students-api"
VERSION = "1.0.0"

router = APIRouter()


def get_store(request: Request) -> StudentStore:
    return request.app.state.store


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


def parse_student_id(raw: str) -> Optional[int]:
    # non-numeric ids are simply not found
    try:
        return int(raw)
    except ValueError:
        return None


@router.get("/")
def root():
    return {
        "service": SERVICE,
        "version": VERSION,
        "status": "running",
        "endpoints": {
            "health": "/health",
            "metrics": "/api/metrics",
            "students": "/api/students",
            "mock_error": "/api/mock-error",
            "simulate_error": "/api/simulate-error",
            "simulate_slow": "/api/simulate-slow",
        },
    }


@router.get("/health", response_model=HealthResponse)
def health():
    ts = datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")
    return {"status": "healthy", "timestamp": ts}


@router.get("/metrics")
@router.get("/api/metrics")
def scrape_metrics(request: Request):
    registry: MetricRegistry = request.app.state.registry
    return Response(registry.render(), media_type=registry.content_type)


@router.get("/api/students", response_model=StudentListResponse)
def list_students(store: StudentStore = Depends(get_store)):
    return {"success": True, "data": store.list_students()}


@router.get("/api/students/{student_id}", response_model=StudentResponse)
def get_student(student_id: str, store: StudentStore = Depends(get_store)):
    sid = parse_student_id(student_id)
    row = None if sid is None else store.get_student(sid)
    if row is None:
        return error_response(404, "Student not found")
    return {"success": True, "data": row}


@router.post("/api/students", response_model=StudentResponse, status_code=201)
def create_student(body: StudentIn, store: StudentStore = Depends(get_store)):
    if not body.name or not body.email:
        return error_response(400, "Name and email are required")
    try:
        data = store.create_student(body.name, body.email, body.major)
    except IntegrityError:
        return error_response(409, "Email already exists")
    return {"success": True, "data": data}


@router.put("/api/students/{student_id}", response_model=StudentResponse)
def update_student(student_id: str, body: StudentIn, store: StudentStore = Depends(get_store)):
    if not body.name or not body.email:
        return error_response(400, "Name and email are required")
    sid = parse_student_id(student_id)
    if sid is None:
        return error_response(404, "Student not found")
    try:
        found = store.update_student(sid, body.name, body.email, body.major)
    except IntegrityError:
        return error_response(409, "Email already exists")
    if not found:
        return error_response(404, "Student not found")
    return {"success": True, "data": {"id": sid, "name": body.name, "email": body.email, "major": body.major}}


@router.delete("/api/students/{student_id}", response_model=MessageResponse, response_model_exclude_none=True)
def delete_student(student_id: str, store: StudentStore = Depends(get_store)):
    sid = parse_student_id(student_id)
    if sid is None or not store.delete_student(sid):
        return error_response(404, "Student not found")
    return {"success": True, "message": "Student deleted successfully"}


@router.get("/api/simulate-error")
@router.get("/api/mock-error")
def simulate_error():
    return error_response(500, "Simulated error for testing")


@router.get("/api/simulate-slow", response_model=MessageResponse, response_model_exclude_none=True)
async def simulate_slow(request: Request):
    await asyncio.sleep(request.app.state.settings.SIMULATE_SLOW_SECONDS)
    return {"success": True, "message": "This was a slow response"}


@router.get("/logs")
def get_logs(limit: int = 100, kind: Optional[str] = None):
    return dump_logs(limit=limit, kind=kind)


async def access_log_middleware(request: Request, call_next):
    rid = new_req_id()
    request.state.request_id = rid
    start = time.time()
    try:
        log_event("request", request_id=rid, method=request.method, path=str(request.url.path))
        resp = await call_next(request)
        dur = time.time() - start
        log_event("response", request_id=rid, code=resp.status_code, duration_ms=int(dur * 1000), path=str(request.url.path))
        resp.headers["X-Request-ID"] = rid
        return resp
    except Exception as e:
        dur = time.time() - start
        log_event("error", level=logging.ERROR, request_id=rid, error=str(e), duration_ms=int(dur * 1000), path=str(request.url.path))
        raise


def create_app(settings: Optional[Settings] = None, engine: Optional[Engine] = None,
               registry: Optional[MetricRegistry] = None) -> FastAPI:
    settings = settings or Settings.from_env()
    registry = registry if registry is not None else MetricRegistry()
    metrics = ServiceMetrics(registry)
    if settings.RUNTIME_METRICS:
        registry.add_runtime_source(ProcessRuntimeSource())

    owns_engine = engine is None
    if engine is None:
        engine = create_db_engine(settings.DATABASE_URL, pool_size=settings.DB_POOL_SIZE)
    store = StudentStore(engine, QueryInstrumentation(metrics))
    sampler = PeriodicSampler(
        connection_probe(engine),
        metrics.db_active_connections,
        interval=settings.SAMPLER_INTERVAL_SECONDS,
        skipped=metrics.db_sampler_skipped_ticks,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        try:
            await run_in_threadpool(store.init_schema)
        except Exception as e:
            log_event("db_init_failed", level=logging.ERROR, error=repr(e))
            raise
        log_event("db_ready", url=engine.url.render_as_string(hide_password=True))
        sampler.start()
        log_event("startup", service=SERVICE, version=VERSION, port=settings.PORT)
        try:
            yield
        finally:
            await sampler.stop()
            if owns_engine:
                engine.dispose()
            log_event("shutdown", service=SERVICE)

    app = FastAPI(title="Students API", version=VERSION, lifespan=lifespan)
    app.state.settings = settings
    app.state.registry = registry
    app.state.metrics = metrics
    app.state.store = store
    app.state.sampler = sampler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.middleware("http")(access_log_middleware)
    RequestInstrumentation(metrics).install(app)

    @app.exception_handler(SQLAlchemyError)
    async def db_error_handler(request: Request, exc: SQLAlchemyError):
        log_event("query_failed", level=logging.ERROR, path=request.url.path, error=repr(exc))
        return error_response(500, "Internal server error")

    app.include_router(router)
    return app


def run():
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(message)s")
    settings = Settings.from_env()
    uvicorn.run(create_app(settings), host="0.0.0.0", port=settings.PORT)
