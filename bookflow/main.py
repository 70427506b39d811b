import redis
from fastapi import FastAPI
from fastapi.responses import JSONResponse
from sqlalchemy import text

from .api import install_exception_handlers, router
from .config import settings
from .db import SessionLocal, init_schema
from .observability import configure_logging, request_tracing_middleware, security_headers_middleware


init_schema()
configure_logging()

app = FastAPI(
    title="Bookflow",
    description="Multi-tenant appointment booking API",
    version="0.1.0",
)
install_exception_handlers(app)

# Registered first so it wraps closest to the routes; tracing stays outermost.
app.middleware("http")(security_headers_middleware)
app.middleware("http")(request_tracing_middleware)


@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/health/ready")
def ready():
    checks = {
        "db": "ok",
        "redis": "skipped",
        "event_bus": "skipped",
    }

    db_ok = True
    redis_ok = True

    try:
        with SessionLocal() as db:
            db.execute(text("SELECT 1"))
    except Exception:
        checks["db"] = "error"
        db_ok = False

    redis_url = (settings.REDIS_URL or "").strip()
    if redis_url:
        try:
            client = redis.from_url(redis_url, decode_responses=True)
            client.ping()
            checks["redis"] = "ok"
        except Exception:
            checks["redis"] = "error"
            redis_ok = False

    if bool(settings.EVENT_BUS_ENABLED):
        checks["event_bus"] = "ok" if redis_ok else "error"

    if db_ok and (not bool(settings.EVENT_BUS_ENABLED) or redis_ok):
        return {"status": "ready", "checks": checks}
    return JSONResponse(status_code=503, content={"status": "not_ready", "checks": checks})


app.include_router(router)
