import logging
from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import JSONResponse

from .config import get_settings
from .db.monitoring import get_pool_snapshot
from .db.session import get_engine
from .errors import TrailError
from .logging_config import configure_logging
from .trail_routes import router as trails_router


configure_logging("api")
logger = logging.getLogger(__name__)
app = FastAPI(title="Trail Generation Backend", version="0.1.0")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

settings_snapshot = get_settings()
logger.info("Backend starting with generation mode: %s", settings_snapshot.generation_mode)
logger.info("Database configured: %s", bool(settings_snapshot.database_url))


@app.exception_handler(TrailError)
async def trail_error_handler(request: Request, exc: TrailError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("Unhandled trail error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.get("/healthz")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/healthz/database")
def database_health() -> Dict[str, Any]:
    try:
        engine = get_engine()
    except RuntimeError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return {
        "status": "ok",
        "dialect": engine.dialect.name,
        "pool": get_pool_snapshot(engine),
    }


app.include_router(trails_router)
