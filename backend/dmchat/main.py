import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

from .auth import auth_required
from .auth import router as auth_router
from .config import CORS_ORIGINS, LOG_LEVEL, SWEEP_INTERVAL_SECONDS, UPLOADS_DIR, UPLOADS_URL_PREFIX
from .db import close as close_db
from .db import create_indexes, get_db
from .errors import ChatError
from .logger import configure_logging
from .messages import router as messages_router
from .models import presence_user
from .realtime import presence_writer
from .realtime import router as ws_router
from .schemas import UserOut
from .sweep import run_sweep

configure_logging(LOG_LEVEL)
log = logging.getLogger(__name__)


async def _sweep_periodically(interval: float):
    while True:
        await asyncio.sleep(interval)
        try:
            await run_in_threadpool(run_sweep, get_db())
        except PyMongoError:
            log.exception("Scheduled reconciliation sweep failed")


@asynccontextmanager
async def lifespan(app: FastAPI):
    create_indexes()
    task = None
    if SWEEP_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_sweep_periodically(SWEEP_INTERVAL_SECONDS))
    yield
    if task is not None:
        task.cancel()
    await run_in_threadpool(presence_writer.flush, 5)
    close_db()


app = FastAPI(title="Direct Chat Backend", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)


@app.exception_handler(ChatError)
async def chat_error_handler(_request: Request, exc: ChatError):
    if exc.status_code >= 500:
        log.error("Server error: %s", exc.message)
        return JSONResponse(status_code=exc.status_code, content={"success": False, "message": "Server error"})
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(RequestValidationError)
async def validation_error_handler(_request: Request, exc: RequestValidationError):
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ()) if p not in ("body", "query", "path")), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Validation failed", "errors": errors})


@app.exception_handler(PyMongoError)
async def store_error_handler(request: Request, exc: PyMongoError):
    log.error("Store failure on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"success": False, "message": "Server error"})


@app.get("/health")
def health():
    return {"ok": True}


@app.get("/users", response_model=list[UserOut])
def list_users(me: dict = Depends(auth_required)):
    db = get_db()
    users = db.users.find({"_id": {"$ne": me["_id"]}}, {"password_hash": 0}).sort("username", 1)
    return [presence_user(u) for u in users]


os.makedirs(UPLOADS_DIR, exist_ok=True)
app.mount(UPLOADS_URL_PREFIX, StaticFiles(directory=UPLOADS_DIR), name="uploads")

app.include_router(auth_router)
app.include_router(messages_router)
app.include_router(ws_router)
