import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.staticfiles import StaticFiles

from zemi import auth, bookings, config, messages, notifications, profiles, ratings, trips, verifications
from zemi.database import ensure_indexes, get_db

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    os.makedirs(config.STORAGE_DIR, exist_ok=True)
    await ensure_indexes()
    yield


app = FastAPI(title="ZeMi Ride Sharing API", lifespan=lifespan)

# CORS
origins = [
    config.FRONTEND_URL,
    "*",
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(status_code=500, content={"detail": "Une erreur est survenue"})


for module in (auth, profiles, trips, bookings, messages, ratings, verifications, notifications):
    app.include_router(module.router)

app.mount("/storage", StaticFiles(directory=config.STORAGE_DIR, check_dir=False), name="storage")


@app.get("/")
async def read_root():
    return {"message": "ZeMi backend is running"}


@app.get("/test")
async def test_connection():
    db = await get_db()
    # A simple ping to ensure we can talk to the database
    await db.command("ping")
    return {"ok": True, "message": "Database connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=config.PORT)
