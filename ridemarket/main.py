# ridemarket/main.py
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .config import settings
from .db import init_db
from .errors import MarketError

from .routers import (
    marketplace as marketplace_router,
    city_to_city as city_router,
    providers as providers_router,
    admin as admin_router,
)

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger("ridemarket")


app = FastAPI(title="Ridemarket")

# --- CORS ---
allowed_origins = (
    [o.strip() for o in settings.ALLOWED_ORIGINS.split(",")]
    if settings.ALLOWED_ORIGINS
    else ["*"]
)
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Ошибки бизнес-правил: стабильный code, чтобы клиент отличал гонку от неверного ввода ---
@app.exception_handler(MarketError)
async def market_error_handler(request: Request, exc: MarketError):
    logger.info("%s %s -> %s: %s", request.method, request.url.path, exc.code, exc.message)
    return JSONResponse(status_code=exc.status_code, content={"ok": False, "error": exc.to_dict()})


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "error": {"code": "internal_error", "message": "Внутренняя ошибка сервера"}},
    )


# --- Подключение роутеров ---
app.include_router(marketplace_router.rides_router)
app.include_router(marketplace_router.parcels_router)
app.include_router(marketplace_router.services_router)
app.include_router(city_router.router)
app.include_router(providers_router.router)
app.include_router(admin_router.router)


@app.get("/api/health")
def health():
    return {"ok": True}


# --- Инициализация БД ---
@app.on_event("startup")
def on_startup():
    init_db()
    logger.info("database initialised")
