"""API principal - Punto de entrada de la aplicación"""
from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from slowapi.errors import RateLimitExceeded
from sqlalchemy import text

from app.core.config import settings
from shared.cache.redis_client import close_redis, get_redis, init_redis
from shared.database import connection
from shared.utils.exceptions import PassSalesError
from shared.utils.rate_limiter import limiter, rate_limit_exceeded_handler

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Iniciando aplicación...")
    await connection.init_db()
    await init_redis()
    logger.info("Aplicación iniciada")
    yield
    logger.info("Cerrando aplicación...")
    await connection.close_db()
    await close_redis()


app = FastAPI(
    title="Andiamo Passes API",
    description="Órdenes y reservas de stock para pases de eventos",
    version="1.0.0",
    lifespan=lifespan
)

# CORS primero (antes de rate limiting)
if settings.APP_ENV == "development":
    logger.info("Modo desarrollo: CORS abierto a todos los orígenes")
    allow_origins = ["*"]
    allow_credentials = False  # No se puede usar credentials con allow_origins=["*"]
else:
    # Cookie posToken: se requieren credentials con orígenes explícitos
    allow_origins = [origin.strip() for origin in settings.CORS_ORIGINS.split(",") if origin.strip()]
    allow_credentials = True
    logger.info(f"CORS origins configurados: {allow_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
    max_age=3600,
)

app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)


@app.exception_handler(PassSalesError)
async def pass_sales_error_handler(request: Request, exc: PassSalesError):
    """Errores de dominio -> {error, message, details} con su status HTTP"""
    if exc.status_code >= 500:
        logger.error(f"{exc.error} en {request.url.path}: {exc.message}")
    else:
        logger.info(f"{exc.error} en {request.url.path}: {exc.message}")
    return JSONResponse(status_code=exc.status_code, content=jsonable_encoder(exc.to_dict()))


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    """Campos faltantes o inválidos -> 400 {error, details}"""
    return JSONResponse(
        status_code=400,
        content=jsonable_encoder({
            "error": "validation_error",
            "message": "Datos de la solicitud inválidos",
            "details": {"errors": exc.errors()},
        }),
    )


from services.pass_sales.routes.orders import router as orders_router
from services.admin.routes.admin import router as admin_router
from services.payments.routes.payments import router as payments_router
from services.pos.routes.pos import router as pos_router

app.include_router(orders_router, prefix="/api/v1/orders", tags=["orders"])
app.include_router(admin_router, prefix="/api/v1", tags=["admin"])
app.include_router(payments_router, prefix="/api/v1/payments", tags=["payments"])
app.include_router(pos_router, prefix="/api/v1/outlets", tags=["pos"])


@app.get("/health")
async def health():
    return {"status": "ok", "service": "andiamo-passes-api"}


@app.get("/ready")
async def ready():
    """Readiness: base de datos y Redis deben responder"""
    try:
        async with connection.async_session_maker() as session:
            await session.execute(text("SELECT 1"))
        redis = await get_redis()
        await redis.ping()
    except Exception as e:
        logger.error(f"Ready check falló: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})
    return {"status": "ready", "database": "connected", "redis": "connected"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=settings.APP_DEBUG)
