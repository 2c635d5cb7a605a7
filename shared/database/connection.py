"""Conexión a la base de datos (SQLAlchemy async, asyncpg en producción)"""
from typing import AsyncGenerator, Dict, Tuple
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from app.core.config import settings
from shared.utils.retry import backoff_delay

logger = logging.getLogger(__name__)

Base = declarative_base()

engine = None
async_session_maker = None

GET_DB_ATTEMPTS = 3


def get_database_url() -> str:
    """DATABASE_URL con el driver async (postgresql:// -> postgresql+asyncpg://)"""
    database_url = settings.DATABASE_URL

    if database_url.startswith("postgresql"):
        # SSL y demás opciones se pasan por connect_args, no por query string
        database_url = database_url.split("?")[0]
        for prefix in ("postgresql+psycopg://", "postgresql://"):
            if database_url.startswith(prefix):
                database_url = "postgresql+asyncpg://" + database_url[len(prefix):]
                break

    return database_url


def _pool_options(database_url: str) -> Dict:
    if not database_url.startswith("postgresql+asyncpg://"):
        return {}
    return {
        "pool_pre_ping": True,
        "pool_recycle": 300,
        "pool_timeout": 30,
        "pool_use_lifo": True,
        "pool_size": settings.DATABASE_POOL_SIZE,
        "max_overflow": settings.DATABASE_MAX_OVERFLOW,
    }


async def init_db():
    """Crear el engine del proceso web"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Engine de base de datos ya inicializado")
        return

    database_url = get_database_url()
    logger.info(f"Conectando a la base de datos: {database_url.split('@')[-1]}")

    engine = create_async_engine(database_url, echo=settings.APP_DEBUG, **_pool_options(database_url))
    async_session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    if settings.DATABASE_CREATE_TABLES:
        await create_tables(engine)

    logger.info("Engine de base de datos inicializado")


async def create_tables(target_engine: AsyncEngine):
    """Crear tablas que falten (desarrollo y tests)"""
    import shared.database.models  # noqa: F401

    async with target_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Tablas verificadas/creadas")


def create_task_session_maker() -> Tuple[AsyncEngine, async_sessionmaker]:
    """
    Engine propio para tareas Celery.

    Cada tarea corre en su propio event loop, por lo que no puede reutilizar
    el pool del proceso web.
    """
    task_engine = create_async_engine(get_database_url(), poolclass=NullPool)
    return task_engine, async_sessionmaker(task_engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency de FastAPI: una sesión por request

    Reintenta errores transitorios de conexión (DNS, socket) al abrir la
    sesión. Los errores del request ya no se reintentan.
    """
    if async_session_maker is None:
        raise RuntimeError("Base de datos no inicializada, revisar el arranque de la aplicación")

    session = await _open_session()
    try:
        yield session
    finally:
        await session.close()


async def _open_session() -> AsyncSession:
    for attempt in range(GET_DB_ATTEMPTS):
        session = async_session_maker()
        try:
            await session.connection()
            return session
        except OSError as e:
            await session.close()
            if attempt == GET_DB_ATTEMPTS - 1:
                logger.error(f"Conexión a la base de datos fallida tras {GET_DB_ATTEMPTS} intentos: {e}")
                raise
            delay = backoff_delay(attempt, initial_delay=0.5)
            logger.warning(
                f"Error de conexión a la base de datos (intento {attempt + 1}/{GET_DB_ATTEMPTS}): "
                f"{type(e).__name__}: {e}. Reintento en {delay:.1f}s"
            )
            await asyncio.sleep(delay)


async def close_db():
    global engine
    if engine is not None:
        await engine.dispose()
        engine = None
        logger.info("Conexiones a la base de datos cerradas")
