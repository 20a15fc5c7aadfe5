from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine, AsyncSession

from libs.common.config import get_settings

settings = get_settings()

# SQLite (local/dev) does not take pool sizing arguments
engine_kwargs = {}
if not settings.is_sqlite:
    engine_kwargs = dict(
        pool_pre_ping=True,  # Test connections before using
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )

# Create async engine
engine = create_async_engine(
    settings.DATABASE_URL,
    echo=settings.DB_ECHO,
    **engine_kwargs,
)

# Create async session factory
AsyncSessionLocal = async_sessionmaker(
    bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False
)
