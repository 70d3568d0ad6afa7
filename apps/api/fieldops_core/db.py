from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession

from fieldops_core.settings import database_url, sql_echo

DATABASE_URL = database_url()

engine = create_async_engine(
    DATABASE_URL,
    future=True,
    echo=sql_echo(),
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    bind=engine,
    class_=AsyncSession,
    expire_on_commit=False,
)

async def get_session() -> AsyncSession:
    async with AsyncSessionLocal() as session:
        yield session
