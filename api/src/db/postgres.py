from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


engine: AsyncEngine | None = None
session_maker: async_sessionmaker[AsyncSession] | None = None


def init(url: str):
    global engine, session_maker

    if url.startswith('postgresql'):
        engine = create_async_engine(url, pool_size=20, max_overflow=30)
    else:
        engine = create_async_engine(url)
    session_maker = async_sessionmaker(engine, expire_on_commit=False)


async def close():
    global engine, session_maker

    if engine is not None:
        await engine.dispose()
    engine = None
    session_maker = None


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    assert session_maker is not None, 'database is not initialized'
    return session_maker
