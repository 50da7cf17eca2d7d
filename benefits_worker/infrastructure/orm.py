from sqlalchemy import MetaData, Table, Column, String, JSON, Uuid
from sqlalchemy.ext.asyncio import AsyncEngine

from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='orm')


metadata = MetaData()

# Воркер читает и обновляет только эти колонки пользователя.
# group_type - JSON-массив записей UserGroupMembership.to_dict()
users = Table(
    'users',
    metadata,
    Column('id', Uuid, primary_key=True),
    Column('snils', String(14), nullable=True),
    Column('email', String(255), nullable=True),
    Column('group_type', JSON, nullable=True)
)


async def create_tables(engine: AsyncEngine) -> None:
    """ Создает недостающие таблицы в базе данных """
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.debug("Database tables created successfully")
