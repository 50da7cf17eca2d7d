import asyncio
from contextlib import asynccontextmanager
from typing import Optional, Callable

import uvicorn
from fastapi import FastAPI
from starlette.middleware.cors import CORSMiddleware

from benefits_worker.application.interfaces import AbstractTaskBroker, AbstractQueueClient, AbstractMetricsCollector
from benefits_worker.application.queue_client import set_client
from benefits_worker.config import config
from benefits_worker.container import ServiceContainer, get_container, cleanup_container
from benefits_worker.endpoints.ops_endpoints import router as ops_router
from benefits_worker.handlers.send_email_handler import SendEmailHandler
from benefits_worker.handlers.social_group_handler import CheckSocialGroupHandler
from benefits_worker.infrastructure.dispatcher import Dispatcher
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='worker service')


class WorkerService:
    """ Основной класс Worker Service """

    def __init__(self, container: ServiceContainer = None):
        self.container = container
        self.dispatcher: Optional[Dispatcher] = None
        self._restore_client: Optional[Callable[[], None]] = None

    async def initialize(self):
        """ Инициализация сервиса """
        logger.debug("Initializing Worker Service ...")

        # Получить контейнер зависимостей
        if self.container is None:
            self.container = await get_container()

        broker = await self.container.get(AbstractTaskBroker)
        metrics_collector = await self.container.get(AbstractMetricsCollector)

        # Создать обработчики
        handlers = [
            await self.container.get(SendEmailHandler),
            await self.container.get(CheckSocialGroupHandler),
        ]

        self.dispatcher = Dispatcher(broker, handlers, metrics_collector)

        # Клиент очереди по умолчанию для продюсеров этого процесса
        self._restore_client = set_client(await self.container.get(AbstractQueueClient))

        logger.debug("Worker Service initialized successfully")

    async def start(self):
        """ Запустить Worker Service и ждать его остановки """
        logger.debug('Starting Worker service ...')

        try:
            await self.initialize()
            await self.dispatcher.run()

        except asyncio.CancelledError:
            logger.info("Worker Service cancelled")
            raise
        except Exception as e:
            logger.error(f"Error running Worker Service: {e}")
            raise

        finally:
            await self.cleanup()

    async def cleanup(self):
        """ Очистка ресурсов """
        logger.debug("Cleaning up Worker Service ...")

        try:
            if self.dispatcher:
                await self.dispatcher.stop()

            if self._restore_client:
                self._restore_client()
                self._restore_client = None

            await cleanup_container()

            logger.debug("Worker Service cleanup completed")

        except Exception as e:
            logger.error(f"Error during cleanup: {e}")


@asynccontextmanager
async def lifespan(app: FastAPI): # noqa
    """Главная функция"""
    logger.info("Starting Worker Service")
    logger.info(
        f"Configuration: Debug={config.debug},"
        f" Log Level={config.log_level},"
        f" Queue backend={config.queue.backend},"
        f" Concurrency={config.queue.concurrency}"
    )
    # Создать и запустить сервисы
    worker_service = WorkerService()
    task = asyncio.create_task(worker_service.start(), name='worker_service')
    logger.info("Background worker started")
    yield

    # Останавливаем воркер при завершении
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        logger.info("Background worker stopped")


app = FastAPI(title="Benefits Task Worker", lifespan=lifespan)
app.add_middleware(
    CORSMiddleware, # noqa
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(ops_router)

if __name__ == "__main__":
    uvicorn.run(
        'benefits_worker.main:app',
        host='0.0.0.0',
        port=config.port
    )
