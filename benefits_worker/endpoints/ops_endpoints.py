from datetime import datetime

from fastapi import APIRouter, HTTPException, Depends, status, Response, Query
from prometheus_client import CONTENT_TYPE_LATEST

from benefits_worker.application.interfaces import AbstractMetricsCollector, AbstractTaskBroker
from benefits_worker.container import get_metrics_collector, get_task_broker
from benefits_worker.logconfig import opt_logger as log
from benefits_worker.models.ops_models import (
    HealthResponse, QueueStatusResponse, QueueStatsModel, DeadTasksResponse
)

logger = log.setup_logger('ops_endpoints')


router = APIRouter(prefix="/api/v0")


@router.get("/health", response_model=HealthResponse)
async def health_check(
        metrics: AbstractMetricsCollector = Depends(get_metrics_collector)
) -> HealthResponse:
    """
    Проверка здоровья сервиса
    """
    if metrics is None:
        return HealthResponse(
            status="unknown",
            error_rate=0.0,
            queue_size=0,
            timestamp=datetime.now().timestamp()
        )
    return HealthResponse(**await metrics.get_health_status())


@router.get("/metrics")
async def get_metrics(
    metrics_collector: AbstractMetricsCollector = Depends(get_metrics_collector)
) -> Response:
    """
    Получить метрики сервиса в формате Prometheus
    """
    metrics_data = await metrics_collector.get_metrics()
    content = metrics_data.get('prometheus_metrics', '')
    if not content:
        content = '# No metrics available\n'
    return Response(
        content=content,
        media_type=CONTENT_TYPE_LATEST
    )


@router.get("/queue/status", response_model=QueueStatusResponse)
async def get_queue_status(
        broker: AbstractTaskBroker = Depends(get_task_broker)
) -> QueueStatusResponse:
    """ Размеры очередей по состояниям задач """
    try:
        stats = await broker.stats()
    except Exception as e:
        logger.error(f"Failed to get queue stats: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to get queue stats: {str(e)}"
        )
    return QueueStatusResponse(queues=[QueueStatsModel(**s.to_dict()) for s in stats])


@router.get("/queue/{queue}/dead", response_model=DeadTasksResponse)
async def get_dead_tasks(
        queue: str,
        limit: int = Query(100, ge=1, le=1000, description="Сколько последних записей вернуть"),
        broker: AbstractTaskBroker = Depends(get_task_broker)
) -> DeadTasksResponse:
    """ Последние задачи, ушедшие в мертвые """
    try:
        tasks = await broker.list_dead(queue, limit)
    except Exception as e:
        logger.error(f"Failed to list dead tasks of {queue}: {e}")
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Failed to list dead tasks: {str(e)}"
        )
    return DeadTasksResponse(queue=queue, tasks=tasks)
