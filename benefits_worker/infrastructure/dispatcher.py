"""
Диспетчер задач: пул воркеров, читающих очереди брокера.

- Каждый воркер на каждой итерации упорядочивает очереди взвешенной
  случайной выборкой и берет первую доступную задачу
- Задача маршрутизируется по TaskKind к своему обработчику
- Ошибка обработчика: повтор с backoff, пока не исчерпан max_retry,
  либо сразу в мертвые, если ошибка непригодна к повтору
"""

import asyncio
import random
import time
from typing import Awaitable, Dict, Iterable, List, Optional

from benefits_worker.application.interfaces import (
    AbstractTaskBroker, AbstractTaskHandler, AbstractMetricsCollector
)
from benefits_worker.config import config
from benefits_worker.domain.exceptions import TaskInterrupted, TaskNotRoutedError, is_retryable
from benefits_worker.domain.tasks import Task, TaskKind
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='dispatcher')


def retry_delay(
        attempt: int,
        base_delay: float = None,
        max_delay: float = None,
        jitter: float = 0.1
) -> float:
    """ Экспоненциальная задержка перед повтором номер attempt (с 1) """
    base_delay = config.queue.retry_base_delay if base_delay is None else base_delay
    max_delay = config.queue.retry_max_delay if max_delay is None else max_delay
    delay = min(max_delay, base_delay * (2 ** max(0, attempt - 1)))
    return delay + random.uniform(0, delay * jitter)


def weighted_order(weights: Dict[str, int], rng: random.Random = random) -> List[str]:
    """
    Порядок опроса очередей: случайная выборка без возвращения,
    вероятность оказаться раньше пропорциональна весу.
    """
    remaining = dict(weights)
    order = []
    while remaining:
        names = list(remaining)
        chosen = rng.choices(names, weights=[remaining[n] for n in names])[0]
        order.append(chosen)
        remaining.pop(chosen)
    return order


class Dispatcher:
    """ Пул воркеров, выполняющих задачи из брокера """

    def __init__(
            self,
            broker: AbstractTaskBroker,
            handlers: Iterable[AbstractTaskHandler],
            metrics_collector: AbstractMetricsCollector,
            queue_weights: Dict[str, int] = None,
            concurrency: int = None,
            task_timeout: float = None,
            poll_interval: float = None,
            forward_interval: float = None,
            shutdown_timeout: float = None
    ):
        self.broker = broker
        self.metrics = metrics_collector
        self.routes: Dict[TaskKind, AbstractTaskHandler] = {h.kind: h for h in handlers}
        self.queue_weights = dict(queue_weights or config.queue.weights)
        self.concurrency = concurrency or config.queue.concurrency
        self.task_timeout = task_timeout or config.queue.task_timeout
        self.poll_interval = config.queue.poll_interval if poll_interval is None else poll_interval
        self.forward_interval = forward_interval or config.queue.forward_interval
        self.shutdown_timeout = config.queue.shutdown_timeout if shutdown_timeout is None else shutdown_timeout

        self._validate_routes()

        self._stopping = asyncio.Event()
        self._workers: List[asyncio.Task] = []
        self._scheduler: Optional[asyncio.Task] = None
        self._in_flight = 0

    def _validate_routes(self) -> None:
        """ Таблица маршрутов должна покрывать все виды задач """
        missing = [kind.value for kind in TaskKind if kind not in self.routes]
        if missing:
            raise ValueError(f"No handlers registered for tasks: {missing}")

        if self.concurrency <= 0:
            raise ValueError("Concurrency must be positive")

        unknown = set(self.queue_weights) - {kind.queue for kind in TaskKind}
        if unknown:
            logger.warning(f"Queues without known tasks in weights: {sorted(unknown)}")

        unweighted = {kind.queue for kind in TaskKind} - set(self.queue_weights)
        if unweighted:
            logger.warning(f"Queues not consumed by this dispatcher: {sorted(unweighted)}")

    @property
    def running(self) -> bool:
        return bool(self._workers) and not self._stopping.is_set()

    @property
    def in_flight(self) -> int:
        return self._in_flight

    async def start(self) -> None:
        """ Запустить воркеров и планировщик повторов """
        if self._workers:
            return

        self._stopping.clear()
        self._workers = [
            asyncio.create_task(self._worker_loop(i), name=f"task_worker_{i}")
            for i in range(self.concurrency)
        ]
        self._scheduler = asyncio.create_task(self._scheduler_loop(), name="task_scheduler")
        logger.info(
            f"Dispatcher started: concurrency={self.concurrency}, queues={self.queue_weights}"
        )

    async def run(self) -> None:
        """ Запустить и ждать остановки """
        await self.start()
        await self._stopping.wait()

    async def stop(self) -> None:
        """ Перестать брать задачи, дождаться текущих, остальное отменить """
        if not self._workers:
            return

        self._stopping.set()
        tasks = [*self._workers, self._scheduler]

        _, pending = await asyncio.wait(tasks, timeout=self.shutdown_timeout)
        for task in pending:
            task.cancel()
        if pending:
            logger.warning(f"Cancelled {len(pending)} workers still busy after shutdown timeout")
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self._scheduler = None
        logger.info("Dispatcher stopped")

    async def _worker_loop(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                task = await self.broker.dequeue(weighted_order(self.queue_weights))
            except Exception as e:
                logger.error(f"Worker {worker_id} failed to dequeue: {e}")
                await self.metrics.record_error('dequeue_error')
                await self._idle()
                continue

            if task is None:
                await self._idle()
                continue

            try:
                await self.execute(task)
            except Exception as e:
                logger.error(f"Worker {worker_id} failed on task {task.name} ({task.id}): {e}")
                await self.metrics.record_error('worker_error')
                await self._idle()

    async def _scheduler_loop(self) -> None:
        while not self._stopping.is_set():
            try:
                forwarded = await self.broker.forward_scheduled()
                if forwarded:
                    logger.debug(f"Forwarded {forwarded} scheduled tasks")
                for stats in await self.broker.stats():
                    await self.metrics.record_queue_size(stats.queue, stats.pending)
            except Exception as e:
                logger.error(f"Error in scheduler loop: {e}")
                await self.metrics.record_error('scheduler_error')

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.forward_interval)
            except asyncio.TimeoutError:
                pass

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass

    async def execute(self, task: Task) -> bool:
        """ Выполнить одну задачу и сообщить брокеру итог. True - успех """
        start_time = time.time()
        self._in_flight += 1
        try:
            handler = self.routes.get(task.kind)
            if handler is None:
                raise TaskNotRoutedError(f"No handler registered for task {task.name}")

            logger.debug(f"Processing task {task.name} ({task.id}), attempt {task.retried + 1}")
            await asyncio.wait_for(handler.process(task), timeout=self.task_timeout)

        except asyncio.CancelledError:
            # Прерванная задача - неудачная попытка, иначе она застрянет в active
            logger.warning(f"Task {task.name} ({task.id}) cancelled, returning it to the queue")
            await asyncio.shield(self._handle_failure(
                task, TaskInterrupted("worker cancelled during shutdown"), start_time
            ))
            raise

        except asyncio.TimeoutError:
            await self._handle_failure(task, asyncio.TimeoutError(
                f"task timed out after {self.task_timeout}s"
            ), start_time)
            return False

        except Exception as e:
            await self._handle_failure(task, e, start_time)
            return False

        else:
            await self.metrics.record_task_processed(task.name, time.time() - start_time, True)
            if await self._report(self.broker.ack(task), task, "ack"):
                logger.debug(f"Task {task.name} ({task.id}) done")
            return True

        finally:
            self._in_flight -= 1

    async def _report(self, call: Awaitable, task: Task, action: str) -> bool:
        """ Передать итог задачи брокеру; при сбое задача вернется по истечении аренды """
        try:
            await call
        except Exception as e:
            logger.error(f"Failed to {action} task {task.name} ({task.id}): {e}")
            await self.metrics.record_error('broker_error')
            return False
        return True

    async def _handle_failure(self, task: Task, exc: BaseException, start_time: float) -> None:
        error = f"{type(exc).__name__}: {exc}"
        attempt = task.retried + 1
        await self.metrics.record_task_processed(task.name, time.time() - start_time, False)

        if not is_retryable(exc) or attempt >= task.max_retry:
            reason = "not retryable" if not is_retryable(exc) else "retries exhausted"
            if not await self._report(self.broker.kill(task, error), task, "kill"):
                return
            await self.metrics.record_dead_task(task.name, reason)
            logger.error(
                f"Task {task.name} ({task.id}) moved to dead after attempt "
                f"{attempt}/{task.max_retry} ({reason}): {error}"
            )
            return

        delay = retry_delay(attempt)
        if not await self._report(self.broker.retry(task, error, delay), task, "retry"):
            return
        await self.metrics.record_retry_attempt(task.name, attempt, delay)
        logger.warning(
            f"Task {task.name} ({task.id}) failed on attempt {attempt}/{task.max_retry}, "
            f"retry in {delay:.1f}s: {error}"
        )
