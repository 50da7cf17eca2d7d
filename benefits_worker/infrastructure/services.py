import asyncio
import smtplib
import time
from email.message import EmailMessage
from typing import Dict, Any, Sequence

import httpx
from prometheus_client import Counter, Gauge, Histogram, CONTENT_TYPE_LATEST, CollectorRegistry, generate_latest

from benefits_worker.application.interfaces import (
    AbstractMetricsCollector, AbstractSocialGroupVerifier, AbstractEmailSender
)
from benefits_worker.config import config
from benefits_worker.domain.exceptions import CircuitBreakerOpenException, EmailDeliveryFailed
from benefits_worker.domain.value_objects import GroupType, GroupCheckResult
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='services')


class CircuitBreaker:
    """ Класс для прерывания серии обреченных вызовов внешнего сервиса """
    def __init__(self, failure_threshold=3, recovery_timeout=5):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.last_failure_time = None
        self.state = 'closed'  # closed, open, half_open

    async def call(self, func, *args, **kwargs):
        if self.state == 'open':
            if time.time() - self.last_failure_time > self.recovery_timeout:
                self.state = 'half_open'
            else:
                raise CircuitBreakerOpenException("Circuit breaker is open")

        try:
            result = await func(*args, **kwargs)
            if self.state == 'half_open':
                self.state = 'closed'
            self.failure_count = 0
            return result
        except Exception:
            self.failure_count += 1
            if self.state == 'half_open' or self.failure_count >= self.failure_threshold:
                self.state = 'open'
                self.last_failure_time = time.time()
                logger.warning(f"Circuit breaker opened after {self.failure_count} failures")
            raise


class CheckerResponseError(Exception):
    """ Сервис проверки ответил не тем, что ожидалось """
    pass


class SocialGroupCheckerClient(AbstractSocialGroupVerifier):
    """
    Клиент сервиса проверки социальных групп.

    POST {base_url}/api/v1/check {"snils": ..., "groups": [...]}
    -> {"snils": ..., "results": [{"group": ..., "status": "подтвержден" | "отклонен"}]}

    Любой сбой (пустой запрос, транспорт, статус не 200, битый JSON,
    открытый предохранитель) возвращается как CALL_FAILED по каждой
    запрошенной группе.
    """

    CHECK_PATH = "/api/v1/check"

    def __init__(
            self,
            base_url: str = None,
            timeout: float = None,
            transport: httpx.AsyncBaseTransport = None,
            circuit_breaker: CircuitBreaker = None
    ):
        self.base_url = (base_url or config.checker.base_url).rstrip("/")
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=config.checker.failure_threshold,
            recovery_timeout=config.checker.recovery_timeout
        )
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=httpx.Timeout(timeout or config.checker.timeout),
            headers={"Content-Type": "application/json"},
            transport=transport
        )

    async def verify(self, snils: str, groups: Sequence[GroupType]) -> Dict[GroupType, GroupCheckResult]:
        groups = list(dict.fromkeys(GroupType(g) for g in groups))

        if not snils:
            return self._failed(groups, "СНИЛС не может быть пустым")
        if not groups:
            return {}

        try:
            statuses = await self.circuit_breaker.call(self._check, snils, groups)
        except CircuitBreakerOpenException as e:
            return self._failed(groups, str(e))
        except (httpx.HTTPError, CheckerResponseError) as e:
            logger.warning(f"Social group check failed: {e}")
            return self._failed(groups, str(e) or type(e).__name__)

        results = {}
        for group in groups:
            if group in statuses:
                results[group] = GroupCheckResult.from_checker_status(group, statuses[group])
        return results

    async def _check(self, snils: str, groups: Sequence[GroupType]) -> Dict[GroupType, str]:
        response = await self._client.post(
            self.CHECK_PATH,
            json={"snils": snils, "groups": [g.value for g in groups]}
        )
        if response.status_code != 200:
            raise CheckerResponseError(
                f"неожиданный статус код: {response.status_code}, тело: {response.text}"
            )

        try:
            data = response.json()
            items = data["results"]
            statuses = {}
            for item in items:
                if not GroupType.is_valid(item["group"]):
                    logger.warning(f"Checker returned unknown group {item['group']!r}, ignored")
                    continue
                statuses[GroupType(item["group"])] = item["status"]
        except (ValueError, KeyError, TypeError) as e:
            raise CheckerResponseError(f"ошибка десериализации ответа: {e!r}") from e

        return statuses

    @staticmethod
    def _failed(groups: Sequence[GroupType], reason: str) -> Dict[GroupType, GroupCheckResult]:
        return {g: GroupCheckResult.call_failed(g, reason) for g in groups}

    async def close(self) -> None:
        await self._client.aclose()


class SMTPEmailSender(AbstractEmailSender):
    """ Отправка писем через SMTP. smtplib блокирующий, поэтому в отдельном потоке """

    def __init__(
            self,
            host: str = None,
            port: int = None,
            sender: str = None,
            password: str = None,
            use_tls: bool = None,
            timeout: float = 20
    ):
        self.host = host or config.email.smtp_host
        self.port = port or config.email.smtp_port
        self.sender = sender or config.email.smtp_from
        self.password = config.email.smtp_pass if password is None else password
        self.use_tls = config.email.smtp_use_tls if use_tls is None else use_tls
        self.timeout = timeout

    def build_message(self, to: str, subject: str, body: str) -> EmailMessage:
        msg = EmailMessage()
        msg["From"] = self.sender
        msg["To"] = to
        msg["Subject"] = subject
        msg.set_content("Для просмотра письма нужен клиент с поддержкой HTML.")
        msg.add_alternative(body, subtype="html")
        return msg

    def _send_sync(self, msg: EmailMessage) -> None:
        with smtplib.SMTP(self.host, self.port, timeout=self.timeout) as smtp:
            smtp.ehlo()
            if self.use_tls:
                smtp.starttls()
                smtp.ehlo()
            if self.sender and self.password:
                smtp.login(self.sender, self.password)
            smtp.send_message(msg)

    async def send(self, to: str, subject: str, body: str) -> None:
        if not self.host:
            raise EmailDeliveryFailed("SMTP host is not configured")

        msg = self.build_message(to, subject, body)
        try:
            await asyncio.to_thread(self._send_sync, msg)
        except (smtplib.SMTPException, OSError) as e:
            raise EmailDeliveryFailed(f"smtp send failed: {e}") from e

        logger.info(f"Email '{subject}' sent to {to}")


class LogEmailSender(AbstractEmailSender):
    """ Заглушка отправки для окружений без SMTP: письмо только логируется """

    def __init__(self):
        self.sent = []

    async def send(self, to: str, subject: str, body: str) -> None:
        self.sent.append((to, subject, body))
        logger.info(f"Email delivery disabled, '{subject}' for {to} logged only")


class PrometheusMetricsCollector(AbstractMetricsCollector):
    """
    Сборщик метрик для Prometheus: выполнение задач, повторы,
    мертвые задачи, размеры очередей и смены статусов групп
    """

    def __init__(self):
        self.registry = CollectorRegistry()
        self._queue_sizes: Dict[str, int] = {}
        self._processed = 0
        self._failed = 0

        self._init_metrics()

    def _init_metrics(self):
        """ Инициализировать все метрики """

        self.tasks_processed_total = Counter(
            'tasks_processed_total',
            'Total number of processed tasks',
            ['task_name', 'result'],
            registry=self.registry
        )

        self.task_processing_time = Histogram(
            'task_processing_time_seconds',
            'Time spent processing a task',
            ['task_name'],
            buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
            registry=self.registry
        )

        self.retry_attempts_total = Counter(
            'task_retry_attempts_total',
            'Total number of scheduled retries',
            ['task_name', 'retry_count'],
            registry=self.registry
        )

        self.retry_delay = Histogram(
            'task_retry_delay_seconds',
            'Delay before the next attempt',
            buckets=(1, 5, 10, 30, 60, 120, 300, 600),
            registry=self.registry
        )

        self.dead_tasks_total = Counter(
            'dead_tasks_total',
            'Total number of tasks moved to dead list',
            ['task_name', 'reason'],
            registry=self.registry
        )

        self.queue_size = Gauge(
            'task_queue_size',
            'Number of tasks waiting in the queue',
            ['queue'],
            registry=self.registry
        )

        self.membership_transitions_total = Counter(
            'social_group_transitions_total',
            'Social group status changes',
            ['group', 'status'],
            registry=self.registry
        )

        self.errors_total = Counter(
            'worker_errors_total',
            'Total number of errors by type',
            ['error_type'],
            registry=self.registry
        )

    async def record_task_processed(self, task_name: str, processing_time: float, success: bool) -> None:
        try:
            self.task_processing_time.labels(task_name=task_name).observe(processing_time)
            self.tasks_processed_total.labels(
                task_name=task_name, result='success' if success else 'failure'
            ).inc()
            self._processed += 1
            if not success:
                self._failed += 1
        except Exception as e:
            logger.error(f"Error recording task metrics: {e}")

    async def record_retry_attempt(self, task_name: str, retry_count: int, delay: float) -> None:
        try:
            # Классифицируем retry count
            if retry_count <= 1:
                retry_range = '1'
            elif retry_count <= 3:
                retry_range = '2-3'
            else:
                retry_range = '4+'

            self.retry_attempts_total.labels(task_name=task_name, retry_count=retry_range).inc()
            self.retry_delay.observe(delay)
        except Exception as e:
            logger.error(f"Error recording retry metrics: {e}")

    async def record_dead_task(self, task_name: str, reason: str) -> None:
        try:
            self.dead_tasks_total.labels(task_name=task_name, reason=reason).inc()
        except Exception as e:
            logger.error(f"Error recording dead task metrics: {e}")

    async def record_queue_size(self, queue: str, queue_size: int) -> None:
        try:
            self.queue_size.labels(queue=queue).set(queue_size)
            self._queue_sizes[queue] = queue_size
        except Exception as e:
            logger.error(f"Error recording queue size: {e}")

    async def record_membership_transition(self, group: str, status: str) -> None:
        try:
            self.membership_transitions_total.labels(group=group, status=status).inc()
        except Exception as e:
            logger.error(f"Error recording membership transition: {e}")

    async def record_error(self, error_type: str) -> None:
        try:
            self.errors_total.labels(error_type=error_type).inc()
        except Exception as e:
            logger.error(f"Error recording error metrics: {e}")

    async def get_metrics(self) -> Dict[str, Any]:
        """ Метрики в текстовом формате Prometheus """
        return {
            'prometheus_metrics': generate_latest(self.registry).decode('utf-8'),
            'content_type': CONTENT_TYPE_LATEST,
            'timestamp': time.time()
        }

    async def get_health_status(self) -> Dict[str, Any]:
        """
        Статус здоровья по накопленным метрикам
        :returns Словарь со статусом здоровья
        """
        queue_size = sum(self._queue_sizes.values())
        error_rate = self._failed / self._processed if self._processed else 0.0

        health_status = 'healthy'
        if queue_size > 1000:
            health_status = 'warning'
        if error_rate > 0.5:
            health_status = 'critical'

        return {
            'status': health_status,
            'queue_size': queue_size,
            'error_rate': round(error_rate, 4),
            'timestamp': time.time()
        }
