import os
from dataclasses import dataclass
from datetime import timezone, timedelta
from typing import Dict

from dotenv import load_dotenv

load_dotenv(""".env""")


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


def parse_queue_weights(raw: str) -> Dict[str, int]:
    """
    Разобрать веса очередей из строки вида "queueA:3,queueB:1"
    """
    weights = {}
    for chunk in raw.split(","):
        chunk = chunk.strip()
        if not chunk:
            continue
        name, _, weight = chunk.partition(":")
        weights[name.strip()] = int(weight) if weight.strip() else 1

    for name, weight in weights.items():
        if weight <= 0:
            raise ValueError(f"Queue weight must be positive: {name}={weight}")
    return weights


@dataclass
class RedisConfig:
    """ Конфигурация Redis """
    url: str = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    max_connections: int = int(os.getenv("REDIS_POOL_SIZE", "70"))
    retry_on_timeout: bool = True
    socket_timeout: int = 5
    socket_connect_timeout: int = 5


@dataclass
class DatabaseConfig:
    """ Конфигурация базы данных пользователей """
    url: str = os.getenv("DATABASE_URL")
    pool_size: int = 20
    timeout: int = 60
    # Таблицы принадлежат основному сервису; создание нужно только для локального запуска
    create_tables: bool = _env_bool("DATABASE_CREATE_TABLES")


@dataclass
class QueueConfig:
    """ Конфигурация очереди задач и пула воркеров """
    backend: str = os.getenv("QUEUE_BACKEND", "redis")
    concurrency: int = int(os.getenv("QUEUE_CONCURRENCY", "10"))
    weights_raw: str = os.getenv(
        "QUEUE_WEIGHTS", "sendEmailQueue:1,checkSocialGroupQueue:1"
    )
    task_timeout: float = float(os.getenv("QUEUE_TASK_TIMEOUT", "120"))
    poll_interval: float = float(os.getenv("QUEUE_POLL_INTERVAL", "0.5"))
    forward_interval: float = float(os.getenv("QUEUE_FORWARD_INTERVAL", "1"))
    shutdown_timeout: float = float(os.getenv("QUEUE_SHUTDOWN_TIMEOUT", "10"))
    retry_base_delay: float = float(os.getenv("QUEUE_RETRY_BASE_DELAY", "2"))
    retry_max_delay: float = float(os.getenv("QUEUE_RETRY_MAX_DELAY", "600"))
    dead_max_size: int = int(os.getenv("QUEUE_DEAD_MAX_SIZE", "10000"))
    # Задача без подтверждения дольше аренды возвращается в очередь; больше task_timeout
    lease_timeout: float = float(os.getenv("QUEUE_LEASE_TIMEOUT", "300"))
    serialize_per_user: bool = _env_bool("QUEUE_SERIALIZE_PER_USER")

    @property
    def weights(self) -> Dict[str, int]:
        return parse_queue_weights(self.weights_raw)


@dataclass
class SocialGroupCheckerConfig:
    """ Конфигурация внешнего сервиса проверки социальных групп """
    base_url: str = os.getenv(
        "SOCIAL_GROUP_CHECKER_BASE_URL",
        "https://social-group-checker-mock-production.up.railway.app"
    )
    timeout: float = float(os.getenv("SOCIAL_GROUP_CHECKER_TIMEOUT", "30"))
    failure_threshold: int = 5
    recovery_timeout: int = 30


@dataclass
class EmailConfig:
    """ Конфигурация отправки писем """
    enabled: bool = _env_bool("EMAIL_ENABLED")
    templates_dir: str = os.getenv(
        "EMAIL_TEMPLATES_DIR",
        os.path.join(os.path.dirname(os.path.abspath(__file__)), "templates")
    )
    verification_template: str = os.getenv("EMAIL_TEMPLATE_VERIFICATION", "verification.html")
    smtp_host: str = os.getenv("SMTP_HOST", "")
    smtp_port: int = int(os.getenv("SMTP_PORT", "587"))
    smtp_from: str = os.getenv("SMTP_FROM", "")
    # В .env пароль иногда приходит в кавычках
    smtp_pass: str = os.getenv("SMTP_PASS", "").replace('"', "")
    smtp_use_tls: bool = _env_bool("SMTP_USE_TLS", "true")


@dataclass
class WorkerConfig:

    debug: bool = _env_bool("DEBUG")
    log_level: str = os.getenv("LOG_LEVEL", "INFO")
    port: int = int(os.getenv("PORT", "8000"))
    timezone: timezone = timezone(timedelta(hours=3))

    # Конфигурации компонентов
    redis: RedisConfig = None
    database: DatabaseConfig = None
    queue: QueueConfig = None
    checker: SocialGroupCheckerConfig = None
    email: EmailConfig = None

    def __post_init__(self):
        if self.redis is None: self.redis = RedisConfig()
        if self.database is None: self.database = DatabaseConfig()
        if self.queue is None: self.queue = QueueConfig()
        if self.checker is None: self.checker = SocialGroupCheckerConfig()
        if self.email is None: self.email = EmailConfig()



config = WorkerConfig()
