"""
Контракты задач очереди.

Правила:
- payload хранится как канонический JSON (bytes), брокер его не разбирает
- у каждого вида задачи фиксированы имя (ключ маршрутизации), очередь и лимит попыток
- набор видов задач закрыт: новый вид = новый элемент TaskKind + обработчик
"""

import base64
import binascii
import json
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple
from uuid import UUID, uuid4

from benefits_worker.domain.exceptions import SerializationError, PayloadDecodeError
from benefits_worker.domain.value_objects import GroupType


@dataclass(frozen=True)
class TaskSpec:
    queue: str
    max_retry: int


class TaskKind(str, Enum):
    """Виды задач; значение - имя задачи в брокере"""
    SEND_EMAIL = "sendEmailTask"
    CHECK_SOCIAL_GROUP = "checkSocialGroupTask"

    @property
    def spec(self) -> TaskSpec:
        return TASK_SPECS[self]

    @property
    def queue(self) -> str:
        return self.spec.queue

    @property
    def max_retry(self) -> int:
        return self.spec.max_retry


TASK_SPECS: Dict[TaskKind, TaskSpec] = {
    TaskKind.SEND_EMAIL: TaskSpec(queue="sendEmailQueue", max_retry=5),
    TaskKind.CHECK_SOCIAL_GROUP: TaskSpec(queue="checkSocialGroupQueue", max_retry=3),
}

SEND_EMAIL_QUEUE = TaskKind.SEND_EMAIL.queue
CHECK_SOCIAL_GROUP_QUEUE = TaskKind.CHECK_SOCIAL_GROUP.queue


def _dumps(data: dict) -> bytes:
    try:
        return json.dumps(data, ensure_ascii=False, sort_keys=True, separators=(",", ":")).encode()
    except (TypeError, ValueError) as e:
        raise SerializationError(f"json data marshal failed: {e}") from e


def _loads(raw: bytes) -> dict:
    try:
        data = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise PayloadDecodeError(f"payload json unmarshal failed: {e}") from e
    if not isinstance(data, dict):
        raise PayloadDecodeError("payload must be a json object")
    return data


@dataclass(frozen=True)
class Task:
    """ Единица асинхронной работы """
    kind: TaskKind
    payload: bytes
    queue: str
    max_retry: int
    id: str = field(default_factory=lambda: uuid4().hex)
    retried: int = 0
    enqueued_at: float = field(default_factory=time.time)
    last_error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.kind.value

    @classmethod
    def create(cls, kind: TaskKind, payload: bytes) -> 'Task':
        return cls(kind=kind, payload=payload, queue=kind.queue, max_retry=kind.max_retry)

    def with_failure(self, error: str) -> 'Task':
        """ Копия задачи после очередной неудачной попытки """
        return replace(self, retried=self.retried + 1, last_error=error)

    def to_envelope(self) -> str:
        """ Каноническое представление задачи для брокера """
        return json.dumps({
            'id': self.id,
            'name': self.name,
            'queue': self.queue,
            'payload': base64.b64encode(self.payload).decode(),
            'max_retry': self.max_retry,
            'retried': self.retried,
            'enqueued_at': self.enqueued_at,
            'last_error': self.last_error,
        }, ensure_ascii=False, sort_keys=True, separators=(",", ":"))

    @classmethod
    def from_envelope(cls, raw: str | bytes) -> 'Task':
        """ Разобрать задачу из брокера; неизвестное имя - PayloadDecodeError """
        data = _loads(raw if isinstance(raw, bytes) else raw.encode())
        try:
            kind = TaskKind(data['name'])
            return cls(
                kind=kind,
                payload=base64.b64decode(data['payload'], validate=True),
                queue=data['queue'],
                max_retry=int(data['max_retry']),
                id=data['id'],
                retried=int(data.get('retried', 0)),
                enqueued_at=float(data['enqueued_at']),
                last_error=data.get('last_error'),
            )
        except (KeyError, ValueError, TypeError, binascii.Error) as e:
            raise PayloadDecodeError(f"task envelope is malformed: {e!r}") from e


@dataclass(frozen=True)
class SendEmailPayload:
    """ Письмо с кодом подтверждения почты """
    email: str
    verification_code: str

    def __post_init__(self):
        if not isinstance(self.email, str) or not self.email:
            raise ValueError("Email must be a non-empty string")
        if not isinstance(self.verification_code, str) or not self.verification_code:
            raise ValueError("Verification code must be a non-empty string")

    def to_bytes(self) -> bytes:
        return _dumps({'email': self.email, 'verification_code': self.verification_code})

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'SendEmailPayload':
        data = _loads(raw)
        try:
            return cls(email=data['email'], verification_code=data['verification_code'])
        except (KeyError, ValueError) as e:
            raise PayloadDecodeError(f"send email payload is invalid: {e!r}") from e


@dataclass(frozen=True)
class CheckSocialGroupPayload:
    """ Запрос на проверку социальных групп пользователя """
    user_id: UUID
    snils: str
    groups: Tuple[GroupType, ...]

    def __post_init__(self):
        if not isinstance(self.user_id, UUID):
            raise ValueError("User id must be a UUID")
        if not isinstance(self.snils, str) or not self.snils:
            raise ValueError("SNILS must be a non-empty string")
        if not self.groups:
            raise ValueError("Groups must be a non-empty collection")
        # Набор групп: без повторов, порядок первого появления
        object.__setattr__(self, 'groups', tuple(dict.fromkeys(GroupType(g) for g in self.groups)))

    def to_bytes(self) -> bytes:
        return _dumps({
            'user_id': str(self.user_id),
            'snils': self.snils,
            'groups': [g.value for g in self.groups],
        })

    @classmethod
    def from_bytes(cls, raw: bytes) -> 'CheckSocialGroupPayload':
        data = _loads(raw)
        try:
            groups = data['groups']
            if not isinstance(groups, list):
                raise TypeError("groups must be a list")
            return cls(
                user_id=UUID(data['user_id']),
                snils=data['snils'],
                groups=tuple(GroupType(g) for g in groups),
            )
        except (KeyError, ValueError, TypeError, AttributeError) as e:
            raise PayloadDecodeError(f"check social group payload is invalid: {e!r}") from e


def new_send_email_task(email: str, verification_code: str) -> Task:
    """ Создать задачу отправки письма с кодом подтверждения """
    payload = SendEmailPayload(email=email, verification_code=verification_code)
    return Task.create(TaskKind.SEND_EMAIL, payload.to_bytes())


def new_check_social_group_task(user_id: UUID, snils: str, groups: Iterable[GroupType | str]) -> Task:
    """ Создать задачу проверки социальных групп """
    payload = CheckSocialGroupPayload(
        user_id=user_id,
        snils=snils,
        groups=tuple(GroupType(g) for g in groups),
    )
    return Task.create(TaskKind.CHECK_SOCIAL_GROUP, payload.to_bytes())
