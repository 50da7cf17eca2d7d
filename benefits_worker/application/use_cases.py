import asyncio
import html
import re
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from string import Template
from typing import Optional, List, Dict, Iterable, Sequence, Callable, AsyncIterator
from uuid import UUID

from benefits_worker.application.interfaces import (
    AbstractUserRepository, AbstractSocialGroupVerifier,
    AbstractEmailSender, AbstractMetricsCollector, AbstractQueueClient
)
from benefits_worker.application.queue_client import get_client
from benefits_worker.config import config
from benefits_worker.domain.entities import User, UserGroupMembership
from benefits_worker.domain.exceptions import (
    UserNotFoundException, VerificationCallFailed, PersistenceFailed,
    EmailDeliveryFailed, InvalidEmailError, DomainException
)
from benefits_worker.domain.tasks import new_send_email_task, new_check_social_group_task
from benefits_worker.domain.value_objects import GroupType, GroupCheckResult, CheckOutcome

from benefits_worker.logconfig import opt_logger as log
logger = log.setup_logger(name='use cases')


CHECK_ERROR_PREFIX = "Ошибка проверки"
VERIFICATION_EMAIL_SUBJECT = "Код подтверждения"
EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class KeyedLock:
    """ Набор блокировок по ключу; неиспользуемые блокировки удаляются """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def lock(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] += 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
                self._locks.pop(key, None)

    def __len__(self) -> int:
        return len(self._locks)


def _now() -> datetime:
    return datetime.now(tz=config.timezone)


@dataclass
class ReconcileResult:
    """ Итог сверки групп пользователя с ответом сервиса проверки """
    groups: List[UserGroupMembership]
    changed: List[UserGroupMembership] = field(default_factory=list)
    failure_reason: Optional[str] = None

    @property
    def call_failed(self) -> bool:
        return self.failure_reason is not None


def reconcile_memberships(
        memberships: Sequence[UserGroupMembership],
        requested: Iterable[GroupType],
        results: Dict[GroupType, GroupCheckResult],
        now: datetime
) -> ReconcileResult:
    """
    Применить результаты проверки к группам пользователя.

    Меняются только группы из запроса, находящиеся в pending и имеющие
    результат. Порядок и остальные записи сохраняются.
    """
    requested = set(requested)
    updated, changed = [], []

    for membership in memberships:
        result = results.get(membership.type)
        if membership.type not in requested or result is None or not membership.is_pending:
            updated.append(membership)
            continue

        if result.outcome is CheckOutcome.CONFIRMED:
            membership = membership.verify(now)
        elif result.outcome is CheckOutcome.CALL_FAILED:
            membership = membership.reject(now, f"{CHECK_ERROR_PREFIX}: {result.reason}")
        else:
            membership = membership.reject(now)

        updated.append(membership)
        changed.append(membership)

    # Сбой вызова остается сбоем, даже если pending-групп не нашлось
    failure_reason = next(
        (r.reason for g, r in results.items()
         if g in requested and r.outcome is CheckOutcome.CALL_FAILED),
        None
    )

    return ReconcileResult(groups=updated, changed=changed, failure_reason=failure_reason)


class CheckSocialGroupsUseCase:
    """ Use case для проверки и обновления социальных групп пользователя """

    def __init__(
        self,
        user_repository: AbstractUserRepository,
        verifier: AbstractSocialGroupVerifier,
        metrics_collector: AbstractMetricsCollector,
        serialize_per_user: bool = None,
        clock: Callable[[], datetime] = None
    ):
        self.user_repo = user_repository
        self.verifier = verifier
        self.metrics = metrics_collector
        self.clock = clock or _now
        if serialize_per_user is None:
            serialize_per_user = config.queue.serialize_per_user
        self._user_locks = KeyedLock() if serialize_per_user else None

    async def execute(self, user_id: UUID, snils: str, groups: Sequence[GroupType]) -> ReconcileResult:
        """ Проверить группы пользователя и сохранить новые статусы """
        if self._user_locks is None:
            return await self._check_and_update(user_id, snils, groups)

        async with self._user_locks.lock(str(user_id)):
            return await self._check_and_update(user_id, snils, groups)

    async def _check_and_update(self, user_id: UUID, snils: str, groups: Sequence[GroupType]) -> ReconcileResult:
        user = await self._load_user(user_id)

        logger.debug(f"Checking groups {[g.value for g in groups]} for user {user_id}")
        results = await self.verifier.verify(snils, groups)

        outcome = reconcile_memberships(user.groups, groups, results, self.clock())

        if outcome.changed:
            await self._save_groups(user_id, outcome.groups)
            for membership in outcome.changed:
                await self.metrics.record_membership_transition(
                    membership.type.value, membership.status.value
                )
            logger.info(
                "User %s groups updated: %s", user_id,
                {m.type.value: m.status.value for m in outcome.changed}
            )
        else:
            logger.debug(f"No pending groups to update for user {user_id}")

        if outcome.call_failed:
            await self.metrics.record_error('verification_call_failed')
            raise VerificationCallFailed(f"check groups failed: {outcome.failure_reason}")

        return outcome

    async def _load_user(self, user_id: UUID) -> User:
        try:
            user = await self.user_repo.get_by_id(user_id)
        except DomainException:
            raise
        except Exception as e:
            raise PersistenceFailed(f"get user by id failed: {e}") from e

        if user is None:
            raise UserNotFoundException(f"User {user_id} not found")
        return user

    async def _save_groups(self, user_id: UUID, groups: List[UserGroupMembership]) -> None:
        try:
            await self.user_repo.update_user_groups(user_id, groups)
        except DomainException:
            raise
        except Exception as e:
            await self.metrics.record_error('persistence_failed')
            raise PersistenceFailed(f"update user groups failed: {e}") from e


class SendVerificationEmailUseCase:
    """ Use case для отправки письма с кодом подтверждения """

    def __init__(self, email_sender: AbstractEmailSender, template_path: str = None):
        self.sender = email_sender
        self.template_path = Path(template_path or Path(
            config.email.templates_dir, config.email.verification_template
        ))
        self._template: Optional[Template] = None

    def render_body(self, verification_code: str) -> str:
        if self._template is None:
            try:
                self._template = Template(self.template_path.read_text(encoding="utf-8"))
            except OSError as e:
                raise EmailDeliveryFailed(f"parse template failed: {e}") from e
        try:
            return self._template.substitute(verification_code=html.escape(verification_code))
        except (KeyError, ValueError) as e:
            raise EmailDeliveryFailed(f"email data injection failed: {e!r}") from e

    @staticmethod
    def validate(to: str, subject: str, body: str) -> None:
        if not to:
            raise InvalidEmailError("empty to")
        if not subject or not body:
            raise InvalidEmailError("empty subject/body")
        if not EMAIL_RE.match(to):
            raise InvalidEmailError("invalid to email")

    async def execute(self, email: str, verification_code: str) -> None:
        body = self.render_body(verification_code)
        self.validate(email, VERIFICATION_EMAIL_SUBJECT, body)

        start_time = time.time()
        try:
            await self.sender.send(email, VERIFICATION_EMAIL_SUBJECT, body)
        except DomainException:
            raise
        except Exception as e:
            raise EmailDeliveryFailed(f"send email failed: {e}") from e

        logger.info(f"Verification email sent in {time.time() - start_time:.2f}s")


class RequestEmailVerificationUseCase:
    """ Поставить письмо с кодом подтверждения в очередь """

    def __init__(self, queue_client: AbstractQueueClient = None):
        self.queue_client = queue_client

    async def execute(self, email: str, verification_code: str) -> None:
        client = self.queue_client or get_client()
        if client is None:
            raise RuntimeError("Queue client is not configured")

        await client.enqueue(new_send_email_task(email, verification_code))


class RequestGroupVerificationUseCase:
    """
    Выставить запрошенные группы в pending и запустить их проверку.

    Ошибка постановки в очередь только логируется: сохранение групп
    пользователя не должно от нее зависеть.
    """

    def __init__(self, user_repository: AbstractUserRepository, queue_client: AbstractQueueClient = None):
        self.user_repo = user_repository
        self.queue_client = queue_client

    async def execute(self, user_id: UUID, groups: Sequence[GroupType]) -> List[UserGroupMembership]:
        user = await self.user_repo.get_by_id(user_id)
        if user is None:
            raise UserNotFoundException(f"User {user_id} not found")

        groups = [GroupType(g) for g in groups]
        updated = user.request_groups(groups)
        await self.user_repo.update_user_groups(user_id, updated)

        if not user.snils or not groups:
            logger.debug(f"Skipping group check for user {user_id}: no SNILS or groups")
            return updated

        client = self.queue_client or get_client()
        if client is None:
            logger.warning(f"Queue client is not configured, group check for user {user_id} skipped")
            return updated

        try:
            await client.enqueue(new_check_social_group_task(user_id, user.snils, groups))
        except Exception as e:
            logger.error(f"Failed to enqueue check social group task for user {user_id}: {e}")

        return updated
