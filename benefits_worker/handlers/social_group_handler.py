from benefits_worker.application.interfaces import AbstractTaskHandler
from benefits_worker.application.use_cases import CheckSocialGroupsUseCase
from benefits_worker.domain.tasks import Task, TaskKind, CheckSocialGroupPayload
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='groups handler')


class CheckSocialGroupHandler(AbstractTaskHandler):
    """ Обработчик задач проверки социальных групп пользователя """

    kind = TaskKind.CHECK_SOCIAL_GROUP

    def __init__(self, check_groups_use_case: CheckSocialGroupsUseCase):
        self.check_groups_use_case = check_groups_use_case

    async def process(self, task: Task) -> None:
        payload = CheckSocialGroupPayload.from_bytes(task.payload)

        logger.info(
            f"Task {task.id}: checking groups {[g.value for g in payload.groups]} "
            f"for user {payload.user_id}, attempt {task.retried + 1}/{task.max_retry}"
        )
        result = await self.check_groups_use_case.execute(
            payload.user_id, payload.snils, payload.groups
        )
        logger.debug(f"Task {task.id}: {len(result.changed)} groups changed")
