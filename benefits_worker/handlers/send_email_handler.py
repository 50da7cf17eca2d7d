from benefits_worker.application.interfaces import AbstractTaskHandler
from benefits_worker.application.use_cases import SendVerificationEmailUseCase
from benefits_worker.domain.tasks import Task, TaskKind, SendEmailPayload
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='email handler')


class SendEmailHandler(AbstractTaskHandler):
    """ Обработчик задач отправки письма с кодом подтверждения """

    kind = TaskKind.SEND_EMAIL

    def __init__(self, send_email_use_case: SendVerificationEmailUseCase):
        self.send_email_use_case = send_email_use_case

    async def process(self, task: Task) -> None:
        # PayloadDecodeError не повторяется, диспетчер сразу отправит задачу в мертвые
        payload = SendEmailPayload.from_bytes(task.payload)

        logger.info(f"Task {task.id}: sending verification email")
        await self.send_email_use_case.execute(payload.email, payload.verification_code)
