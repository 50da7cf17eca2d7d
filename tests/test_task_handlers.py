from unittest.mock import AsyncMock

import pytest

from benefits_worker.domain.exceptions import PayloadDecodeError
from benefits_worker.domain.tasks import Task, TaskKind, new_send_email_task, new_check_social_group_task
from benefits_worker.domain.value_objects import GroupType
from benefits_worker.handlers.send_email_handler import SendEmailHandler
from benefits_worker.handlers.social_group_handler import CheckSocialGroupHandler


async def test_send_email_handler_calls_use_case():
    use_case = AsyncMock()
    handler = SendEmailHandler(use_case)

    await handler.process(new_send_email_task("user@example.com", "424242"))

    assert handler.kind is TaskKind.SEND_EMAIL
    use_case.execute.assert_awaited_once_with("user@example.com", "424242")


async def test_check_social_group_handler_calls_use_case(user_id):
    use_case = AsyncMock()
    handler = CheckSocialGroupHandler(use_case)

    await handler.process(new_check_social_group_task(user_id, "1", ["children", "veterans"]))

    assert handler.kind is TaskKind.CHECK_SOCIAL_GROUP
    use_case.execute.assert_awaited_once_with(
        user_id, "1", (GroupType.CHILDREN, GroupType.VETERANS)
    )


async def test_handlers_reject_broken_payload():
    use_case = AsyncMock()
    broken = Task.create(TaskKind.CHECK_SOCIAL_GROUP, b'{"snils": 1}')

    with pytest.raises(PayloadDecodeError):
        await CheckSocialGroupHandler(use_case).process(broken)

    use_case.execute.assert_not_awaited()


async def test_handler_errors_propagate():
    use_case = AsyncMock()
    use_case.execute.side_effect = RuntimeError("smtp down")

    with pytest.raises(RuntimeError):
        await SendEmailHandler(use_case).process(new_send_email_task("user@example.com", "1"))
