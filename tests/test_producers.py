from unittest.mock import AsyncMock

import pytest

from benefits_worker.application.queue_client import QueueClient, override_client, set_client
from benefits_worker.application.use_cases import (
    RequestEmailVerificationUseCase, RequestGroupVerificationUseCase
)
from benefits_worker.domain.entities import User, UserGroupMembership
from benefits_worker.domain.exceptions import UserNotFoundException
from benefits_worker.domain.tasks import Task, CheckSocialGroupPayload, SendEmailPayload
from benefits_worker.domain.value_objects import GroupType, VerificationStatus


@pytest.fixture(autouse=True)
def no_default_client():
    restore = set_client(None)
    yield
    restore()


async def test_request_email_verification_enqueues_task(broker):
    await RequestEmailVerificationUseCase(QueueClient(broker)).execute("user@example.com", "123")

    task = await broker.dequeue(["sendEmailQueue"])
    assert SendEmailPayload.from_bytes(task.payload) == SendEmailPayload("user@example.com", "123")


async def test_request_email_verification_uses_default_client(broker):
    with override_client(QueueClient(broker)):
        await RequestEmailVerificationUseCase().execute("user@example.com", "123")

    assert len(broker.pending["sendEmailQueue"]) == 1


async def test_request_email_verification_without_client():
    with pytest.raises(RuntimeError):
        await RequestEmailVerificationUseCase().execute("user@example.com", "123")


async def test_request_groups_sets_pending_and_enqueues_check(broker, user_repo, pensioner):
    use_case = RequestGroupVerificationUseCase(user_repo, QueueClient(broker))

    groups = await use_case.execute(pensioner.user_id, [GroupType.STUDENTS, GroupType.VETERANS])

    assert [(m.type, m.status) for m in groups] == [
        (GroupType.PENSIONERS, VerificationStatus.PENDING),
        (GroupType.STUDENTS, VerificationStatus.PENDING),
        (GroupType.VETERANS, VerificationStatus.PENDING),
    ]
    assert (await user_repo.get_by_id(pensioner.user_id)).groups == groups

    task = await broker.dequeue(["checkSocialGroupQueue"])
    payload = CheckSocialGroupPayload.from_bytes(task.payload)
    assert payload.user_id == pensioner.user_id
    assert payload.snils == pensioner.snils
    assert payload.groups == (GroupType.STUDENTS, GroupType.VETERANS)


async def test_request_groups_without_snils_skips_check(broker, user_repo, user_id):
    await user_repo.add(User(user_id=user_id, snils=None))
    use_case = RequestGroupVerificationUseCase(user_repo, QueueClient(broker))

    groups = await use_case.execute(user_id, ["children"])

    assert groups == [UserGroupMembership.pending(GroupType.CHILDREN)]
    assert await broker.dequeue(["checkSocialGroupQueue"]) is None


async def test_request_groups_survives_enqueue_failure(user_repo, pensioner):
    client = AsyncMock(spec=QueueClient)
    client.enqueue.side_effect = ConnectionError("redis is down")
    use_case = RequestGroupVerificationUseCase(user_repo, client)

    groups = await use_case.execute(pensioner.user_id, [GroupType.PENSIONERS])

    client.enqueue.assert_awaited_once()
    assert isinstance(client.enqueue.await_args.args[0], Task)
    assert (await user_repo.get_by_id(pensioner.user_id)).groups == groups


async def test_request_groups_unknown_user(user_repo, user_id, broker):
    with pytest.raises(UserNotFoundException):
        await RequestGroupVerificationUseCase(user_repo, QueueClient(broker)).execute(user_id, ["children"])
