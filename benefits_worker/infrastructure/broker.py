"""
Брокеры задач.

RedisTaskBroker - рабочий вариант. Раскладка ключей на одну очередь:
    tasks:{queue}:pending    list  - ждут выполнения (LPUSH / RPOP => FIFO)
    tasks:{queue}:active     list  - выданы воркеру, еще не подтверждены
    tasks:{queue}:leases     zset  - аренда выданных задач, score = время выдачи
    tasks:{queue}:scheduled  zset  - ждут повтора, score = время готовности
    tasks:{queue}:dead       list  - исчерпали попытки или непригодны к повтору
    tasks:queues             set   - все известные очереди

Задача, которую воркер не подтвердил за lease_timeout (упал процесс,
потеряна связь с Redis), считается неудачной попыткой: forward_scheduled
возвращает ее в pending или, если попытки исчерпаны, в dead.

InMemoryTaskBroker повторяет ту же семантику в памяти процесса
(тесты и локальный запуск с QUEUE_BACKEND=memory).
"""

import asyncio
import time
from collections import deque
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import redis

from benefits_worker.application.interfaces import AbstractTaskBroker, QueueStats
from benefits_worker.config import config
from benefits_worker.domain.exceptions import PayloadDecodeError
from benefits_worker.domain.tasks import Task
from benefits_worker.logconfig import opt_logger as log

logger = log.setup_logger(name='broker')


QUEUES_KEY = "tasks:queues"
PENDING, ACTIVE, LEASES, SCHEDULED, DEAD = "pending", "active", "leases", "scheduled", "dead"
LEASE_EXPIRED = "lease expired"

# Выдача задачи воркеру вместе с арендой
DEQUEUE_SCRIPT = """
local pending_key = KEYS[1]
local active_key = KEYS[2]
local leases_key = KEYS[3]
local now = ARGV[1]

local raw = redis.call('RPOP', pending_key)
if not raw then
    return false
end

redis.call('LPUSH', active_key, raw)
redis.call('ZADD', leases_key, now, raw)
return raw
"""

# Перенос созревших повторов из scheduled в pending одним атомарным шагом
FORWARD_SCRIPT = """
local scheduled_key = KEYS[1]
local pending_key = KEYS[2]
local now = ARGV[1]
local limit = tonumber(ARGV[2])

local ready = redis.call('ZRANGEBYSCORE', scheduled_key, '-inf', now, 'LIMIT', 0, limit)
for i, raw in ipairs(ready) do
    redis.call('LPUSH', pending_key, raw)
    redis.call('ZREM', scheduled_key, raw)
end

return #ready
"""

# Возврат задачи с истекшей арендой; если ее уже подтвердили - ничего не делаем
RECOVER_SCRIPT = """
local active_key = KEYS[1]
local leases_key = KEYS[2]
local target_key = KEYS[3]
local raw = ARGV[1]
local updated = ARGV[2]
local trim = tonumber(ARGV[3])

redis.call('ZREM', leases_key, raw)
if redis.call('LREM', active_key, 1, raw) == 0 then
    return 0
end

redis.call('LPUSH', target_key, updated)
if trim > 0 then
    redis.call('LTRIM', target_key, 0, trim - 1)
end
return 1
"""


def queue_key(queue: str, state: str) -> str:
    return f"tasks:{queue}:{state}"


def expire_lease(raw: str | bytes) -> Tuple[str, bool]:
    """
    Запись задачи после истекшей аренды и признак, что ей место в dead.
    Истекшая аренда расходует попытку так же, как ошибка обработчика.
    """
    try:
        task = Task.from_envelope(raw)
    except PayloadDecodeError:
        return raw if isinstance(raw, str) else raw.decode(errors="replace"), True

    updated = task.with_failure(LEASE_EXPIRED)
    return updated.to_envelope(), updated.retried >= updated.max_retry


class RedisTaskBroker(AbstractTaskBroker):
    """ Брокер задач поверх Redis """

    def __init__(
            self,
            r_client: redis.Redis,
            dead_max_size: int = None,
            forward_batch: int = 100,
            lease_timeout: float = None,
            clock: Callable[[], float] = time.time
    ):
        self.redis = r_client
        self.dead_max_size = dead_max_size or config.queue.dead_max_size
        self.forward_batch = forward_batch
        self.lease_timeout = lease_timeout or config.queue.lease_timeout
        self.clock = clock

    async def enqueue(self, task: Task) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.sadd(QUEUES_KEY, task.queue)
            await pipe.lpush(queue_key(task.queue, PENDING), task.to_envelope())
            await pipe.execute()

    async def dequeue(self, queues: Sequence[str]) -> Optional[Task]:
        for queue in queues:
            while True:
                raw = await self.redis.eval(
                    DEQUEUE_SCRIPT, 3,
                    queue_key(queue, PENDING), queue_key(queue, ACTIVE), queue_key(queue, LEASES),
                    str(self.clock())
                )
                if raw is None:
                    break

                try:
                    return Task.from_envelope(raw)
                except PayloadDecodeError as e:
                    logger.error(f"Dropping unreadable task from {queue}: {e}")
                    await self._bury_raw(queue, raw)

        return None

    async def ack(self, task: Task) -> None:
        raw = task.to_envelope()
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.lrem(queue_key(task.queue, ACTIVE), 1, raw)
            await pipe.zrem(queue_key(task.queue, LEASES), raw)
            await pipe.execute()

    async def retry(self, task: Task, error: str, delay: float) -> Task:
        raw = task.to_envelope()
        updated = task.with_failure(error)
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.lrem(queue_key(task.queue, ACTIVE), 1, raw)
            await pipe.zrem(queue_key(task.queue, LEASES), raw)
            await pipe.zadd(
                queue_key(task.queue, SCHEDULED),
                {updated.to_envelope(): self.clock() + max(0.0, delay)}
            )
            await pipe.execute()
        return updated

    async def kill(self, task: Task, error: str) -> Task:
        raw = task.to_envelope()
        updated = task.with_failure(error)
        dead_key = queue_key(task.queue, DEAD)
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.lrem(queue_key(task.queue, ACTIVE), 1, raw)
            await pipe.zrem(queue_key(task.queue, LEASES), raw)
            await pipe.lpush(dead_key, updated.to_envelope())
            await pipe.ltrim(dead_key, 0, self.dead_max_size - 1)
            await pipe.execute()
        return updated

    async def _bury_raw(self, queue: str, raw: str) -> None:
        dead_key = queue_key(queue, DEAD)
        async with self.redis.pipeline(transaction=True) as pipe:
            await pipe.lrem(queue_key(queue, ACTIVE), 1, raw)
            await pipe.zrem(queue_key(queue, LEASES), raw)
            await pipe.lpush(dead_key, raw)
            await pipe.ltrim(dead_key, 0, self.dead_max_size - 1)
            await pipe.execute()

    async def _queues(self) -> List[str]:
        return sorted(await self.redis.smembers(QUEUES_KEY))

    async def _recover_expired(self, queue: str, now: float) -> int:
        expired = await self.redis.zrangebyscore(
            queue_key(queue, LEASES), "-inf", now - self.lease_timeout,
            start=0, num=self.forward_batch
        )

        recovered = 0
        for raw in expired:
            updated, to_dead = expire_lease(raw)
            target = DEAD if to_dead else PENDING
            moved = await self.redis.eval(
                RECOVER_SCRIPT, 3,
                queue_key(queue, ACTIVE), queue_key(queue, LEASES), queue_key(queue, target),
                raw, updated, str(self.dead_max_size if to_dead else 0)
            )
            if int(moved):
                logger.warning(f"Task lease expired in {queue}, moved to {target}")
                recovered += 1
        return recovered

    async def forward_scheduled(self) -> int:
        forwarded = 0
        now = self.clock()
        for queue in await self._queues():
            forwarded += await self._recover_expired(queue, now)
            forwarded += int(await self.redis.eval(
                FORWARD_SCRIPT, 2,
                queue_key(queue, SCHEDULED), queue_key(queue, PENDING),
                str(now), str(self.forward_batch)
            ))
        return forwarded

    async def stats(self) -> List[QueueStats]:
        result = []
        for queue in await self._queues():
            async with self.redis.pipeline(transaction=False) as pipe:
                await pipe.llen(queue_key(queue, PENDING))
                await pipe.llen(queue_key(queue, ACTIVE))
                await pipe.zcard(queue_key(queue, SCHEDULED))
                await pipe.llen(queue_key(queue, DEAD))
                pending, active, scheduled, dead = await pipe.execute()
            result.append(QueueStats(queue, pending, active, scheduled, dead))
        return result

    async def list_dead(self, queue: str, limit: int = 100) -> List[str]:
        return await self.redis.lrange(queue_key(queue, DEAD), 0, limit - 1)

    async def close(self) -> None:
        await self.redis.aclose()


class InMemoryTaskBroker(AbstractTaskBroker):
    """ Брокер в памяти процесса с той же семантикой, что и Redis-вариант """

    def __init__(
            self,
            dead_max_size: int = None,
            lease_timeout: float = None,
            clock: Callable[[], float] = time.time
    ):
        self.dead_max_size = dead_max_size or config.queue.dead_max_size
        self.lease_timeout = lease_timeout or config.queue.lease_timeout
        self.clock = clock
        self.pending: Dict[str, deque] = {}
        self.active: Dict[str, List[str]] = {}
        self.leases: Dict[str, Dict[str, float]] = {}
        self.scheduled: Dict[str, List[Tuple[float, str]]] = {}
        self.dead: Dict[str, deque] = {}
        self.lock = asyncio.Lock()

    def _ensure(self, queue: str) -> None:
        if queue not in self.pending:
            self.pending[queue] = deque()
            self.active[queue] = []
            self.leases[queue] = {}
            self.scheduled[queue] = []
            self.dead[queue] = deque(maxlen=self.dead_max_size)

    async def push_raw(self, queue: str, raw: str) -> None:
        """ Положить запись как есть (для проверки поврежденных задач) """
        async with self.lock:
            self._ensure(queue)
            self.pending[queue].appendleft(raw)

    async def enqueue(self, task: Task) -> None:
        await self.push_raw(task.queue, task.to_envelope())

    async def dequeue(self, queues: Sequence[str]) -> Optional[Task]:
        async with self.lock:
            for queue in queues:
                pending = self.pending.get(queue)
                while pending:
                    raw = pending.pop()
                    try:
                        task = Task.from_envelope(raw)
                    except PayloadDecodeError as e:
                        logger.error(f"Dropping unreadable task from {queue}: {e}")
                        self.dead[queue].appendleft(raw)
                        continue
                    self.active[queue].append(raw)
                    self.leases[queue][raw] = self.clock()
                    return task
        return None

    def _remove_active(self, task: Task) -> None:
        raw = task.to_envelope()
        self.leases.get(task.queue, {}).pop(raw, None)
        try:
            self.active[task.queue].remove(raw)
        except (KeyError, ValueError):
            logger.warning(f"Task {task.id} was not active in {task.queue}")

    async def ack(self, task: Task) -> None:
        async with self.lock:
            self._remove_active(task)

    async def retry(self, task: Task, error: str, delay: float) -> Task:
        updated = task.with_failure(error)
        async with self.lock:
            self._ensure(task.queue)
            self._remove_active(task)
            self.scheduled[task.queue].append((self.clock() + max(0.0, delay), updated.to_envelope()))
        return updated

    async def kill(self, task: Task, error: str) -> Task:
        updated = task.with_failure(error)
        async with self.lock:
            self._ensure(task.queue)
            self._remove_active(task)
            self.dead[task.queue].appendleft(updated.to_envelope())
        return updated

    def _recover_expired(self, queue: str, now: float) -> int:
        leases = self.leases[queue]
        expired = [raw for raw, leased_at in leases.items() if leased_at <= now - self.lease_timeout]
        for raw in expired:
            leases.pop(raw)
            self.active[queue].remove(raw)
            updated, to_dead = expire_lease(raw)
            if to_dead:
                self.dead[queue].appendleft(updated)
            else:
                self.pending[queue].appendleft(updated)
            logger.warning(f"Task lease expired in {queue}, moved to {DEAD if to_dead else PENDING}")
        return len(expired)

    async def forward_scheduled(self) -> int:
        forwarded = 0
        now = self.clock()
        async with self.lock:
            for queue, scheduled in self.scheduled.items():
                forwarded += self._recover_expired(queue, now)

                ready = sorted(item for item in scheduled if item[0] <= now)
                if not ready:
                    continue
                self.scheduled[queue] = [item for item in scheduled if item[0] > now]
                for _, raw in ready:
                    self.pending[queue].appendleft(raw)
                forwarded += len(ready)
        return forwarded

    async def stats(self) -> List[QueueStats]:
        async with self.lock:
            return [
                QueueStats(
                    queue,
                    pending=len(self.pending[queue]),
                    active=len(self.active[queue]),
                    scheduled=len(self.scheduled[queue]),
                    dead=len(self.dead[queue])
                )
                for queue in sorted(self.pending)
            ]

    async def list_dead(self, queue: str, limit: int = 100) -> List[str]:
        async with self.lock:
            return list(self.dead.get(queue, ()))[:limit]
