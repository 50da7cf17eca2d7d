import asyncio

import pytest

from benefits_worker.domain.exceptions import CircuitBreakerOpenException, is_retryable
from benefits_worker.application.use_cases import KeyedLock
from benefits_worker.infrastructure.services import CircuitBreaker


async def test_circuit_breaker_stops_calls_accordingly():
    circuit_breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0.05)

    async def success_func():
        return "success"

    async def fail_func():
        raise ValueError("failure")

    # Успешные вызовы держат предохранитель закрытым
    for _ in range(3):
        assert await circuit_breaker.call(success_func) == "success"
        assert circuit_breaker.state == 'closed'
        assert circuit_breaker.failure_count == 0

    # Первые неудачи еще не размыкают цепь
    for i in range(2):
        with pytest.raises(ValueError):
            await circuit_breaker.call(fail_func)
        assert circuit_breaker.state == 'closed'
        assert circuit_breaker.failure_count == i + 1

    # Третья неудача размыкает
    with pytest.raises(ValueError):
        await circuit_breaker.call(fail_func)
    assert circuit_breaker.state == 'open'

    # Вызовы поднимают CircuitBreakerOpenException, пригодное к повтору
    with pytest.raises(CircuitBreakerOpenException) as exc_info:
        await circuit_breaker.call(success_func)
    assert is_retryable(exc_info.value)

    # После recovery_timeout - half_open, успех замыкает цепь
    await asyncio.sleep(0.1)
    assert await circuit_breaker.call(success_func) == "success"
    assert circuit_breaker.state == 'closed'
    assert circuit_breaker.failure_count == 0

    for _ in range(3):
        with pytest.raises(ValueError):
            await circuit_breaker.call(fail_func)
    assert circuit_breaker.state == 'open'

    # В half_open неудачный вызов размыкает сразу
    await asyncio.sleep(0.1)
    with pytest.raises(ValueError):
        await circuit_breaker.call(fail_func)
    assert circuit_breaker.state == 'open'


async def test_keyed_lock_serializes_same_key():
    locks = KeyedLock()
    events = []

    async def worker(key, name):
        async with locks.lock(key):
            events.append(f"{name}:start")
            await asyncio.sleep(0.02)
            events.append(f"{name}:end")

    await asyncio.gather(worker("user-1", "a"), worker("user-1", "b"))

    assert events == ["a:start", "a:end", "b:start", "b:end"]
    assert len(locks) == 0


async def test_keyed_lock_does_not_block_other_keys():
    locks = KeyedLock()
    events = []

    async def worker(key, name):
        async with locks.lock(key):
            events.append(f"{name}:start")
            await asyncio.sleep(0.02)
            events.append(f"{name}:end")

    await asyncio.gather(worker("user-1", "a"), worker("user-2", "b"))

    assert events[:2] == ["a:start", "b:start"]
