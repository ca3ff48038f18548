import asyncio

import anyio
import pytest

from secure_booking.shared.circuit_breaker import CircuitBreaker, CircuitBreakerOpenError


async def _fail():
    raise RuntimeError("fail")


async def _ok(value="ok"):
    return value


@pytest.mark.anyio
async def test_circuit_opens_after_failures():
    breaker = CircuitBreaker(name="twilio", failure_threshold=2, recovery_time=0.1, window_seconds=10)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(_ok)

    await anyio.sleep(0.11)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    assert breaker.state == "open"


@pytest.mark.anyio
async def test_circuit_half_open_allows_success_and_closes():
    breaker = CircuitBreaker(name="twilio-recovery", failure_threshold=1, recovery_time=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    await anyio.sleep(0.12)
    result = await breaker.call(_ok, "success")

    assert result == "success"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_half_open_limits_concurrent_probes():
    breaker = CircuitBreaker(name="twilio-probes", failure_threshold=1, recovery_time=0.05, half_open_max_calls=1)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    await anyio.sleep(0.06)

    release = asyncio.Event()

    async def slow_probe():
        await release.wait()
        return "probe"

    probe = asyncio.create_task(breaker.call(slow_probe))
    await asyncio.sleep(0)
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(_ok)

    release.set()
    assert await probe == "probe"
    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_failures_outside_window_do_not_open():
    breaker = CircuitBreaker(name="twilio-window", failure_threshold=2, recovery_time=1.0, window_seconds=0.05)

    with pytest.raises(RuntimeError):
        await breaker.call(_fail)
    await anyio.sleep(0.06)
    with pytest.raises(RuntimeError):
        await breaker.call(_fail)

    assert breaker.state == "closed"


@pytest.mark.anyio
async def test_circuit_timeout_marks_failure_and_opens():
    breaker = CircuitBreaker(
        name="twilio-timeout",
        failure_threshold=1,
        recovery_time=1.0,
        window_seconds=10,
        timeout_seconds=0.01,
    )

    with pytest.raises(asyncio.TimeoutError):
        await breaker.call(anyio.sleep, 0.05)

    assert breaker.state == "open"
    with pytest.raises(CircuitBreakerOpenError):
        await breaker.call(_ok)
