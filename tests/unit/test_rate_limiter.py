# tests/unit/test_rate_limiter.py
"""
针对 `shoptrans.infrastructure.rate_limiter` 的单元测试。

通过 mock `time.monotonic` 与 `asyncio.sleep`，确定性地验证令牌桶行为。
"""

import pytest
from pytest_mock import MockerFixture

from shoptrans.infrastructure.rate_limiter import RateLimiter


@pytest.mark.parametrize("rate, capacity", [(0, 1), (1, 0), (-1, 5)])
def test_invalid_parameters_are_rejected(rate: float, capacity: float) -> None:
    with pytest.raises(ValueError, match="速率和容量必须为正数"):
        RateLimiter(rate, capacity)


def test_try_acquire_drains_and_refills(mocker: MockerFixture) -> None:
    clock = mocker.patch(
        "shoptrans.infrastructure.rate_limiter.time.monotonic", return_value=100.0
    )
    limiter = RateLimiter(refill_rate=2, capacity=2)

    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False

    clock.return_value = 100.5
    assert limiter.try_acquire() is True
    assert limiter.try_acquire() is False


def test_refill_never_exceeds_capacity(mocker: MockerFixture) -> None:
    clock = mocker.patch(
        "shoptrans.infrastructure.rate_limiter.time.monotonic", return_value=0.0
    )
    limiter = RateLimiter(refill_rate=10, capacity=3)
    clock.return_value = 100.0
    limiter.try_acquire(0)
    assert limiter.tokens == 3


@pytest.mark.asyncio
async def test_acquire_waits_when_bucket_is_empty(mocker: MockerFixture) -> None:
    now = {"t": 0.0}
    mocker.patch(
        "shoptrans.infrastructure.rate_limiter.time.monotonic",
        side_effect=lambda: now["t"],
    )

    async def fake_sleep(seconds: float) -> None:
        now["t"] += seconds

    sleep = mocker.patch(
        "shoptrans.infrastructure.rate_limiter.asyncio.sleep", side_effect=fake_sleep
    )
    limiter = RateLimiter(refill_rate=1, capacity=1)

    await limiter.acquire()
    sleep.assert_not_called()
    await limiter.acquire()
    sleep.assert_called_once()
    assert sleep.call_args.args[0] == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_acquire_more_than_capacity_raises() -> None:
    limiter = RateLimiter(refill_rate=1, capacity=2)
    with pytest.raises(ValueError):
        await limiter.acquire(3)
