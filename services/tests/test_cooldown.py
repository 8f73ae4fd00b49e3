import asyncio

import pytest

from services.presence.core.cooldown import CooldownTimer, LoopScheduler, ManualScheduler
from services.presence.core.volume_gate import check_threshold, evaluate


def test_gate_is_strictly_greater():
    assert evaluate(0.2, 0.01) is True
    assert evaluate(0.01, 0.01) is False
    assert evaluate(0.0, 0.0) is False


@pytest.mark.parametrize("t", [-0.1, 1.0, 1.5])
def test_threshold_domain(t):
    with pytest.raises(ValueError):
        check_threshold(t)


def test_fires_once_after_duration():
    clock = ManualScheduler()
    timer = CooldownTimer(clock)
    fired = []
    timer.arm(2000, lambda: fired.append(clock.now_ms()))
    assert timer.pending
    clock.advance(1999)
    assert fired == []
    clock.advance(1)
    assert fired == [2000]
    assert not timer.pending
    clock.advance(10_000)
    assert fired == [2000]


def test_rearm_restarts_window():
    clock = ManualScheduler()
    timer = CooldownTimer(clock)
    fired = []
    timer.arm(2000, lambda: fired.append("first"))
    clock.advance(1500)
    timer.arm(2000, lambda: fired.append("second"))
    clock.advance(1999)
    assert fired == []
    clock.advance(1)
    assert fired == ["second"]
    assert clock.pending == 0


def test_cancel_prevents_expiry():
    clock = ManualScheduler()
    timer = CooldownTimer(clock)
    fired = []
    timer.arm(100, lambda: fired.append(True))
    timer.cancel()
    clock.advance(1000)
    assert fired == []
    assert not timer.pending
    timer.cancel()  # idempotent


def test_callback_may_rearm():
    clock = ManualScheduler()
    timer = CooldownTimer(clock)
    fired = []

    def again():
        fired.append(clock.now_ms())
        if len(fired) < 3:
            timer.arm(10, again)

    timer.arm(10, again)
    clock.advance(100)
    assert fired == [10, 20, 30]


@pytest.mark.asyncio
async def test_loop_scheduler_uses_wall_clock():
    timer = CooldownTimer(LoopScheduler())
    done = asyncio.Event()
    timer.arm(10, done.set)
    await asyncio.wait_for(done.wait(), timeout=1.0)
    assert not timer.pending
