import asyncio

import pytest

from radio.crossfade import CrossfadeController
from tests.fakes import FakeOutput, RecordingSleep


def playing_output():
    out = FakeOutput()
    out.playing = True
    return out


def test_fade_out_steps_down_to_silence_then_stops():
    sleep = RecordingSleep()
    ctrl = CrossfadeController(2000, sleep=sleep)
    out = playing_output()

    completed = asyncio.run(ctrl.fade_out(out))

    assert completed
    assert sleep.calls == [pytest.approx(0.1)] * 20
    assert len(out.volumes) == 20
    assert all(a >= b for a, b in zip(out.volumes, out.volumes[1:]))
    assert out.volumes[-1] == 0.0
    assert out.stops == 1
    assert not ctrl.active


def test_fade_in_starts_silent_and_climbs_to_full():
    ctrl = CrossfadeController(1000, sleep=RecordingSleep())
    out = playing_output()

    async def go():
        task = ctrl.fade_in(out)
        assert ctrl.gain == 0.0
        await task

    asyncio.run(go())

    assert out.volumes[0] == 0.0
    assert len(out.volumes) == 21
    assert all(a <= b for a, b in zip(out.volumes, out.volumes[1:]))
    assert out.volumes[-1] == 1.0
    assert ctrl.gain == 1.0


def test_fade_out_with_nothing_playing_completes_immediately():
    sleep = RecordingSleep()
    ctrl = CrossfadeController(sleep=sleep)
    out = FakeOutput()

    assert asyncio.run(ctrl.fade_out(out))
    assert asyncio.run(ctrl.fade_out(None))
    assert sleep.calls == []
    assert out.stops == 0


def test_aborted_fade_out_reports_false_and_keeps_playing():
    ctrl = CrossfadeController(sleep=RecordingSleep())
    out = playing_output()

    async def go():
        fading = asyncio.ensure_future(ctrl.fade_out(out))
        await asyncio.sleep(0)
        ctrl.cancel()
        return await fading

    assert asyncio.run(go()) is False
    assert out.stops == 0
    assert out.playing


def test_new_ramp_replaces_running_one():
    sleep = RecordingSleep()
    ctrl = CrossfadeController(1000, sleep=sleep)
    out = playing_output()

    async def go():
        first = ctrl.fade_in(out)
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        second = ctrl.fade_in(out)
        await asyncio.wait({first})
        await second
        return first

    first = asyncio.run(go())

    assert first.cancelled()
    assert ctrl.gain == 1.0
    assert out.volumes[-1] == 1.0


def test_gain_is_tracked_without_live_output():
    ctrl = CrossfadeController(sleep=RecordingSleep())
    out = FakeOutput()

    async def go():
        await ctrl.fade_in(out)

    asyncio.run(go())

    assert out.volumes == []
    assert ctrl.gain == 1.0


def test_fade_in_keeps_ramping_while_paused():
    ctrl = CrossfadeController(1000, sleep=RecordingSleep())
    out = playing_output()

    async def go():
        task = ctrl.fade_in(out)
        for _ in range(4):
            await asyncio.sleep(0)
        out.pause()
        await task
        out.resume()

    asyncio.run(go())

    assert out.volumes[-1] == 1.0
    assert len(out.volumes) == 21


def test_duration_change_applies_to_next_ramp():
    sleep = RecordingSleep()
    ctrl = CrossfadeController(3000, sleep=sleep)
    ctrl.set_duration(10000)

    asyncio.run(ctrl.fade_out(playing_output()))

    assert sleep.calls[0] == pytest.approx(0.5)


@pytest.mark.parametrize("duration", [0, 999, 10001])
def test_duration_bounds(duration):
    with pytest.raises(ValueError):
        CrossfadeController(duration)
    ctrl = CrossfadeController()
    with pytest.raises(ValueError):
        ctrl.set_duration(duration)
    assert ctrl.duration_ms == 3000
