import numpy as np
import pytest
from aiortc.mediastreams import MediaStreamError

from conftest import FakeClock
from meshrelay.client.speaking import SpeakingDetector, audio_level


def test_audio_level_scales():
    assert audio_level(np.zeros(480, dtype=np.int16)) == 0.0
    assert audio_level(np.array([], dtype=np.int16)) == 0.0
    assert audio_level(np.full(480, 32767, dtype=np.int16)) == pytest.approx(255.0)
    assert audio_level(np.full(480, -0.5, dtype=np.float32)) == pytest.approx(127.5)


def test_detector_reports_only_changes():
    detector = SpeakingDetector(threshold=15)
    loud = np.full(480, 8000, dtype=np.int16)
    quiet = np.full(480, 100, dtype=np.int16)

    assert detector.feed(quiet) is None
    assert detector.feed(loud) is True
    assert detector.feed(loud) is None
    assert detector.feed(quiet) is False


class FakeFrame:
    def __init__(self, samples):
        self.samples = samples

    def to_ndarray(self):
        return self.samples


class ScriptedAudioTrack:
    """Yields frames, advancing the clock per frame, then ends."""

    def __init__(self, frames, clock, step):
        self.frames = list(frames)
        self.clock = clock
        self.step = step

    async def recv(self):
        if not self.frames:
            raise MediaStreamError
        self.clock.advance(self.step)
        return FakeFrame(self.frames.pop(0))


@pytest.mark.asyncio
async def test_run_samples_at_interval_until_track_ends():
    clock = FakeClock()
    changes = []

    async def on_change(speaking):
        changes.append(speaking)

    loud = np.full(480, 8000, dtype=np.int16)
    quiet = np.zeros(480, dtype=np.int16)
    # 0.2 s per frame, evaluated every 0.3 s: frames 1, 3 and 5 are sampled
    frames = [loud, quiet, quiet, loud, loud]
    track = ScriptedAudioTrack(frames, clock, step=0.2)

    await SpeakingDetector(threshold=15, on_change=on_change).run(track, interval=0.3, clock=clock)

    assert changes == [True, False, True]
