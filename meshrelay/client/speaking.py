# client/speaking.py
import inspect
import logging
import time
from typing import Callable, Optional

import numpy as np
from aiortc.mediastreams import MediaStreamError

from meshrelay.constants import SPEAKING_POLL_INTERVAL, SPEAKING_THRESHOLD

logger = logging.getLogger(__name__)


def audio_level(samples: np.ndarray) -> float:
    """
    Average absolute level of an audio buffer on a 0-255 scale.

    Integer PCM is normalised by its dtype's full scale; float PCM is assumed
    to be in [-1, 1].

    Args:
        samples (np.ndarray): Raw samples of any shape.

    Returns:
        float: Mean level, 0 for an empty buffer.
    """
    if samples.size == 0:
        return 0.0
    if np.issubdtype(samples.dtype, np.integer):
        full_scale = float(np.iinfo(samples.dtype).max)
        data = samples.astype(np.float64) / full_scale
    else:
        data = samples.astype(np.float64)
    return float(np.clip(np.mean(np.abs(data)), 0.0, 1.0) * 255.0)


class SpeakingDetector:
    """
    Turns microphone samples into speaking / silent transitions.

    Only changes are reported, so the caller can broadcast them without
    flooding the room.
    """

    def __init__(self, threshold: float = SPEAKING_THRESHOLD,
                 on_change: Optional[Callable[[bool], object]] = None):
        self.threshold = threshold
        self.on_change = on_change
        self.speaking = False

    def feed(self, samples: np.ndarray) -> Optional[bool]:
        """
        Evaluate one buffer.

        Returns:
            Optional[bool]: The new speaking state when it changed, else None.
        """
        speaking = audio_level(samples) > self.threshold
        if speaking == self.speaking:
            return None
        self.speaking = speaking
        return speaking

    async def run(self, track, interval: float = SPEAKING_POLL_INTERVAL,
                  clock: Callable[[], float] = time.monotonic) -> None:
        """
        Sample `track` every `interval` seconds until it ends.

        Args:
            track: Audio MediaStreamTrack (a dedicated relay subscription).
            interval (float): Seconds between evaluations.
            clock (callable): Monotonic time source.
        """
        last = float("-inf")
        while True:
            try:
                frame = await track.recv()
            except MediaStreamError:
                logger.debug("Microphone track ended, speaking detector stopped")
                break
            now = clock()
            if now - last < interval:
                continue
            last = now
            changed = self.feed(frame.to_ndarray())
            if changed is not None and self.on_change is not None:
                result = self.on_change(changed)
                if inspect.isawaitable(result):
                    await result
