# client/media.py
import logging
import platform
from typing import Dict, List, Optional

from aiortc.contrib.media import MediaPlayer, MediaRelay
from av.error import FFmpegError

from meshrelay.client.errors import MediaUnavailable

logger = logging.getLogger(__name__)


def default_capture_devices() -> Dict[str, tuple]:
    """
    FFmpeg input (file, format) pairs for camera, microphone and screen.

    Returns:
        dict: Keys "camera", "microphone", "screen"; values (file, format).
    """
    system = platform.system()
    if system == "Darwin":
        return {"camera": ("default:none", "avfoundation"),
                "microphone": ("none:default", "avfoundation"),
                "screen": ("1:none", "avfoundation")}
    if system == "Windows":
        return {"camera": ("video=Integrated Camera", "dshow"),
                "microphone": ("audio=Microphone", "dshow"),
                "screen": ("desktop", "gdigrab")}
    return {"camera": ("/dev/video0", "v4l2"),
            "microphone": ("default", "pulse"),
            "screen": (":0.0", "x11grab")}


def open_player(file: str, format: Optional[str] = None, options: Optional[dict] = None) -> MediaPlayer:
    """
    Open an FFmpeg-backed capture source.

    Raises:
        MediaUnavailable: If the device is missing or access was refused.
    """
    try:
        return MediaPlayer(file, format=format, options=options or {})
    except (FFmpegError, OSError) as e:
        raise MediaUnavailable(f"cannot open {file} ({format}): {e}") from e


class LocalMedia:
    """
    Local outgoing media: microphone, camera and an optional screen capture.

    Each peer connection receives its own relay subscription of a source track,
    so one capture device can feed the whole mesh. Switching between camera and
    screen only changes which source new subscriptions come from.
    """

    def __init__(self, audio=None, camera=None, relay: Optional[MediaRelay] = None):
        self.audio = audio
        self.camera = camera
        self.screen = None
        self.errors: Dict[str, str] = {}
        self._relay = relay or MediaRelay()
        self._players: List[MediaPlayer] = []

    @classmethod
    def open(cls, devices: Optional[Dict[str, tuple]] = None, opener=open_player) -> "LocalMedia":
        """
        Open microphone and camera, continuing without whichever fails.

        Args:
            devices (dict, optional): Overrides for default_capture_devices().
            opener (callable): Opens one (file, format) source.

        Returns:
            LocalMedia: Media with every device that could be opened.
        """
        devices = {**default_capture_devices(), **(devices or {})}
        media = cls()
        for kind, attr in (("microphone", "audio"), ("camera", "video")):
            file, fmt = devices[kind]
            try:
                player = opener(file, fmt)
            except MediaUnavailable as e:
                logger.warning(f"{kind} unavailable, continuing without it: {e}")
                media.errors[kind] = str(e)
                continue
            media._players.append(player)
            if attr == "audio":
                media.audio = player.audio
            else:
                media.camera = player.video
        return media

    @property
    def video(self):
        """The video source currently sent to peers."""
        return self.screen if self.screen is not None else self.camera

    @property
    def sharing_screen(self) -> bool:
        return self.screen is not None

    def outgoing_tracks(self) -> list:
        """Fresh subscriptions of every available source, for a new connection."""
        return [self._relay.subscribe(src) for src in (self.audio, self.video) if src is not None]

    def video_for_peer(self, session=None):
        """A fresh subscription of the current video source."""
        return self._relay.subscribe(self.video) if self.video is not None else None

    def audio_for_detector(self):
        return self._relay.subscribe(self.audio) if self.audio is not None else None

    def open_screen(self, opener=open_player, device: Optional[tuple] = None):
        """
        Start screen capture and make it the outgoing video source.

        Raises:
            MediaUnavailable: If the screen cannot be captured.
        """
        file, fmt = device or default_capture_devices()["screen"]
        player = opener(file, fmt)
        self._players.append(player)
        self.use_screen(player.video)
        return player.video

    def use_screen(self, track) -> None:
        self.screen = track

    def use_camera(self) -> None:
        if self.screen is not None:
            self.screen.stop()
        self.screen = None

    def stop(self) -> None:
        """Stop every capture source."""
        for track in (self.audio, self.camera, self.screen):
            if track is not None:
                track.stop()
        self._players.clear()
