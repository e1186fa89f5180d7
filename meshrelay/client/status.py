# client/status.py
import logging
from typing import Dict, List

logger = logging.getLogger(__name__)

# Status fields understood by the browser client as well
AUDIO_ON = "isAudioOn"
VIDEO_ON = "isVideoOn"
SPEAKING = "isSpeaking"
HAND_RAISED = "isHandRaised"
SCREEN_SHARING = "isScreenSharing"
RECORDING = "recording"
DISPLAY_NAME = "displayName"
CLIENT_CLASS = "clientClass"


class StatusBoard:
    """
    Local and remote ephemeral status, as last announced by each peer.

    The room's recording state is owned by the host: a host-originated
    `recording` value overrides whatever this client displayed before, and the
    field is ignored from anybody else.
    """

    def __init__(self):
        self.local: Dict[str, object] = {}
        self.remote: Dict[str, Dict[str, object]] = {}
        self.recording = False

    def update_local(self, fields: dict) -> dict:
        """
        Merge local changes.

        Returns:
            dict: Only the fields whose value actually changed.
        """
        changed = {k: v for k, v in fields.items() if self.local.get(k) != v}
        self.local.update(changed)
        return changed

    def apply(self, peer_id: str, payload: dict, from_host: bool = False) -> dict:
        """
        Merge a `peer-status` payload from a remote peer.

        Args:
            peer_id (str): Sender connection id.
            payload (dict): Status fields announced by the sender.
            from_host (bool): Whether the relay marked the sender as host.

        Returns:
            dict: The merged status of that peer.
        """
        fields = dict(payload)
        if RECORDING in fields:
            if from_host:
                self.recording = bool(fields[RECORDING])
                logger.info(f"Host set recording {'on' if self.recording else 'off'}")
            else:
                fields.pop(RECORDING)
        merged = self.remote.setdefault(peer_id, {})
        merged.update(fields)
        return merged

    def forget(self, peer_id: str) -> None:
        self.remote.pop(peer_id, None)

    def clear(self) -> None:
        """Drop every remote entry, e.g. after the relay connection was lost."""
        self.remote.clear()

    def raised_hands(self) -> List[str]:
        return sorted(p for p, s in self.remote.items() if s.get(HAND_RAISED))

    def speakers(self) -> List[str]:
        return sorted(p for p, s in self.remote.items() if s.get(SPEAKING))
