"""
Notification Sink.

Fire-and-forget status messages to the appliance's notification daemon.
Delivery is best effort: a missing socket or a refused connection never
fails the operation that sent the message.
"""

import json
import logging
import socket
import threading
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

PRIORITY_NORMAL = "normal"
PRIORITY_WARNING = "warning"
PRIORITY_ALERT = "alert"


@dataclass
class Notification:
    """A single status message."""

    title: str
    message: str
    priority: str = PRIORITY_NORMAL

    def to_payload(self) -> bytes:
        """Encode as the JSON object the daemon expects."""
        return json.dumps(
            {"title": self.title, "message": self.message, "priority": self.priority}
        ).encode("utf-8")


class SocketNotifier:
    """
    Sends notifications over a local Unix socket.

    Each message opens a fresh connection, writes one JSON object and closes.
    """

    def __init__(self, socket_path: Path, timeout: float = 2.0):
        """
        Initialize SocketNotifier.

        Args:
            socket_path: Path of the daemon's Unix socket
            timeout: Connect/send timeout in seconds
        """
        self.socket_path = socket_path
        self.timeout = timeout

    def send(self, title: str, message: str, priority: str = PRIORITY_NORMAL) -> bool:
        """
        Send one notification.

        Returns:
            True if the payload was written, False otherwise (never raises)
        """
        payload = Notification(title, message, priority).to_payload()
        try:
            with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
                sock.settimeout(self.timeout)
                sock.connect(str(self.socket_path))
                sock.sendall(payload)
            return True
        except OSError as e:
            logger.debug("notification not delivered (%s): %s", e, message)
            return False


class NullNotifier:
    """Discards notifications."""

    def send(self, title: str, message: str, priority: str = PRIORITY_NORMAL) -> bool:
        return False


class RecordingNotifier:
    """Keeps notifications in memory."""

    def __init__(self):
        self._lock = threading.Lock()
        self.sent: list[Notification] = []

    def send(self, title: str, message: str, priority: str = PRIORITY_NORMAL) -> bool:
        with self._lock:
            self.sent.append(Notification(title, message, priority))
        return True

    def messages(self, priority: str | None = None) -> list[str]:
        """Messages sent so far, optionally filtered by priority."""
        with self._lock:
            return [n.message for n in self.sent if priority is None or n.priority == priority]
