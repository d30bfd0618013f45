import logging
import os
from dataclasses import dataclass, field
from threading import Lock
from typing import Dict, List

logger = logging.getLogger(__name__)

INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


@dataclass
class PushMessage:
    title: str
    body: str
    data: Dict[str, str] = field(default_factory=dict)


def _is_invalid_token_error(exception: object) -> bool:
    error_text = str(exception).lower() if exception else ""
    return any(marker in error_text for marker in INVALID_TOKEN_MARKERS)


class PushSender:
    """Best-effort Firebase Cloud Messaging fan-out; disabled unless credentials are configured."""

    def __init__(self):
        self._lock = Lock()
        self._initialized = False
        self._enabled = False
        self._messaging = None

    @property
    def enabled(self) -> bool:
        self._ensure_initialized()
        return self._enabled

    def _ensure_initialized(self) -> None:
        if self._initialized:
            return
        with self._lock:
            if self._initialized:
                return
            credentials_path = os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()
            if not credentials_path:
                self._initialized = True
                self._enabled = False
                logger.info("Push delivery disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging
            except Exception:
                self._initialized = True
                self._enabled = False
                logger.exception("Push delivery disabled: firebase-admin import failed")
                return

            try:
                cred = credentials.Certificate(credentials_path)
                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(cred)
                self._messaging = messaging
                self._enabled = True
                logger.info("Push delivery initialized")
            except Exception:
                self._enabled = False
                logger.exception("Push delivery disabled: Firebase init failed")
            finally:
                self._initialized = True

    def send(self, tokens: List[str], message: PushMessage) -> List[str]:
        """Send to every device token; returns tokens Firebase reported as invalid."""
        self._ensure_initialized()
        if not self._enabled or not tokens:
            return []
        assert self._messaging is not None
        try:
            batch = self._messaging.send_each_for_multicast(
                self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=message.title, body=message.body),
                    tokens=tokens,
                    data=message.data,
                )
            )
        except Exception:
            logger.exception("Push send failed for %d devices", len(tokens))
            return []
        return [
            tokens[idx]
            for idx, response in enumerate(batch.responses)
            if not response.success and _is_invalid_token_error(response.exception)
        ]


push_sender = PushSender()
