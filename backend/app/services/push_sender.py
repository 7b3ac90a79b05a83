import logging
from threading import Lock
from typing import Dict, List

from app import config

logger = logging.getLogger(__name__)

# FCM accepts at most 500 tokens per multicast call.
MULTICAST_LIMIT = 500


class PushSender:
    """Firebase Cloud Messaging fan-out, enabled only when credentials are configured."""

    def __init__(self, credentials_path: str = ""):
        self._credentials_path = credentials_path.strip()
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
            if not self._credentials_path:
                self._initialized = True
                logger.info("Push sender disabled: FIREBASE_CREDENTIALS_PATH not set")
                return
            try:
                import firebase_admin
                from firebase_admin import credentials, messaging

                if not firebase_admin._apps:  # pylint: disable=protected-access
                    firebase_admin.initialize_app(credentials.Certificate(self._credentials_path))
                self._messaging = messaging
                self._enabled = True
                logger.info("Push sender initialized")
            except Exception:
                logger.exception("Push sender disabled: Firebase init failed")
            finally:
                self._initialized = True

    def _is_dead_token(self, exc: Exception) -> bool:
        from firebase_admin import exceptions

        return isinstance(exc, (self._messaging.UnregisteredError, exceptions.InvalidArgumentError))

    def send(self, tokens: List[str], title: str, body: str, data: Dict[str, str]) -> List[str]:
        """Push to every token and return the ones Firebase reports as unregistered or malformed."""
        if not tokens or not self.enabled:
            return []
        assert self._messaging is not None
        dead: List[str] = []
        failed = 0
        for start in range(0, len(tokens), MULTICAST_LIMIT):
            chunk = tokens[start : start + MULTICAST_LIMIT]
            batch = self._messaging.send_each_for_multicast(
                self._messaging.MulticastMessage(
                    notification=self._messaging.Notification(title=title, body=body),
                    tokens=chunk,
                    data=data,
                )
            )
            failed += batch.failure_count
            for token, response in zip(chunk, batch.responses):
                if not response.success and response.exception and self._is_dead_token(response.exception):
                    dead.append(token)
        if failed:
            logger.warning("Push delivery failed for %s of %s tokens", failed, len(tokens))
        return dead


push_sender = PushSender(credentials_path=config.FIREBASE_CREDENTIALS_PATH)
