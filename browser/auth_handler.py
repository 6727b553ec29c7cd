"""Proxy authentication callback."""

import logging
import threading
from typing import Optional, Tuple

from engine.base import AuthChallenge, AuthHandler

logger = logging.getLogger(__name__)


class ProxyAuthHandler(AuthHandler):
    """Answers proxy challenges with stored credentials.

    Credentials can be replaced in place with :meth:`update_credentials`
    while the handler stays attached to its view.  Server (non-proxy)
    challenges and challenges without a username are declined so the
    engine falls back to its default handling.
    """

    def __init__(
        self, username: Optional[str] = None, password: Optional[str] = None,
    ) -> None:
        self._lock = threading.Lock()
        self._username = username
        self._password = password

    @property
    def username(self) -> Optional[str]:
        with self._lock:
            return self._username

    def update_credentials(
        self, username: Optional[str], password: Optional[str],
    ) -> None:
        with self._lock:
            self._username = username
            self._password = password
        logger.debug("[AUTH] Proxy credentials updated (user set: %s)", bool(username))

    def get_credentials(
        self, challenge: AuthChallenge,
    ) -> Optional[Tuple[str, str]]:
        if not challenge.is_proxy:
            return None
        with self._lock:
            if not self._username:
                return None
            logger.debug(
                "[AUTH] Answering proxy challenge from %s:%s",
                challenge.host, challenge.port,
            )
            return self._username, self._password or ""
