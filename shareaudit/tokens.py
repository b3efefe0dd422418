import base64
import logging
import secrets
from typing import Callable, TypeVar

from shareaudit.errors import TokenCollision, TokenIssuanceFailed

logger = logging.getLogger(__name__)

T = TypeVar("T")

MIN_TOKEN_BYTES = 16


class TokenIssuer:
    """Draws URL-safe share tokens and binds them to persisted links.

    ``exists`` is the pre-check against already persisted tokens; the store's
    uniqueness constraint is the final arbiter and reports a clash by raising
    ``TokenCollision`` from the persist callback.
    """

    def __init__(
        self,
        exists: Callable[[str], bool],
        *,
        token_bytes: int = 24,
        max_attempts: int = 5,
        random_bytes: Callable[[int], bytes] = secrets.token_bytes,
    ):
        if token_bytes < MIN_TOKEN_BYTES:
            raise ValueError(f"token_bytes must be >= {MIN_TOKEN_BYTES}")
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._exists = exists
        self.token_bytes = token_bytes
        self.max_attempts = max_attempts
        self._random_bytes = random_bytes

    def _draw(self) -> str:
        raw = self._random_bytes(self.token_bytes)
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    def issue(self) -> str:
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._draw()
            if not self._exists(candidate):
                return candidate
            self._log_collision(attempt)
        raise TokenIssuanceFailed()

    def bind(self, persist: Callable[[str], T]) -> T:
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._draw()
            if self._exists(candidate):
                self._log_collision(attempt)
                continue
            try:
                return persist(candidate)
            except TokenCollision:
                self._log_collision(attempt)
        logger.error("gave up issuing a share token after %d attempts", self.max_attempts)
        raise TokenIssuanceFailed()

    def _log_collision(self, attempt: int) -> None:
        logger.warning("share token collision, redrawing (attempt %d/%d)", attempt, self.max_attempts)
