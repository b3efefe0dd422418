import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Union

from shareaudit.errors import Forbidden, LinkNotFound, PasswordRequired, ResourceNotFound, TokenNotFound
from shareaudit.expiry import MAX_DAYS, MIN_DAYS, classify, compute_expiry
from shareaudit.models import LinkState, ResourceRef, SharedLink
from shareaudit.passwords import PBKDF2_ITERATIONS, hash_password, normalize_password, verify_password
from shareaudit.repository import LinkRepository, utc_now
from shareaudit.storage import LocalObjectStore
from shareaudit.tokens import TokenIssuer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Active:
    link: SharedLink


@dataclass(frozen=True)
class Expired:
    """The link existed but is no longer usable; ``state`` says whether it lapsed or was revoked."""

    link: SharedLink
    state: LinkState


@dataclass(frozen=True)
class NotFound:
    token: str


Resolution = Union[Active, Expired, NotFound]


def token_hint(token: str) -> str:
    return token[:6] + "..."


class ShareLinkService:
    def __init__(
        self,
        links: LinkRepository,
        storage: LocalObjectStore,
        issuer: TokenIssuer,
        *,
        clock: Callable[[], datetime] = utc_now,
        min_days: int = MIN_DAYS,
        max_days: int = MAX_DAYS,
        password_iterations: int = PBKDF2_ITERATIONS,
    ):
        self.links = links
        self.storage = storage
        self.issuer = issuer
        self._clock = clock
        self.min_days = min_days
        self.max_days = max_days
        self.password_iterations = password_iterations

    def create_link(
        self,
        ref: ResourceRef,
        requested_days: int,
        *,
        content_type: str | None = None,
        size: int | None = None,
        allow_download: bool = True,
        password: str | None = None,
    ) -> SharedLink:
        issued_at = self._clock()
        expires_at = compute_expiry(issued_at, requested_days, min_days=self.min_days, max_days=self.max_days)

        metadata = self.storage.resource_metadata(ref)
        if metadata is None:
            raise ResourceNotFound(f"file {ref.object_key!r} not found in bucket {ref.bucket!r}")

        password = normalize_password(password)
        password_hash = hash_password(password, iterations=self.password_iterations) if password else None

        def persist(token: str) -> SharedLink:
            return self.links.insert(
                token=token,
                ref=ref,
                content_type=content_type or metadata.content_type,
                size=size if size is not None else metadata.size,
                allow_download=allow_download,
                issued_at=issued_at,
                expires_at=expires_at,
                password_hash=password_hash,
            )

        link = self.issuer.bind(persist)
        logger.info(
            "created shared link %s (%s) for %s/%s, expires %s",
            link.id,
            token_hint(link.token),
            ref.bucket,
            ref.object_key,
            link.expires_at.isoformat(),
        )
        return link

    def resolve_link(self, token: str, now: datetime | None = None) -> Resolution:
        link = self.links.get_by_token(token)
        if link is None:
            return NotFound(token)
        state = classify(link, now if now is not None else self._clock())
        if state is LinkState.ACTIVE:
            return Active(link)
        return Expired(link, state)

    def check_password(self, link: SharedLink, password: str | None) -> None:
        """Raise PasswordRequired unless ``password`` unlocks ``link``."""
        if link.password_hash is None:
            return
        if not password:
            raise PasswordRequired()
        if not verify_password(password, link.password_hash):
            logger.info("wrong password for shared link %s (%s)", link.id, token_hint(link.token))
            raise PasswordRequired("incorrect password")

    def revoke(self, token: str, requesting_owner_id: str) -> SharedLink:
        link = self.links.get_by_token(token)
        if link is None:
            raise TokenNotFound()
        if link.owner_account_id != requesting_owner_id:
            raise Forbidden("only the owner of the file can revoke this link")
        if link.revoked_at is not None:
            return link

        revoked = self.links.mark_revoked(token, self._clock())
        logger.info("revoked shared link %s (%s)", revoked.id, token_hint(token))
        return revoked

    def get_link(self, link_id: int) -> SharedLink:
        link = self.links.get(link_id)
        if link is None:
            raise LinkNotFound(f"shared link {link_id} not found")
        return link

    def get_owned_link(self, link_id: int, owner_account_id: str) -> SharedLink:
        link = self.get_link(link_id)
        if link.owner_account_id != owner_account_id:
            raise Forbidden()
        return link

    def list_links(self, owner_account_id: str) -> list[SharedLink]:
        return self.links.list_for_owner(owner_account_id)
