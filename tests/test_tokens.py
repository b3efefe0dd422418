import random
import re

import pytest

from shareaudit.errors import TokenCollision, TokenIssuanceFailed
from shareaudit.tokens import TokenIssuer

URL_SAFE = re.compile(r"^[A-Za-z0-9_-]+$")


def test_issue_produces_url_safe_tokens_with_enough_entropy():
    issuer = TokenIssuer(lambda token: False)
    token = issuer.issue()

    assert URL_SAFE.match(token)
    # 24 random bytes encode to 32 base64 characters without padding.
    assert len(token) == 32
    assert issuer.issue() != token


def test_rejects_tokens_under_128_bits():
    with pytest.raises(ValueError):
        TokenIssuer(lambda token: False, token_bytes=8)


def test_issue_redraws_when_token_already_persisted():
    taken = set()
    first = TokenIssuer(lambda token: token in taken, random_bytes=random.Random(99).randbytes).issue()
    taken.add(first)

    second = TokenIssuer(lambda token: token in taken, random_bytes=random.Random(99).randbytes).issue()

    assert second != first


def test_bind_retries_when_store_reports_collision():
    attempts = []

    def persist(token):
        attempts.append(token)
        if len(attempts) == 1:
            raise TokenCollision()
        return token

    issuer = TokenIssuer(lambda token: False, random_bytes=random.Random(5).randbytes)
    bound = issuer.bind(persist)

    assert len(attempts) == 2
    assert bound == attempts[1]
    assert attempts[0] != attempts[1]


def test_bind_gives_up_after_max_attempts():
    calls = []

    def persist(token):
        calls.append(token)
        raise TokenCollision()

    issuer = TokenIssuer(lambda token: False, max_attempts=5)

    with pytest.raises(TokenIssuanceFailed):
        issuer.bind(persist)
    assert len(calls) == 5


def test_issue_fails_when_every_draw_is_taken():
    issuer = TokenIssuer(lambda token: True, max_attempts=3)

    with pytest.raises(TokenIssuanceFailed):
        issuer.issue()
