import base64
import binascii
import hashlib
import hmac
import secrets

ALGORITHM = "pbkdf2_sha256"
PBKDF2_ITERATIONS = 210_000
SALT_BYTES = 16
DKLEN = 32


def normalize_password(password: str | None) -> str | None:
    """Blank or whitespace-only passwords mean the link is not protected."""
    if password is None or not password.strip():
        return None
    return password


def hash_password(password: str, *, iterations: int = PBKDF2_ITERATIONS) -> str:
    salt = secrets.token_bytes(SALT_BYTES)
    dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, iterations, dklen=DKLEN)
    # stored as pbkdf2_sha256$iterations$salt_b64$hash_b64
    return "{}${}${}${}".format(
        ALGORITHM,
        iterations,
        base64.b64encode(salt).decode("ascii"),
        base64.b64encode(dk).decode("ascii"),
    )


def verify_password(password: str, stored: str) -> bool:
    try:
        algo, iters, salt_b64, hash_b64 = stored.split("$", 3)
        if algo != ALGORITHM:
            return False
        salt = base64.b64decode(salt_b64.encode("ascii"), validate=True)
        expected = base64.b64decode(hash_b64.encode("ascii"), validate=True)
        dk = hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, int(iters), dklen=len(expected))
    except (ValueError, binascii.Error):
        return False
    return hmac.compare_digest(dk, expected)
