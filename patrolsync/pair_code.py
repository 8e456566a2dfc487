import secrets
import string
from datetime import datetime, timedelta

PAIR_CODE_LENGTH = 6
PAIR_CODE_ALPHABET = string.ascii_uppercase + string.digits
PAIR_CODE_TTL = timedelta(hours=24)


def generate_pair_code() -> str:
    return "".join(
        secrets.choice(PAIR_CODE_ALPHABET) for _ in range(PAIR_CODE_LENGTH)
    )


def normalize_pair_code(code: str) -> str:
    """
    "AB-12-3d", "ab123d" and "AB123D" are the same code.
    """
    return code.strip().replace("-", "").upper()


def expires_at(issued_at: datetime, ttl: timedelta = PAIR_CODE_TTL) -> datetime:
    return issued_at + ttl


def is_expired(
    issued_at: datetime, now: datetime, ttl: timedelta = PAIR_CODE_TTL
) -> bool:
    return now >= expires_at(issued_at, ttl)
