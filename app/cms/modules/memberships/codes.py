"""
Membership code generation.

Codes are random strings drawn from an unambiguous alphabet with the
``secrets`` module. Only the sha256 hash of the normalized code is used for
lookup; uniqueness is enforced by the database and collisions are retried
inside a savepoint.
"""
from __future__ import annotations

import hashlib
import logging
import secrets
from typing import TYPE_CHECKING

from sqlalchemy.exc import IntegrityError

if TYPE_CHECKING:
    from sqlalchemy.orm import Session
    from app.cms.modules.memberships.models import MembershipCode, MembershipCodeBatch

logger = logging.getLogger(__name__)

CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZabcdefghjkmnpqrstuvwxyz23456789"
DEFAULT_EXCLUDE_CHARS = "oO0iIlL1"
DEFAULT_RANDOM_LENGTH = 8
MIN_RANDOM_LENGTH = 4
MAX_RANDOM_LENGTH = 32
MAX_CODES_PER_REQUEST = 10_000
DEFAULT_MAX_ATTEMPTS = 5


class CodeGenerationError(Exception):
    pass


def hash_code(code: str) -> str:
    return hashlib.sha256(code.strip().lower().encode("utf-8")).hexdigest()


def code_alphabet(exclude: str | None = DEFAULT_EXCLUDE_CHARS) -> str:
    excluded = {c.lower() for c in (exclude or "")}
    alphabet = "".join(c for c in CODE_ALPHABET if c.lower() not in excluded)
    if not alphabet:
        raise ValueError("Excluded characters leave nothing to generate codes from.")
    return alphabet


def generate_code_string(
    prefix: str | None = None,
    suffix: str | None = None,
    length: int = DEFAULT_RANDOM_LENGTH,
    exclude: str | None = DEFAULT_EXCLUDE_CHARS,
) -> str:
    if not MIN_RANDOM_LENGTH <= length <= MAX_RANDOM_LENGTH:
        raise ValueError(f"Random length must be between {MIN_RANDOM_LENGTH} and {MAX_RANDOM_LENGTH}.")
    alphabet = code_alphabet(exclude)
    body = "".join(secrets.choice(alphabet) for _ in range(length))
    return f"{(prefix or '').strip()}{body}{(suffix or '').strip()}"


def _batch_code_string(batch: "MembershipCodeBatch") -> str:
    exclude = DEFAULT_EXCLUDE_CHARS if batch.exclude_chars is None else batch.exclude_chars
    return generate_code_string(batch.prefix, batch.suffix, batch.random_length, exclude)


def insert_unique_code(s: "Session", batch: "MembershipCodeBatch", max_attempts: int = DEFAULT_MAX_ATTEMPTS) -> tuple[str, "MembershipCode"]:
    """Generate and insert one single-use code, retrying on a hash collision."""
    from app.cms.modules.memberships.models import MembershipCode

    for attempt in range(1, max_attempts + 1):
        plain = _batch_code_string(batch)
        row = MembershipCode(batch_id=batch.id, code_hash=hash_code(plain), code_plain=plain, status="available")
        sp = s.begin_nested()
        try:
            s.add(row)
            s.flush()
        except IntegrityError:
            sp.rollback()
            logger.warning("Membership code collision in batch %s (attempt %s/%s)", batch.id, attempt, max_attempts)
            continue
        sp.commit()
        return plain, row
    raise CodeGenerationError(f"Could not generate a unique code after {max_attempts} attempts.")


def generate_single_use_codes(
    s: "Session", batch: "MembershipCodeBatch", count: int, max_attempts: int = DEFAULT_MAX_ATTEMPTS
) -> list[str]:
    """Insert ``count`` new codes for the batch. Returns the plain codes (shown once)."""
    if batch.use_type != "single_use":
        raise ValueError("Codes can only be generated for single-use batches.")
    if count < 1 or count > MAX_CODES_PER_REQUEST:
        raise ValueError(f"Count must be between 1 and {MAX_CODES_PER_REQUEST}.")
    codes = [insert_unique_code(s, batch, max_attempts)[0] for _ in range(count)]
    logger.info("Generated %s codes for batch %s", len(codes), batch.id)
    return codes


def assign_multi_use_code(
    s: "Session", batch: "MembershipCodeBatch", max_attempts: int = DEFAULT_MAX_ATTEMPTS, *, code: str | None = None
) -> str:
    """Give a multi-use batch its shared code (either the one supplied or a generated one)."""
    from app.cms.modules.memberships.models import MembershipCode, MembershipCodeBatch

    def taken(h: str) -> bool:
        return (
            s.query(MembershipCode.id).filter(MembershipCode.code_hash == h).first() is not None
            or s.query(MembershipCodeBatch.id)
            .filter(MembershipCodeBatch.code_hash == h, MembershipCodeBatch.id != batch.id)
            .first()
            is not None
        )

    if code is not None:
        plain = code.strip()
        if not plain:
            raise ValueError("Code cannot be blank.")
        if taken(hash_code(plain)):
            raise ValueError("That code is already in use.")
        batch.code_hash, batch.code_plain = hash_code(plain), plain
        s.flush()
        return plain

    for _ in range(max_attempts):
        plain = _batch_code_string(batch)
        if not taken(hash_code(plain)):
            batch.code_hash, batch.code_plain = hash_code(plain), plain
            s.flush()
            return plain
    raise CodeGenerationError(f"Could not generate a unique code after {max_attempts} attempts.")
