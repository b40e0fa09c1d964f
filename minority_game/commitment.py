"""
Commitment hashing shared with the on-chain ``minority_game`` module.

The Move side builds ``vector::append(choice, salt)`` and hashes it with
``blake2b256``. Choice bytes come first (UTF-8), then the raw salt bytes
decoded from hex, with no separator.
"""

import hashlib
import hmac
import json
import secrets
from dataclasses import dataclass
from datetime import datetime, timezone

SALT_BYTES = 16
DIGEST_SIZE = 32


def generate_salt() -> str:
    return secrets.token_hex(SALT_BYTES)


def commitment(choice: str, salt_hex: str) -> bytes:
    """blake2b-256(choice_utf8 || salt_bytes). Raises ValueError on bad hex."""
    data = choice.encode("utf-8") + bytes.fromhex(salt_hex)
    return hashlib.blake2b(data, digest_size=DIGEST_SIZE).digest()


def commitment_hex(choice: str, salt_hex: str) -> str:
    return commitment(choice, salt_hex).hex()


def verify_commitment(choice: str, salt_hex: str, expected: bytes) -> bool:
    return hmac.compare_digest(commitment(choice, salt_hex), bytes(expected))


@dataclass(frozen=True)
class SealedVote:
    ciphertext: str
    salt: str
    round: int
    commitment: bytes


def seal_vote(codec, choice: str, voting_deadline: datetime) -> SealedVote:
    """
    Commit-side helper: pick a salt, time-lock ``{"choice", "salt"}`` to the
    first round published after the voting deadline and return everything a
    participant needs for ``commit_vote`` and the vote backup.
    """
    salt = generate_salt()
    if voting_deadline.tzinfo is None:
        voting_deadline = voting_deadline.replace(tzinfo=timezone.utc)
    round_ = codec.round_for_deadline(voting_deadline.timestamp())
    payload = json.dumps({"choice": choice, "salt": salt}).encode("utf-8")
    ciphertext = codec.encrypt_for_round(round_, payload)
    return SealedVote(
        ciphertext=ciphertext,
        salt=salt,
        round=round_,
        commitment=commitment(choice, salt),
    )
