"""
Time-lock codec backed by the drand beacon.

Ciphertexts are tlock/age files: the header carries a ``tlock`` stanza naming
the round and the chain hash, so the round a vote is sealed to can be read
without decrypting. Actual encryption and decryption are delegated to a tlock
service over HTTP; drand's public API tells us the latest published round.
"""

import base64
import binascii
import logging
import math
import re
import time
from typing import Callable, Optional

import requests

log = logging.getLogger("minority_game.timelock")

ARMOR_BEGIN = "-----BEGIN AGE ENCRYPTED FILE-----"
ARMOR_END = "-----END AGE ENCRYPTED FILE-----"
AGE_MAGIC = b"age-encryption.org/v1"
TLOCK_STANZA = re.compile(rb"^-> tlock (\d+) ([0-9a-fA-F]+)", re.MULTILINE)

HTTP_TOO_EARLY = 425


class TimelockError(Exception):
    """Permanent fault: malformed ciphertext or rejected request."""


class TimelockUnavailable(TimelockError):
    """Transient fault: beacon or tlock service could not be reached."""


class RoundNotReachedError(Exception):
    """The round's key has not been published yet. Retry later."""

    def __init__(self, round_: int, latest: Optional[int] = None):
        self.round = round_
        self.latest = latest
        if latest is None:
            msg = f"round {round_} not reached yet"
        else:
            msg = f"round {round_} not reached yet (latest={latest})"
        super().__init__(msg)


def round_for_deadline(deadline_seconds: float, genesis_seconds: int, period_seconds: int) -> int:
    """
    First round whose key is public strictly after ``deadline_seconds``.
    The +1 keeps votes sealed until voting has legitimately closed.
    """
    return math.ceil((deadline_seconds - genesis_seconds) / period_seconds) + 1


def round_at(now_seconds: float, genesis_seconds: int, period_seconds: int) -> int:
    """Latest round that should have been published at ``now_seconds``."""
    if now_seconds < genesis_seconds:
        return 0
    return int((now_seconds - genesis_seconds) // period_seconds) + 1


def _age_bytes(ciphertext: str) -> bytes:
    text = ciphertext.strip()
    if text.startswith(ARMOR_BEGIN):
        if ARMOR_END not in text:
            raise TimelockError("Truncated age armor")
        body = text[len(ARMOR_BEGIN):text.index(ARMOR_END)]
        try:
            return base64.b64decode("".join(body.split()), validate=True)
        except (binascii.Error, ValueError) as e:
            raise TimelockError(f"Invalid armored ciphertext: {e}")
    return text.encode("latin-1", errors="replace")


def ciphertext_round(ciphertext: str) -> int:
    """Round number from the tlock stanza of an age ciphertext."""
    data = _age_bytes(ciphertext)
    if not data.startswith(AGE_MAGIC):
        raise TimelockError("Not an age ciphertext")
    match = TLOCK_STANZA.search(data)
    if not match:
        raise TimelockError("Ciphertext has no tlock stanza")
    return int(match.group(1))


class TimelockCodec:
    def __init__(
        self,
        service_url: str,
        drand_url: str,
        chain_hash: str,
        genesis_time: int,
        period: int,
        session: Optional[requests.Session] = None,
        clock: Callable[[], float] = time.time,
        timeout: float = 30,
    ):
        self.service_url = service_url.rstrip("/")
        self.drand_url = drand_url.rstrip("/")
        self.chain_hash = chain_hash
        self.genesis_time = genesis_time
        self.period = period
        self.session = session or requests.Session()
        self.clock = clock
        self.timeout = timeout

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "TimelockCodec":
        return cls(
            service_url=settings.tlock_service_url,
            drand_url=settings.drand_url,
            chain_hash=settings.drand_chain_hash,
            genesis_time=settings.drand_genesis_time,
            period=settings.drand_period,
            **kwargs,
        )

    def round_for_deadline(self, deadline_seconds: float) -> int:
        return round_for_deadline(deadline_seconds, self.genesis_time, self.period)

    def latest_round(self) -> int:
        url = f"{self.drand_url}/{self.chain_hash}/public/latest"
        try:
            r = self.session.get(url, timeout=self.timeout)
        except requests.RequestException as e:
            raise TimelockUnavailable(f"drand request failed: {e}")
        if r.status_code != 200:
            raise TimelockUnavailable(f"drand error {r.status_code}: {r.text}")
        try:
            return int(r.json()["round"])
        except (ValueError, KeyError, TypeError) as e:
            raise TimelockUnavailable(f"drand returned no round: {e}")

    def _post(self, path: str, payload: dict) -> dict:
        try:
            r = self.session.post(f"{self.service_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise TimelockUnavailable(f"tlock service request failed: {e}")
        if r.status_code == HTTP_TOO_EARLY:
            raise RoundNotReachedError(payload.get("round") or -1)
        if r.status_code >= 500:
            raise TimelockUnavailable(f"tlock service error {r.status_code}: {r.text}")
        if r.status_code != 200:
            raise TimelockError(f"tlock service rejected request {r.status_code}: {r.text}")
        try:
            return r.json()
        except ValueError:
            raise TimelockUnavailable("tlock service returned invalid JSON")

    def encrypt_for_round(self, round_: int, payload: bytes) -> str:
        data = self._post(
            "/encrypt",
            {
                "round": round_,
                "chain_hash": self.chain_hash,
                "payload": base64.b64encode(payload).decode("ascii"),
            },
        )
        ciphertext = data.get("ciphertext")
        if not ciphertext:
            raise TimelockError("tlock service returned no ciphertext")
        return ciphertext

    def decrypt(self, ciphertext: str) -> bytes:
        round_ = ciphertext_round(ciphertext)

        # Cheap wall-clock check first, then the beacon itself
        expected = round_at(self.clock(), self.genesis_time, self.period)
        if expected < round_:
            raise RoundNotReachedError(round_, expected)
        latest = self.latest_round()
        if latest < round_:
            raise RoundNotReachedError(round_, latest)

        data = self._post("/decrypt", {"round": round_, "ciphertext": ciphertext})
        try:
            return base64.b64decode(data["payload"], validate=True)
        except (KeyError, TypeError, binascii.Error, ValueError) as e:
            raise TimelockError(f"tlock service returned an invalid payload: {e}")
