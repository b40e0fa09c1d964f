"""
Reveal coordinator: one pass over every topic whose voting window has closed.

Per committed vote:
  decrypt -> cross-check the commitment -> reveal on chain -> persist.

Outcomes:
  round not reached     vote untouched, topic stays open ("pending")
  reveal succeeded      revealed
  abort: already done   revealed, nothing re-submitted
  abort: window elapsed expired
  bad payload/mismatch  error, never submitted
  anything else         vote untouched, failure logged, topic stays open

The pass holds no state of its own. Overlapping passes are safe because the
ledger rejects a second reveal of the same vote and every store write is an
overwrite keyed by vote id.
"""

import json
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError

from .commitment import commitment
from .config import Settings
from .ledger import LedgerError, MoveAbort, SuiLedgerClient
from .models import (
    ENCRYPTED,
    ERROR,
    EXPIRED,
    REVEALED,
    Topic,
    VoteBackup,
    utcnow,
)
from .schemas import RevealReport, VoteResult
from .store import StoreError, VoteStore
from .timelock import RoundNotReachedError, TimelockCodec, TimelockError, TimelockUnavailable

log = logging.getLogger("minority_game.coordinator")

PENDING = "pending"


class CommitmentMismatch(Exception):
    """Decrypted vote does not hash to the commitment registered on chain."""


class PayloadError(Exception):
    """Decrypted payload is not a valid {choice, salt} document."""


@dataclass
class RevealedVote:
    choice: str
    salt: str

    @property
    def choice_bytes(self) -> bytes:
        return self.choice.encode("utf-8")

    @property
    def salt_bytes(self) -> bytes:
        return bytes.fromhex(self.salt)


def parse_payload(plaintext: bytes) -> RevealedVote:
    try:
        data = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, ValueError) as e:
        raise PayloadError(f"Payload is not JSON: {e}")
    if not isinstance(data, dict):
        raise PayloadError("Payload is not an object")
    choice, salt = data.get("choice"), data.get("salt")
    if not isinstance(choice, str) or not isinstance(salt, str):
        raise PayloadError("Payload needs string 'choice' and 'salt'")
    try:
        bytes.fromhex(salt)
    except ValueError:
        raise PayloadError("Salt is not hex")
    return RevealedVote(choice=choice, salt=salt)


class RevealCoordinator:
    def __init__(
        self,
        settings: Settings,
        store: VoteStore,
        codec,
        ledger,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings
        self.store = store
        self.codec = codec
        self.ledger = ledger
        self.clock = clock

    def run(self) -> RevealReport:
        """Run one reveal pass. Configuration errors abort before any write."""
        self.settings.require_reveal()

        report = RevealReport()
        topics = self.store.list_active_topics_past_deadline(self.clock())
        log.info("Reveal pass: %d topic(s) past voting deadline", len(topics))

        for topic in topics:
            self.process_topic(topic, report)

        log.info(
            "Reveal pass done: revealed=%d expired=%d errored=%d pending=%d closed=%s",
            report.revealed, report.expired, report.errored, report.pending, report.closed_topics,
        )
        return report

    def process_topic(self, topic: Topic, report: RevealReport) -> bool:
        """Process every committed vote of ``topic``; returns True if it closed."""
        log.info("Processing topic %s (%s)", topic.id, topic.on_chain_id)
        fully_processed = True

        for vote in self.store.list_committed_votes(topic.id):
            result = self.process_vote(topic, vote)
            report.add(result)
            if result.status not in (REVEALED, EXPIRED):
                fully_processed = False

        if not fully_processed:
            log.info("Topic %s left open: unresolved votes this pass", topic.id)
            return False

        # Earlier passes may have left votes in error
        if self.store.count_open_votes(topic.id):
            log.warning("Topic %s left open: votes need investigation", topic.id)
            return False

        self.store.close_topic(topic.id)
        report.closed_topics.append(topic.id)
        log.info("Topic %s closed", topic.id)
        return True

    def process_vote(self, topic: Topic, vote: VoteBackup) -> VoteResult:
        """Drive one vote to its next state. Never raises."""
        try:
            return self._process_vote(topic, vote)
        except Exception as e:
            log.exception("Vote %s: unexpected failure", vote.id)
            self.store.db.rollback()
            return self._transient(topic, vote, f"unexpected failure: {e!r}")

    def _process_vote(self, topic: Topic, vote: VoteBackup) -> VoteResult:
        try:
            revealed = self._open(vote)
        except RoundNotReachedError as e:
            log.info("Vote %s not yet decryptable: %s", vote.id, e)
            return VoteResult(id=vote.id, topic_id=topic.id, status=PENDING)
        except TimelockUnavailable as e:
            return self._transient(topic, vote, f"timelock unavailable: {e}")
        except (TimelockError, PayloadError) as e:
            return self._fault(topic, vote, f"undecodable vote: {e}")

        if revealed.choice not in (topic.option_a, topic.option_b):
            return self._fault(topic, vote, f"choice {revealed.choice!r} is not an option of topic {topic.id}")

        try:
            self._verify(vote, revealed)
        except CommitmentMismatch as e:
            return self._fault(topic, vote, str(e))
        except LedgerError as e:
            # The ledger re-checks the commitment anyway; carry on without ours
            log.warning("Vote %s: could not fetch commitment, relying on ledger: %s", vote.id, e)

        try:
            return self._reveal(topic, vote, revealed)
        except MoveAbort as abort:
            return self._on_abort(topic, vote, revealed, abort)
        except LedgerError as e:
            return self._transient(topic, vote, f"ledger failure: {e}")
        except (StoreError, SQLAlchemyError) as e:
            # Revealed on chain but not recorded; the next pass gets the duplicate abort
            self.store.db.rollback()
            return self._transient(topic, vote, f"store failure: {e}")

    def _open(self, vote: VoteBackup) -> RevealedVote:
        if vote.choice != ENCRYPTED:
            # Plaintext backup: choice and salt hex were stored directly
            return parse_payload(json.dumps({"choice": vote.choice, "salt": vote.salt}).encode("utf-8"))
        return parse_payload(self.codec.decrypt(vote.salt))

    def _verify(self, vote: VoteBackup, revealed: RevealedVote) -> None:
        expected = self.ledger.get_commitment(vote.tx_digest)
        if expected is None:
            log.warning("Vote %s: no commitment found in %s", vote.id, vote.tx_digest)
            return
        actual = commitment(revealed.choice, revealed.salt)
        if actual != expected:
            raise CommitmentMismatch(
                f"commitment mismatch for vote {vote.id}: "
                f"on-chain {expected.hex()} != recomputed {actual.hex()}"
            )

    def _reveal(self, topic: Topic, vote: VoteBackup, revealed: RevealedVote) -> VoteResult:
        result = self.ledger.submit_reveal(
            topic.on_chain_id, vote.user_address, revealed.choice_bytes, revealed.salt_bytes
        )
        self.ledger.wait_for_finality(result.digest)
        result.raise_for_status()

        if result.find_event("RevealEvent") is None:
            log.warning("Vote %s: no RevealEvent in %s", vote.id, result.digest)

        self.store.update_vote_status(
            vote.id, REVEALED, choice=revealed.choice, salt=revealed.salt,
            reveal_tx=result.digest, last_error=None,
        )
        log.info("Vote %s revealed in %s", vote.id, result.digest)
        return VoteResult(id=vote.id, topic_id=topic.id, status=REVEALED, reveal_tx=result.digest)

    def _on_abort(self, topic: Topic, vote: VoteBackup, revealed: RevealedVote,
                  abort: MoveAbort) -> VoteResult:
        if abort.module not in (None, self.settings.module_name):
            return self._transient(topic, vote, str(abort))

        try:
            if abort.code == self.settings.abort_already_revealed:
                log.info("Vote %s already revealed on chain", vote.id)
                self.store.update_vote_status(
                    vote.id, REVEALED, choice=revealed.choice, salt=revealed.salt, last_error=None,
                )
                return VoteResult(id=vote.id, topic_id=topic.id, status=REVEALED)

            if abort.code == self.settings.abort_window_elapsed:
                log.info("Vote %s expired: reveal window elapsed", vote.id)
                self.store.update_vote_status(vote.id, EXPIRED, last_error=str(abort))
                return VoteResult(id=vote.id, topic_id=topic.id, status=EXPIRED)
        except (StoreError, SQLAlchemyError) as e:
            # The next pass sees the same abort and records it again
            self.store.db.rollback()
            return self._transient(topic, vote, f"store failure after abort {abort.code}: {e}")

        return self._transient(topic, vote, str(abort))

    def _transient(self, topic: Topic, vote: VoteBackup, message: str) -> VoteResult:
        log.warning("Vote %s: %s", vote.id, message)
        self._record(topic, vote, "retry", message)
        return VoteResult(id=vote.id, topic_id=topic.id, status=ERROR, error=message)

    def _fault(self, topic: Topic, vote: VoteBackup, message: str) -> VoteResult:
        log.error("Vote %s needs investigation: %s", vote.id, message)
        self._record(topic, vote, ERROR, message)
        try:
            self.store.update_vote_status(vote.id, ERROR, last_error=message)
        except (StoreError, SQLAlchemyError) as e:
            self.store.db.rollback()
            log.warning("Vote %s: could not persist error status: %s", vote.id, e)
        return VoteResult(id=vote.id, topic_id=topic.id, status=ERROR, error=message)

    def _record(self, topic: Topic, vote: VoteBackup, outcome: str, message: str) -> None:
        # Best effort
        try:
            self.store.log_failure(topic.id, vote.id, outcome, message)
        except SQLAlchemyError as e:
            self.store.db.rollback()
            log.warning("Could not record failure for vote %s: %s", vote.id, e)


def build_coordinator(settings: Settings, db, codec=None, ledger=None,
                      clock: Optional[Callable[[], datetime]] = None) -> RevealCoordinator:
    """Wire a coordinator from settings, creating real collaborators if none are given."""
    settings.require_reveal()
    store = VoteStore(db, settings.voting_duration)
    codec = codec or TimelockCodec.from_settings(settings)
    ledger = ledger or SuiLedgerClient.from_settings(settings)
    return RevealCoordinator(settings, store, codec, ledger, clock=clock or utcnow)
