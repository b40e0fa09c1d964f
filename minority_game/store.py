import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .models import (
    ACTIVE,
    CLOSED,
    COMMITTED,
    DRAFT,
    ERROR,
    REVEALED,
    TERMINAL_STATUSES,
    TOPIC_ORDER,
    RevealLog,
    Topic,
    VoteBackup,
)

log = logging.getLogger("minority_game.store")


class StoreError(Exception):
    pass


class VoteStore:
    """
    Topic and vote-backup bookkeeping. Every write commits on its own and is
    keyed by record identity, so a pass can stop between any two writes.
    """

    def __init__(self, db: Session, voting_duration: int):
        self.db = db
        self.voting_duration = voting_duration

    # --- Topics ---

    def get_topic(self, topic_id: int) -> Optional[Topic]:
        return self.db.get(Topic, topic_id)

    def create_topic(self, title: str, option_a: str, option_b: str,
                     description: Optional[str] = None,
                     created_at: Optional[datetime] = None) -> Topic:
        topic = Topic(title=title, option_a=option_a, option_b=option_b,
                      description=description, status=DRAFT)
        if created_at is not None:
            topic.created_at = created_at
        self.db.add(topic)
        self.db.commit()
        self.db.refresh(topic)
        return topic

    def activate_topic(self, topic_id: int, on_chain_id: str,
                       created_at: Optional[datetime] = None) -> Topic:
        topic = self._require_topic(topic_id)
        if topic.status != DRAFT:
            raise StoreError(f"Topic {topic_id} is {topic.status}, cannot activate")
        topic.on_chain_id = on_chain_id
        topic.status = ACTIVE
        if created_at is not None:
            topic.created_at = created_at
        self.db.commit()
        self.db.refresh(topic)
        return topic

    def list_active_topics_past_deadline(self, now: datetime) -> List[Topic]:
        cutoff = now - timedelta(seconds=self.voting_duration)
        return (
            self.db.query(Topic)
            .filter(Topic.status == ACTIVE)
            .filter(Topic.on_chain_id.isnot(None))
            .filter(Topic.created_at < cutoff)
            .order_by(Topic.id)
            .all()
        )

    def close_topic(self, topic_id: int) -> Topic:
        topic = self._require_topic(topic_id)
        if TOPIC_ORDER.get(topic.status, 0) < TOPIC_ORDER[CLOSED]:
            topic.status = CLOSED
            self.db.commit()
        return topic

    def _require_topic(self, topic_id: int) -> Topic:
        topic = self.get_topic(topic_id)
        if topic is None:
            raise StoreError(f"Topic {topic_id} not found")
        return topic

    # --- Votes ---

    def get_vote(self, vote_id: int) -> Optional[VoteBackup]:
        return self.db.get(VoteBackup, vote_id)

    def find_vote(self, topic_id: int, user_address: str) -> Optional[VoteBackup]:
        return (
            self.db.query(VoteBackup)
            .filter(VoteBackup.topic_id == topic_id)
            .filter(VoteBackup.user_address == user_address)
            .first()
        )

    def list_committed_votes(self, topic_id: int) -> List[VoteBackup]:
        return (
            self.db.query(VoteBackup)
            .filter(VoteBackup.topic_id == topic_id)
            .filter(VoteBackup.status == COMMITTED)
            .order_by(VoteBackup.id)
            .all()
        )

    def count_open_votes(self, topic_id: int) -> int:
        """Votes that still block closing the topic."""
        return (
            self.db.query(VoteBackup)
            .filter(VoteBackup.topic_id == topic_id)
            .filter(VoteBackup.status.in_([COMMITTED, ERROR]))
            .count()
        )

    def update_vote_status(self, vote_id: int, status: str, **fields) -> VoteBackup:
        vote = self.get_vote(vote_id)
        if vote is None:
            raise StoreError(f"Vote {vote_id} not found")
        if vote.status in TERMINAL_STATUSES and status != vote.status:
            # Terminal outcomes are final; repeat writes of the same status are fine
            log.warning("Vote %s is %s, ignoring transition to %s", vote_id, vote.status, status)
            return vote
        vote.status = status
        for name, value in fields.items():
            setattr(vote, name, value)
        self.db.commit()
        return vote

    def upsert_vote_backup(self, topic_id: int, user_address: str, choice: str,
                           salt: str, tx_digest: str, network: str) -> VoteBackup:
        vote = self.find_vote(topic_id, user_address)
        if vote is not None and vote.status != COMMITTED:
            raise StoreError(f"Vote for {user_address} on topic {topic_id} is already {vote.status}")
        if vote is None:
            vote = VoteBackup(topic_id=topic_id, user_address=user_address)
            self.db.add(vote)
        vote.choice = choice
        vote.salt = salt
        vote.tx_digest = tx_digest
        vote.network = network
        vote.status = COMMITTED
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with a concurrent backup for the same (topic, user)
            self.db.rollback()
            return self.upsert_vote_backup(topic_id, user_address, choice, salt, tx_digest, network)
        self.db.refresh(vote)
        return vote

    def record_claim(self, vote_id: int, claim_tx: str, claimed_amount: Optional[int]) -> VoteBackup:
        vote = self.get_vote(vote_id)
        if vote is None:
            raise StoreError(f"Vote {vote_id} not found")
        if vote.status != REVEALED:
            raise StoreError(f"Vote {vote_id} is {vote.status}, only revealed votes can claim")
        vote.claim_tx = claim_tx
        vote.claimed_amount = claimed_amount
        self.db.commit()
        return vote

    # --- Observability ---

    def log_failure(self, topic_id: int, vote_id: int, outcome: str, details: str) -> None:
        self.db.add(RevealLog(topic_id=topic_id, vote_id=vote_id, outcome=outcome, details=details))
        self.db.commit()
