from sqlalchemy import Column, Integer, String, DateTime, BigInteger, ForeignKey
from sqlalchemy import Text, UniqueConstraint
from datetime import datetime, timezone
from .database import Base


ENCRYPTED = "ENCRYPTED"

# Topic lifecycle
DRAFT = "draft"
ACTIVE = "active"
CLOSED = "closed"
TOPIC_ORDER = {DRAFT: 0, ACTIVE: 1, CLOSED: 2}

# Vote lifecycle
COMMITTED = "committed"
REVEALED = "revealed"
EXPIRED = "expired"
ERROR = "error"
TERMINAL_STATUSES = {REVEALED, EXPIRED}


def utcnow() -> datetime:
    # Naive UTC everywhere in the DB
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Topic(Base):
    __tablename__ = "topics"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String, nullable=False)
    option_a = Column(String, nullable=False)
    option_b = Column(String, nullable=False)
    description = Column(Text, nullable=True)

    # Phase timing is derived from this timestamp only
    created_at = Column(DateTime, default=utcnow, index=True)

    on_chain_id = Column(String, nullable=True, index=True)
    status = Column(String, default=DRAFT, index=True)  # draft / active / closed


class VoteBackup(Base):
    __tablename__ = "vote_backups"
    __table_args__ = (
        UniqueConstraint("topic_id", "user_address", name="uq_vote_topic_user"),
    )

    id = Column(Integer, primary_key=True, index=True)
    topic_id = Column(Integer, ForeignKey("topics.id"), nullable=False, index=True)
    user_address = Column(String, nullable=False, index=True)

    # ENCRYPTED until revealed, then the plaintext option label
    choice = Column(String, nullable=False, default=ENCRYPTED)
    # Time-lock ciphertext while sealed, salt hex after reveal
    salt = Column(Text, nullable=False)

    tx_digest = Column(String, nullable=False)
    network = Column(String, nullable=True)
    status = Column(String, default=COMMITTED, index=True)  # committed / revealed / expired / error

    reveal_tx = Column(String, nullable=True)
    claim_tx = Column(String, nullable=True)
    claimed_amount = Column(BigInteger, nullable=True)
    last_error = Column(Text, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)


class RevealLog(Base):
    __tablename__ = "reveal_logs"

    id = Column(Integer, primary_key=True)
    timestamp = Column(DateTime, default=utcnow)
    topic_id = Column(Integer, index=True)
    vote_id = Column(Integer, index=True)
    outcome = Column(String)
    details = Column(Text)
