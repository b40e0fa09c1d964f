import hashlib
import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from minority_game.commitment import seal_vote
from minority_game.config import DRAND_GENESIS_TIME, DRAND_PERIOD, Settings
from minority_game.coordinator import RevealCoordinator
from minority_game.ledger import TransactionResult
from minority_game.models import ENCRYPTED, Base
from minority_game.store import VoteStore
from minority_game.timelock import RoundNotReachedError, round_for_deadline

NOW = datetime(2026, 3, 1, 12, 0, 0)

ALICE = "0x" + "a1" * 32
BOB = "0x" + "b2" * 32
CAROL = "0x" + "c3" * 32
DAVE = "0x" + "d4" * 32

E_POLL_ENDED = 0
E_WRONG_HASH = 2
E_ALREADY_REVEALED = 9

ABORT_TEMPLATE = (
    'MoveAbort(MoveLocation { module: ModuleId { address: 0x1aff, name: Identifier("minority_game") }, '
    'function: 3, instruction: 12, function_name: Some("reveal_vote") }, %d) in command 0'
)


class FakePoll:
    def __init__(self, option_a, option_b):
        self.option_a = option_a
        self.option_b = option_b
        self.count_a = 0
        self.count_b = 0
        self.commitments = {}
        self.revealed = set()
        self.reveal_open = True
        self.created_at = int((NOW - timedelta(hours=2) - datetime(1970, 1, 1)).total_seconds() * 1000)


class FakeLedger:
    """In-memory stand-in for the minority_game Move module."""

    def __init__(self):
        self.polls = {}
        self.commits = {}
        self.submissions = []
        self.failures = {}
        self.claims = []
        self.transactions = {}
        self._digests = itertools.count(1)

    def _digest(self):
        return f"tx{next(self._digests)}"

    def _failed(self, code):
        return TransactionResult(digest=self._digest(), status="failure", error=ABORT_TEMPLATE % code)

    def create_poll(self, title, option_a, option_b):
        poll_id = f"0xpoll{len(self.polls) + 1}"
        self.polls[poll_id] = FakePoll(option_a, option_b)
        result = TransactionResult(
            digest=self._digest(),
            status="success",
            object_changes=[{"type": "created", "objectType": "0x1::minority_game::Poll", "objectId": poll_id}],
        )
        return result, poll_id

    def commit(self, poll_id, address, digest_bytes):
        self.polls[poll_id].commitments[address] = digest_bytes
        digest = self._digest()
        self.commits[digest] = (poll_id, address, digest_bytes)
        return digest

    def submit_reveal(self, poll_id, participant, choice_bytes, salt_bytes):
        self.submissions.append((poll_id, participant))
        if participant in self.failures:
            raise self.failures.pop(participant)
        poll = self.polls[poll_id]
        if not poll.reveal_open:
            return self._failed(E_POLL_ENDED)
        if participant in poll.revealed:
            return self._failed(E_ALREADY_REVEALED)
        data = choice_bytes + salt_bytes
        if hashlib.blake2b(data, digest_size=32).digest() != poll.commitments.get(participant):
            return self._failed(E_WRONG_HASH)
        choice = choice_bytes.decode("utf-8")
        if choice == poll.option_a:
            poll.count_a += 1
        else:
            poll.count_b += 1
        poll.revealed.add(participant)
        return TransactionResult(
            digest=self._digest(),
            status="success",
            events=[{"type": "0x1::minority_game::RevealEvent", "parsedJson": {"voter": participant}}],
        )

    def wait_for_finality(self, digest):
        return {"status": {"status": "success"}}

    def get_commitment(self, digest):
        entry = self.commits.get(digest)
        return entry[2] if entry else None

    def get_object_fields(self, poll_id):
        poll = self.polls[poll_id]
        return {
            "count_a": poll.count_a,
            "count_b": poll.count_b,
            "created_at": poll.created_at,
            "option_a": poll.option_a,
            "option_b": poll.option_b,
        }

    def get_transaction(self, digest):
        if digest in self.transactions:
            return self.transactions[digest]
        sender = self.commits[digest][1] if digest in self.commits else None
        return {
            "digest": digest,
            "transaction": {"data": {"sender": sender}},
            "effects": {"status": {"status": "success"}},
            "balanceChanges": [],
        }

    def claim_reward(self, poll_id, signer=None):
        self.claims.append(("claim_reward", poll_id))
        return TransactionResult(digest=self._digest(), status="success")

    def withdraw_stake(self, poll_id, signer=None):
        self.claims.append(("withdraw_stake", poll_id))
        return TransactionResult(digest=self._digest(), status="success")


class FakeCodec:
    """Ciphertexts look like ``tlock:<round>:<payload hex>``."""

    def __init__(self, current_round=10 ** 9):
        self.current_round = current_round
        self.decrypt_calls = 0

    def round_for_deadline(self, deadline_seconds):
        return round_for_deadline(deadline_seconds, DRAND_GENESIS_TIME, DRAND_PERIOD)

    def encrypt_for_round(self, round_, payload):
        return f"tlock:{round_}:{payload.hex()}"

    def decrypt(self, ciphertext):
        self.decrypt_calls += 1
        _, round_, payload = ciphertext.split(":")
        if int(round_) > self.current_round:
            raise RoundNotReachedError(int(round_), self.current_round)
        return bytes.fromhex(payload)


@pytest.fixture
def db():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    session = Session()
    try:
        yield session
    finally:
        session.close()
        engine.dispose()


@pytest.fixture
def settings():
    return Settings(
        voting_duration=3600,
        reveal_duration=1800,
        tlock_service_url="http://tlock.test",
        package_id="0x1aff",
        admin_secret_key="suiprivkey-test",
        admin_cap_id="0xcap",
        cron_secret="cron-secret",
    )


@pytest.fixture
def store(db, settings):
    return VoteStore(db, settings.voting_duration)


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def codec():
    return FakeCodec()


@pytest.fixture
def coordinator(settings, store, codec, ledger):
    return RevealCoordinator(settings, store, codec, ledger, clock=lambda: NOW)


class Game:
    def __init__(self, store, ledger, codec, settings):
        self.store = store
        self.ledger = ledger
        self.codec = codec
        self.settings = settings

    def topic(self, option_a="Sweet", option_b="Salty", age=timedelta(hours=2)):
        topic = self.store.create_topic(f"{option_a} vs {option_b}", option_a, option_b,
                                        created_at=NOW - age)
        _, poll_id = self.ledger.create_poll(topic.title, option_a, option_b)
        return self.store.activate_topic(topic.id, poll_id)

    def vote(self, topic, address, choice):
        deadline = topic.created_at + timedelta(seconds=self.settings.voting_duration)
        sealed = seal_vote(self.codec, choice, deadline)
        digest = self.ledger.commit(topic.on_chain_id, address, sealed.commitment)
        vote = self.store.upsert_vote_backup(
            topic_id=topic.id,
            user_address=address,
            choice=ENCRYPTED,
            salt=sealed.ciphertext,
            tx_digest=digest,
            network="testnet",
        )
        return vote, sealed


@pytest.fixture
def game(store, ledger, codec, settings):
    return Game(store, ledger, codec, settings)
