"""Reveal pass behaviour: deferral, terminal outcomes, closure and idempotence."""

from datetime import timedelta

import pytest
from sqlalchemy.exc import OperationalError

from conftest import ALICE, BOB, CAROL, E_ALREADY_REVEALED, NOW
from minority_game.config import ConfigurationError, Settings
from minority_game.coordinator import RevealCoordinator, parse_payload, PayloadError
from minority_game.ledger import LedgerUnavailable
from minority_game.models import (
    ACTIVE,
    CLOSED,
    COMMITTED,
    ENCRYPTED,
    ERROR,
    EXPIRED,
    REVEALED,
    RevealLog,
    VoteBackup,
)
from minority_game.settlement import determine_outcome


def _fail_status_writes(monkeypatch, store, status, times=1):
    """Make the next ``times`` writes of ``status`` fail like a locked database."""
    real = store.update_vote_status
    remaining = [times]

    def update_vote_status(vote_id, new_status, **fields):
        if new_status == status and remaining[0]:
            remaining[0] -= 1
            raise OperationalError("UPDATE vote_backups", {}, Exception("database is locked"))
        return real(vote_id, new_status, **fields)

    monkeypatch.setattr(store, "update_vote_status", update_vote_status)


def _snapshot(db):
    return sorted(
        (v.id, v.status, v.choice, v.salt, v.reveal_tx)
        for v in db.query(VoteBackup).all()
    )


class TestMinorityScenario:
    def test_three_votes_revealed_and_counted(self, game, coordinator, ledger, store, db):
        topic = game.topic()
        game.vote(topic, ALICE, "Sweet")
        game.vote(topic, BOB, "Salty")
        game.vote(topic, CAROL, "Salty")

        report = coordinator.run()

        assert report.revealed == 3
        assert report.processed == 3
        assert report.closed_topics == [topic.id]
        assert {v.status for v in db.query(VoteBackup).all()} == {REVEALED}

        fields = ledger.get_object_fields(topic.on_chain_id)
        assert (fields["count_a"], fields["count_b"]) == (1, 2)

        alice = store.find_vote(topic.id, ALICE)
        assert alice.choice == "Sweet"
        outcome = determine_outcome(fields["count_a"], fields["count_b"],
                                    topic.option_a, topic.option_b, alice.choice)
        assert outcome.user_won is True

        assert store.get_topic(topic.id).status == CLOSED

    def test_revealed_vote_stores_salt_and_tx(self, game, coordinator, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")

        report = coordinator.run()

        stored = store.get_vote(vote.id)
        assert stored.salt == sealed.salt
        assert stored.reveal_tx == report.results[0].reveal_tx
        assert stored.reveal_tx is not None


class TestDeferral:
    def test_round_not_reached_is_pending_not_error(self, game, coordinator, codec, ledger, store):
        codec.current_round = 0
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")

        report = coordinator.run()

        assert report.pending == 1
        assert report.errored == 0
        assert report.processed == 0
        assert report.results[0].status == "pending"
        assert ledger.submissions == []
        assert store.get_vote(vote.id).status == COMMITTED
        assert store.get_topic(topic.id).status == ACTIVE

    def test_topic_inside_voting_window_is_skipped(self, game, coordinator, codec):
        topic = game.topic(age=timedelta(minutes=10))
        game.vote(topic, ALICE, "Sweet")

        report = coordinator.run()

        assert report.results == []
        assert codec.decrypt_calls == 0

    def test_draft_topic_is_ignored(self, coordinator, store):
        store.create_topic("Draft", "A", "B", created_at=NOW - timedelta(hours=3))
        assert coordinator.run().results == []

    def test_pending_vote_revealed_on_later_pass(self, game, coordinator, codec, store):
        codec.current_round = 0
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")
        coordinator.run()

        codec.current_round = 10 ** 9
        report = coordinator.run()

        assert report.revealed == 1
        assert store.get_vote(vote.id).status == REVEALED
        assert store.get_topic(topic.id).status == CLOSED


class TestTerminalOutcomes:
    def test_already_revealed_is_benign(self, game, coordinator, ledger, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")
        # Another run got there first
        ledger.submit_reveal(topic.on_chain_id, ALICE, b"Sweet", bytes.fromhex(sealed.salt))

        report = coordinator.run()

        assert report.results[0].status == REVEALED
        assert report.errored == 0
        stored = store.get_vote(vote.id)
        assert stored.status == REVEALED
        assert stored.choice == "Sweet"
        assert store.get_topic(topic.id).status == CLOSED

    def test_window_elapsed_expires_vote(self, game, coordinator, ledger, store):
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")
        ledger.polls[topic.on_chain_id].reveal_open = False

        report = coordinator.run()

        assert report.expired == 1
        assert store.get_vote(vote.id).status == EXPIRED
        assert store.get_topic(topic.id).status == CLOSED

    def test_duplicate_submission_keeps_revealed_status(self, game, coordinator, ledger, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")
        coordinator.run()

        result = ledger.submit_reveal(topic.on_chain_id, ALICE, b"Sweet", bytes.fromhex(sealed.salt))

        assert result.abort.code == 9
        assert store.get_vote(vote.id).status == REVEALED


class TestFaults:
    def test_transient_failure_keeps_topic_open(self, game, coordinator, ledger, store, db):
        topic = game.topic()
        alice, _ = game.vote(topic, ALICE, "Sweet")
        bob, _ = game.vote(topic, BOB, "Salty")
        ledger.failures[ALICE] = LedgerUnavailable("timeout")

        report = coordinator.run()

        assert report.revealed == 1
        assert report.errored == 1
        assert store.get_vote(alice.id).status == COMMITTED
        assert store.get_vote(bob.id).status == REVEALED
        assert store.get_topic(topic.id).status == ACTIVE
        assert db.query(RevealLog).filter(RevealLog.vote_id == alice.id).count() == 1

        report = coordinator.run()

        assert report.revealed == 1
        assert store.get_vote(alice.id).status == REVEALED
        assert store.get_topic(topic.id).status == CLOSED

    def test_one_topic_failure_does_not_block_another(self, game, coordinator, ledger, store):
        first = game.topic("Cats", "Dogs")
        second = game.topic("Coffee", "Tea")
        game.vote(first, ALICE, "Cats")
        game.vote(second, BOB, "Tea")
        ledger.failures[ALICE] = LedgerUnavailable("boom")

        report = coordinator.run()

        assert report.closed_topics == [second.id]
        assert store.get_topic(first.id).status == ACTIVE

    def test_unexpected_ledger_error_stays_with_its_vote(self, game, coordinator, ledger, store, db):
        first = game.topic("Cats", "Dogs")
        second = game.topic("Coffee", "Tea")
        alice, _ = game.vote(first, ALICE, "Cats")
        bob, _ = game.vote(second, BOB, "Tea")
        ledger.failures[ALICE] = ValueError("Incorrect padding")

        report = coordinator.run()

        assert report.errored == 1
        assert "Incorrect padding" in report.results[0].error
        assert store.get_vote(alice.id).status == COMMITTED
        assert store.get_vote(bob.id).status == REVEALED
        assert report.closed_topics == [second.id]
        assert db.query(RevealLog).filter(RevealLog.vote_id == alice.id).count() == 1

    def test_store_failure_after_abort_stays_with_its_vote(self, game, coordinator, ledger, store, monkeypatch):
        first = game.topic("Cats", "Dogs")
        second = game.topic("Coffee", "Tea")
        alice, _ = game.vote(first, ALICE, "Cats")
        bob, _ = game.vote(second, BOB, "Tea")
        ledger.polls[first.on_chain_id].reveal_open = False
        _fail_status_writes(monkeypatch, store, EXPIRED)

        report = coordinator.run()

        assert report.results[0].status == ERROR
        assert "store failure" in report.results[0].error
        assert store.get_vote(alice.id).status == COMMITTED
        assert store.get_vote(bob.id).status == REVEALED
        assert report.closed_topics == [second.id]

        report = coordinator.run()

        assert report.expired == 1
        assert store.get_vote(alice.id).status == EXPIRED
        assert store.get_topic(first.id).status == CLOSED

    def test_commitment_mismatch_is_not_submitted(self, game, coordinator, ledger, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")
        # Ciphertext now claims the other option
        forged = game.codec.encrypt_for_round(
            sealed.round, ('{"choice": "Salty", "salt": "%s"}' % sealed.salt).encode()
        )
        vote.salt = forged
        store.db.commit()

        report = coordinator.run()

        assert ledger.submissions == []
        assert report.results[0].status == ERROR
        assert "mismatch" in report.results[0].error
        assert store.get_vote(vote.id).status == ERROR
        assert store.get_topic(topic.id).status == ACTIVE

    def test_garbage_payload_marks_error(self, game, coordinator, ledger, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")
        vote.salt = game.codec.encrypt_for_round(sealed.round, b"not json")
        store.db.commit()

        report = coordinator.run()

        assert report.errored == 1
        assert ledger.submissions == []
        assert store.get_vote(vote.id).status == ERROR

    def test_error_vote_blocks_closure_on_later_passes(self, game, coordinator, store):
        topic = game.topic()
        bad, sealed = game.vote(topic, ALICE, "Sweet")
        bad.salt = game.codec.encrypt_for_round(sealed.round, b"{}")
        store.db.commit()
        coordinator.run()

        game.vote(topic, BOB, "Salty")
        report = coordinator.run()

        assert report.revealed == 1
        assert report.closed_topics == []
        assert store.get_topic(topic.id).status == ACTIVE

    def test_missing_config_aborts_before_any_work(self, game, store, codec, ledger):
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")
        incomplete = Settings(tlock_service_url="http://tlock.test", package_id="0x1")
        coordinator = RevealCoordinator(incomplete, store, codec, ledger, clock=lambda: NOW)

        with pytest.raises(ConfigurationError) as exc:
            coordinator.run()

        assert "ADMIN_SECRET_KEY" in str(exc.value)
        assert "ADMIN_CAP_ID" in str(exc.value)
        assert codec.decrypt_calls == 0
        assert store.get_vote(vote.id).status == COMMITTED


class TestIdempotence:
    def test_second_pass_is_a_noop(self, game, coordinator, ledger, db):
        topic = game.topic()
        game.vote(topic, ALICE, "Sweet")
        game.vote(topic, BOB, "Salty")
        game.vote(topic, CAROL, "Salty")

        coordinator.run()
        submissions = list(ledger.submissions)
        before = _snapshot(db)

        report = coordinator.run()

        assert report.results == []
        assert ledger.submissions == submissions
        assert _snapshot(db) == before

    def test_overlapping_pass_resolves_to_revealed(self, game, settings, store, codec, ledger, db):
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")
        first = RevealCoordinator(settings, store, codec, ledger, clock=lambda: NOW)
        second = RevealCoordinator(settings, store, codec, ledger, clock=lambda: NOW)

        # Both passes saw the vote as committed
        stale = store.get_vote(vote.id)
        first.run()
        stale.status = COMMITTED
        result = second.process_vote(store.get_topic(topic.id), stale)

        assert result.status == REVEALED
        assert len(ledger.submissions) == 2
        assert store.get_vote(vote.id).status == REVEALED


class TestCrashBetweenWrites:
    def test_unrecorded_reveal_settles_on_next_pass(self, game, coordinator, ledger, store, monkeypatch):
        topic = game.topic()
        vote, _ = game.vote(topic, ALICE, "Sweet")
        abort_codes = []
        real_submit = ledger.submit_reveal

        def submit_reveal(*args):
            result = real_submit(*args)
            abort_codes.append(result.abort.code if result.abort else None)
            return result

        monkeypatch.setattr(ledger, "submit_reveal", submit_reveal)
        _fail_status_writes(monkeypatch, store, REVEALED)

        report = coordinator.run()

        # On chain, but not in the store
        assert ALICE in ledger.polls[topic.on_chain_id].revealed
        assert report.results[0].status == ERROR
        assert store.get_vote(vote.id).status == COMMITTED
        assert store.get_topic(topic.id).status == ACTIVE

        report = coordinator.run()

        assert abort_codes == [None, E_ALREADY_REVEALED]
        assert report.results[0].status == REVEALED
        stored = store.get_vote(vote.id)
        assert (stored.status, stored.choice) == (REVEALED, "Sweet")
        assert store.get_topic(topic.id).status == CLOSED

        coordinator.run()

        assert len(ledger.submissions) == 2


class TestPlaintextBackup:
    def test_plaintext_vote_revealed_without_decrypt(self, game, coordinator, codec, ledger, store):
        topic = game.topic()
        vote, sealed = game.vote(topic, ALICE, "Sweet")
        vote.choice = "Sweet"
        vote.salt = sealed.salt
        store.db.commit()

        report = coordinator.run()

        assert report.revealed == 1
        assert codec.decrypt_calls == 0


class TestParsePayload:
    def test_valid(self):
        vote = parse_payload(b'{"choice": "Tea", "salt": "00ff"}')
        assert vote.choice_bytes == b"Tea"
        assert vote.salt_bytes == b"\x00\xff"

    @pytest.mark.parametrize("raw", [b"", b"[]", b'{"choice": "Tea"}', b'{"choice": "Tea", "salt": "zz"}'])
    def test_invalid(self, raw):
        with pytest.raises(PayloadError):
            parse_payload(raw)

    def test_encrypted_marker_is_the_sentinel(self):
        assert ENCRYPTED == "ENCRYPTED"
