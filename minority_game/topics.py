import logging
from datetime import datetime, timezone
from typing import List, Optional

import requests

from .ledger import LedgerError
from .models import Topic
from .schemas import TopicIn
from .store import VoteStore

log = logging.getLogger("minority_game.topics")

FALLBACK_TOPICS = [
    TopicIn(title="Sweet vs Salty Tofu Pudding", option_a="Sweet", option_b="Salty",
            description="The eternal battle of flavors."),
    TopicIn(title="Cats vs Dogs", option_a="Cats", option_b="Dogs",
            description="Which furry friend is better?"),
    TopicIn(title="Coffee vs Tea", option_a="Coffee", option_b="Tea",
            description="Morning fuel choice."),
]


class TopicSourceError(Exception):
    pass


def fetch_topics(url: Optional[str], session: Optional[requests.Session] = None,
                 timeout: float = 30) -> List[TopicIn]:
    """
    Fetch ``{"topics": [{title, option_a, option_b, description}]}`` from the
    topic source. Without a configured source the built-in list is used.
    """
    if not url:
        return list(FALLBACK_TOPICS)

    http = session or requests
    try:
        r = http.get(url, timeout=timeout)
    except requests.RequestException as e:
        raise TopicSourceError(f"Topic source request failed: {e}")

    if r.status_code != 200:
        raise TopicSourceError(f"Topic source error {r.status_code}: {r.text}")

    try:
        items = r.json().get("topics")
    except (ValueError, AttributeError):
        raise TopicSourceError("Topic source returned invalid JSON")
    if not isinstance(items, list):
        raise TopicSourceError("Topic source returned no topic list")

    topics = []
    for item in items:
        try:
            topics.append(TopicIn.model_validate(item))
        except ValueError as e:
            log.warning("Skipping malformed topic %r: %s", item, e)
    return topics


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).replace(tzinfo=None)


def activate(store: VoteStore, ledger, topic: Topic) -> Topic:
    """Create the on-chain poll for a draft topic and attach its id."""
    result, poll_id = ledger.create_poll(topic.title, topic.option_a, topic.option_b)
    if not result.ok or not poll_id:
        log.error("create_poll failed for topic %s: %s", topic.id, result.error)
        return topic

    created_at = None
    try:
        fields = ledger.get_object_fields(poll_id)
        if fields.get("created_at"):
            # Keep the DB window aligned with the ledger clock
            created_at = ms_to_datetime(fields["created_at"])
    except LedgerError as e:
        log.warning("Could not read created_at of poll %s: %s", poll_id, e)

    return store.activate_topic(topic.id, poll_id, created_at=created_at)


def generate_topics(store: VoteStore, topics: List[TopicIn], ledger=None) -> List[Topic]:
    """Insert topics as drafts, activating each on chain when a ledger is available."""
    saved = []
    for item in topics:
        topic = store.create_topic(item.title, item.option_a, item.option_b, item.description)
        if ledger is not None:
            try:
                topic = activate(store, ledger, topic)
            except LedgerError as e:
                log.error("Failed to create poll on chain for topic %s: %s", topic.id, e)
        saved.append(topic)
    return saved
