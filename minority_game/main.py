import logging
import os
from datetime import timedelta

from fastapi import FastAPI, Depends, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from .config import ConfigurationError, Settings
from .coordinator import RevealCoordinator
from .database import engine, get_db
from .ledger import (
    LedgerError,
    LedgerUnavailable,
    SuiLedgerClient,
    normalize_address,
    received_amount,
    transaction_sender,
    transaction_succeeded,
)
from .models import ACTIVE, Base, utcnow
from .schemas import ClaimIn, OutcomeOut, RevealReport, TopicOut, VoteBackupIn, VoteOut
from .settlement import determine_outcome
from .store import StoreError, VoteStore
from .timelock import TimelockCodec
from .topics import TopicSourceError, fetch_topics, generate_topics

logging.basicConfig(level=logging.INFO)
log = logging.getLogger("minority_game.api")

app = FastAPI(title="Minority Game Backend")
app.state.settings = Settings.from_env()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o for o in os.getenv("ALLOWED_ORIGINS", "").split(",") if o],
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["*"],
)


@app.on_event("startup")
def startup_event():
    Base.metadata.create_all(bind=engine)


# --- Dependencies ---

def get_settings(request: Request) -> Settings:
    return request.app.state.settings


def require_cron(authorization: str = Header(None), settings: Settings = Depends(get_settings)):
    if not settings.cron_secret:
        raise HTTPException(status_code=500, detail="Cron secret not configured")
    if authorization != f"Bearer {settings.cron_secret}":
        raise HTTPException(status_code=401, detail="Unauthorized")


def require_reveal_config(settings: Settings = Depends(get_settings)):
    try:
        settings.require_reveal()
    except ConfigurationError as e:
        log.error("Reveal config check failed: %s", e)
        raise HTTPException(status_code=500, detail=str(e))


def get_ledger(request: Request, settings: Settings = Depends(get_settings)):
    # One client per app, reused across requests
    ledger = getattr(request.app.state, "ledger", None)
    if ledger is None:
        if not settings.package_id:
            raise HTTPException(status_code=500, detail="Config missing: PACKAGE_ID")
        try:
            ledger = SuiLedgerClient.from_settings(settings)
        except (ValueError, ConfigurationError) as e:
            raise HTTPException(status_code=500, detail=f"Invalid ledger config: {e}")
        request.app.state.ledger = ledger
    return ledger


def get_codec(request: Request, settings: Settings = Depends(get_settings)):
    codec = getattr(request.app.state, "codec", None)
    if codec is None:
        if not settings.tlock_service_url:
            raise HTTPException(status_code=500, detail="Config missing: TLOCK_SERVICE_URL")
        codec = request.app.state.codec = TimelockCodec.from_settings(settings)
    return codec


def get_store(db: Session = Depends(get_db), settings: Settings = Depends(get_settings)) -> VoteStore:
    return VoteStore(db, settings.voting_duration)


def _verified_transaction(ledger, digest: str, user_address: str) -> dict:
    try:
        tx = ledger.get_transaction(digest)
    except LedgerUnavailable as e:
        raise HTTPException(status_code=502, detail=f"Ledger unavailable: {e}")
    except LedgerError as e:
        raise HTTPException(status_code=400, detail=f"Transaction not found: {e}")

    sender = transaction_sender(tx)
    if not sender or normalize_address(sender) != normalize_address(user_address):
        raise HTTPException(status_code=403, detail="Transaction sender does not match user")
    if not transaction_succeeded(tx):
        raise HTTPException(status_code=400, detail="Transaction did not succeed")
    return tx


# --- Routes ---

@app.get("/health")
def health():
    return {"status": "ok"}


@app.get("/api/cron/reveal-votes", response_model=RevealReport)
def reveal_votes(
    _: None = Depends(require_cron),
    __: None = Depends(require_reveal_config),
    settings: Settings = Depends(get_settings),
    store: VoteStore = Depends(get_store),
    ledger=Depends(get_ledger),
    codec=Depends(get_codec),
):
    coordinator = RevealCoordinator(settings, store, codec, ledger)
    try:
        return coordinator.run()
    except ConfigurationError as e:
        raise HTTPException(status_code=500, detail=str(e))


@app.get("/api/cron/generate-topics")
def cron_generate_topics(
    request: Request,
    _: None = Depends(require_cron),
    settings: Settings = Depends(get_settings),
    store: VoteStore = Depends(get_store),
):
    try:
        items = fetch_topics(settings.topic_source_url)
    except TopicSourceError as e:
        log.error("Topic source failed: %s", e)
        raise HTTPException(status_code=502, detail="Failed to fetch topics")

    ledger = get_ledger(request, settings) if settings.can_sign() else None
    topics = generate_topics(store, items, ledger=ledger)
    return {
        "success": True,
        "topics": [TopicOut.model_validate(t) for t in topics],
        "onChain": ledger is not None,
    }


@app.post("/api/vote/backup")
def backup_vote(
    payload: VoteBackupIn,
    settings: Settings = Depends(get_settings),
    store: VoteStore = Depends(get_store),
    ledger=Depends(get_ledger),
):
    if payload.network != settings.ledger_network:
        raise HTTPException(status_code=400, detail=f"Unsupported network: {payload.network}")

    topic = store.get_topic(payload.topic_id)
    if topic is None:
        raise HTTPException(status_code=404, detail="Topic not found")
    if topic.status != ACTIVE:
        raise HTTPException(status_code=400, detail=f"Topic is {topic.status}")

    _verified_transaction(ledger, payload.tx_digest, payload.user_address)

    try:
        vote = store.upsert_vote_backup(
            topic_id=payload.topic_id,
            user_address=normalize_address(payload.user_address),
            choice=payload.choice,
            salt=payload.salt,
            tx_digest=payload.tx_digest,
            network=payload.network,
        )
    except StoreError as e:
        raise HTTPException(status_code=409, detail=str(e))

    return {"success": True, "data": VoteOut.model_validate(vote)}


@app.get("/api/topics/{topic_id}/outcome", response_model=OutcomeOut)
def topic_outcome(
    topic_id: int,
    address: str,
    settings: Settings = Depends(get_settings),
    store: VoteStore = Depends(get_store),
    ledger=Depends(get_ledger),
):
    topic = store.get_topic(topic_id)
    if topic is None or not topic.on_chain_id:
        raise HTTPException(status_code=404, detail="Topic not found on chain")

    user_address = normalize_address(address)
    vote = store.find_vote(topic_id, user_address)

    try:
        fields = ledger.get_object_fields(topic.on_chain_id)
    except LedgerError as e:
        raise HTTPException(status_code=502, detail=f"Failed to read poll: {e}")

    count_a, count_b = int(fields.get("count_a", 0)), int(fields.get("count_b", 0))
    choice = vote.choice if vote else None
    outcome = determine_outcome(count_a, count_b, topic.option_a, topic.option_b, choice)

    reveal_end = topic.created_at + timedelta(seconds=settings.voting_duration + settings.reveal_duration)
    action, reason = outcome.action, outcome.reason
    if utcnow() < reveal_end:
        action, reason = None, "reveal phase not over"
    elif vote is not None and vote.claim_tx:
        action, reason = None, "already claimed"

    return OutcomeOut(
        topic_id=topic_id,
        user_address=user_address,
        choice=choice,
        count_a=count_a,
        count_b=count_b,
        user_won=outcome.user_won,
        is_draw=outcome.is_draw,
        one_sided=outcome.one_sided,
        action=action,
        reason=reason,
    )


@app.post("/api/vote/claim")
def record_claim(
    payload: ClaimIn,
    store: VoteStore = Depends(get_store),
    ledger=Depends(get_ledger),
):
    user_address = normalize_address(payload.user_address)
    vote = store.find_vote(payload.topic_id, user_address)
    if vote is None:
        raise HTTPException(status_code=404, detail="Vote record not found")

    tx = _verified_transaction(ledger, payload.tx_digest, user_address)
    amount = received_amount(tx, user_address)

    try:
        vote = store.record_claim(vote.id, payload.tx_digest, amount)
    except StoreError as e:
        raise HTTPException(status_code=400, detail=str(e))

    return {"success": True, "data": VoteOut.model_validate(vote)}
