from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime


class TopicIn(BaseModel):
    title: str
    option_a: str
    option_b: str
    description: Optional[str] = None


class TopicOut(BaseModel):
    id: int
    title: str
    option_a: str
    option_b: str
    description: Optional[str] = None
    created_at: datetime
    on_chain_id: Optional[str] = None
    status: str

    class Config:
        from_attributes = True


class VoteBackupIn(BaseModel):
    topic_id: int
    user_address: str
    choice: str
    salt: str
    tx_digest: str
    network: str = "testnet"


class VoteOut(BaseModel):
    id: int
    topic_id: int
    user_address: str
    choice: str
    tx_digest: str
    status: str
    reveal_tx: Optional[str] = None
    claim_tx: Optional[str] = None
    claimed_amount: Optional[int] = None

    class Config:
        from_attributes = True


class ClaimIn(BaseModel):
    topic_id: int
    user_address: str
    tx_digest: str


class VoteResult(BaseModel):
    id: int
    topic_id: int
    status: str  # revealed / expired / error / pending
    reveal_tx: Optional[str] = None
    error: Optional[str] = None


class RevealReport(BaseModel):
    processed: int = 0
    results: List[VoteResult] = Field(default_factory=list)
    revealed: int = 0
    expired: int = 0
    errored: int = 0
    pending: int = 0
    closed_topics: List[int] = Field(default_factory=list)

    def add(self, result: VoteResult) -> None:
        self.results.append(result)
        if result.status == "pending":
            self.pending += 1
            return
        self.processed += 1
        if result.status == "revealed":
            self.revealed += 1
        elif result.status == "expired":
            self.expired += 1
        else:
            self.errored += 1


class OutcomeOut(BaseModel):
    topic_id: int
    user_address: str
    choice: Optional[str] = None
    count_a: int
    count_b: int
    user_won: bool
    is_draw: bool
    one_sided: bool
    action: Optional[str] = None
    reason: Optional[str] = None
