"""
Claim eligibility once a topic's reveal phase is over.

Equal counts are a draw and everyone gets their stake back through
``claim_reward``. When only one side has votes there is no opposing stake, and
the ledger only accepts ``withdraw_stake``. Otherwise the strictly smaller
side is the minority and claims the pot.
"""

from dataclasses import dataclass
from typing import Optional

from .models import ENCRYPTED

CLAIM_REWARD = "claim_reward"
WITHDRAW_STAKE = "withdraw_stake"


@dataclass(frozen=True)
class Outcome:
    user_won: bool
    is_draw: bool
    one_sided: bool
    action: Optional[str]
    reason: Optional[str] = None


def is_one_sided(count_a: int, count_b: int) -> bool:
    return (count_a > 0 and count_b == 0) or (count_a == 0 and count_b > 0)


def minority_option(count_a: int, count_b: int, option_a: str, option_b: str) -> Optional[str]:
    if count_a == count_b:
        return None
    return option_a if count_a < count_b else option_b


def determine_outcome(count_a: int, count_b: int, option_a: str, option_b: str,
                      choice: Optional[str]) -> Outcome:
    count_a, count_b = int(count_a), int(count_b)
    draw = count_a == count_b
    one_sided = is_one_sided(count_a, count_b)

    if not choice or choice == ENCRYPTED:
        return Outcome(False, draw, one_sided, None, "vote not revealed")
    if choice not in (option_a, option_b):
        return Outcome(False, draw, one_sided, None, "choice is not an option of this topic")

    if draw:
        return Outcome(True, True, False, CLAIM_REWARD, "draw, stake refunded")

    if one_sided:
        return Outcome(True, False, True, WITHDRAW_STAKE, "no opposing votes, stake withdrawn")

    if choice == minority_option(count_a, count_b, option_a, option_b):
        return Outcome(True, False, False, CLAIM_REWARD, "minority wins")
    return Outcome(False, False, False, None, "majority loses")


def submit_claim(ledger, poll_id: str, outcome: Outcome, signer=None):
    """Send the ledger call matching ``outcome``; raises ValueError if not eligible."""
    if outcome.action == WITHDRAW_STAKE:
        return ledger.withdraw_stake(poll_id, signer=signer)
    if outcome.action == CLAIM_REWARD:
        return ledger.claim_reward(poll_id, signer=signer)
    raise ValueError(f"Nothing to claim: {outcome.reason}")
