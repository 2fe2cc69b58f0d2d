"""
One-time agent bonuses.

Each milestone carries its payout and eligibility rule as data, so that
eligibility is always recomputed from cached counters instead of trusting
what the client claims.
"""
from enum import Enum

from core.errors import InvalidInput


class Milestone(Enum):
    #                metric             threshold  payout
    FIRST_TASK = ('tasks_completed', 1, 50)
    FIRST_BOUNTY = ('bounties_posted', 1, 50)
    FIRST_REFERRAL = ('referral_count', 1, 100)
    FIVE_REFERRALS = ('referral_count', 5, 500)

    def __init__(self, metric, threshold, payout):
        self.metric = metric
        self.threshold = threshold
        self.payout = payout

    @property
    def key(self) -> str:
        return self.name

    @property
    def onchain_id(self) -> bytes:
        """ASCII name right-padded with zero bytes to bytes32, as the airdrop contract expects."""
        return self.name.encode('ascii').ljust(32, b'\x00')

    def is_eligible(self, progress: dict) -> bool:
        return int(progress.get(self.metric) or 0) >= self.threshold

    @classmethod
    def parse(cls, name) -> 'Milestone':
        try:
            return cls[str(name)]
        except KeyError:
            raise InvalidInput("Invalid milestone", code='INVALID_MILESTONE')
