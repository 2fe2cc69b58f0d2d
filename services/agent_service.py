import logging

from sqlalchemy import case, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased

from config import Config
from core.errors import Conflict, InvalidInput, NotFound
from core.milestones import Milestone
from core.protocol import is_address, normalize_address
from models import db, Agent, AgentMilestone
from services.tx_builder import build_airdrop_claim, build_milestone_claim

logger = logging.getLogger('gateway')

AIRDROP_BASE_PAYOUT = 1000
REFERRAL_BONUS = 100
MAX_REFERRAL_DEPTH = 64


def suggested_post(address: str) -> str:
    return (
        "My agent just joined @ClawgleXYZ \U0001F535\n\n"
        "Claimed 1000 $SETTLE, ready to post and complete bounties.\n\n"
        "Zero wallet funding needed.\n\n"
        f"ref: {address[:10]}\n"
        f"{Config.API_URL.split('://', 1)[-1]}/join?ref={address}"
    )


class AgentService:
    @staticmethod
    def get_agent(address: str):
        if not address:
            return None
        return db.session.get(Agent, normalize_address(address))

    @staticmethod
    def get_or_create_agent(address: str, referrer: str = None) -> Agent:
        """Return the agent row, creating it on first sight.

        A referrer is only attached to an agent that has no referrer yet and
        has not claimed the airdrop.
        """
        address = normalize_address(address)
        referrer = normalize_address(referrer) if referrer else None
        agent = db.session.get(Agent, address)
        if agent is not None:
            if referrer and agent.referred_by is None and not agent.airdrop_claimed:
                agent.referred_by = referrer
                db.session.commit()
            return agent

        agent = Agent(address=address, referred_by=referrer)
        db.session.add(agent)
        try:
            db.session.commit()
        except IntegrityError:
            # Concurrent first sight of the same address
            db.session.rollback()
            agent = db.session.get(Agent, address)
        return agent

    @staticmethod
    def referral_count(address: str) -> int:
        return Agent.query.filter_by(referred_by=normalize_address(address)).count()

    @staticmethod
    def progress(agent: Agent) -> dict:
        return {
            "tasks_completed": agent.tasks_completed or 0,
            "bounties_posted": agent.bounties_posted or 0,
            "referral_count": AgentService.referral_count(agent.address),
        }

    @staticmethod
    def is_milestone_claimed(address: str, milestone: Milestone) -> bool:
        return db.session.get(AgentMilestone, (normalize_address(address), milestone.key)) is not None

    # --- Airdrop ---

    @staticmethod
    def airdrop_status(address: str) -> dict:
        address = normalize_address(address)
        agent = db.session.get(Agent, address)

        claimable = []
        completed = []
        referral_count = 0
        if agent is not None:
            progress = AgentService.progress(agent)
            referral_count = progress['referral_count']
            for m in Milestone:
                if m.is_eligible(progress) and not AgentService.is_milestone_claimed(address, m):
                    claimable.append({"milestone": m.key, "payout": m.payout})
            completed = [
                {"milestone": row.milestone, "payout": row.payout, "completedAt": row.completed_at}
                for row in AgentMilestone.query.filter_by(agent_address=address)
                .order_by(AgentMilestone.completed_at.asc()).all()
            ]

        claimed = bool(agent and agent.airdrop_claimed)
        return {
            "address": address,
            "airdropClaimed": claimed,
            "referredBy": agent.referred_by if agent else None,
            "tasksCompleted": agent.tasks_completed if agent else 0,
            "bountiesPosted": agent.bounties_posted if agent else 0,
            "referralCount": referral_count,
            "referralEarnings": agent.referral_earnings if agent else 0,
            "claimableMilestones": claimable,
            "completedMilestones": completed,
            "suggestedPost": None if claimed else suggested_post(address),
        }

    @staticmethod
    def validate_referrer(address: str, referrer: str):
        """Return the normalized referrer if it may be credited, else None.

        Self-referral and referral cycles are rejected outright; a referrer
        that has not claimed the airdrop itself is silently ignored.
        """
        if not referrer:
            return None
        if not is_address(referrer):
            raise InvalidInput("Invalid referrer address", code='INVALID_REFERRER')
        referrer = normalize_address(referrer)
        if referrer == address:
            raise InvalidInput("Cannot refer yourself", code='INVALID_REFERRER')

        referrer_agent = db.session.get(Agent, referrer)
        if referrer_agent is None or not referrer_agent.airdrop_claimed:
            return None

        # Walk up the referrer's chain; meeting the claimant closes a cycle
        seen = set()
        current = referrer_agent.referred_by
        while current and current not in seen and len(seen) < MAX_REFERRAL_DEPTH:
            if current == address:
                raise InvalidInput("Referral cycle detected", code='INVALID_REFERRER')
            seen.add(current)
            parent = db.session.get(Agent, current)
            current = parent.referred_by if parent else None
        return referrer

    @staticmethod
    def prepare_airdrop_claim(from_address: str, referrer: str = None) -> dict:
        if not from_address or not is_address(from_address):
            raise InvalidInput("Missing from address")
        address = normalize_address(from_address)

        existing = db.session.get(Agent, address)
        if existing is not None and existing.airdrop_claimed:
            raise Conflict("Airdrop already claimed", code='ALREADY_CLAIMED')

        valid_referrer = AgentService.validate_referrer(address, referrer)
        agent = AgentService.get_or_create_agent(address, valid_referrer)

        # An earlier, still-valid referrer on the row wins
        credited = agent.referred_by
        bonus = REFERRAL_BONUS if credited else 0
        total = AIRDROP_BASE_PAYOUT + bonus
        return {
            "unsignedTx": build_airdrop_claim(from_address, credited),
            "amount": total,
            "referrer": credited,
            "referralBonus": bonus,
            "description": f"Sign to claim {total} SETTLE tokens",
            "suggestedPost": suggested_post(address),
        }

    @staticmethod
    def confirm_airdrop(address: str, tx_hash: str) -> dict:
        if not address or not tx_hash:
            raise InvalidInput("Missing address or txHash")
        address = normalize_address(address)
        agent = AgentService.get_or_create_agent(address)

        updated = Agent.query.filter_by(address=address, airdrop_claimed=0).update(
            {Agent.airdrop_claimed: 1}, synchronize_session=False,
        )
        if not updated:
            db.session.rollback()
            raise Conflict("Airdrop already claimed", code='ALREADY_CLAIMED')
        if agent.referred_by:
            # Earnings saturate at the configured cap
            Agent.query.filter_by(address=agent.referred_by).update(
                {Agent.referral_earnings: func.min(
                    Agent.referral_earnings + REFERRAL_BONUS, Config.REFERRAL_EARNINGS_CAP,
                )},
                synchronize_session=False,
            )
        db.session.commit()
        logger.info("Airdrop confirmed for %s (referrer=%s)", address, agent.referred_by)
        return {
            "success": True,
            "address": address,
            "txHash": tx_hash,
            "message": "Airdrop claim confirmed",
        }

    # --- Referrals ---

    @staticmethod
    def referral_stats(address: str) -> dict:
        agent = AgentService.get_agent(address)
        return {
            "referralCount": AgentService.referral_count(address),
            "totalEarnings": agent.referral_earnings if agent else 0,
        }

    @staticmethod
    def referees(address: str) -> list:
        return Agent.query.filter_by(referred_by=normalize_address(address)) \
            .order_by(Agent.created_at.desc()).all()

    @staticmethod
    def referral_leaderboard(limit=25) -> list:
        referee = aliased(Agent)
        referral_count = func.count(referee.address).label('referral_count')
        active = func.coalesce(func.sum(case(
            ((referee.tasks_completed > 0) | (referee.bounties_posted > 0), 1), else_=0,
        )), 0)
        rows = db.session.query(Agent.address, referral_count, active, Agent.referral_earnings) \
            .outerjoin(referee, referee.referred_by == Agent.address) \
            .filter(Agent.airdrop_claimed == 1) \
            .group_by(Agent.address) \
            .having((referral_count > 0) | (Agent.referral_earnings > 0)) \
            .order_by(referral_count.desc(), Agent.referral_earnings.desc()) \
            .limit(limit).all()
        return [
            {
                "address": addr,
                "referralCount": int(count or 0),
                "activeReferees": int(active_count or 0),
                "totalEarnings": int(earnings or 0),
            }
            for addr, count, active_count, earnings in rows
        ]

    @staticmethod
    def referral_link(address: str) -> dict:
        address = normalize_address(address)
        return {
            "address": address,
            "code": address[:10],
            "link": f"{Config.API_URL}/join?ref={address}",
            "suggestedPost": suggested_post(address),
        }

    @staticmethod
    def referee_to_dict(agent: Agent) -> dict:
        return {
            "address": agent.address,
            "airdropClaimed": bool(agent.airdrop_claimed),
            "tasksCompleted": agent.tasks_completed,
            "bountiesPosted": agent.bounties_posted,
            "joinedAt": agent.created_at,
        }

    # --- Milestones ---

    @staticmethod
    def _check_milestone(address: str, milestone: Milestone) -> Agent:
        if AgentService.is_milestone_claimed(address, milestone):
            raise Conflict("Milestone already claimed", code='ALREADY_CLAIMED')
        agent = db.session.get(Agent, address)
        if agent is None:
            raise NotFound("Agent not found. Claim airdrop first.")
        if not milestone.is_eligible(AgentService.progress(agent)):
            raise InvalidInput("Milestone requirements not met", code='NOT_ELIGIBLE')
        return agent

    @staticmethod
    def prepare_milestone_claim(from_address: str, milestone_name: str) -> dict:
        if not from_address or not milestone_name:
            raise InvalidInput("Missing from or milestone")
        milestone = Milestone.parse(milestone_name)
        AgentService._check_milestone(normalize_address(from_address), milestone)
        return {
            "unsignedTx": build_milestone_claim(from_address, milestone.onchain_id),
            "milestone": milestone.key,
            "payout": milestone.payout,
            "description": f"Sign to claim {milestone.payout} SETTLE for {milestone.key} milestone",
        }

    @staticmethod
    def confirm_milestone(address: str, milestone_name: str, tx_hash: str) -> dict:
        if not address or not milestone_name or not tx_hash:
            raise InvalidInput("Missing address, milestone, or txHash")
        milestone = Milestone.parse(milestone_name)
        address = normalize_address(address)
        AgentService._check_milestone(address, milestone)

        db.session.add(AgentMilestone(
            agent_address=address, milestone=milestone.key, payout=milestone.payout,
        ))
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("Milestone already claimed", code='ALREADY_CLAIMED')
        logger.info("Milestone %s recorded for %s", milestone.key, address)
        return {
            "success": True,
            "address": address,
            "milestone": milestone.key,
            "payout": milestone.payout,
            "txHash": tx_hash,
        }

    # --- Counters driven by the indexer ---

    @staticmethod
    def increment_tasks_completed(address: str):
        AgentService._bump(address, Agent.tasks_completed)

    @staticmethod
    def increment_bounties_posted(address: str):
        AgentService._bump(address, Agent.bounties_posted)

    @staticmethod
    def _bump(address, column):
        agent = AgentService.get_or_create_agent(address)
        Agent.query.filter_by(address=agent.address).update(
            {column: column + 1}, synchronize_session=False,
        )
        db.session.commit()
