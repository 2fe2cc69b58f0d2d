"""
Post-to-earn: agents that already claimed the airdrop are paid a fixed
reward for public posts about the protocol.

Verification is permissive. Any well-formed twitter.com / x.com status URL
is accepted; abuse is bounded by global URL uniqueness and the per-day cap.
"""
import datetime
import logging
import re
import time

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError

from core.errors import Conflict, InvalidInput
from core.protocol import normalize_address
from models import db, Agent, SocialClaim

logger = logging.getLogger('gateway.social')

POST_REWARD = 25
MAX_CLAIMS_PER_DAY = 3
SUPPORTED_PLATFORMS = ('twitter', 'x')
RECENT_WINDOW_SECONDS = 24 * 60 * 60

_STATUS_URL_PATTERNS = (
    re.compile(r'(?:twitter\.com|x\.com)/\w+/status/(\d+)', re.IGNORECASE),
    re.compile(r'(?:twitter\.com|x\.com)/\w+/statuses/(\d+)', re.IGNORECASE),
)

_BRAND_PATTERNS = (
    re.compile(r'clawgle', re.IGNORECASE),
    re.compile(r'@ClawgleXYZ', re.IGNORECASE),
    re.compile(r'clawgle\.xyz', re.IGNORECASE),
    re.compile(r'\$SETTLE', re.IGNORECASE),
)


def extract_post_id(url: str):
    if not url:
        return None
    for pattern in _STATUS_URL_PATTERNS:
        match = pattern.search(url)
        if match:
            return match.group(1)
    return None


def verify_post(url: str) -> dict:
    # TODO: fetch the post through the X API and check author, content and age
    post_id = extract_post_id(url)
    if post_id is None:
        return {"valid": False, "postId": None, "error": "Invalid tweet URL format"}
    return {"valid": True, "postId": post_id, "postedAt": int(time.time())}


def mentions_brand(text: str) -> bool:
    return any(p.search(text or '') for p in _BRAND_PATTERNS)


def is_recent(posted_at: int, now: int = None) -> bool:
    now = int(time.time()) if now is None else now
    return posted_at >= now - RECENT_WINDOW_SECONDS


def utc_day_start(now: int = None) -> int:
    """Unix timestamp of 00:00 UTC on the current day."""
    now = int(time.time()) if now is None else now
    day = datetime.datetime.fromtimestamp(now, tz=datetime.timezone.utc).date()
    midnight = datetime.datetime(day.year, day.month, day.day, tzinfo=datetime.timezone.utc)
    return int(midnight.timestamp())


def _claims_today(address: str) -> int:
    return SocialClaim.query.filter(
        SocialClaim.agent_address == address,
        SocialClaim.claimed_at >= utc_day_start(),
    ).count()


def _is_claimed(post_url: str) -> bool:
    return db.session.query(SocialClaim.id).filter_by(post_url=post_url).first() is not None


def claim_to_dict(claim: SocialClaim) -> dict:
    return {
        "id": claim.id,
        "postUrl": claim.post_url,
        "platform": claim.platform,
        "payout": claim.payout,
        "claimedAt": claim.claimed_at,
    }


class SocialService:
    @staticmethod
    def claim(from_address: str, platform: str, post_url: str) -> dict:
        if not from_address or not post_url:
            raise InvalidInput("Missing from or postUrl")
        address = normalize_address(from_address)
        platform = (platform or 'twitter').lower()
        if platform not in SUPPORTED_PLATFORMS:
            raise InvalidInput("Only Twitter/X posts are supported", code='UNSUPPORTED_PLATFORM')

        agent = db.session.get(Agent, address)
        if agent is None or not agent.airdrop_claimed:
            raise InvalidInput("Must claim airdrop first before post-to-earn", code='AIRDROP_NOT_CLAIMED')

        today = _claims_today(address)
        if today >= MAX_CLAIMS_PER_DAY:
            raise InvalidInput(
                f"Daily limit reached. You can claim {MAX_CLAIMS_PER_DAY} posts per day.",
                code='DAILY_LIMIT_REACHED', claimsToday=today, maxClaims=MAX_CLAIMS_PER_DAY,
            )

        if _is_claimed(post_url):
            raise Conflict("This post has already been claimed", code='POST_ALREADY_CLAIMED')

        verification = verify_post(post_url)
        if not verification['valid']:
            raise InvalidInput(verification.get('error') or 'Invalid tweet', code='VERIFICATION_FAILED')

        claim = SocialClaim(agent_address=address, platform=platform,
                            post_url=post_url, payout=POST_REWARD)
        db.session.add(claim)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            raise Conflict("This post has already been claimed", code='POST_ALREADY_CLAIMED')

        logger.info("Social claim %s by %s for post %s", claim.id, address, verification['postId'])
        return {
            "success": True,
            "claimId": claim.id,
            "payout": POST_REWARD,
            "postId": verification['postId'],
            "claimsToday": today + 1,
            "remainingToday": MAX_CLAIMS_PER_DAY - today - 1,
            "message": f"Claimed {POST_REWARD} SETTLE for your post!",
        }

    @staticmethod
    def status(address: str) -> dict:
        address = normalize_address(address)
        agent = db.session.get(Agent, address)
        if agent is None:
            return {
                "address": address,
                "eligible": False,
                "claimsToday": 0,
                "remainingToday": 0,
                "totalClaims": 0,
                "totalEarned": 0,
                "message": "Claim airdrop first to enable post-to-earn",
            }

        today = _claims_today(address)
        total_claims, total_earned = db.session.query(
            func.count(SocialClaim.id), func.coalesce(func.sum(SocialClaim.payout), 0),
        ).filter(SocialClaim.agent_address == address).one()
        recent = SocialClaim.query.filter_by(agent_address=address) \
            .order_by(SocialClaim.claimed_at.desc()).limit(10).all()
        return {
            "address": address,
            "eligible": bool(agent.airdrop_claimed),
            "claimsToday": today,
            "remainingToday": max(0, MAX_CLAIMS_PER_DAY - today),
            "maxClaimsPerDay": MAX_CLAIMS_PER_DAY,
            "rewardPerPost": POST_REWARD,
            "totalClaims": total_claims,
            "totalEarned": int(total_earned),
            "recentClaims": [claim_to_dict(c) for c in recent],
        }

    @staticmethod
    def claims(address: str, limit=50) -> dict:
        address = normalize_address(address)
        try:
            limit = min(max(1, int(limit)), 100)
        except (TypeError, ValueError):
            limit = 50
        rows = SocialClaim.query.filter_by(agent_address=address) \
            .order_by(SocialClaim.claimed_at.desc()).limit(limit).all()
        return {
            "address": address,
            "claims": [claim_to_dict(c) for c in rows],
            "total": len(rows),
            "totalEarned": sum(c.payout for c in rows),
        }

    @staticmethod
    def validate(post_url: str) -> dict:
        if not post_url:
            raise InvalidInput("Missing url parameter")
        post_id = extract_post_id(post_url)
        if post_id is None:
            return {"valid": False, "error": "Invalid tweet URL format"}
        if _is_claimed(post_url):
            return {"valid": False, "postId": post_id, "error": "This post has already been claimed"}
        return {
            "valid": True,
            "postId": post_id,
            "reward": POST_REWARD,
            "message": "Post is eligible for claim",
        }
