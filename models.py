from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import DDL, event
import json
import time
import uuid

db = SQLAlchemy()


def _now() -> int:
    return int(time.time())


def encode_list(values):
    """Serialize an ordered list of strings for a TEXT column (None stays None)."""
    if values is None:
        return None
    return json.dumps([str(v) for v in values])


def decode_list(raw) -> list:
    """Inverse of encode_list. Also accepts legacy comma-separated text."""
    if not raw:
        return []
    if raw.startswith('['):
        try:
            return [str(v) for v in json.loads(raw)]
        except ValueError:
            pass
    return [part.strip() for part in raw.split(',') if part.strip()]


class Task(db.Model):
    """Cached projection of one on-chain escrow plus marketplace metadata."""
    __tablename__ = 'tasks'
    escrow_id = db.Column(db.String(80), primary_key=True)
    client = db.Column(db.String(42), nullable=False)
    worker = db.Column(db.String(42), nullable=True)
    token = db.Column(db.String(42), nullable=False)
    amount = db.Column(db.Text, nullable=False)  # decimal string, arbitrary precision
    deadline = db.Column(db.Integer, nullable=False)
    criteria_hash = db.Column(db.String(80), nullable=False)
    state = db.Column(db.String(16), nullable=False, default='Pending', index=True)
    created_at = db.Column(db.Integer, nullable=False, index=True)
    review_period = db.Column(db.Integer, nullable=False, default=0)
    # From metadata
    title = db.Column(db.Text)
    description = db.Column(db.Text)
    category = db.Column(db.String(32), index=True)
    skills = db.Column(db.Text)  # JSON list
    success_criteria = db.Column(db.Text)
    deliverables = db.Column(db.Text)  # JSON list
    # Library
    is_public = db.Column(db.Integer, nullable=False, default=0, index=True)
    license = db.Column(db.String(32))
    deliverable_summary = db.Column(db.Text)
    evidence_hash = db.Column(db.String(80))
    completed_at = db.Column(db.Integer)
    made_public_at = db.Column(db.Integer, index=True)
    access_count = db.Column(db.Integer, nullable=False, default=0)
    # Indexing bookkeeping
    indexed_at = db.Column(db.Integer, nullable=False, default=_now)
    block_number = db.Column(db.Integer, nullable=False, default=0)

    __table_args__ = (
        db.Index('idx_tasks_deadline', 'deadline'),
        db.CheckConstraint('access_count >= 0', name='ck_tasks_access_count'),
    )

    @property
    def skill_list(self) -> list:
        return decode_list(self.skills)

    @property
    def deliverable_list(self) -> list:
        return decode_list(self.deliverables)


class IndexerState(db.Model):
    """Key/value bookkeeping for the event indexer (checkpoint lives under 'last_block')."""
    __tablename__ = 'indexer_state'
    key = db.Column(db.String(64), primary_key=True)
    value = db.Column(db.Text, nullable=False)


class Agent(db.Model):
    __tablename__ = 'agents'
    address = db.Column(db.String(42), primary_key=True)  # lower-case
    referred_by = db.Column(db.String(42), db.ForeignKey('agents.address'), nullable=True, index=True)
    referral_earnings = db.Column(db.Integer, nullable=False, default=0, index=True)
    tasks_completed = db.Column(db.Integer, nullable=False, default=0)
    bounties_posted = db.Column(db.Integer, nullable=False, default=0)
    airdrop_claimed = db.Column(db.Integer, nullable=False, default=0)
    created_at = db.Column(db.Integer, nullable=False, default=_now)


class SocialClaim(db.Model):
    __tablename__ = 'social_claims'
    id = db.Column(db.String(64), primary_key=True, default=lambda: f"social_{uuid.uuid4().hex}")
    agent_address = db.Column(db.String(42), db.ForeignKey('agents.address'), nullable=False, index=True)
    platform = db.Column(db.String(16), nullable=False, index=True)
    post_url = db.Column(db.Text, nullable=False, unique=True)
    claimed_at = db.Column(db.Integer, nullable=False, default=_now, index=True)
    payout = db.Column(db.Integer, nullable=False)


class AgentMilestone(db.Model):
    __tablename__ = 'agent_milestones'
    agent_address = db.Column(db.String(42), db.ForeignKey('agents.address'), primary_key=True)
    milestone = db.Column(db.String(32), primary_key=True)
    completed_at = db.Column(db.Integer, nullable=False, default=_now)
    payout = db.Column(db.Integer, nullable=False)


# ---------------------------------------------------------------------------
# Full-text shadow index: holds public tasks only, maintained by triggers.
# ---------------------------------------------------------------------------

_FTS_COLUMNS = 'escrow_id, title, description, skills, category, deliverable_summary'

_FTS_DDL = [
    "CREATE VIRTUAL TABLE IF NOT EXISTS tasks_fts USING fts5("
    "escrow_id UNINDEXED, title, description, skills, category, deliverable_summary)",

    "CREATE TRIGGER IF NOT EXISTS tasks_ai AFTER INSERT ON tasks WHEN new.is_public = 1 BEGIN "
    f"INSERT INTO tasks_fts(rowid, {_FTS_COLUMNS}) "
    "VALUES (new.rowid, new.escrow_id, new.title, new.description, new.skills, "
    "new.category, new.deliverable_summary); "
    "END",

    # Drop the old entry, then re-add only if the row is (still) public
    "CREATE TRIGGER IF NOT EXISTS tasks_au AFTER UPDATE ON tasks BEGIN "
    "DELETE FROM tasks_fts WHERE rowid = old.rowid; "
    f"INSERT INTO tasks_fts(rowid, {_FTS_COLUMNS}) "
    "SELECT new.rowid, new.escrow_id, new.title, new.description, new.skills, "
    "new.category, new.deliverable_summary WHERE new.is_public = 1; "
    "END",

    "CREATE TRIGGER IF NOT EXISTS tasks_ad AFTER DELETE ON tasks BEGIN "
    "DELETE FROM tasks_fts WHERE rowid = old.rowid; "
    "END",
]

for _stmt in _FTS_DDL:
    event.listen(Task.__table__, 'after_create', DDL(_stmt).execute_if(dialect='sqlite'))

event.listen(
    Task.__table__, 'before_drop',
    DDL("DROP TABLE IF EXISTS tasks_fts").execute_if(dialect='sqlite'),
)
