import time

from sqlalchemy import and_, func, or_
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from core.protocol import EscrowState
from models import db, Task, encode_list

# Metadata columns that an incoming null must never overwrite
_COALESCE_COLUMNS = ('title', 'description', 'category', 'skills', 'success_criteria', 'deliverables')

DEFAULT_LIMIT = 20
MAX_LIMIT = 100

_SORTS = ('newest', 'amount_desc', 'deadline_asc')


def clamp_limit(limit, default=DEFAULT_LIMIT) -> int:
    try:
        limit = int(limit)
    except (TypeError, ValueError):
        return default
    return min(max(1, limit), MAX_LIMIT)


def clamp_offset(offset) -> int:
    try:
        return max(0, int(offset))
    except (TypeError, ValueError):
        return 0


def like_pattern(text: str) -> str:
    escaped = text.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
    return f"%{escaped}%"


def _amount_at_least(bound: str):
    # amounts are canonical decimal strings: longer means larger
    return or_(
        func.length(Task.amount) > len(bound),
        and_(func.length(Task.amount) == len(bound), Task.amount >= bound),
    )


def _amount_at_most(bound: str):
    return or_(
        func.length(Task.amount) < len(bound),
        and_(func.length(Task.amount) == len(bound), Task.amount <= bound),
    )


class TaskCache:
    @staticmethod
    def upsert_task(record: dict) -> bool:
        """Insert a task row, or refresh it if the escrow id is already cached.

        On conflict worker/state/indexed_at are overwritten, descriptive
        metadata only when the incoming value is not null. Returns True when
        the row is new.
        """
        values = dict(record)
        values['amount'] = str(values['amount'])
        for list_col in ('skills', 'deliverables'):
            if isinstance(values.get(list_col), (list, tuple)):
                values[list_col] = encode_list(values[list_col])
        if isinstance(values.get('state'), EscrowState):
            values['state'] = values['state'].value
        values.setdefault('indexed_at', int(time.time()))

        existed = db.session.query(Task.escrow_id).filter_by(escrow_id=values['escrow_id']).first()

        stmt = sqlite_insert(Task).values(**values)
        update_set = {
            'worker': stmt.excluded.worker,
            'state': stmt.excluded.state,
            'indexed_at': stmt.excluded.indexed_at,
        }
        for col in _COALESCE_COLUMNS:
            if col in values:
                update_set[col] = func.coalesce(getattr(stmt.excluded, col), getattr(Task, col))
        stmt = stmt.on_conflict_do_update(index_elements=[Task.escrow_id], set_=update_set)

        db.session.execute(stmt)
        db.session.commit()
        return existed is None

    @staticmethod
    def update_task_state(escrow_id: str, state: EscrowState, worker: str = None,
                          evidence_hash: str = None):
        """Blind state overwrite. Returns the previous state, or None if the escrow is not cached."""
        task = db.session.get(Task, escrow_id)
        if task is None:
            return None
        previous = task.state
        now = int(time.time())
        task.state = state.value
        if worker:
            task.worker = worker
        if evidence_hash:
            task.evidence_hash = evidence_hash
        if state == EscrowState.RESOLVED and task.completed_at is None:
            task.completed_at = now
        task.indexed_at = now
        db.session.commit()
        return previous

    @staticmethod
    def get_task(escrow_id: str) -> Task:
        return db.session.get(Task, escrow_id)

    @staticmethod
    def search_tasks(state=EscrowState.PENDING.value, category=None, token=None,
                     min_amount=None, max_amount=None, skills=None, q=None,
                     sort='newest', limit=DEFAULT_LIMIT, offset=0):
        """Marketplace listing. Page and total share one filtered query."""
        query = Task.query.filter(Task.state == (state or EscrowState.PENDING.value))
        if category:
            query = query.filter(Task.category == category)
        if token:
            query = query.filter(func.lower(Task.token) == token.lower())
        if min_amount is not None:
            query = query.filter(_amount_at_least(str(min_amount)))
        if max_amount is not None:
            query = query.filter(_amount_at_most(str(max_amount)))
        if skills:
            query = query.filter(or_(*[
                Task.skills.like(like_pattern(f'"{skill}"'), escape='\\') for skill in skills
            ]))
        if q:
            pattern = like_pattern(q)
            query = query.filter(or_(
                Task.title.like(pattern, escape='\\'),
                Task.description.like(pattern, escape='\\'),
            ))

        total = query.count()

        if sort == 'amount_desc':
            query = query.order_by(func.length(Task.amount).desc(), Task.amount.desc())
        elif sort == 'deadline_asc':
            query = query.order_by(Task.deadline.asc())
        else:
            query = query.order_by(Task.created_at.desc())

        tasks = query.limit(clamp_limit(limit)).offset(clamp_offset(offset)).all()
        return tasks, total

    @staticmethod
    def marketplace_stats() -> dict:
        counts = dict(
            db.session.query(Task.state, func.count(Task.escrow_id)).group_by(Task.state).all()
        )
        pending = counts.get(EscrowState.PENDING.value, 0)
        active = counts.get(EscrowState.ACTIVE.value, 0)
        completed = counts.get(EscrowState.RESOLVED.value, 0)
        return {
            "pendingTasks": pending,
            "activeTasks": active,
            "completedTasks": completed,
            "totalTasks": pending + active + completed,
        }

    @staticmethod
    def to_listing(task: Task) -> dict:
        return {
            "escrowId": task.escrow_id,
            "client": task.client,
            "worker": task.worker,
            "token": task.token,
            "amount": task.amount,
            "deadline": task.deadline,
            "state": task.state,
            "createdAt": task.created_at,
            "reviewPeriod": task.review_period,
            "criteriaHash": task.criteria_hash,
            "title": task.title,
            "description": task.description,
            "category": task.category,
            "skills": task.skill_list,
        }
