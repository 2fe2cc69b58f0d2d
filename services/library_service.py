"""
Public deliverables library: full-text search, browsing and publishing of
completed work. Only rows with is_public = 1 are ever returned.
"""
import logging
import re
import time

from sqlalchemy import func, text

from core.errors import Conflict, Forbidden, InvalidInput, NotFound
from core.protocol import EscrowState, License
from models import db, Task
from services.metadata_store import fetch_content
from services.task_cache import clamp_limit, clamp_offset, like_pattern

logger = logging.getLogger('gateway.library')

MAX_INLINE_CONTENT = 50_000
RECENT_WINDOW_SECONDS = 7 * 24 * 60 * 60

_TOKEN_RE = re.compile(r'\w+', re.UNICODE)


def fts_query(raw: str) -> str:
    """Turn free text into a safe FTS5 expression: every word quoted, implicit AND."""
    tokens = _TOKEN_RE.findall(raw or '')
    return ' '.join(f'"{t}"' for t in tokens)


def _evidence_uri(evidence_hash, gateway_url):
    if not evidence_hash:
        return None
    if evidence_hash.startswith('ipfs://'):
        return f"{gateway_url}/{evidence_hash[len('ipfs://'):]}"
    return evidence_hash


def format_item(task: Task, gateway_url='https://gateway.pinata.cloud/ipfs') -> dict:
    return {
        "escrowId": task.escrow_id,
        "title": task.title,
        "description": task.description,
        "category": task.category,
        "skills": task.skill_list,
        "amount": task.amount,
        "token": task.token,
        "license": task.license,
        "summary": task.deliverable_summary,
        "evidenceUri": _evidence_uri(task.evidence_hash, gateway_url),
        "contributor": task.worker,
        "client": task.client,
        "completedAt": task.completed_at,
        "publishedAt": task.made_public_at,
        "accessCount": task.access_count or 0,
    }


class LibraryService:
    @staticmethod
    def search(q: str, category=None, skills=None, limit=None, offset=0):
        """Ranked full-text search over public tasks.

        Returns (tasks, total). Both statements are built from the same
        WHERE clause so the count always matches the page's filters.
        """
        match = fts_query(q)
        limit = clamp_limit(limit)
        offset = clamp_offset(offset)
        if not match:
            return [], 0

        where = ["tasks_fts MATCH :match", "t.is_public = 1"]
        params = {"match": match}
        if category:
            where.append("t.category = :category")
            params["category"] = category
        if skills:
            where.append("t.skills LIKE :skills ESCAPE '\\'")
            params["skills"] = like_pattern(skills)
        where_sql = ' AND '.join(where)
        from_sql = "FROM tasks_fts JOIN tasks t ON t.rowid = tasks_fts.rowid"

        total = db.session.execute(
            text(f"SELECT COUNT(*) {from_sql} WHERE {where_sql}"), params,
        ).scalar() or 0

        rows = db.session.execute(
            text(f"SELECT t.escrow_id {from_sql} WHERE {where_sql} "
                 f"ORDER BY tasks_fts.rank LIMIT :limit OFFSET :offset"),
            dict(params, limit=limit, offset=offset),
        ).scalars().all()

        by_id = {t.escrow_id: t for t in Task.query.filter(Task.escrow_id.in_(rows)).all()} if rows else {}
        return [by_id[r] for r in rows if r in by_id], total

    @staticmethod
    def browse(category=None, skills=None, license=None, sort='recent', limit=None, offset=0):
        query = Task.query.filter(Task.is_public == 1)
        if category:
            query = query.filter(Task.category == category)
        if skills:
            query = query.filter(Task.skills.like(like_pattern(skills), escape='\\'))
        if license:
            query = query.filter(Task.license == license)

        total = query.count()

        if sort == 'popular':
            query = query.order_by(Task.access_count.desc())
        elif sort == 'amount':
            query = query.order_by(func.length(Task.amount).desc(), Task.amount.desc())
        else:
            query = query.order_by(Task.made_public_at.desc())

        items = query.limit(clamp_limit(limit)).offset(clamp_offset(offset)).all()
        return items, total

    @staticmethod
    def stats() -> dict:
        public = Task.is_public == 1
        total_items, total_accesses, unique_contributors = db.session.query(
            func.count(Task.escrow_id),
            func.coalesce(func.sum(Task.access_count), 0),
            func.count(func.distinct(Task.worker)),
        ).filter(public).one()

        top_categories = db.session.query(Task.category, func.count(Task.escrow_id).label('count')) \
            .filter(public, Task.category.isnot(None), Task.category != '') \
            .group_by(Task.category).order_by(text('count DESC')).limit(10).all()

        top_skills = db.session.query(Task.skills, func.count(Task.escrow_id).label('count')) \
            .filter(public, Task.skills.isnot(None), Task.skills != '') \
            .group_by(Task.skills).order_by(text('count DESC')).limit(10).all()

        recent_cutoff = int(time.time()) - RECENT_WINDOW_SECONDS
        recently_added = Task.query.filter(public, Task.made_public_at > recent_cutoff).count()

        top_contributors = db.session.query(
            Task.worker,
            func.count(Task.escrow_id).label('contributions'),
            func.coalesce(func.sum(Task.access_count), 0),
        ).filter(public, Task.worker.isnot(None)) \
            .group_by(Task.worker).order_by(text('contributions DESC')).limit(10).all()

        return {
            "totalItems": total_items,
            "totalAccesses": int(total_accesses),
            "uniqueContributors": unique_contributors,
            "topCategories": [{"category": c, "count": n} for c, n in top_categories],
            "topSkills": [{"skills": s, "count": n} for s, n in top_skills],
            "recentlyAdded": recently_added,
            "topContributors": [
                {"address": w, "contributions": n, "totalAccesses": int(a)}
                for w, n, a in top_contributors
            ],
        }

    @staticmethod
    def get_item(escrow_id: str) -> Task:
        """Fetch a public item and count the access."""
        task = Task.query.filter_by(escrow_id=escrow_id, is_public=1).first()
        if task is None:
            raise NotFound("Not found or not public")
        Task.query.filter_by(escrow_id=escrow_id).update(
            {Task.access_count: Task.access_count + 1}, synchronize_session=False,
        )
        db.session.commit()
        return task

    @staticmethod
    def item_detail(escrow_id: str, gateway_url: str) -> dict:
        task = LibraryService.get_item(escrow_id)
        item = format_item(task, gateway_url)
        item["deliverables"] = task.deliverable_list
        item["successCriteria"] = task.success_criteria
        item["deliverableContent"] = None
        if task.evidence_hash:
            try:
                content = fetch_content(task.evidence_hash)
            except Exception as e:
                logger.info("Deliverable content for %s unavailable: %s", escrow_id, e)
                content = None
            if content is not None and len(content) < MAX_INLINE_CONTENT:
                item["deliverableContent"] = content
        return item

    @staticmethod
    def publish(escrow_id: str, from_address: str, license: str, summary: str = None) -> dict:
        if not from_address:
            raise InvalidInput("Missing from address")
        chosen = License.parse(license)
        if chosen is None:
            raise InvalidInput(
                "Invalid license. Use: " + ', '.join(m.value for m in License),
                code='INVALID_LICENSE',
            )

        task = db.session.get(Task, escrow_id)
        if task is None:
            raise NotFound("Task not found")
        if task.state != EscrowState.RESOLVED.value:
            raise InvalidInput("Task must be completed before publishing", code='TASK_NOT_COMPLETED')

        caller = from_address.lower()
        parties = {(task.client or '').lower(), (task.worker or '').lower()}
        if caller not in parties:
            raise Forbidden("Only client or worker can publish")
        if task.is_public:
            raise Conflict("Already published", code='ALREADY_PUBLISHED')

        # Conditional flip: only one caller can move is_public from 0 to 1
        updated = Task.query.filter_by(escrow_id=escrow_id, is_public=0).update({
            Task.is_public: 1,
            Task.license: chosen.value,
            Task.deliverable_summary: summary or task.description,
            Task.made_public_at: int(time.time()),
        }, synchronize_session=False)
        db.session.commit()
        if not updated:
            raise Conflict("Already published", code='ALREADY_PUBLISHED')

        logger.info("Published %s to library (license=%s)", escrow_id, chosen.value)
        return {
            "success": True,
            "escrowId": escrow_id,
            "license": chosen.value,
            "libraryUrl": f"/v2/library/{escrow_id}",
        }
