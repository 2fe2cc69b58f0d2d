"""
Event indexer: polls the escrow contract's logs and mirrors them into the
tasks table.

The checkpoint ('last_block' in indexer_state) is the only recovery
boundary. It is written after a chunk has been fully applied, so a crash
mid-chunk replays that block range on the next cycle. Every handler below is
therefore an idempotent upsert or state overwrite.
"""
import logging
import threading
import time

from config import Config
from core.protocol import EscrowState, bytes32_to_hex, normalize_address
from models import db, IndexerState, Task
from services.agent_service import AgentService
from services.chain_bridge import get_chain_bridge, is_zero_address
from services.metadata_store import fetch_metadata
from services.task_cache import TaskCache

logger = logging.getLogger('gateway.indexer')

CHECKPOINT_KEY = 'last_block'

_DIRECT_STATES = {
    'Submitted': EscrowState.SUBMITTED,
    'Disputed': EscrowState.DISPUTED,
    'Released': EscrowState.RESOLVED,
    'Resolved': EscrowState.RESOLVED,
}


def get_last_indexed_block() -> int:
    row = db.session.get(IndexerState, CHECKPOINT_KEY)
    if row is None:
        return 0
    try:
        return int(row.value)
    except ValueError:
        logger.warning("Corrupt checkpoint value %r, treating as unset", row.value)
        return 0


def set_last_indexed_block(block_number: int) -> int:
    """Persist the checkpoint. Never moves it backward; returns the stored value."""
    row = db.session.get(IndexerState, CHECKPOINT_KEY)
    if row is None:
        db.session.add(IndexerState(key=CHECKPOINT_KEY, value=str(int(block_number))))
        db.session.commit()
        return int(block_number)
    current = int(row.value) if row.value.isdigit() else 0
    if block_number > current:
        row.value = str(int(block_number))
        db.session.commit()
        return int(block_number)
    return current


def _metadata_fields(metadata) -> dict:
    """Descriptive columns from a metadata document; all None when unavailable."""
    if not isinstance(metadata, dict):
        return {
            'title': None, 'description': None, 'category': None,
            'skills': None, 'success_criteria': None, 'deliverables': None,
        }
    skills = metadata.get('skills')
    deliverables = metadata.get('deliverables')
    return {
        'title': metadata.get('title') or None,
        'description': metadata.get('description') or None,
        'category': metadata.get('category') or None,
        'skills': list(skills) if isinstance(skills, (list, tuple)) else None,
        'success_criteria': metadata.get('successCriteria') or None,
        'deliverables': list(deliverables) if isinstance(deliverables, (list, tuple)) else None,
    }


def _try_fetch_metadata(ref, escrow_id):
    try:
        return fetch_metadata(ref)
    except Exception as e:
        logger.info("Could not fetch metadata for %s: %s", escrow_id, e)
        return None


def _record_from_chain(escrow: dict, metadata, block_number: int) -> dict:
    worker = escrow.get('worker')
    record = {
        'escrow_id': escrow['id'],
        'client': escrow['client'],
        'worker': None if is_zero_address(worker) else worker,
        'token': escrow['token'],
        'amount': escrow['amount'],
        'deadline': escrow['deadline'],
        'criteria_hash': escrow['criteriaHash'],
        'state': escrow['state'] if EscrowState.parse(escrow['state']) else EscrowState.PENDING.value,
        'created_at': escrow['createdAt'] or int(time.time()),
        'review_period': escrow['reviewPeriod'],
        'block_number': block_number,
    }
    record.update(_metadata_fields(metadata))
    return record


class EscrowIndexer:
    def __init__(self, bridge=None, chunk_size=None, lookback=None):
        self.bridge = bridge or get_chain_bridge()
        self.chunk_size = chunk_size or Config.INDEXER_CHUNK_SIZE
        self.lookback = lookback or Config.INDEXER_LOOKBACK_BLOCKS

    def sync_to_latest(self) -> int:
        """Index everything between the checkpoint and the chain head.

        Returns the last processed block (the unchanged checkpoint when
        already caught up).
        """
        head = self.bridge.get_block_number()
        last = get_last_indexed_block()
        start = last + 1 if last > 0 else max(head - self.lookback, 0)
        if start > head:
            return last

        while start <= head:
            end = min(start + self.chunk_size - 1, head)
            self.index_block_range(start, end)
            last = set_last_indexed_block(end)
            start = end + 1
        return last

    def index_block_range(self, from_block: int, to_block: int):
        logger.info("Indexing blocks %d to %d", from_block, to_block)
        events = self.bridge.get_events(from_block, to_block)
        # Apply in chain order, not fetch order
        events.sort(key=lambda ev: (ev.block_number, ev.log_index))

        counts = {}
        for ev in events:
            counts[ev.kind] = counts.get(ev.kind, 0) + 1
            self.apply_event(ev)
        if counts:
            logger.info("Blocks %d-%d: %s", from_block, to_block,
                        ', '.join(f"{k}={v}" for k, v in sorted(counts.items())))

    def apply_event(self, ev):
        if ev.kind == 'Created':
            self._on_created(ev)
        elif ev.kind == 'Accepted':
            self._on_accepted(ev)
        elif ev.kind in _DIRECT_STATES:
            self._on_state_change(ev)
        else:
            logger.warning("Ignoring unknown event kind %s", ev.kind)

    # --- Handlers ---

    def _on_created(self, ev):
        args = ev.args
        if not ev.escrow_id or not args.get('client') or args.get('criteriaHash') is None:
            logger.info("Skipping malformed EscrowCreated event at block %d", ev.block_number)
            return
        criteria_hash = bytes32_to_hex(args['criteriaHash'])

        escrow = self.bridge.get_escrow(ev.escrow_id)
        metadata = _try_fetch_metadata(criteria_hash, ev.escrow_id)
        record = _record_from_chain(escrow, metadata, ev.block_number)
        record['state'] = EscrowState.PENDING.value

        placeholder = Task.query.filter(
            Task.escrow_id.like('pending-%'),
            Task.criteria_hash == criteria_hash,
        ).first()
        if placeholder is not None:
            for col in ('title', 'description', 'category', 'skills', 'success_criteria', 'deliverables'):
                if record[col] is None:
                    record[col] = getattr(placeholder, col)

        is_new = TaskCache.upsert_task(record)
        if placeholder is not None:
            logger.debug("Replacing placeholder %s with %s", placeholder.escrow_id, ev.escrow_id)
            db.session.delete(placeholder)
            db.session.commit()
        if is_new:
            AgentService.increment_bounties_posted(record['client'])
        logger.debug("Indexed task %s - %s", ev.escrow_id, record['title'] or 'No title')

    def _on_accepted(self, ev):
        worker = ev.args.get('worker')
        if not ev.escrow_id or not worker:
            return
        previous = TaskCache.update_task_state(ev.escrow_id, EscrowState.ACTIVE, worker=worker)
        if previous is None:
            # Created fell outside the indexed window; build the row from chain state
            self.index_task(ev.escrow_id, block_number=ev.block_number)
            TaskCache.update_task_state(ev.escrow_id, EscrowState.ACTIVE, worker=worker)
        logger.debug("Task %s accepted by %s", ev.escrow_id, worker)

    def _on_state_change(self, ev):
        state = _DIRECT_STATES[ev.kind]
        evidence = None
        if ev.kind == 'Submitted' and ev.args.get('evidenceHash') is not None:
            evidence = bytes32_to_hex(ev.args['evidenceHash'])

        task = TaskCache.get_task(ev.escrow_id)
        if task is None:
            logger.debug("%s event for unknown escrow %s", ev.kind, ev.escrow_id)
            return
        # completed_at is stamped once, so a replayed range never counts twice
        first_completion = state == EscrowState.RESOLVED and task.completed_at is None
        TaskCache.update_task_state(ev.escrow_id, state, evidence_hash=evidence)
        if first_completion and task.worker:
            AgentService.increment_tasks_completed(task.worker)
        logger.debug("Task %s -> %s", ev.escrow_id, state.value)

    # --- Immediate indexing ---

    def index_task(self, escrow_id: str, metadata_uri: str = None, block_number: int = None):
        """Index one escrow right away from chain state (and metadata, when given).

        Returns the cached Task, or None when the contract is not configured
        or the chain read fails.
        """
        metadata = _try_fetch_metadata(metadata_uri, escrow_id) if metadata_uri else None
        if not self.bridge.is_configured():
            logger.info("No contract address, cannot index %s from chain", escrow_id)
            return None
        try:
            escrow = self.bridge.get_escrow(escrow_id)
            if block_number is None:
                block_number = self.bridge.get_block_number()
        except Exception as e:
            logger.warning("Could not read on-chain data for %s: %s", escrow_id, e)
            return None
        if is_zero_address(escrow.get('client')):
            logger.info("Escrow %s does not exist on chain", escrow_id)
            return None

        if metadata is None:
            metadata = _try_fetch_metadata(escrow['criteriaHash'], escrow_id)
        record = _record_from_chain(escrow, metadata, block_number)
        if TaskCache.upsert_task(record):
            AgentService.increment_bounties_posted(record['client'])
        return TaskCache.get_task(escrow_id)


class IndexerWorker:
    """Owns the polling thread. One cycle at a time, each in a fresh app context."""

    def __init__(self, app, interval=None, indexer_factory=EscrowIndexer):
        self.app = app
        self.interval = interval if interval is not None else Config.INDEXER_POLL_SECONDS
        self._indexer_factory = indexer_factory
        self._shutdown_event = threading.Event()
        self._cycle_lock = threading.Lock()
        self._thread = None
        self.last_checkpoint = None
        self.last_success_at = None
        self.last_error = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.is_running:
            logger.info("Indexer already running")
            return
        self._shutdown_event.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name='escrow-indexer')
        self._thread.start()
        logger.info("Indexer started (interval=%ss)", self.interval)

    def stop(self, timeout=5):
        self._shutdown_event.set()
        if self._thread is not None:
            self._thread.join(timeout=timeout)
        self._thread = None
        logger.info("Indexer stopped")

    def run_once(self) -> bool:
        """Run a single sync cycle. Failures are logged and recorded, never raised."""
        with self._cycle_lock:
            with self.app.app_context():
                try:
                    self.last_checkpoint = self._indexer_factory().sync_to_latest()
                    self.last_success_at = int(time.time())
                    self.last_error = None
                    return True
                except Exception as e:
                    db.session.rollback()
                    self.last_error = str(e)
                    logger.exception("Indexer cycle failed")
                    return False
                finally:
                    db.session.remove()

    def _loop(self):
        while not self._shutdown_event.is_set():
            self.run_once()
            if self._shutdown_event.wait(timeout=self.interval):
                break

    def status(self) -> dict:
        return {
            "running": self.is_running,
            "intervalSeconds": self.interval,
            "lastCheckpoint": self.last_checkpoint,
            "lastSuccessAt": self.last_success_at,
            "lastError": self.last_error,
        }
