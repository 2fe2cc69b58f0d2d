"""
Unit tests for the service layer.
Covers: protocol helpers, milestones, metadata_store, tx_builder,
        task_cache, library_service, agent_service, social_service.
"""
import os
from unittest.mock import patch, MagicMock

# Force DEV_MODE, test DB and off-chain mode before importing app
os.environ['DEV_MODE'] = 'true'
os.environ['DATABASE_URL'] = 'sqlite://'  # in-memory
os.environ['ESCROW_CONTRACT_ADDRESS'] = ''
os.environ['PINATA_JWT'] = ''

from server import app
from config import Config
from models import db, Task, Agent, AgentMilestone, SocialClaim

import pytest
from web3 import Web3

from core.errors import Conflict, Forbidden, InvalidInput, NotFound
from core.milestones import Milestone
from core.protocol import (
    ZERO_ADDRESS, EscrowState, License, bytes32_to_hex, is_address, is_bytes32, parse_uint,
)

CLIENT = '0x' + '11' * 20
WORKER = '0x' + '22' * 20
STRANGER = '0x' + '33' * 20
ESCROW_ADDR = '0x' + 'ee' * 20
CRITERIA = '0x' + 'ab' * 32


def _escrow_id(n: int) -> str:
    return '0x' + f'{n:064x}'


def _selector(signature: str) -> str:
    return Web3.to_hex(Web3.keccak(text=signature)[:4])


def _record(escrow_id, **overrides):
    record = {
        'escrow_id': escrow_id,
        'client': CLIENT,
        'worker': None,
        'token': ZERO_ADDRESS,
        'amount': '1000',
        'deadline': 2_000_000_000,
        'criteria_hash': CRITERIA,
        'state': EscrowState.PENDING.value,
        'created_at': 1_700_000_000,
        'review_period': 0,
        'title': 'Audit my solidity contract',
        'description': 'Look for reentrancy',
        'category': 'coding',
        'skills': ['solidity', 'security'],
        'block_number': 0,
    }
    record.update(overrides)
    return record


@pytest.fixture
def ctx(tmp_path, monkeypatch):
    """Create an app context with a fresh in-memory DB and a private IPFS dir."""
    app.config['TESTING'] = True
    app.config['SQLALCHEMY_DATABASE_URI'] = 'sqlite://'
    monkeypatch.setattr(Config, 'IPFS_LOCAL_PATH', str(tmp_path / 'ipfs'))
    with app.app_context():
        db.create_all()
        yield
        db.session.remove()
        db.drop_all()


def _resolve(escrow_id, worker=WORKER):
    from services.task_cache import TaskCache
    TaskCache.update_task_state(escrow_id, EscrowState.ACTIVE, worker=worker)
    TaskCache.update_task_state(escrow_id, EscrowState.RESOLVED)


def _claimed_agent(address, **fields):
    agent = Agent(address=address.lower(), airdrop_claimed=1, **fields)
    db.session.add(agent)
    db.session.commit()
    return agent


# ===================================================================
# 1.1 core.protocol / core.milestones
# ===================================================================

class TestProtocolHelpers:

    def test_parse_uint_accepts_big_decimal_strings(self):
        assert parse_uint("10000000000000000") == 10 ** 16
        assert parse_uint(" 42 ") == 42
        assert parse_uint(7) == 7

    @pytest.mark.parametrize("bad", ["1.5", "-1", "0x10", "", None, True, 1.0, -3])
    def test_parse_uint_rejects(self, bad):
        with pytest.raises(ValueError):
            parse_uint(bad)

    def test_address_and_bytes32_shapes(self):
        assert is_address(CLIENT)
        assert not is_address('0x1234')
        assert is_bytes32(CRITERIA)
        assert not is_bytes32(CLIENT)

    def test_bytes32_to_hex_lowercases(self):
        assert bytes32_to_hex(b'\xab' * 32) == CRITERIA
        assert bytes32_to_hex('0xABCD') == '0xabcd'

    def test_state_parse_is_case_insensitive(self):
        assert EscrowState.parse('resolved') is EscrowState.RESOLVED
        assert EscrowState.parse('Bogus') is None
        assert EscrowState.from_index(1) is EscrowState.ACTIVE

    def test_license_closed_set(self):
        assert License.parse('public-domain') is License.PUBLIC_DOMAIN
        assert License.parse('mit') is None


class TestMilestones:

    def test_payouts(self):
        assert Milestone.FIRST_TASK.payout == 50
        assert Milestone.FIRST_BOUNTY.payout == 50
        assert Milestone.FIRST_REFERRAL.payout == 100
        assert Milestone.FIVE_REFERRALS.payout == 500

    def test_onchain_id_is_zero_padded_ascii(self):
        ident = Milestone.FIRST_TASK.onchain_id
        assert len(ident) == 32
        assert ident.startswith(b'FIRST_TASK')
        assert ident[len('FIRST_TASK'):] == b'\x00' * (32 - len('FIRST_TASK'))

    def test_eligibility_thresholds(self):
        assert not Milestone.FIVE_REFERRALS.is_eligible({'referral_count': 4})
        assert Milestone.FIVE_REFERRALS.is_eligible({'referral_count': 5})
        assert Milestone.FIRST_TASK.is_eligible({'tasks_completed': 1})
        assert not Milestone.FIRST_BOUNTY.is_eligible({})

    def test_parse_unknown(self):
        with pytest.raises(InvalidInput) as exc:
            Milestone.parse('TEN_TASKS')
        assert exc.value.code == 'INVALID_MILESTONE'


# ===================================================================
# 1.2 metadata_store
# ===================================================================

class TestMetadataStore:

    def test_store_then_fetch_local(self, ctx):
        from services import metadata_store
        metadata = {"title": "T", "skills": ["a", "b"]}
        stored = metadata_store.store_metadata(metadata)
        assert stored['uri'].startswith('local://')
        assert stored['criteriaHash'] == metadata_store.generate_criteria_hash(metadata)
        assert metadata_store.fetch_metadata(stored['uri']) == metadata
        # The criteria hash alone is enough to find the document again
        assert metadata_store.fetch_metadata(stored['criteriaHash']) == metadata

    def test_criteria_hash_ignores_key_order(self):
        from services.metadata_store import hash_content
        assert hash_content({"a": 1, "b": 2}) == hash_content({"b": 2, "a": 1})

    def test_missing_sha_key_does_not_hit_network(self, ctx):
        from services import metadata_store
        with patch.object(metadata_store.http_requests, 'get') as mock_get:
            assert metadata_store.fetch_content('0x' + 'cd' * 32) is None
            mock_get.assert_not_called()

    def test_pins_to_pinata_when_configured(self, ctx, monkeypatch):
        from services import metadata_store
        monkeypatch.setattr(Config, 'PINATA_JWT', 'jwt-token')
        resp = MagicMock(ok=True)
        resp.json.return_value = {'IpfsHash': 'QmTestCid'}
        with patch.object(metadata_store.http_requests, 'post', return_value=resp) as mock_post:
            stored = metadata_store.store_metadata({"title": "pinned"})
        assert stored['uri'] == 'ipfs://QmTestCid'
        assert stored['gateway'].endswith('/QmTestCid')
        assert mock_post.call_args.kwargs['headers']['Authorization'] == 'Bearer jwt-token'

    def test_pinata_failure_falls_back_to_local(self, ctx, monkeypatch):
        from services import metadata_store
        monkeypatch.setattr(Config, 'PINATA_JWT', 'jwt-token')
        with patch.object(metadata_store.http_requests, 'post',
                          side_effect=metadata_store.http_requests.ConnectionError("down")):
            stored = metadata_store.store_metadata({"title": "fallback"})
        assert stored['uri'].startswith('local://')

    def test_gateway_fallback_order(self, ctx):
        from services import metadata_store
        ok = MagicMock(ok=True, text='{"title": "remote"}')
        with patch.object(metadata_store.http_requests, 'get',
                          side_effect=[metadata_store.http_requests.Timeout("slow"), ok]) as mock_get:
            result = metadata_store.fetch_metadata('ipfs://QmRemote')
        assert result == {"title": "remote"}
        assert mock_get.call_count == 2
        assert mock_get.call_args.kwargs['timeout'] == Config.METADATA_FETCH_TIMEOUT

    def test_all_sources_fail_returns_none(self, ctx):
        from services import metadata_store
        with patch.object(metadata_store.http_requests, 'get',
                          side_effect=metadata_store.http_requests.ConnectionError("x")):
            assert metadata_store.fetch_metadata('ipfs://QmNowhere') is None


# ===================================================================
# 1.3 tx_builder
# ===================================================================

class TestTxBuilder:

    @pytest.fixture(autouse=True)
    def _contracts(self, monkeypatch):
        monkeypatch.setattr(Config, 'ESCROW_CONTRACT_ADDRESS', ESCROW_ADDR)
        monkeypatch.setattr(Config, 'SETTLE_AIRDROP_ADDRESS', '0x' + 'aa' * 20)

    def test_create_escrow_native_token_carries_value(self):
        from services import tx_builder
        tx = tx_builder.build_create_escrow(CLIENT, ZERO_ADDRESS, 10 ** 16, 2_000_000_000, CRITERIA)
        assert tx['to'] == ESCROW_ADDR
        assert tx['from'] == CLIENT
        assert tx['value'] == str(10 ** 16)
        assert tx['chainId'] == Config.CHAIN_ID
        assert tx['data'].startswith(_selector('createEscrow(address,uint256,uint256,bytes32,uint256)'))

    def test_create_escrow_erc20_has_zero_value(self):
        from services import tx_builder
        tx = tx_builder.build_create_escrow(CLIENT, '0x' + '44' * 20, 500, 2_000_000_000, CRITERIA)
        assert tx['value'] == '0'

    def test_escrow_id_is_encoded_in_calldata(self):
        from services import tx_builder
        escrow_id = _escrow_id(7)
        tx = tx_builder.build_accept(WORKER, escrow_id)
        assert tx['data'].startswith(_selector('acceptEscrow(bytes32)'))
        assert tx['data'].endswith(escrow_id[2:])

    def test_dispute_fee_is_value(self):
        from services import tx_builder
        tx = tx_builder.build_dispute(CLIENT, _escrow_id(1), 1234)
        assert tx['value'] == '1234'
        assert tx['data'].startswith(_selector('dispute(bytes32)'))

    def test_resolve_and_submit_selectors(self):
        from services import tx_builder
        assert tx_builder.build_resolve(CLIENT, _escrow_id(1), 60)['data'].startswith(
            _selector('resolve(bytes32,uint8)'))
        assert tx_builder.build_submit(WORKER, _escrow_id(1), CRITERIA)['data'].startswith(
            _selector('submitWork(bytes32,bytes32)'))

    def test_airdrop_claim_defaults_to_zero_referrer(self):
        from services import tx_builder
        tx = tx_builder.build_airdrop_claim(CLIENT)
        assert tx['to'] == Config.SETTLE_AIRDROP_ADDRESS
        assert tx['data'].startswith(_selector('claim(address)'))
        assert tx['data'].endswith('00' * 20)

    def test_milestone_claim(self):
        from services import tx_builder
        tx = tx_builder.build_milestone_claim(CLIENT, Milestone.FIRST_TASK.onchain_id)
        assert tx['data'].startswith(_selector('claimMilestone(bytes32)'))
        assert b'FIRST_TASK'.hex() in tx['data']


# ===================================================================
# 1.4 task_cache
# ===================================================================

class TestTaskCache:

    def test_upsert_reports_new_rows(self, ctx):
        from services.task_cache import TaskCache
        assert TaskCache.upsert_task(_record(_escrow_id(1))) is True
        assert TaskCache.upsert_task(_record(_escrow_id(1), state='Active')) is False
        assert Task.query.count() == 1

    def test_upsert_coalesces_metadata_and_overwrites_state(self, ctx):
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        TaskCache.upsert_task(_record(eid))
        TaskCache.upsert_task(_record(eid, state='Active', worker=WORKER,
                                      title=None, description=None, category=None, skills=None))
        task = TaskCache.get_task(eid)
        assert task.state == 'Active'
        assert task.worker == WORKER
        assert task.title == 'Audit my solidity contract'
        assert task.category == 'coding'
        assert task.skill_list == ['solidity', 'security']

    def test_update_task_state_returns_previous(self, ctx):
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        assert TaskCache.update_task_state(eid, EscrowState.ACTIVE) is None
        TaskCache.upsert_task(_record(eid))
        assert TaskCache.update_task_state(eid, EscrowState.ACTIVE, worker=WORKER) == 'Pending'
        assert TaskCache.update_task_state(eid, EscrowState.RESOLVED) == 'Active'
        first_completed = TaskCache.get_task(eid).completed_at
        assert first_completed is not None
        TaskCache.update_task_state(eid, EscrowState.RESOLVED)
        assert TaskCache.get_task(eid).completed_at == first_completed

    def test_state_overwrite_is_blind(self, ctx):
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        TaskCache.upsert_task(_record(eid, state='Resolved'))
        TaskCache.update_task_state(eid, EscrowState.ACTIVE)
        assert TaskCache.get_task(eid).state == 'Active'

    def test_amount_range_is_exact_for_big_numbers(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1), amount='9'))
        TaskCache.upsert_task(_record(_escrow_id(2), amount='10'))
        TaskCache.upsert_task(_record(_escrow_id(3), amount='100000000000000000000'))
        tasks, total = TaskCache.search_tasks(min_amount='10')
        assert total == 2
        assert {t.amount for t in tasks} == {'10', '100000000000000000000'}
        tasks, total = TaskCache.search_tasks(max_amount='99')
        assert {t.amount for t in tasks} == {'9', '10'}

    def test_amount_desc_sort(self, ctx):
        from services.task_cache import TaskCache
        for n, amount in enumerate(['9', '100000000000000000000', '10'], start=1):
            TaskCache.upsert_task(_record(_escrow_id(n), amount=amount))
        tasks, _ = TaskCache.search_tasks(sort='amount_desc')
        assert [t.amount for t in tasks] == ['100000000000000000000', '10', '9']

    def test_total_uses_same_filters_as_page(self, ctx):
        from services.task_cache import TaskCache
        for n in range(1, 6):
            TaskCache.upsert_task(_record(_escrow_id(n), category='coding' if n % 2 else 'data'))
        tasks, total = TaskCache.search_tasks(category='coding', limit=1)
        assert len(tasks) == 1
        assert total == 3

    def test_default_state_is_pending(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1)))
        TaskCache.upsert_task(_record(_escrow_id(2), state='Active'))
        _, total = TaskCache.search_tasks()
        assert total == 1
        _, total = TaskCache.search_tasks(state='Active')
        assert total == 1

    def test_skills_any_of(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1), skills=['python']))
        TaskCache.upsert_task(_record(_escrow_id(2), skills=['solidity']))
        TaskCache.upsert_task(_record(_escrow_id(3), skills=['rust']))
        _, total = TaskCache.search_tasks(skills=['python', 'rust'])
        assert total == 2

    def test_q_wildcards_are_literal(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1), title='Plain title'))
        TaskCache.upsert_task(_record(_escrow_id(2), title='100% coverage'))
        tasks, total = TaskCache.search_tasks(q='%')
        assert total == 1
        assert tasks[0].title == '100% coverage'

    def test_limit_is_capped(self, ctx):
        from services.task_cache import clamp_limit
        assert clamp_limit(None) == 20
        assert clamp_limit('500') == 100
        assert clamp_limit(0) == 1

    def test_marketplace_stats(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1)))
        TaskCache.upsert_task(_record(_escrow_id(2), state='Active'))
        TaskCache.upsert_task(_record(_escrow_id(3), state='Resolved'))
        TaskCache.upsert_task(_record(_escrow_id(4), state='Disputed'))
        stats = TaskCache.marketplace_stats()
        assert stats == {"pendingTasks": 1, "activeTasks": 1, "completedTasks": 1, "totalTasks": 3}

    def test_listing_serializes_skills_as_list(self, ctx):
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1)))
        listing = TaskCache.to_listing(TaskCache.get_task(_escrow_id(1)))
        assert listing['skills'] == ['solidity', 'security']
        assert listing['amount'] == '1000'
        assert listing['escrowId'] == _escrow_id(1)


# ===================================================================
# 1.5 library_service
# ===================================================================

class TestLibraryService:

    def _published(self, n, **overrides):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        eid = _escrow_id(n)
        TaskCache.upsert_task(_record(eid, **overrides))
        _resolve(eid)
        LibraryService.publish(eid, CLIENT, 'public-domain', 'Summary')
        return eid

    def test_fts_query_quotes_every_token(self):
        from services.library_service import fts_query
        assert fts_query('solidity audit') == '"solidity" "audit"'
        assert fts_query('a"b OR c*') == '"a" "b" "OR" "c"'
        assert fts_query('!!!') == ''

    def test_search_never_returns_private_rows(self, ctx):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        TaskCache.upsert_task(_record(_escrow_id(1)))
        _resolve(_escrow_id(1))
        published = self._published(2)
        items, total = LibraryService.search('solidity')
        assert total == 1
        assert [t.escrow_id for t in items] == [published]

    def test_search_handles_hostile_query_strings(self, ctx):
        from services.library_service import LibraryService
        self._published(1)
        for q in ['"', 'solidity"', 'NEAR(', "'; DROP TABLE tasks; --", '***']:
            LibraryService.search(q)
        assert Task.query.count() == 1

    def test_search_filters_apply_to_count(self, ctx):
        from services.library_service import LibraryService
        self._published(1, category='coding')
        self._published(2, category='data')
        self._published(3, category='coding', skills=['python'])
        items, total = LibraryService.search('solidity', category='coding', limit=1)
        assert len(items) == 1
        assert total == 2
        _, total = LibraryService.search('audit', skills='python')
        assert total == 1

    def test_publish_preconditions_in_order(self, ctx):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        TaskCache.upsert_task(_record(eid))

        with pytest.raises(InvalidInput) as exc:
            LibraryService.publish(eid, None, 'public-domain')
        assert exc.value.code == 'INVALID_INPUT'
        with pytest.raises(InvalidInput) as exc:
            LibraryService.publish(eid, CLIENT, 'mit')
        assert exc.value.code == 'INVALID_LICENSE'
        with pytest.raises(NotFound):
            LibraryService.publish(_escrow_id(99), CLIENT, 'public-domain')
        with pytest.raises(InvalidInput) as exc:
            LibraryService.publish(eid, CLIENT, 'public-domain')
        assert exc.value.code == 'TASK_NOT_COMPLETED'

        _resolve(eid)
        with pytest.raises(Forbidden):
            LibraryService.publish(eid, STRANGER, 'public-domain')

    def test_publish_exactly_once(self, ctx):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        TaskCache.upsert_task(_record(eid))
        _resolve(eid)
        result = LibraryService.publish(eid, WORKER.upper().replace('0X', '0x'), 'attribution')
        assert result['success'] is True
        assert result['libraryUrl'] == f'/v2/library/{eid}'
        with pytest.raises(Conflict) as exc:
            LibraryService.publish(eid, CLIENT, 'attribution')
        assert exc.value.code == 'ALREADY_PUBLISHED'

    def test_publish_uses_description_when_no_summary(self, ctx):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        eid = _escrow_id(1)
        TaskCache.upsert_task(_record(eid))
        _resolve(eid)
        LibraryService.publish(eid, CLIENT, 'public-domain')
        task = db.session.get(Task, eid)
        assert task.deliverable_summary == 'Look for reentrancy'
        assert task.made_public_at is not None

    def test_get_item_counts_access_and_hides_private(self, ctx):
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        eid = self._published(1)
        TaskCache.upsert_task(_record(_escrow_id(2)))
        with pytest.raises(NotFound):
            LibraryService.get_item(_escrow_id(2))
        LibraryService.get_item(eid)
        detail = LibraryService.item_detail(eid, Config.PINATA_GATEWAY_URL)
        assert detail['accessCount'] == 2

    def test_item_detail_inlines_small_deliverables(self, ctx):
        from services import metadata_store
        from services.library_service import LibraryService
        from services.task_cache import TaskCache
        stored = metadata_store.store_content("def audit(): pass")
        eid = self._published(1)
        TaskCache.update_task_state(eid, EscrowState.RESOLVED, evidence_hash=stored['criteriaHash'])
        detail = LibraryService.item_detail(eid, Config.PINATA_GATEWAY_URL)
        assert detail['deliverableContent'] == "def audit(): pass"

    def test_browse_sorts_and_filters(self, ctx):
        from services.library_service import LibraryService
        first = self._published(1, amount='5')
        second = self._published(2, amount='50')
        LibraryService.get_item(first)
        LibraryService.get_item(first)
        items, total = LibraryService.browse(sort='popular')
        assert total == 2
        assert items[0].escrow_id == first
        items, _ = LibraryService.browse(sort='amount')
        assert items[0].escrow_id == second
        _, total = LibraryService.browse(license='non-commercial')
        assert total == 0

    def test_stats(self, ctx):
        from services.library_service import LibraryService
        first = self._published(1)
        self._published(2, category='data')
        LibraryService.get_item(first)
        stats = LibraryService.stats()
        assert stats['totalItems'] == 2
        assert stats['totalAccesses'] == 1
        assert stats['uniqueContributors'] == 1
        assert stats['recentlyAdded'] == 2
        assert {c['category'] for c in stats['topCategories']} == {'coding', 'data'}
        assert stats['topContributors'][0]['address'] == WORKER


# ===================================================================
# 1.6 agent_service
# ===================================================================

class TestAgentService:

    def _claim(self, address, referrer=None):
        from services.agent_service import AgentService
        prepared = AgentService.prepare_airdrop_claim(address, referrer)
        AgentService.confirm_airdrop(address, '0x' + 'f0' * 32)
        return prepared

    def test_unclaimed_referrer_is_not_credited(self, ctx):
        from services.agent_service import AgentService
        prepared = AgentService.prepare_airdrop_claim(WORKER, referrer=CLIENT)
        assert prepared['referrer'] is None
        assert prepared['referralBonus'] == 0
        assert prepared['amount'] == 1000
        assert AgentService.referral_count(CLIENT) == 0

    def test_claimed_referrer_earns_bonus_on_confirm(self, ctx):
        from services.agent_service import AgentService
        self._claim(CLIENT)
        prepared = self._claim(WORKER, referrer=CLIENT)
        assert prepared['referrer'] == CLIENT.lower()
        assert prepared['amount'] == 1100
        stats = AgentService.referral_stats(CLIENT)
        assert stats == {"referralCount": 1, "totalEarnings": 100}

    def test_referral_earnings_are_capped(self, ctx, monkeypatch):
        from services.agent_service import AgentService
        monkeypatch.setattr(Config, 'REFERRAL_EARNINGS_CAP', 150)
        self._claim(CLIENT)
        self._claim(WORKER, referrer=CLIENT)
        self._claim(STRANGER, referrer=CLIENT)
        stats = AgentService.referral_stats(CLIENT)
        assert stats == {"referralCount": 2, "totalEarnings": 150}

    def test_self_referral_rejected(self, ctx):
        from services.agent_service import AgentService
        with pytest.raises(InvalidInput) as exc:
            AgentService.prepare_airdrop_claim(CLIENT, referrer=CLIENT.upper().replace('0X', '0x'))
        assert exc.value.code == 'INVALID_REFERRER'

    def test_referral_cycle_rejected(self, ctx):
        from services.agent_service import AgentService
        db.session.add(Agent(address=CLIENT.lower()))
        db.session.add(Agent(address=WORKER.lower(), referred_by=CLIENT.lower(), airdrop_claimed=1))
        db.session.commit()
        with pytest.raises(InvalidInput) as exc:
            AgentService.prepare_airdrop_claim(CLIENT, referrer=WORKER)
        assert exc.value.code == 'INVALID_REFERRER'

    def test_claim_twice_conflicts(self, ctx):
        from services.agent_service import AgentService
        self._claim(CLIENT)
        with pytest.raises(Conflict):
            AgentService.prepare_airdrop_claim(CLIENT)
        with pytest.raises(Conflict):
            AgentService.confirm_airdrop(CLIENT, '0x01')

    def test_status_for_unknown_address(self, ctx):
        from services.agent_service import AgentService
        status = AgentService.airdrop_status(STRANGER)
        assert status['airdropClaimed'] is False
        assert status['referralCount'] == 0
        assert status['claimableMilestones'] == []
        assert STRANGER in status['suggestedPost']

    def test_status_lists_claimable_milestones(self, ctx):
        from services.agent_service import AgentService
        _claimed_agent(CLIENT, tasks_completed=1)
        status = AgentService.airdrop_status(CLIENT)
        assert status['claimableMilestones'] == [{"milestone": "FIRST_TASK", "payout": 50}]
        assert status['suggestedPost'] is None

    def test_milestone_claim_at_most_once(self, ctx):
        from services.agent_service import AgentService
        _claimed_agent(CLIENT, tasks_completed=1)
        prepared = AgentService.prepare_milestone_claim(CLIENT, 'FIRST_TASK')
        assert prepared['payout'] == 50
        AgentService.confirm_milestone(CLIENT, 'FIRST_TASK', '0x01')
        with pytest.raises(Conflict) as exc:
            AgentService.confirm_milestone(CLIENT, 'FIRST_TASK', '0x02')
        assert exc.value.code == 'ALREADY_CLAIMED'
        with pytest.raises(Conflict):
            AgentService.prepare_milestone_claim(CLIENT, 'FIRST_TASK')
        assert AgentMilestone.query.count() == 1

    def test_milestone_eligibility_recomputed(self, ctx):
        from services.agent_service import AgentService
        _claimed_agent(CLIENT)
        with pytest.raises(InvalidInput) as exc:
            AgentService.confirm_milestone(CLIENT, 'FIRST_BOUNTY', '0x01')
        assert exc.value.code == 'NOT_ELIGIBLE'
        with pytest.raises(NotFound):
            AgentService.prepare_milestone_claim(STRANGER, 'FIRST_TASK')

    def test_five_referrals_milestone(self, ctx):
        from services.agent_service import AgentService
        _claimed_agent(CLIENT)
        for n in range(5):
            db.session.add(Agent(address='0x' + f'{n + 100:040x}', referred_by=CLIENT.lower()))
        db.session.commit()
        assert AgentService.prepare_milestone_claim(CLIENT, 'FIVE_REFERRALS')['payout'] == 500

    def test_leaderboard(self, ctx):
        from services.agent_service import AgentService
        self._claim(CLIENT)
        self._claim(WORKER, referrer=CLIENT)
        AgentService.increment_tasks_completed(WORKER)
        board = AgentService.referral_leaderboard()
        assert board == [{
            "address": CLIENT.lower(),
            "referralCount": 1,
            "activeReferees": 1,
            "totalEarnings": 100,
        }]

    def test_counters_create_agent_rows(self, ctx):
        from services.agent_service import AgentService
        AgentService.increment_bounties_posted(STRANGER)
        AgentService.increment_bounties_posted(STRANGER)
        agent = AgentService.get_agent(STRANGER)
        assert agent.bounties_posted == 2
        assert agent.airdrop_claimed == 0

    def test_referral_link(self, ctx):
        from services.agent_service import AgentService
        link = AgentService.referral_link(CLIENT)
        assert link['link'] == f"{Config.API_URL}/join?ref={CLIENT.lower()}"
        assert link['code'] == CLIENT.lower()[:10]


# ===================================================================
# 1.7 social_service
# ===================================================================

class TestSocialService:

    def test_extract_post_id(self):
        from services.social_service import extract_post_id
        assert extract_post_id('https://twitter.com/agent/status/123456') == '123456'
        assert extract_post_id('https://x.com/agent/status/99?s=20') == '99'
        assert extract_post_id('https://mobile.twitter.com/a/statuses/5') == '5'
        assert extract_post_id('https://example.com/agent/status/1') is None

    def test_brand_and_recency(self):
        from services.social_service import is_recent, mentions_brand
        assert mentions_brand('joined @ClawgleXYZ today')
        assert mentions_brand('holding $settle')
        assert not mentions_brand('hello world')
        now = 1_700_000_000
        assert is_recent(now - 3600, now=now)
        assert not is_recent(now - 2 * 24 * 3600, now=now)

    def test_utc_day_start(self):
        from services.social_service import utc_day_start
        # 2023-11-14T22:13:20Z
        assert utc_day_start(1_700_000_000) == 1_699_920_000

    def test_requires_airdrop(self, ctx):
        from services.social_service import SocialService
        with pytest.raises(InvalidInput) as exc:
            SocialService.claim(CLIENT, 'twitter', 'https://x.com/a/status/1')
        assert exc.value.code == 'AIRDROP_NOT_CLAIMED'

    def test_unsupported_platform(self, ctx):
        from services.social_service import SocialService
        _claimed_agent(CLIENT)
        with pytest.raises(InvalidInput) as exc:
            SocialService.claim(CLIENT, 'mastodon', 'https://x.com/a/status/1')
        assert exc.value.code == 'UNSUPPORTED_PLATFORM'

    def test_daily_cap(self, ctx):
        from services.social_service import SocialService
        _claimed_agent(CLIENT)
        for n in range(3):
            result = SocialService.claim(CLIENT, 'x', f'https://x.com/a/status/{n}')
        assert result['remainingToday'] == 0
        with pytest.raises(InvalidInput) as exc:
            SocialService.claim(CLIENT, 'x', 'https://x.com/a/status/4')
        assert exc.value.code == 'DAILY_LIMIT_REACHED'
        assert exc.value.extra['claimsToday'] == 3

    def test_yesterdays_claims_do_not_count(self, ctx):
        from services.social_service import SocialService, utc_day_start
        _claimed_agent(CLIENT)
        for n in range(3):
            db.session.add(SocialClaim(agent_address=CLIENT.lower(), platform='twitter',
                                       post_url=f'https://x.com/a/status/old{n}',
                                       claimed_at=utc_day_start() - 60, payout=25))
        db.session.commit()
        result = SocialService.claim(CLIENT, 'twitter', 'https://x.com/a/status/999')
        assert result['claimsToday'] == 1

    def test_post_url_globally_unique(self, ctx):
        from services.social_service import SocialService
        _claimed_agent(CLIENT)
        _claimed_agent(WORKER)
        url = 'https://twitter.com/a/status/777'
        SocialService.claim(CLIENT, 'twitter', url)
        with pytest.raises(Conflict) as exc:
            SocialService.claim(WORKER, 'twitter', url)
        assert exc.value.code == 'POST_ALREADY_CLAIMED'

    def test_malformed_url_fails_verification(self, ctx):
        from services.social_service import SocialService
        _claimed_agent(CLIENT)
        with pytest.raises(InvalidInput) as exc:
            SocialService.claim(CLIENT, 'twitter', 'https://twitter.com/home')
        assert exc.value.code == 'VERIFICATION_FAILED'

    def test_status_and_history(self, ctx):
        from services.social_service import SocialService
        _claimed_agent(CLIENT)
        SocialService.claim(CLIENT, 'twitter', 'https://x.com/a/status/1')
        status = SocialService.status(CLIENT)
        assert status['eligible'] is True
        assert status['totalEarned'] == 25
        assert status['remainingToday'] == 2
        history = SocialService.claims(CLIENT)
        assert history['total'] == 1
        assert history['claims'][0]['postUrl'] == 'https://x.com/a/status/1'

    def test_validate(self, ctx):
        from services.social_service import SocialService
        assert SocialService.validate('https://x.com/a/status/1')['valid'] is True
        assert SocialService.validate('https://x.com/home')['valid'] is False
        with pytest.raises(InvalidInput):
            SocialService.validate('')
