"""
ChainBridge: web3.py wrapper for the escrow contract.
Handles typed reads, event log queries, raw tx relay and the legacy
server-side signing flow.
Gracefully degrades when env vars are missing (off-chain mode).
"""
import logging
from typing import NamedTuple

from web3 import Web3
from eth_account import Account

from config import Config
from core.abi import ESCROW_ABI
from core.protocol import (
    ZERO_ADDRESS, ZERO_BYTES32, EscrowState, Outcome,
    bytes32_to_hex, hex_to_bytes32, is_native_token,
)

logger = logging.getLogger('gateway.chain')

# Fetch order for one block range (indexer re-sorts by chain position)
EVENT_KINDS = (
    ('Created', 'EscrowCreated'),
    ('Accepted', 'EscrowAccepted'),
    ('Released', 'EscrowReleased'),
    ('Disputed', 'EscrowDisputed'),
    ('Submitted', 'WorkSubmitted'),
    ('Resolved', 'EscrowResolved'),
)


class ChainEvent(NamedTuple):
    kind: str
    escrow_id: str
    args: dict
    block_number: int
    log_index: int


class ChainBridge:
    def __init__(self, rpc_url=None, escrow_address=None):
        self.rpc_url = rpc_url or Config.RPC_URL or 'http://127.0.0.1:8545'
        self.w3 = Web3(Web3.HTTPProvider(self.rpc_url))

        self.escrow_address = escrow_address or Config.ESCROW_CONTRACT_ADDRESS
        self.escrow = None
        if self.escrow_address:
            self.escrow = self.w3.eth.contract(
                address=Web3.to_checksum_address(self.escrow_address),
                abi=ESCROW_ABI,
            )

    def is_configured(self) -> bool:
        return self.escrow is not None

    def is_connected(self) -> bool:
        """Check if RPC is reachable and the contract is configured."""
        try:
            return self.w3.is_connected() and self.escrow is not None
        except Exception:
            return False

    def _require_contract(self):
        if self.escrow is None:
            raise RuntimeError("ESCROW_CONTRACT_ADDRESS not configured")

    # --- Read functions ---

    def get_block_number(self) -> int:
        return int(self.w3.eth.block_number)

    def get_escrow(self, escrow_id: str) -> dict:
        self._require_contract()
        result = self.escrow.functions.getEscrow(hex_to_bytes32(escrow_id)).call()
        (client, worker, token, amount, deadline, criteria_hash, state, outcome,
         completion_pct, created_at, submitted_at, evidence_hash, review_period) = result
        evidence = bytes32_to_hex(evidence_hash)
        return {
            'id': escrow_id,
            'client': client,
            'worker': worker,
            'token': token,
            'amount': str(amount),
            'deadline': int(deadline),
            'criteriaHash': bytes32_to_hex(criteria_hash),
            'state': EscrowState.from_index(state).value if state < len(EscrowState) else 'Unknown',
            'outcome': Outcome.from_index(outcome).value if outcome < len(Outcome) else 'Unknown',
            'completionPct': int(completion_pct),
            'createdAt': int(created_at),
            'submittedAt': int(submitted_at),
            'evidenceHash': None if evidence == ZERO_BYTES32 else evidence,
            'reviewPeriod': int(review_period),
        }

    def get_protocol_status(self) -> dict:
        self._require_contract()
        fns = self.escrow.functions
        return {
            'contractAddress': self.escrow_address,
            'chain': Config.CHAIN_NAME,
            'chainId': Config.CHAIN_ID,
            'minEscrowAmount': str(fns.minEscrowAmount().call()),
            'maxEscrowAmount': str(fns.maxEscrowAmount().call()),
            'protocolFeeBps': int(fns.protocolFeeBps().call()),
            'disputeFeeBps': int(fns.disputeFeeBps().call()),
            'arbitrator': fns.arbitrator().call(),
            'totalEscrows': int(fns.escrowCount().call()),
        }

    def get_events(self, from_block: int, to_block: int) -> list:
        """Fetch all protocol events in [from_block, to_block], kind by kind."""
        self._require_contract()
        events = []
        for kind, event_name in EVENT_KINDS:
            logs = getattr(self.escrow.events, event_name)().get_logs(
                from_block=from_block, to_block=to_block,
            )
            for log in logs:
                args = dict(log['args'])
                events.append(ChainEvent(
                    kind=kind,
                    escrow_id=bytes32_to_hex(args.get('escrowId', b'')),
                    args=args,
                    block_number=int(log['blockNumber']),
                    log_index=int(log['logIndex']),
                ))
        return events

    # --- Relay ---

    def send_raw_transaction(self, signed_tx: str) -> str:
        tx_hash = self.w3.eth.send_raw_transaction(signed_tx)
        return Web3.to_hex(tx_hash)

    # --- Legacy write functions (server-side signing) ---

    def _send_tx(self, private_key, fn, value=0):
        account = Account.from_key(private_key)
        nonce = self.w3.eth.get_transaction_count(account.address)
        tx = fn.build_transaction({
            'from': account.address,
            'nonce': nonce,
            'gas': 500_000,
            'gasPrice': self.w3.eth.gas_price,
            'value': value,
            'chainId': Config.CHAIN_ID,
        })
        signed = self.w3.eth.account.sign_transaction(tx, private_key)
        tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
        receipt = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=Config.TX_RECEIPT_TIMEOUT)
        if receipt['status'] != 1:
            raise RuntimeError(f"Transaction reverted: {Web3.to_hex(tx_hash)}")
        return receipt

    def create_escrow(self, private_key, token, amount, deadline, criteria_hash, review_period=0):
        self._require_contract()
        fn = self.escrow.functions.createEscrow(
            Web3.to_checksum_address(token), amount, deadline,
            hex_to_bytes32(criteria_hash), review_period,
        )
        value = amount if is_native_token(token) else 0
        receipt = self._send_tx(private_key, fn, value=value)
        logs = self.escrow.events.EscrowCreated().process_receipt(receipt)
        if not logs:
            raise RuntimeError("EscrowCreated event not found in receipt")
        return {
            'escrowId': bytes32_to_hex(logs[0]['args']['escrowId']),
            'txHash': Web3.to_hex(receipt['transactionHash']),
        }

    def _call(self, private_key, fn_name, *args, value=0):
        self._require_contract()
        fn = getattr(self.escrow.functions, fn_name)(*args)
        receipt = self._send_tx(private_key, fn, value=value)
        return Web3.to_hex(receipt['transactionHash'])

    def accept_escrow(self, private_key, escrow_id):
        return self._call(private_key, 'acceptEscrow', hex_to_bytes32(escrow_id))

    def submit_work(self, private_key, escrow_id, evidence_hash):
        return self._call(private_key, 'submitWork',
                          hex_to_bytes32(escrow_id), hex_to_bytes32(evidence_hash))

    def release_escrow(self, private_key, escrow_id):
        return self._call(private_key, 'release', hex_to_bytes32(escrow_id))

    def dispute_escrow(self, private_key, escrow_id, dispute_fee=0):
        return self._call(private_key, 'dispute', hex_to_bytes32(escrow_id), value=dispute_fee)

    def auto_release_escrow(self, private_key, escrow_id):
        return self._call(private_key, 'autoRelease', hex_to_bytes32(escrow_id))

    def resolve_dispute(self, private_key, escrow_id, completion_pct):
        return self._call(private_key, 'resolve', hex_to_bytes32(escrow_id), completion_pct)


def is_zero_address(address) -> bool:
    return not address or address.lower() == ZERO_ADDRESS


# Singleton: constructed lazily, tolerates missing env vars
_bridge_instance = None

def get_chain_bridge() -> ChainBridge:
    global _bridge_instance
    if _bridge_instance is None:
        _bridge_instance = ChainBridge()
    return _bridge_instance
