"""JSON ABIs for the escrow and airdrop contracts (only the members the gateway uses)."""


def _fn(name, inputs=(), outputs=(), mutability='nonpayable'):
    return {
        "type": "function",
        "name": name,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": [{"name": n, "type": t} for n, t in outputs],
        "stateMutability": mutability,
    }


def _event(name, inputs):
    return {
        "type": "event",
        "name": name,
        "anonymous": False,
        "inputs": [{"name": n, "type": t, "indexed": idx} for n, t, idx in inputs],
    }


ESCROW_STRUCT_FIELDS = [
    ("client", "address"),
    ("worker", "address"),
    ("token", "address"),
    ("amount", "uint256"),
    ("deadline", "uint256"),
    ("criteriaHash", "bytes32"),
    ("state", "uint8"),
    ("outcome", "uint8"),
    ("completionPct", "uint8"),
    ("createdAt", "uint256"),
    ("submittedAt", "uint256"),
    ("evidenceHash", "bytes32"),
    ("reviewPeriod", "uint256"),
]

ESCROW_ABI = [
    {
        "type": "function",
        "name": "getEscrow",
        "inputs": [{"name": "escrowId", "type": "bytes32"}],
        "outputs": [{
            "name": "",
            "type": "tuple",
            "components": [{"name": n, "type": t} for n, t in ESCROW_STRUCT_FIELDS],
        }],
        "stateMutability": "view",
    },
    _fn("minEscrowAmount", outputs=[("", "uint256")], mutability='view'),
    _fn("maxEscrowAmount", outputs=[("", "uint256")], mutability='view'),
    _fn("protocolFeeBps", outputs=[("", "uint256")], mutability='view'),
    _fn("disputeFeeBps", outputs=[("", "uint256")], mutability='view'),
    _fn("arbitrator", outputs=[("", "address")], mutability='view'),
    _fn("escrowCount", outputs=[("", "uint256")], mutability='view'),

    _fn("createEscrow",
        inputs=[("token", "address"), ("amount", "uint256"), ("deadline", "uint256"),
                ("criteriaHash", "bytes32"), ("reviewPeriod", "uint256")],
        outputs=[("", "bytes32")], mutability='payable'),
    _fn("acceptEscrow", inputs=[("escrowId", "bytes32")]),
    _fn("submitWork", inputs=[("escrowId", "bytes32"), ("evidenceHash", "bytes32")]),
    _fn("release", inputs=[("escrowId", "bytes32")]),
    _fn("dispute", inputs=[("escrowId", "bytes32")], mutability='payable'),
    _fn("autoRelease", inputs=[("escrowId", "bytes32")]),
    _fn("resolve", inputs=[("escrowId", "bytes32"), ("completionPct", "uint8")]),

    _event("EscrowCreated", [
        ("escrowId", "bytes32", True), ("client", "address", True), ("token", "address", False),
        ("amount", "uint256", False), ("criteriaHash", "bytes32", False),
    ]),
    _event("EscrowAccepted", [("escrowId", "bytes32", True), ("worker", "address", True)]),
    _event("WorkSubmitted", [("escrowId", "bytes32", True), ("evidenceHash", "bytes32", False)]),
    _event("EscrowReleased", [
        ("escrowId", "bytes32", True), ("workerAmount", "uint256", False),
        ("protocolFee", "uint256", False),
    ]),
    _event("EscrowDisputed", [("escrowId", "bytes32", True), ("disputeFee", "uint256", False)]),
    _event("EscrowResolved", [
        ("escrowId", "bytes32", True), ("outcome", "uint8", False), ("completionPct", "uint8", False),
        ("workerAmount", "uint256", False), ("clientRefund", "uint256", False),
    ]),
]

AIRDROP_ABI = [
    _fn("claim", inputs=[("referrer", "address")]),
    _fn("claimMilestone", inputs=[("milestone", "bytes32")]),
    _fn("hasClaimed", inputs=[("", "address")], outputs=[("", "bool")], mutability='view'),
]
