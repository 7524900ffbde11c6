"""Contract ABI fragments for the calls the engine makes."""

_MATCH_COMPONENTS = [
    {"name": "id", "type": "bytes32"},
    {"name": "startTime", "type": "uint64"},
    {"name": "oddsHome", "type": "uint32"},
    {"name": "oddsDraw", "type": "uint32"},
    {"name": "oddsAway", "type": "uint32"},
    {"name": "oddsOver", "type": "uint32"},
    {"name": "oddsUnder", "type": "uint32"},
]

_RESULT_COMPONENTS = [
    {"name": "moneyline", "type": "uint8"},
    {"name": "overUnder", "type": "uint8"},
]

_PREDICTION_COMPONENTS = [
    {"name": "matchId", "type": "bytes32"},
    {"name": "betType", "type": "uint8"},
    {"name": "selection", "type": "bytes32"},
    {"name": "selectedOdd", "type": "uint32"},
]

_SLIP_COMPONENTS = [
    {"name": "player", "type": "address"},
    {"name": "cycleId", "type": "uint256"},
    {"name": "placedAt", "type": "uint256"},
    {"name": "predictions", "type": "tuple[10]", "components": _PREDICTION_COMPONENTS},
    {"name": "finalScore", "type": "uint256"},
    {"name": "correctCount", "type": "uint8"},
    {"name": "isEvaluated", "type": "bool"},
]

ODDYSSEY_ABI = [
    {
        "type": "function",
        "name": "startDailyCycle",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_matches", "type": "tuple[10]", "components": _MATCH_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "resolveDailyCycle",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "_cycleId", "type": "uint256"},
            {"name": "_results", "type": "tuple[10]", "components": _RESULT_COMPONENTS},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "dailyCycleId",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "type": "function",
        "name": "getCycleStatus",
        "stateMutability": "view",
        "inputs": [{"name": "_cycleId", "type": "uint256"}],
        "outputs": [
            {"name": "exists", "type": "bool"},
            {"name": "state", "type": "uint8"},
            {"name": "endTime", "type": "uint256"},
            {"name": "prizePool", "type": "uint256"},
            {"name": "cycleSlipCount", "type": "uint32"},
            {"name": "hasWinner", "type": "bool"},
        ],
    },
    {
        "type": "function",
        "name": "getSlip",
        "stateMutability": "view",
        "inputs": [{"name": "_slipId", "type": "uint256"}],
        "outputs": [{"name": "", "type": "tuple", "components": _SLIP_COMPONENTS}],
    },
    {
        "type": "event",
        "name": "CycleStarted",
        "anonymous": False,
        "inputs": [
            {"name": "cycleId", "type": "uint256", "indexed": True},
            {"name": "endTime", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "CycleResolved",
        "anonymous": False,
        "inputs": [
            {"name": "cycleId", "type": "uint256", "indexed": True},
            {"name": "prizePool", "type": "uint256", "indexed": False},
        ],
    },
    {
        "type": "event",
        "name": "SlipPlaced",
        "anonymous": False,
        "inputs": [
            {"name": "cycleId", "type": "uint256", "indexed": True},
            {"name": "player", "type": "address", "indexed": True},
            {"name": "slipId", "type": "uint256", "indexed": True},
        ],
    },
]

CYCLE_RESOLVED_SIGNATURE = "CycleResolved(uint256,uint256)"
SLIP_PLACED_SIGNATURE = "SlipPlaced(uint256,address,uint256)"

GUIDED_ORACLE_ABI = [
    {
        "type": "function",
        "name": "submitOutcome",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "marketId", "type": "bytes32"},
            {"name": "resultData", "type": "bytes"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getOutcome",
        "stateMutability": "view",
        "inputs": [{"name": "marketId", "type": "bytes32"}],
        "outputs": [
            {"name": "isSet", "type": "bool"},
            {"name": "resultData", "type": "bytes"},
        ],
    },
]
