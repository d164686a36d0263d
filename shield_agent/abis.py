"""Minimal contract ABIs for the reads and writes the agent performs."""

ADAPTER_ABI = [
    {"name": "getCurrentAPY", "type": "function", "inputs": [], "outputs": [{"type": "uint256"}], "stateMutability": "view"},
    {"name": "isHealthy", "type": "function", "inputs": [], "outputs": [{"type": "bool"}], "stateMutability": "view"},
    {"name": "getBalanceBreakdown", "type": "function", "inputs": [], "outputs": [
        {"name": "principal", "type": "uint256"},
        {"name": "accruedYield", "type": "uint256"},
        {"name": "currentBalance", "type": "uint256"}
    ], "stateMutability": "view"},
]

RISK_REGISTRY_ABI = [
    {"name": "getProtocolRisk", "type": "function", "inputs": [{"name": "protocol", "type": "address"}], "outputs": [
        {"name": "", "type": "tuple", "components": [
            {"name": "riskScore", "type": "uint8"},
            {"name": "threatLevel", "type": "uint8"},
            {"name": "lastUpdated", "type": "uint256"},
            {"name": "isActive", "type": "bool"}
        ]}
    ], "stateMutability": "view"},
    {"name": "batchUpdateRiskScores", "type": "function", "inputs": [
        {"name": "protocols", "type": "address[]"},
        {"name": "scores", "type": "uint8[]"},
        {"name": "reasons", "type": "string[]"}
    ], "outputs": [], "stateMutability": "nonpayable"},
    {"name": "RiskScoreUpdated", "type": "event", "anonymous": False, "inputs": [
        {"name": "protocol", "type": "address", "indexed": True},
        {"name": "oldScore", "type": "uint8", "indexed": False},
        {"name": "newScore", "type": "uint8", "indexed": False},
        {"name": "threatLevel", "type": "uint8", "indexed": False}
    ]},
]

SHIELD_VAULT_ABI = [
    {"name": "getPoolAllocations", "type": "function", "inputs": [], "outputs": [
        {"name": "", "type": "tuple[]", "components": [
            {"name": "adapter", "type": "address"},
            {"name": "tier", "type": "uint8"},
            {"name": "targetWeight", "type": "uint256"},
            {"name": "currentAmount", "type": "uint256"},
            {"name": "isActive", "type": "bool"}
        ]}
    ], "stateMutability": "view"},
    {"name": "partialWithdraw", "type": "function", "inputs": [
        {"name": "adapter", "type": "address"},
        {"name": "percentage", "type": "uint256"},
        {"name": "reason", "type": "string"}
    ], "outputs": [], "stateMutability": "nonpayable"},
    {"name": "emergencyWithdraw", "type": "function", "inputs": [
        {"name": "adapter", "type": "address"},
        {"name": "reason", "type": "string"}
    ], "outputs": [], "stateMutability": "nonpayable"},
    {"name": "updatePoolWeight", "type": "function", "inputs": [
        {"name": "adapter", "type": "address"},
        {"name": "newWeight", "type": "uint256"}
    ], "outputs": [], "stateMutability": "nonpayable"},
    {"name": "rebalance", "type": "function", "inputs": [], "outputs": [], "stateMutability": "nonpayable"},
]

AGGREGATOR_V3_ABI = [
    {"name": "latestRoundData", "type": "function", "inputs": [], "outputs": [
        {"name": "roundId", "type": "uint80"},
        {"name": "answer", "type": "int256"},
        {"name": "startedAt", "type": "uint256"},
        {"name": "updatedAt", "type": "uint256"},
        {"name": "answeredInRound", "type": "uint80"}
    ], "stateMutability": "view"},
    {"name": "decimals", "type": "function", "inputs": [], "outputs": [{"type": "uint8"}], "stateMutability": "view"},
]

# Write signatures used to build calldata
BATCH_UPDATE_RISK_SCORES = ("batchUpdateRiskScores(address[],uint8[],string[])", ["address[]", "uint8[]", "string[]"])
PARTIAL_WITHDRAW = ("partialWithdraw(address,uint256,string)", ["address", "uint256", "string"])
EMERGENCY_WITHDRAW = ("emergencyWithdraw(address,string)", ["address", "string"])
UPDATE_POOL_WEIGHT = ("updatePoolWeight(address,uint256)", ["address", "uint256"])
REBALANCE = ("rebalance()", [])

RISK_SCORE_UPDATED_EVENT = "RiskScoreUpdated(address,uint8,uint8,uint8)"

# Chainlink aggregators report USD pairs with 8 decimals
PRICE_FEED_DECIMALS = 8
