import os
from typing import Any, Dict, List, Sequence

import pytest

# Set test environment before any settings are loaded
os.environ["ENV"] = "test"
os.environ["LOG_LEVEL"] = "ERROR"  # Reduce noise in tests
os.environ["ENABLE_BACKGROUND_SCAN"] = "false"
os.environ["ENABLE_LOG_SINK"] = "false"
os.environ["DEPLOYMENT_CONFIG_PATH"] = "tests/does-not-exist.json"
os.environ.pop("MONGODB_URI", None)
os.environ.pop("WRITER_RELAY_URL", None)

from shield_agent.chain_client import ChainReader, DryRunWriter
from shield_agent.error_handling import ChainReadError
from shield_agent.models import (
    AdapterRiskInfo, AdapterSnapshot, DeploymentConfig, GithubSignal, OffchainSignals,
    PoolAllocation, PriceSignal, SecuritySignal, ShieldConfig, TeamWalletSignal,
    ThreatLevel, TvlSignal
)

REGISTRY = "0x1111111111111111111111111111111111111111"
VAULT = "0x2222222222222222222222222222222222222222"
AAVE_ADAPTER = "0x3333333333333333333333333333333333333333"
COMPOUND_ADAPTER = "0x4444444444444444444444444444444444444444"
BASE_REGISTRY = "0x5555555555555555555555555555555555555555"
BASE_VAULT = "0x6666666666666666666666666666666666666666"
MORPHO_ADAPTER = "0x7777777777777777777777777777777777777777"
USDC_FEED = "0x8888888888888888888888888888888888888888"
ETH_FEED = "0x9999999999999999999999999999999999999999"


class FakeChainReader(ChainReader):
    """Answers view calls from a table keyed by (address, function, args)"""

    def __init__(self, responses: Dict[tuple, Any] = None):
        self.responses = {}
        for key, value in (responses or {}).items():
            address, function, *args = key
            self.responses[(address.lower(), function, tuple(args))] = value
        self.calls: List[tuple] = []
        self.closed = False

    async def call(self, address: str, abi: List[Dict], function: str, args: Sequence[Any] = ()) -> Any:
        key = (address.lower(), function, tuple(arg.lower() if isinstance(arg, str) else arg for arg in args))
        self.calls.append(key)
        if key not in self.responses:
            raise ChainReadError(f"no response for {function} on {address}")
        value = self.responses[key]
        if isinstance(value, Exception):
            raise value
        return value

    async def close(self):
        self.closed = True


def adapter_responses(address: str, apy: int = 450, healthy: bool = True,
                      principal: int = 1_000_000_000, accrued: int = 5_000_000,
                      balance: int = 1_005_000_000) -> Dict[tuple, Any]:
    return {
        (address, "getCurrentAPY"): apy,
        (address, "isHealthy"): healthy,
        (address, "getBalanceBreakdown"): (principal, accrued, balance),
    }


@pytest.fixture
def fake_reader_factory():
    """Build a FakeChainReader per chain from {chain_name: responses}"""
    def build(tables: Dict[str, Dict[tuple, Any]]):
        readers = {}

        def factory(chain):
            reader = FakeChainReader(tables.get(chain.chain_name, {}))
            readers.setdefault(chain.chain_name, []).append(reader)
            return reader

        factory.readers = readers
        return factory

    return build


@pytest.fixture
def dry_run_writer():
    return DryRunWriter()


@pytest.fixture
def deployment_dict() -> Dict[str, Any]:
    return {
        "chains": [
            {
                "chain_name": "sepolia",
                "rpc_url": "http://localhost:8545",
                "risk_registry": REGISTRY,
                "shield_vault": VAULT,
                "adapters": [
                    {"name": "AaveAdapter", "address": AAVE_ADAPTER},
                    {"name": "CompoundAdapter", "address": COMPOUND_ADAPTER}
                ],
                "price_feeds": {"usdc_usd": USDC_FEED, "eth_usd": ETH_FEED}
            },
            {
                "chain_name": "base-sepolia",
                "rpc_url": "http://localhost:8546",
                "risk_registry": BASE_REGISTRY,
                "shield_vault": BASE_VAULT,
                "adapters": [{"name": "MorphoAdapter", "address": MORPHO_ADAPTER}]
            }
        ],
        "offchain_apis": {
            "primary_protocol": "aave",
            "adapters": {
                "aave": {
                    "github": "https://api.github.com/repos/aave/aave-v3-core",
                    "goplus_token_address": "0x7fc66500c84a76ad7e9c93437bfc5ac33e2ddae9",
                    "team_wallet": "0x25f2226b597e8f9514b3f68f00f494cf4f286491"
                }
            }
        }
    }


@pytest.fixture
def deployment(deployment_dict) -> DeploymentConfig:
    return DeploymentConfig(**deployment_dict)


@pytest.fixture
def shield_config() -> ShieldConfig:
    return ShieldConfig()


@pytest.fixture
def healthy_adapter() -> AdapterSnapshot:
    """Healthy adapter earning 5% with principal intact"""
    return AdapterSnapshot(
        name="AaveAdapter",
        address=AAVE_ADAPTER,
        balance=1_005_000_000,
        principal=1_000_000_000,
        accrued_yield=5_000_000,
        apy=500,
        is_healthy=True
    )


@pytest.fixture
def drained_adapter() -> AdapterSnapshot:
    """Unhealthy adapter with its balance gone"""
    return AdapterSnapshot(
        name="CompoundAdapter",
        address=COMPOUND_ADAPTER,
        balance=0,
        principal=500_000,
        accrued_yield=0,
        apy=300,
        is_healthy=False
    )


@pytest.fixture
def quiet_signals() -> OffchainSignals:
    """Every source available and reporting nothing alarming"""
    return OffchainSignals(
        prices=PriceSignal(eth_usd=3000.0, btc_usd=60000.0, usdc_usd=1.0),
        tvl=TvlSignal(current_tvl=1_005.0, tvl_change_percent=0.0),
        github=GithubSignal(open_issues=12, last_push_days_ago=2),
        security=SecuritySignal(),
        team_wallet=TeamWalletSignal(balance_eth=12.5, recent_large_outflows=False)
    )


@pytest.fixture
def hostile_signals() -> OffchainSignals:
    """Bank run, honeypot, abandoned repository and an admin wallet draining"""
    return OffchainSignals(
        prices=PriceSignal(eth_usd=3000.0, btc_usd=60000.0, usdc_usd=1.0),
        tvl=TvlSignal(current_tvl=650.0, tvl_change_percent=-35.0),
        github=GithubSignal(last_push_days_ago=90),
        security=SecuritySignal(is_honeypot=True),
        team_wallet=TeamWalletSignal(balance_eth=0.1, recent_large_outflows=True)
    )


def pool_addresses(count: int) -> List[str]:
    return [f"0x{str(i + 1) * 40}" if i < 9 else f"0x{'a' * 40}" for i in range(count)]


@pytest.fixture
def four_pools() -> List[PoolAllocation]:
    return [
        PoolAllocation(adapter=address, target_weight=2500, current_amount=1_000_000)
        for address in pool_addresses(4)
    ]


@pytest.fixture
def four_pool_risk_info() -> List[AdapterRiskInfo]:
    """Two safe pools, one WARNING and one CRITICAL"""
    addresses = pool_addresses(4)
    return [
        AdapterRiskInfo(address=addresses[0], risk_score=10, threat_level=ThreatLevel.SAFE, apy=450),
        AdapterRiskInfo(address=addresses[1], risk_score=30, threat_level=ThreatLevel.WATCH, apy=800),
        AdapterRiskInfo(address=addresses[2], risk_score=60, threat_level=ThreatLevel.WARNING, apy=3000),
        AdapterRiskInfo(address=addresses[3], risk_score=90, threat_level=ThreatLevel.CRITICAL, apy=9000),
    ]
