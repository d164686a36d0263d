from pydantic import BaseModel, Field, validator, field_serializer
from typing import Optional, List, Dict, Any
from datetime import datetime
from enum import IntEnum

from .config import ShieldActionType, ScanStatus

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

def _validate_address(v: str) -> str:
    if not isinstance(v, str) or not v.startswith('0x') or len(v) != 42:
        raise ValueError('Invalid Ethereum address format')
    try:
        int(v[2:], 16)
    except ValueError:
        raise ValueError('Invalid Ethereum address format')
    return v.lower()

# Threat classification
class ThreatLevel(IntEnum):
    SAFE = 0
    WATCH = 1
    WARNING = 2
    CRITICAL = 3

    @classmethod
    def from_score(cls, score: int) -> "ThreatLevel":
        """Map a 0-100 risk score onto a threat level"""
        if score <= 25:
            return cls.SAFE
        if score <= 50:
            return cls.WATCH
        if score <= 75:
            return cls.WARNING
        return cls.CRITICAL

    @classmethod
    def from_value(cls, raw: Any) -> Optional["ThreatLevel"]:
        """Tolerant conversion of an on-chain enum value, None when out of range"""
        try:
            return cls(int(raw))
        except (TypeError, ValueError):
            return None

class AnomalySeverity(IntEnum):
    WATCH = 1
    WARNING = 2
    CRITICAL = 3

class RiskTier(IntEnum):
    LOW = 0
    MEDIUM = 1
    HIGH = 2

# On-chain snapshots
class AdapterSnapshot(BaseModel):
    name: str
    address: str
    balance: int = 0
    principal: int = 0
    accrued_yield: int = 0
    apy: int = 0  # basis points
    is_healthy: bool = True

    class Config:
        frozen = True

    @validator('address')
    def validate_address(cls, v):
        return _validate_address(v)

    @property
    def is_drained(self) -> bool:
        return self.principal > 0 and self.balance == 0

class ProtocolRiskSnapshot(BaseModel):
    address: str
    risk_score: int = Field(default=0, ge=0, le=100)
    threat_level: ThreatLevel = ThreatLevel.SAFE
    last_updated: int = 0
    is_active: bool = False

    @validator('address')
    def validate_address(cls, v):
        return _validate_address(v)

# Off-chain signals; each carries a `defaulted` flag when the source was unavailable
class PriceSignal(BaseModel):
    eth_usd: float = 0.0
    btc_usd: float = 0.0
    usdc_usd: float = 1.0
    defaulted: bool = False

    @classmethod
    def default(cls) -> "PriceSignal":
        return cls(defaulted=True)

class TvlSignal(BaseModel):
    current_tvl: float = 0.0
    tvl_change_percent: float = 0.0
    defaulted: bool = False

    @classmethod
    def default(cls) -> "TvlSignal":
        return cls(defaulted=True)

class GithubSignal(BaseModel):
    recent_commits: int = 0
    open_issues: int = 0
    last_push_days_ago: int = 999
    defaulted: bool = False

    @classmethod
    def default(cls) -> "GithubSignal":
        return cls(defaulted=True)

class SecuritySignal(BaseModel):
    is_honeypot: bool = False
    is_open_source: bool = True
    is_proxy: bool = False
    owner_can_change_balance: bool = False
    is_mintable: bool = False
    defaulted: bool = False

    @classmethod
    def default(cls) -> "SecuritySignal":
        return cls(defaulted=True)

class TeamWalletSignal(BaseModel):
    balance_eth: float = 0.0
    recent_large_outflows: bool = False
    defaulted: bool = False

    @classmethod
    def default(cls) -> "TeamWalletSignal":
        return cls(defaulted=True)

class LendingMarketMetrics(BaseModel):
    total_supplied: str = "0"
    total_borrowed: str = "0"
    supply_rate: float = 0.0
    borrow_rate: float = 0.0
    utilization: float = 0.0  # percent

class DefiMetricsSignal(BaseModel):
    aave: Optional[LendingMarketMetrics] = None
    compound: Optional[LendingMarketMetrics] = None
    defaulted: bool = False

    @classmethod
    def default(cls) -> "DefiMetricsSignal":
        return cls(defaulted=True)

    def utilization_for(self, adapter_name: str) -> Optional[float]:
        """Utilization of the lending market backing an adapter, if known"""
        if "Aave" in adapter_name and self.aave is not None:
            return self.aave.utilization
        if "Compound" in adapter_name and self.compound is not None:
            return self.compound.utilization
        return None

class OffchainSignals(BaseModel):
    prices: PriceSignal = Field(default_factory=PriceSignal.default)
    tvl: TvlSignal = Field(default_factory=TvlSignal.default)
    github: GithubSignal = Field(default_factory=GithubSignal.default)
    security: SecuritySignal = Field(default_factory=SecuritySignal.default)
    team_wallet: TeamWalletSignal = Field(default_factory=TeamWalletSignal.default)
    defi_metrics: Optional[DefiMetricsSignal] = None

    @property
    def defaulted_sources(self) -> List[str]:
        sources = []
        for name in ("prices", "tvl", "github", "security", "team_wallet", "defi_metrics"):
            signal = getattr(self, name)
            if signal is not None and signal.defaulted:
                sources.append(name)
        return sources

# Detection
class Anomaly(BaseModel):
    type: str
    severity: AnomalySeverity
    adapter: str
    message: str

    @field_serializer('severity')
    def serialize_severity(self, severity: AnomalySeverity):
        return severity.name

# Allocation
class PoolAllocation(BaseModel):
    adapter: str
    tier: RiskTier = RiskTier.LOW
    target_weight: int = 0  # basis points
    current_amount: int = 0
    is_active: bool = True

    @validator('adapter')
    def validate_adapter(cls, v):
        return _validate_address(v)

class AdapterRiskInfo(BaseModel):
    address: str
    risk_score: int = 0
    threat_level: ThreatLevel = ThreatLevel.SAFE
    apy: int = 0  # basis points

    @validator('address')
    def validate_address(cls, v):
        return _validate_address(v)

class AllocationResult(BaseModel):
    adapter: str
    new_weight: int  # basis points

# Shield configuration and actions
class ShieldConfig(BaseModel):
    warning_withdraw_percent: int = Field(default=3000, ge=0, le=10000)
    safe_haven_adapter: str = "aaveAdapter"
    max_single_adapter_allocation: int = Field(default=5000, gt=0, le=10000)
    rebalance_threshold_score_change: int = Field(default=15, ge=0)

    @property
    def rebalance_threshold_bps(self) -> int:
        return self.rebalance_threshold_score_change * 100

class ThreatChangeEvent(BaseModel):
    protocol: str = ZERO_ADDRESS
    old_score: int = 0
    new_score: int = 0
    threat_level: ThreatLevel = ThreatLevel.SAFE
    defaulted: bool = False

    @classmethod
    def default(cls) -> "ThreatChangeEvent":
        return cls(defaulted=True)

    @field_serializer('threat_level')
    def serialize_threat_level(self, level: ThreatLevel):
        return level.name

class ShieldAction(BaseModel):
    type: str
    adapter: str
    reason: str
    threat_level: ThreatLevel

    @validator('type')
    def validate_type(cls, v):
        if v not in (ShieldActionType.PARTIAL_WITHDRAW, ShieldActionType.EMERGENCY_WITHDRAW):
            raise ValueError(f'Unknown shield action type: {v}')
        return v

    @field_serializer('threat_level')
    def serialize_threat_level(self, level: ThreatLevel):
        return level.name

class ShieldResult(BaseModel):
    status: str = ScanStatus.NO_ACTION
    threat_level: ThreatLevel = ThreatLevel.SAFE
    protocol: Optional[str] = None
    actions: List[ShieldAction] = []
    success: bool = True
    message: str = ""
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_serializer('threat_level')
    def serialize_threat_level(self, level: ThreatLevel):
        return level.name

# Writes
class WriteResult(BaseModel):
    success: bool
    message: str = ""
    tx_hash: Optional[str] = None

class RiskScoreUpdate(BaseModel):
    protocols: List[str] = []
    scores: List[int] = []
    reasons: List[str] = []

    def __len__(self):
        return len(self.protocols)

# Scan summaries
class AdapterScore(BaseModel):
    score: int
    level: ThreatLevel

    @field_serializer('level')
    def serialize_level(self, level: ThreatLevel):
        return level.name

class ChainReadReport(BaseModel):
    chain: str
    adapters_read: int = 0
    adapters_failed: List[str] = []
    skipped: bool = False
    skip_reason: Optional[str] = None

class ScanSummary(BaseModel):
    status: str = ScanStatus.COMPLETE
    chain: Optional[str] = None
    budget_used: int = 0
    budget_limit: int = 0
    http_requests_used: int = 0
    adapters: List[Dict[str, Any]] = []
    risk_scores: Dict[str, AdapterScore] = {}
    anomalies: List[Anomaly] = []
    highest_severity: Optional[AnomalySeverity] = None
    defaulted_signals: List[str] = []
    chains: List[ChainReadReport] = []
    write: Optional[WriteResult] = None
    duration_seconds: float = 0.0
    timestamp: datetime = Field(default_factory=datetime.utcnow)

    @field_serializer('highest_severity')
    def serialize_highest_severity(self, severity: Optional[AnomalySeverity]):
        return severity.name if severity is not None else None

class RebalanceOutcome(BaseModel):
    status: str
    message: str = ""
    allocations: List[AllocationResult] = []
    writes: List[WriteResult] = []
    timestamp: datetime = Field(default_factory=datetime.utcnow)

# Deployment configuration
class AdapterConfig(BaseModel):
    name: str
    address: str

    @validator('address')
    def validate_address(cls, v):
        return _validate_address(v)

class PriceFeedsConfig(BaseModel):
    eth_usd: Optional[str] = None
    btc_usd: Optional[str] = None
    usdc_usd: Optional[str] = None

    @validator('eth_usd', 'btc_usd', 'usdc_usd')
    def validate_feed(cls, v):
        if v is None:
            return v
        v = _validate_address(v)
        return None if v == ZERO_ADDRESS else v

    def configured(self) -> Dict[str, str]:
        feeds = {
            "eth_usd": self.eth_usd,
            "btc_usd": self.btc_usd,
            "usdc_usd": self.usdc_usd,
        }
        return {pair: address for pair, address in feeds.items() if address}

class ChainConfig(BaseModel):
    chain_name: str
    rpc_url: str
    risk_registry: str
    shield_vault: str
    adapters: List[AdapterConfig] = []
    price_feeds: PriceFeedsConfig = Field(default_factory=PriceFeedsConfig)

    @validator('risk_registry', 'shield_vault')
    def validate_contracts(cls, v):
        return _validate_address(v)

class AdapterApiConfig(BaseModel):
    defillama_slug: Optional[str] = None
    github: Optional[str] = None  # GitHub repos API url
    goplus_token_address: Optional[str] = None
    team_wallet: Optional[str] = None

class OffchainApisConfig(BaseModel):
    primary_protocol: str
    goplus_chain_id: str = "1"
    tvl_history_url: Optional[str] = None
    defi_metrics_url: Optional[str] = None
    explorer_api_url: str = "https://api.etherscan.io/api"
    adapters: Dict[str, AdapterApiConfig] = {}

    @property
    def primary(self) -> Optional[AdapterApiConfig]:
        return self.adapters.get(self.primary_protocol)

class DeploymentConfig(BaseModel):
    chains: List[ChainConfig]
    offchain_apis: OffchainApisConfig
    shield_config: ShieldConfig = Field(default_factory=ShieldConfig)

    @validator('chains')
    def validate_chains(cls, v):
        if not v:
            raise ValueError('At least one chain must be configured')
        return v

    def chain_for_adapter(self, address: str) -> Optional[ChainConfig]:
        address = address.lower()
        for chain in self.chains:
            if any(adapter.address == address for adapter in chain.adapters):
                return chain
        return None

# API Response Models
class SystemStatus(BaseModel):
    status: str = "operational"
    version: str = "1.0.0"
    uptime_seconds: int
    scan_in_progress: bool = False
    last_scan: Optional[Dict[str, Any]] = None
    metrics: Dict[str, Any] = {}
    errors: Dict[str, Any] = {}
    database_status: Dict[str, Any] = {}
    timestamp: datetime = Field(default_factory=datetime.utcnow)

class RiskEventRequest(BaseModel):
    topics: List[str] = []
    data: str = "0x"

class ActionsResponse(BaseModel):
    actions: List[Dict[str, Any]]
    count: int
