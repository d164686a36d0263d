import json
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError
from pydantic_settings import BaseSettings

from .error_handling import ConfigurationError

logger = structlog.get_logger()

class Settings(BaseSettings):
    # Environment
    ENV: str = "development"
    LOG_LEVEL: str = "INFO"
    SERVICE_PORT: int = 8002

    # Deployment (chains, adapters, off-chain APIs, shield parameters)
    DEPLOYMENT_CONFIG_PATH: str = "config.json"

    # Scan cycle
    SCAN_INTERVAL_SECONDS: int = 600
    ENABLE_BACKGROUND_SCAN: bool = True
    CHAIN_READ_BUDGET: int = 15
    HTTP_REQUEST_BUDGET: int = 6
    HTTP_TIMEOUT_SECONDS: float = 8.0

    # Risk parameters
    HIGH_APY_THRESHOLD_BPS: int = 5000
    ASSET_DECIMALS: int = 6
    LARGE_OUTFLOW_THRESHOLD_ETH: float = 100.0
    OUTFLOW_LOOKBACK_DAYS: int = 7

    # External APIs
    GOPLUS_BASE_URL: str = "https://api.gopluslabs.io/api/v1"
    EXPLORER_API_KEY: str = ""
    GITHUB_TOKEN: str = ""

    # Writes are forwarded to a signing relay; unset means dry-run
    WRITER_RELAY_URL: Optional[str] = None

    # MongoDB Configuration (optional, observability only)
    MONGODB_URI: Optional[str] = None
    MONGO_DB_NAME: str = "shield_agent"

    # Structured event sink
    ENABLE_LOG_SINK: bool = False
    LOG_SINK_URL: str = "http://localhost:8000"

    # Action history kept in memory when MongoDB is disabled
    HISTORY_MAX_ENTRIES: int = 500

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Allow extra fields in .env

# Global settings instance
settings = Settings()

# MongoDB Collection Names
class Collections:
    SCANS = "shield_agent_scans"
    ACTIONS = "shield_agent_actions"
    REBALANCES = "shield_agent_rebalances"

# Anomaly Types
class AnomalyType:
    TVL_DROP = "TVL_DROP"
    BANK_RUN = "BANK_RUN"
    HONEYPOT = "HONEYPOT"
    TEAM_EXIT = "TEAM_EXIT"
    BALANCE_DRAIN = "BALANCE_DRAIN"
    APY_SPIKE = "APY_SPIKE"
    LIQUIDITY_CRUNCH = "LIQUIDITY_CRUNCH"
    HIGH_UTILIZATION = "HIGH_UTILIZATION"

# Shield Action Types
class ShieldActionType:
    PARTIAL_WITHDRAW = "PARTIAL_WITHDRAW"
    EMERGENCY_WITHDRAW = "EMERGENCY_WITHDRAW"

# Scan / workflow statuses
class ScanStatus:
    COMPLETE = "monitoring_complete"
    NO_DATA = "no_data"
    SKIPPED = "skipped"
    ERROR = "error"
    NO_ACTION = "no_action"
    SHIELD_ACTIVATED = "shield_activated"
    REBALANCED = "rebalanced"
    NO_REBALANCE = "no_rebalance_needed"

# Basis points
BPS_DENOMINATOR = 10000

def load_deployment_config(path: Optional[str] = None):
    """Load the JSON deployment file into a DeploymentConfig"""
    from .models import DeploymentConfig

    config_path = Path(path or settings.DEPLOYMENT_CONFIG_PATH)

    try:
        raw = json.loads(config_path.read_text())
    except FileNotFoundError:
        raise ConfigurationError(f"Deployment config not found: {config_path}")
    except json.JSONDecodeError as e:
        raise ConfigurationError(f"Deployment config is not valid JSON: {e}")

    try:
        deployment = DeploymentConfig(**raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid deployment config: {e}")

    logger.info("Deployment config loaded",
                path=str(config_path),
                chains=[chain.chain_name for chain in deployment.chains],
                primary_protocol=deployment.offchain_apis.primary_protocol)
    return deployment
