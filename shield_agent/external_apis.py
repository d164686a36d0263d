import asyncio
import time
from typing import Any, Callable, Dict, Optional

import httpx
import structlog

from .chain_client import CallBudget
from .config import settings
from .error_handling import ExternalAPIError, retry_with_backoff
from .models import (
    DefiMetricsSignal, GithubSignal, OffchainApisConfig, OffchainSignals,
    SecuritySignal, TeamWalletSignal, TvlSignal
)
from .signals import (
    build_team_wallet_signal, parse_defi_metrics, parse_explorer_balance,
    parse_explorer_outflows, parse_github_repo, parse_goplus_security, parse_tvl_history
)

logger = structlog.get_logger()

class BaseAPIClient:
    def __init__(self, base_url: str = "", headers: Optional[Dict] = None, timeout: float = None):
        self.base_url = base_url
        self.default_headers = headers or {}
        self.timeout = timeout or settings.HTTP_TIMEOUT_SECONDS
        self.client = None

    async def __aenter__(self):
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=self.default_headers,
            timeout=self.timeout,
            limits=httpx.Limits(max_keepalive_connections=10, max_connections=20)
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.client:
            await self.client.aclose()
            self.client = None

    @retry_with_backoff(max_attempts=3, base_delay=0.5, max_delay=4.0, exceptions=(httpx.RequestError,))
    async def _send(self, method: str, endpoint: str, **kwargs) -> httpx.Response:
        response = await self.client.request(method, endpoint, **kwargs)
        response.raise_for_status()
        return response

    async def _make_request(self, method: str, endpoint: str, **kwargs) -> Any:
        """Make HTTP request; transport errors are retried, status errors are not"""
        if not self.client:
            raise RuntimeError("Client not initialized. Use 'async with' context.")

        try:
            response = await self._send(method, endpoint, **kwargs)
            return response.json()
        except httpx.HTTPStatusError as e:
            logger.error(f"HTTP error {e.response.status_code} for {method} {endpoint}",
                        error=str(e), status_code=e.response.status_code)
            raise ExternalAPIError(f"API request failed: {e.response.status_code}")
        except httpx.RequestError as e:
            logger.error(f"Request error for {method} {endpoint}", error=str(e))
            raise ExternalAPIError(f"Network error: {str(e)}")
        except ValueError as e:
            logger.error(f"Invalid JSON from {method} {endpoint}", error=str(e))
            raise ExternalAPIError(f"Invalid JSON response: {str(e)}")

    async def get_json(self, url: str, **kwargs) -> Any:
        return await self._make_request("GET", url, **kwargs)


class OffchainFetcher:
    """Fetches the off-chain signals for one protocol under an HTTP request budget.

    Each request costs one budget unit, which also covers the client's retries
    of that request after transport errors. When the budget cannot cover a
    request the corresponding signal is returned in its defaulted form.
    """

    def __init__(self, apis: OffchainApisConfig, budget: CallBudget, client: Optional[BaseAPIClient] = None):
        self.apis = apis
        self.budget = budget
        self.client = client or BaseAPIClient()

    async def _fetch(self, what: str, url: str, parse: Callable[[Any], Any], default: Any, **kwargs) -> Any:
        if not self.budget.can_afford(1):
            logger.warning("HTTP budget exhausted, using default", source=what,
                           spent=self.budget.spent, limit=self.budget.limit)
            return default

        self.budget.spend(1, what)
        try:
            payload = await self.client.get_json(url, **kwargs)
        except ExternalAPIError as e:
            logger.warning("Off-chain source unavailable, using default", source=what, error=str(e))
            return default

        return parse(payload)

    async def fetch_tvl_history(self, current_tvl: float, timestamp: int) -> TvlSignal:
        """Record the current TVL and get the change against the stored history"""
        if not self.apis.tvl_history_url:
            return TvlSignal.default()

        url = f"{self.apis.tvl_history_url}?tvl={current_tvl:.2f}&ts={timestamp}"
        return await self._fetch("tvl_history", url, parse_tvl_history, TvlSignal.default(),
                                 headers={"Content-Type": "application/json"})

    async def fetch_github(self, repo_url: Optional[str]) -> GithubSignal:
        if not repo_url:
            return GithubSignal.default()

        headers = {"User-Agent": "ShieldAgent-Monitor"}
        if settings.GITHUB_TOKEN:
            headers["Authorization"] = f"Bearer {settings.GITHUB_TOKEN}"
        return await self._fetch("github", repo_url, parse_github_repo, GithubSignal.default(),
                                 headers=headers)

    async def fetch_security(self, token_address: Optional[str]) -> SecuritySignal:
        if not token_address:
            return SecuritySignal.default()

        url = f"{settings.GOPLUS_BASE_URL}/token_security/{self.apis.goplus_chain_id}"
        return await self._fetch("security", url, parse_goplus_security, SecuritySignal.default(),
                                 params={"contract_addresses": token_address})

    async def fetch_team_wallet(self, wallet: Optional[str]) -> TeamWalletSignal:
        """Admin wallet balance plus recent large outgoing transfers"""
        if not wallet:
            return TeamWalletSignal.default()

        base_params = {"module": "account", "address": wallet, "apikey": settings.EXPLORER_API_KEY}

        balance, outflows = await asyncio.gather(
            self._fetch("team_wallet_balance", self.apis.explorer_api_url, parse_explorer_balance, None,
                        params={**base_params, "action": "balance", "tag": "latest"}),
            self._fetch("team_wallet_txlist", self.apis.explorer_api_url,
                        lambda payload: parse_explorer_outflows(
                            payload, wallet,
                            settings.LARGE_OUTFLOW_THRESHOLD_ETH,
                            settings.OUTFLOW_LOOKBACK_DAYS
                        ),
                        None,
                        params={**base_params, "action": "txlist", "startblock": 0,
                                "endblock": 99999999, "page": 1, "offset": 50, "sort": "desc"})
        )
        return build_team_wallet_signal(balance, outflows)

    async def fetch_defi_metrics(self) -> Optional[DefiMetricsSignal]:
        if not self.apis.defi_metrics_url:
            return None

        return await self._fetch("defi_metrics", self.apis.defi_metrics_url, parse_defi_metrics,
                                 DefiMetricsSignal.default(),
                                 headers={"Content-Type": "application/json"})

    async def fetch_all(self, current_tvl: float, timestamp: Optional[int] = None) -> OffchainSignals:
        """Fetch every off-chain signal for the primary protocol.

        Independent sources run concurrently and are joined before returning.
        Prices are not fetched here; they come from on-chain feeds.
        """
        primary = self.apis.primary
        if primary is None:
            logger.error("Primary protocol missing from off-chain config",
                         primary_protocol=self.apis.primary_protocol)
            return OffchainSignals()

        timestamp = timestamp or int(time.time())

        async with self.client:
            tvl, github, security, team_wallet, defi_metrics = await asyncio.gather(
                self.fetch_tvl_history(current_tvl, timestamp),
                self.fetch_github(primary.github),
                self.fetch_security(primary.goplus_token_address),
                self.fetch_team_wallet(primary.team_wallet),
                self.fetch_defi_metrics()
            )

        logger.info("Off-chain signals fetched",
                    primary_protocol=self.apis.primary_protocol,
                    tvl_change_percent=tvl.tvl_change_percent,
                    last_push_days_ago=github.last_push_days_ago,
                    honeypot=security.is_honeypot,
                    large_outflows=team_wallet.recent_large_outflows,
                    http_requests_used=self.budget.spent)

        return OffchainSignals(
            tvl=tvl,
            github=github,
            security=security,
            team_wallet=team_wallet,
            defi_metrics=defi_metrics
        )
