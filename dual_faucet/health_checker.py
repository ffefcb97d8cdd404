"""
Faucet Health Checker

Checks both environments are operational and the operator can serve
requests before (and while) the faucet runs:
- Ledger-A REST endpoint answers with a block height
- Ledger-B RPC answers with the configured chain id
- the operator owns the AtomicMultiSend contract
- the operator holds at least one full target bundle of every asset
- the contract is approved to move every token
"""

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from loguru import logger

from .address_translator import Environment
from .atomic_multisend import ATOMIC_MULTISEND_ABI
from .errors import FaucetError
from .faucet_config import Asset, FaucetConfig
from .ledger_b_client import MAX_UINT256


@dataclass
class ChainHealth:
    """Health status of one checked component"""
    component: str
    is_healthy: bool
    last_checked: datetime
    detail: Optional[str] = None
    error_message: Optional[str] = None

    def to_dict(self) -> Dict:
        return {
            'component': self.component,
            'is_healthy': self.is_healthy,
            'last_checked': self.last_checked.isoformat(),
            'detail': self.detail,
            'error_message': self.error_message,
        }

    def __repr__(self):
        status = "✓ HEALTHY" if self.is_healthy else "✗ UNHEALTHY"
        return f"ChainHealth({self.component}: {status})"


class HealthChecker:
    """
    Check chain and operator health

    Features:
    - Endpoint liveness for both environments
    - Chain id verification
    - Contract ownership check
    - Operator float and allowance monitoring
    - Cache health checks
    - Max-uint approval setup
    """

    def __init__(
        self,
        config: FaucetConfig,
        session,
        ledger_a_client,
        ledger_b_client,
        cache_duration_minutes: Optional[float] = None
    ):
        """
        Initialize health checker

        Args:
            config: Faucet configuration
            session: OperatorSession
            ledger_a_client: Ledger-A client (live or local)
            ledger_b_client: Ledger-B client (live or local)
            cache_duration_minutes: How long to cache health checks (defaults to config)
        """
        self.config = config
        self.session = session
        self.ledger_a_client = ledger_a_client
        self.ledger_b_client = ledger_b_client

        if cache_duration_minutes is None:
            cache_duration_minutes = config.health.cache_minutes
        self.cache_duration = timedelta(minutes=cache_duration_minutes)
        self.health_cache: Dict[str, ChainHealth] = {}

        logger.info("Health checker initialized")

    def _cached(self, component: str, force_refresh: bool) -> Optional[ChainHealth]:
        if force_refresh or component not in self.health_cache:
            return None
        cached = self.health_cache[component]
        if datetime.now(timezone.utc) - cached.last_checked < self.cache_duration:
            logger.debug(f"Using cached health for {component}")
            return cached
        return None

    def _store(self, health: ChainHealth) -> ChainHealth:
        self.health_cache[health.component] = health
        if health.is_healthy:
            logger.info(f"✓ {health.component} is healthy{f' ({health.detail})' if health.detail else ''}")
        else:
            logger.warning(f"⚠ {health.component} is unhealthy: {health.error_message}")
        return health

    def _create_unhealthy(self, component: str, error: str) -> ChainHealth:
        """Create unhealthy health object"""
        return ChainHealth(
            component=component,
            is_healthy=False,
            last_checked=datetime.now(timezone.utc),
            error_message=error
        )

    def _create_healthy(self, component: str, detail: Optional[str] = None) -> ChainHealth:
        return ChainHealth(
            component=component,
            is_healthy=True,
            last_checked=datetime.now(timezone.utc),
            detail=detail
        )

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    async def check_ledger_a(self, force_refresh: bool = False) -> ChainHealth:
        component = "ledger_a"
        cached = self._cached(component, force_refresh)
        if cached:
            return cached

        try:
            height = await self.ledger_a_client.get_latest_block_height()
        except Exception as e:
            return self._store(self._create_unhealthy(component, f"Endpoint unavailable: {e}"))

        if height <= 0:
            return self._store(self._create_unhealthy(component, "No blocks produced"))
        return self._store(self._create_healthy(component, f"height {height}"))

    async def check_ledger_b(self, force_refresh: bool = False) -> ChainHealth:
        component = "ledger_b"
        cached = self._cached(component, force_refresh)
        if cached:
            return cached

        try:
            chain_id = await self.ledger_b_client.get_chain_id()
            block = await self.ledger_b_client.get_block_number()
        except Exception as e:
            return self._store(self._create_unhealthy(component, f"RPC unavailable: {e}"))

        if chain_id != self.config.chain.evm_chain_id:
            return self._store(self._create_unhealthy(
                component,
                f"Chain id mismatch: RPC reports {chain_id}, config expects {self.config.chain.evm_chain_id}"
            ))
        return self._store(self._create_healthy(component, f"chain id {chain_id}, block {block}"))

    async def check_contract_owner(self, force_refresh: bool = False) -> ChainHealth:
        component = "atomic_multisend"
        cached = self._cached(component, force_refresh)
        if cached:
            return cached

        contract = self.config.ledger_b.atomic_multisend
        try:
            owner = await self.ledger_b_client.call_view(contract, ATOMIC_MULTISEND_ABI, 'owner', [])
        except Exception as e:
            return self._store(self._create_unhealthy(component, f"Cannot read owner of {contract}: {e}"))

        if owner.lower() != self.session.ledger_b_address.lower():
            return self._store(self._create_unhealthy(
                component,
                f"Contract {contract} is owned by {owner}, not the operator {self.session.ledger_b_address}"
            ))
        return self._store(self._create_healthy(component, f"owned by operator at {contract}"))

    # ========================================================================
    # OPERATOR FUNDS
    # ========================================================================

    async def _operator_balance(self, asset: Asset) -> int:
        if asset.eligible_for(Environment.LEDGER_B):
            balances = await self.ledger_b_client.get_balances(self.session.ledger_b_address, [asset])
        else:
            balances = await self.ledger_a_client.get_balances(self.session.ledger_a_address, [asset])
        return balances[asset.symbol]

    async def check_operator_float(self, asset: Asset, force_refresh: bool = False) -> ChainHealth:
        """The operator holds at least one full target bundle of an asset"""
        component = f"float:{asset.symbol}"
        cached = self._cached(component, force_refresh)
        if cached:
            return cached

        environment = Environment.LEDGER_B if asset.eligible_for(Environment.LEDGER_B) else Environment.LEDGER_A
        required = asset.target_for(environment)
        try:
            balance = await self._operator_balance(asset)
        except Exception as e:
            return self._store(self._create_unhealthy(component, f"Balance query failed: {e}"))

        if balance < required:
            return self._store(self._create_unhealthy(component, f"Operator holds {balance}, needs {required}"))
        return self._store(self._create_healthy(component, f"{balance} available"))

    async def get_allowance(self, asset: Asset) -> int:
        return await self.ledger_b_client.get_allowance(
            asset.erc20_contract,
            self.session.ledger_b_address,
            self.config.ledger_b.atomic_multisend
        )

    async def check_allowance(self, asset: Asset, force_refresh: bool = False) -> ChainHealth:
        """The AtomicMultiSend contract may move at least one target of a token"""
        component = f"allowance:{asset.symbol}"
        cached = self._cached(component, force_refresh)
        if cached:
            return cached

        try:
            allowance = await self.get_allowance(asset)
        except Exception as e:
            return self._store(self._create_unhealthy(component, f"Allowance query failed: {e}"))

        if allowance < asset.target_balance:
            return self._store(self._create_unhealthy(
                component, f"Allowance {allowance} is below target {asset.target_balance}"
            ))
        return self._store(self._create_healthy(component, f"allowance {allowance}"))

    def _token_assets(self) -> List[Asset]:
        return [asset for asset in self.config.assets if asset.erc20_contract and not asset.is_native]

    async def check_all(self, force_refresh: bool = False) -> Dict[str, ChainHealth]:
        """
        Run every check

        Returns:
            Dict mapping component to ChainHealth
        """
        checks = [
            self.check_ledger_a(force_refresh),
            self.check_ledger_b(force_refresh),
            self.check_contract_owner(force_refresh),
        ]
        checks += [self.check_operator_float(asset, force_refresh) for asset in self.config.assets]
        checks += [self.check_allowance(asset, force_refresh) for asset in self._token_assets()]

        results = await asyncio.gather(*checks)
        return {health.component: health for health in results}

    def get_unhealthy(self) -> List[ChainHealth]:
        """Unhealthy components from the cache"""
        return [health for health in self.health_cache.values() if not health.is_healthy]

    # ========================================================================
    # APPROVALS
    # ========================================================================

    async def needs_approval(self) -> List[Asset]:
        """Tokens whose allowance to the contract is below their target"""
        pending = []
        for asset in self._token_assets():
            allowance = await self.get_allowance(asset)
            if allowance < asset.target_balance:
                logger.warning(f"⚠ {asset.symbol}: allowance {allowance} below target {asset.target_balance}")
                pending.append(asset)
        return pending

    async def approve_max(self, assets: Optional[List[Asset]] = None) -> Dict[str, str]:
        """
        Approve the AtomicMultiSend contract for the maximum amount

        Args:
            assets: Tokens to approve (defaults to needs_approval())

        Returns:
            Dict mapping asset symbol to approval tx hash
        """
        if assets is None:
            assets = await self.needs_approval()

        approvals = {}
        for asset in assets:
            logger.info(f"Approving {self.config.ledger_b.atomic_multisend} for max {asset.symbol}...")
            try:
                receipt = await self.ledger_b_client.approve(
                    self.session,
                    asset.erc20_contract,
                    self.config.ledger_b.atomic_multisend,
                    MAX_UINT256
                )
            except FaucetError as e:
                logger.error(f"✗ Approval for {asset.symbol} failed: {e.describe()}")
                continue

            if receipt.get('status') != 1:
                logger.error(f"✗ Approval for {asset.symbol} reverted: {receipt['transactionHash']}")
                continue

            approvals[asset.symbol] = receipt['transactionHash']
            self.health_cache.pop(f"allowance:{asset.symbol}", None)
            logger.info(f"✓ {asset.symbol} approved: {receipt['transactionHash']}")

        return approvals
