"""
Balance Reconciler

Reads a recipient's live balances in the recipient's own environment and
computes the minimal top-up plan against the configured per-asset targets.
All arithmetic is exact integer arithmetic in base units.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Mapping, Optional

from loguru import logger

from .address_translator import Environment
from .errors import BalanceQueryError, FaucetError
from .faucet_config import Asset


@dataclass(frozen=True)
class PlannedTransfer:
    """One (asset, amount) pair of a transfer plan"""
    asset: Asset
    amount: int
    environment: Environment

    @property
    def symbol(self) -> str:
        return self.asset.symbol

    @property
    def reference(self) -> str:
        return self.asset.reference_for(self.environment)

    def __repr__(self):
        return f"PlannedTransfer({self.symbol}: {self.amount})"


@dataclass
class TransferPlan:
    """Ordered deficit list for one recipient"""
    environment: Environment
    recipient: str
    transfers: List[PlannedTransfer] = field(default_factory=list)
    current_balances: Dict[str, int] = field(default_factory=dict)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_empty(self) -> bool:
        return not self.transfers

    @property
    def native_total(self) -> int:
        return sum(t.amount for t in self.transfers if t.asset.is_native)

    def amounts(self) -> Dict[str, int]:
        return {t.symbol: t.amount for t in self.transfers}

    def to_dict(self) -> Dict:
        return {
            'environment': self.environment.value,
            'recipient': self.recipient,
            'transfers': [{'asset': t.symbol, 'amount': str(t.amount)} for t in self.transfers],
            'current_balances': {k: str(v) for k, v in self.current_balances.items()},
            'created_at': self.created_at.isoformat(),
        }


def compute_deficits(
    balances: Mapping[str, int],
    assets: List[Asset],
    environment: Environment
) -> List[PlannedTransfer]:
    """
    Compute max(0, target - current) per asset, dropping zero deficits

    Args:
        balances: Current balance per asset symbol, environment base units
        assets: Assets to consider, in config order
        environment: Recipient environment

    Returns:
        Planned transfers with a positive amount
    """
    planned = []
    for asset in assets:
        if asset.symbol not in balances:
            raise BalanceQueryError(
                f"No balance returned for {asset.symbol}",
                asset=asset.symbol
            )
        current = int(balances[asset.symbol])
        deficit = asset.target_for(environment) - current
        if deficit > 0:
            planned.append(PlannedTransfer(asset=asset, amount=deficit, environment=environment))
    return planned


class BalanceReconciler:
    """
    Plan distributions from live balances

    Features:
    - Same-environment balance reads only
    - Top-up-to-target deficits
    - Whole-plan failure on any balance read error
    - Testing mode (1 base unit of every asset)
    """

    def __init__(self, balance_sources: Mapping[Environment, object], testing_mode: bool = False):
        """
        Initialize reconciler

        Args:
            balance_sources: Environment -> client exposing
                ``async get_balances(address, assets) -> {symbol: int}``
            testing_mode: Send 1 base unit of every asset regardless of balance
        """
        self.balance_sources = dict(balance_sources)
        self.testing_mode = testing_mode

    async def plan_distribution(
        self,
        environment: Environment,
        recipient_address: str,
        assets: List[Asset]
    ) -> TransferPlan:
        """
        Compute the transfer plan for a recipient

        Args:
            environment: Recipient's environment
            recipient_address: Recipient in its own encoding
            assets: Configured assets

        Returns:
            TransferPlan (empty when every target is already met)

        Raises:
            BalanceQueryError: any balance read failed
        """
        eligible = [asset for asset in assets if asset.eligible_for(environment)]
        skipped = [asset.symbol for asset in assets if not asset.eligible_for(environment)]
        if skipped:
            logger.debug(f"Assets not distributable on {environment.value}: {skipped}")

        if self.testing_mode:
            transfers = [PlannedTransfer(asset=a, amount=1, environment=environment) for a in eligible]
            return TransferPlan(environment=environment, recipient=recipient_address, transfers=transfers)

        source = self.balance_sources.get(environment)
        if source is None:
            raise BalanceQueryError(f"No balance source for {environment.value}", recipient=recipient_address)

        try:
            balances = await source.get_balances(recipient_address, eligible)
        except FaucetError as e:
            if isinstance(e, BalanceQueryError):
                raise
            raise BalanceQueryError(e.message, asset=e.asset, recipient=recipient_address) from e
        except Exception as e:
            logger.error(f"✗ Balance query failed for {recipient_address}: {e}")
            raise BalanceQueryError(f"Balance query failed: {e}", recipient=recipient_address) from e

        transfers = compute_deficits(balances, eligible, environment)
        plan = TransferPlan(
            environment=environment,
            recipient=recipient_address,
            transfers=transfers,
            current_balances={a.symbol: int(balances[a.symbol]) for a in eligible}
        )

        if plan.is_empty:
            logger.info(f"✓ {recipient_address} already meets every target")
        else:
            logger.info(f"Planned top-up for {recipient_address}: {plan.amounts()}")

        return plan
