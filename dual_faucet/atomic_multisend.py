"""
Atomic Multi-Send Invoker

Client half of the all-or-nothing transfer protocol. A Ledger-B transfer plan
becomes exactly one call to the AtomicMultiSend contract
(contracts/AtomicMultiSend.sol): either every (token, amount) pair reaches
the recipient or the whole call reverts and nothing moves.

Native coin entries use NATIVE_TOKEN_SENTINEL as their token and their sum is
attached as the call value.
"""

from typing import List, Optional, Tuple

from eth_utils import to_checksum_address
from loguru import logger

from .balance_reconciler import TransferPlan
from .address_translator import Environment
from .errors import BalanceQueryError, ContractReverted, FaucetError, InsufficientOperatorFunds


ATOMIC_MULTISEND_ABI = [
    {
        "inputs": [
            {"name": "recipient", "type": "address"},
            {
                "components": [
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
                "name": "transfers",
                "type": "tuple[]",
            },
        ],
        "name": "atomicMultiSend",
        "outputs": [],
        "stateMutability": "payable",
        "type": "function",
    },
    {
        "inputs": [],
        "name": "owner",
        "outputs": [{"name": "", "type": "address"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "inputs": [{"name": "newOwner", "type": "address"}],
        "name": "transferOwnership",
        "outputs": [],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "getBalance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "anonymous": False,
        "inputs": [
            {"indexed": True, "name": "recipient", "type": "address"},
            {"indexed": False, "name": "nativeAmount", "type": "uint256"},
            {
                "components": [
                    {"name": "token", "type": "address"},
                    {"name": "amount", "type": "uint256"},
                ],
                "indexed": False,
                "name": "transfers",
                "type": "tuple[]",
            },
        ],
        "name": "AtomicTransfer",
        "type": "event",
    },
    {
        "inputs": [{"name": "token", "type": "address"}],
        "name": "TokenTransferFailed",
        "type": "error",
    },
]


def build_transfers(plan: TransferPlan) -> Tuple[List[Tuple[str, int]], int]:
    """
    Turn a Ledger-B plan into contract arguments

    Args:
        plan: Non-empty Ledger-B transfer plan

    Returns:
        Tuple of (transfers as (token, amount) pairs, native value to attach)
    """
    if plan.environment != Environment.LEDGER_B:
        raise ValueError(f"Atomic multi-send only serves Ledger-B plans, got {plan.environment.value}")
    if plan.is_empty:
        raise ValueError("Cannot build an atomic multi-send from an empty plan")

    transfers = []
    native_total = 0
    for planned in plan.transfers:
        if planned.amount <= 0:
            raise ValueError(f"Transfer amount for {planned.symbol} must be positive")
        transfers.append((planned.reference, planned.amount))
        if planned.asset.is_native:
            native_total += planned.amount

    return transfers, native_total


class AtomicTransferInvoker:
    """
    Submit Ledger-B plans through the AtomicMultiSend contract

    Features:
    - One contract call per plan
    - Operator funds and allowance pre-flight
    - Receipt status checking
    """

    def __init__(self, client, session, contract_address: str, gas_limit: int = 500000):
        """
        Initialize invoker

        Args:
            client: LedgerBClient (or a local equivalent)
            session: OperatorSession owning the contract
            contract_address: Deployed AtomicMultiSend address
            gas_limit: Fallback gas limit
        """
        self.client = client
        self.session = session
        self.contract_address = to_checksum_address(contract_address)
        self.gas_limit = gas_limit

    async def preflight(self, plan: TransferPlan):
        """
        Check the operator can cover every transfer of the plan

        Raises:
            InsufficientOperatorFunds: names the first asset that cannot be covered
            BalanceQueryError: operator balances could not be read
        """
        operator = self.session.ledger_b_address

        try:
            for planned in plan.transfers:
                asset = planned.asset
                if asset.is_native:
                    continue

                balance = await self.client.get_token_balance(asset.erc20_contract, operator)
                if balance < planned.amount:
                    raise InsufficientOperatorFunds(
                        f"Operator holds {balance} {asset.symbol}, needs {planned.amount}",
                        asset=asset.symbol,
                        recipient=plan.recipient
                    )

                allowance = await self.client.get_allowance(asset.erc20_contract, operator, self.contract_address)
                if allowance < planned.amount:
                    raise InsufficientOperatorFunds(
                        f"AtomicMultiSend allowance for {asset.symbol} is {allowance}, needs {planned.amount}",
                        asset=asset.symbol,
                        recipient=plan.recipient
                    )

            if plan.native_total:
                native_asset = next(t.asset for t in plan.transfers if t.asset.is_native)
                balance = await self.client.get_native_balance(operator)
                if balance < plan.native_total:
                    raise InsufficientOperatorFunds(
                        f"Operator holds {balance} native, needs {plan.native_total} plus gas",
                        asset=native_asset.symbol,
                        recipient=plan.recipient
                    )
        except FaucetError:
            raise
        except Exception as e:
            raise BalanceQueryError(f"Operator pre-flight read failed: {e}", recipient=plan.recipient) from e

        logger.debug(f"✓ Operator pre-flight passed for {len(plan.transfers)} transfer(s)")

    async def execute(self, plan: TransferPlan) -> str:
        """
        Execute a Ledger-B plan atomically

        Args:
            plan: Non-empty Ledger-B transfer plan

        Returns:
            Transaction hash

        Raises:
            ContractReverted, InsufficientOperatorFunds, ChainSubmissionError, ChainTimeout
        """
        transfers, native_total = build_transfers(plan)
        await self.preflight(plan)

        recipient = to_checksum_address(plan.recipient)
        logger.info(
            f"Submitting atomic multi-send to {recipient}: "
            f"{len(transfers)} transfer(s), native value {native_total}"
        )

        call_args = [recipient, transfers]
        try:
            receipt = await self.client.send_contract_call(
                self.session,
                self.contract_address,
                ATOMIC_MULTISEND_ABI,
                'atomicMultiSend',
                call_args,
                value=native_total,
                gas_limit=self.gas_limit
            )
        except ContractReverted as e:
            e.asset = e.asset or await self.identify_reverted_asset(plan, e.message)
            e.recipient = e.recipient or plan.recipient
            logger.error(f"✗ Atomic multi-send rejected at estimation: {e.describe()}")
            raise

        tx_hash = receipt['transactionHash']
        if receipt.get('status') != 1:
            # Live receipts carry no reason; replay the call against current state
            reason = receipt.get('revertReason') or await self.client.replay_call(
                self.session,
                self.contract_address,
                ATOMIC_MULTISEND_ABI,
                'atomicMultiSend',
                call_args,
                value=native_total
            ) or 'execution reverted'
            asset = await self.identify_reverted_asset(plan, reason)
            error = ContractReverted(
                f"Atomic multi-send {tx_hash} reverted: {reason}",
                asset=asset,
                recipient=plan.recipient
            )
            logger.error(f"✗ {error.describe()}")
            raise error

        logger.info(f"✓ Atomic multi-send confirmed: {tx_hash} (block {receipt.get('blockNumber')})")
        return tx_hash

    async def identify_reverted_asset(self, plan: TransferPlan, reason: str = "") -> Optional[str]:
        """
        Name the asset a reverted call could not deliver

        The operator pre-flight is run again first (a balance or allowance
        may have changed since submission), then the revert reason is
        searched for a token address of the plan. Reasons decoded from
        TokenTransferFailed(address) and raw revert data both carry the
        token address.

        Returns:
            Asset symbol, or None when the revert cannot be attributed
        """
        try:
            await self.preflight(plan)
        except InsufficientOperatorFunds as e:
            return e.asset
        except FaucetError as e:
            logger.debug(f"Pre-flight re-check after revert failed: {e.describe()}")

        reason = (reason or "").lower()
        for planned in plan.transfers:
            if planned.asset.is_native:
                continue
            if planned.reference.lower()[2:] in reason:
                return planned.symbol

        return None

    async def get_owner(self) -> str:
        return await self.client.call_view(self.contract_address, ATOMIC_MULTISEND_ABI, 'owner', [])

    async def get_contract_balance(self, token: str) -> int:
        return int(await self.client.call_view(
            self.contract_address, ATOMIC_MULTISEND_ABI, 'getBalance', [to_checksum_address(token)]
        ))
