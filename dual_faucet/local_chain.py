"""
Local Chain

In-memory devnet for the `local` network mode and the test-suite. One state
backs both environments, as on the real chain:

- bank balances per 20-byte account id and denom (Ledger-A view)
- ERC20 tokens mapped onto bank denoms (Ledger-B view)
- the native coin, stored in Ledger-B base units
- a reference AtomicMultiSend contract with the same validate-all /
  execute-all semantics as contracts/AtomicMultiSend.sol

Every state-changing call snapshots the state first and restores it when the
call fails, so a failed call leaves no trace apart from the failed receipt.
"""

import copy
import itertools
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence, Tuple

from eth_utils import keccak, to_checksum_address
from loguru import logger

from .address_translator import Environment, normalize
from .errors import (
    BalanceQueryError,
    ChainSubmissionError,
    InsufficientOperatorFunds,
)
from .faucet_config import NATIVE_TOKEN_SENTINEL, Asset, FaucetConfig


ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

# Operator float minted by the devnet bootstrap, in multiples of target_balance
BOOTSTRAP_FLOAT_MULTIPLIER = 1000


class LocalChainError(Exception):
    """
    A rejected or reverted local transaction

    Args:
        reason: Revert reason
        code: 'revert' or 'insufficient_funds'
    """

    def __init__(self, reason: str, code: str = 'revert'):
        super().__init__(reason)
        self.reason = reason
        self.code = code


@dataclass
class LocalTransaction:
    """A transaction included in a local block"""
    tx_hash: str
    environment: Environment
    kind: str
    status: int
    block_number: int
    revert_reason: Optional[str] = None


@dataclass
class LocalState:
    balances: Dict[str, Dict[str, int]] = field(default_factory=dict)
    allowances: Dict[Tuple[str, str, str], int] = field(default_factory=dict)
    frozen_tokens: set = field(default_factory=set)
    contract_owner: str = ZERO_ADDRESS


class LocalChain:
    """
    In-memory dual-environment chain

    Features:
    - Shared bank / ERC20 / native balances
    - ERC20 allowances
    - AtomicMultiSend reference executor with snapshot/restore
    - AtomicTransfer event log
    - Transaction log with hashes and block numbers
    """

    def __init__(
        self,
        bech32_prefix: str,
        evm_chain_id: int = 262144,
        native_denom: str = "native",
        evm_scale: int = 1,
        contract_address: str = "0x000000000000000000000000000000000000A70c"
    ):
        """
        Initialize local chain

        Args:
            bech32_prefix: Ledger-A human readable prefix
            evm_chain_id: Ledger-B chain id
            native_denom: Bank denom of the native coin
            evm_scale: Ledger-B units per Ledger-A unit of the native coin
            contract_address: Address of the AtomicMultiSend contract
        """
        self.bech32_prefix = bech32_prefix
        self.evm_chain_id = evm_chain_id
        self.native_denom = native_denom
        self.evm_scale = evm_scale
        self.contract_address = to_checksum_address(contract_address)

        self.state = LocalState()
        self.token_denoms: Dict[str, str] = {}
        self.events: List[Dict] = []
        self.transactions: List[LocalTransaction] = []
        self.block_number = 1
        self._nonce = itertools.count(1)

    @classmethod
    def from_config(cls, config: FaucetConfig, operator: str, bootstrap: bool = True) -> 'LocalChain':
        """
        Build a devnet from the faucet configuration

        With bootstrap, the operator becomes the contract owner, receives
        BOOTSTRAP_FLOAT_MULTIPLIER x target_balance of every asset and
        approves the contract for every token.
        """
        native = next((asset for asset in config.assets if asset.is_native), None)
        chain = cls(
            bech32_prefix=config.chain.bech32_prefix,
            evm_chain_id=config.chain.evm_chain_id,
            native_denom=(native.denom if native and native.denom else "native"),
            evm_scale=(native.evm_scale if native else 1),
            contract_address=config.ledger_b.atomic_multisend
        )

        for asset in config.assets:
            chain.register_asset(asset)

        if bootstrap:
            chain.set_contract_owner(operator)
            for asset in config.assets:
                chain.mint(asset, operator, asset.target_balance * BOOTSTRAP_FLOAT_MULTIPLIER)
                if asset.erc20_contract and not asset.is_native:
                    chain.approve(operator, asset.erc20_contract, chain.contract_address, 2 ** 256 - 1)
            logger.info(f"Local chain bootstrapped: operator {operator} owns {chain.contract_address}")

        return chain

    # ========================================================================
    # ACCOUNTS AND ASSETS
    # ========================================================================

    def key(self, address: str) -> str:
        """Account id (lowercase hex) of an address in either encoding"""
        return normalize(address, self.bech32_prefix).normalized

    def register_asset(self, asset: Asset):
        """Map an asset's ERC20 contract onto its bank denom"""
        if asset.erc20_contract and not asset.is_native:
            self.token_denoms[asset.erc20_contract] = asset.denom or f"erc20/{asset.erc20_contract}"

    def denom_for_token(self, token: str) -> str:
        token = to_checksum_address(token)
        if token not in self.token_denoms:
            raise LocalChainError(f"No contract deployed at {token}")
        return self.token_denoms[token]

    def set_contract_owner(self, owner: str):
        self.state.contract_owner = self.key(owner)

    def mint(self, asset: Asset, address: str, amount: int):
        """Credit an account with an asset, amount in Ledger-A base units"""
        if asset.is_native:
            self._credit(self.key(address), self.native_denom, amount * self.evm_scale)
        elif asset.erc20_contract:
            self._credit(self.key(address), self.denom_for_token(asset.erc20_contract), amount)
        else:
            self._credit(self.key(address), asset.denom, amount)

    def freeze_token(self, token: str):
        """Pause a token: every later transfer of it reverts"""
        self.state.frozen_tokens.add(to_checksum_address(token))

    def _balance(self, key: str, denom: str) -> int:
        return self.state.balances.get(key, {}).get(denom, 0)

    def _credit(self, key: str, denom: str, amount: int):
        account = self.state.balances.setdefault(key, {})
        account[denom] = account.get(denom, 0) + amount

    def _debit(self, key: str, denom: str, amount: int):
        balance = self._balance(key, denom)
        if balance < amount:
            raise LocalChainError(f"insufficient {denom} balance: {balance} < {amount}", 'insufficient_funds')
        self.state.balances.setdefault(key, {})[denom] = balance - amount

    # ========================================================================
    # VIEWS
    # ========================================================================

    def bank_balance(self, address: str, denom: str) -> int:
        """Ledger-A view; the native coin is reported in Ledger-A units"""
        key = self.key(address)
        if denom == self.native_denom:
            return self._balance(key, denom) // self.evm_scale
        return self._balance(key, denom)

    def native_balance(self, address: str) -> int:
        """Ledger-B view of the native coin"""
        return self._balance(self.key(address), self.native_denom)

    def token_balance(self, token: str, address: str) -> int:
        return self._balance(self.key(address), self.denom_for_token(token))

    def allowance(self, token: str, owner: str, spender: str) -> int:
        return self.state.allowances.get((to_checksum_address(token), self.key(owner), self.key(spender)), 0)

    def contract_balance(self, token: str) -> int:
        """The contract's own holdings (getBalance)"""
        if token.lower() == NATIVE_TOKEN_SENTINEL.lower():
            return self.native_balance(self.contract_address)
        return self.token_balance(token, self.contract_address)

    @property
    def contract_owner(self) -> str:
        return to_checksum_address(self.state.contract_owner)

    # ========================================================================
    # TRANSACTIONS
    # ========================================================================

    def _next_hash(self) -> str:
        return "0x" + keccak(f"local-tx-{next(self._nonce)}".encode()).hex()

    def _run(self, environment: Environment, kind: str, operation) -> LocalTransaction:
        """
        Execute operation() as one transaction

        Rejections ('insufficient_funds', 'unauthorized') raise and leave no
        transaction behind. Reverts restore the snapshot and are recorded
        with status 0.
        """
        snapshot = copy.deepcopy(self.state)
        events_before = len(self.events)
        tx_hash = self._next_hash()

        try:
            operation()
        except LocalChainError as e:
            self.state = snapshot
            del self.events[events_before:]
            if e.code != 'revert':
                raise
            tx = LocalTransaction(tx_hash, environment, kind, 0, self.block_number, e.reason)
            logger.debug(f"Local {kind} {tx_hash} reverted: {e.reason}")
        except Exception:
            self.state = snapshot
            del self.events[events_before:]
            raise
        else:
            tx = LocalTransaction(tx_hash, environment, kind, 1, self.block_number)

        self.transactions.append(tx)
        self.block_number += 1
        return tx

    def approve(self, owner: str, token: str, spender: str, amount: int) -> LocalTransaction:
        token = to_checksum_address(token)
        self.denom_for_token(token)

        def operation():
            self.state.allowances[(token, self.key(owner), self.key(spender))] = amount

        return self._run(Environment.LEDGER_B, 'approve', operation)

    def bank_send(self, sender: str, recipient: str, coins: Sequence[Tuple[str, int]]) -> LocalTransaction:
        """One MsgSend carrying several coins; all or nothing"""
        sender_key, recipient_key = self.key(sender), self.key(recipient)

        def operation():
            for denom, amount in coins:
                if amount <= 0:
                    raise LocalChainError(f"invalid coin amount {amount}{denom}")
                units = amount * self.evm_scale if denom == self.native_denom else amount
                if self._balance(sender_key, denom) < units:
                    raise LocalChainError(f"insufficient funds: {denom}", 'insufficient_funds')
            for denom, amount in coins:
                units = amount * self.evm_scale if denom == self.native_denom else amount
                self._debit(sender_key, denom, units)
                self._credit(recipient_key, denom, units)

        return self._run(Environment.LEDGER_A, 'bank_send', operation)

    def _transfer_from(self, token: str, owner_key: str, recipient_key: str, amount: int):
        if token in self.state.frozen_tokens:
            raise LocalChainError(f"token {token} is paused")
        denom = self.denom_for_token(token)
        contract_key = self.key(self.contract_address)
        allowance_key = (token, owner_key, contract_key)
        allowed = self.state.allowances.get(allowance_key, 0)
        if allowed < amount:
            raise LocalChainError(f"ERC20: insufficient allowance for {token}")
        self.state.allowances[allowance_key] = allowed - amount
        try:
            self._debit(owner_key, denom, amount)
        except LocalChainError as e:
            raise LocalChainError(e.reason) from e
        self._credit(recipient_key, denom, amount)

    def _only_owner(self, sender: str):
        if self.key(sender) != self.state.contract_owner:
            raise LocalChainError("Ownable: caller is not the owner")

    def atomic_multi_send(
        self,
        sender: str,
        recipient: str,
        transfers: Sequence[Tuple[str, int]],
        value: int = 0
    ) -> LocalTransaction:
        """
        AtomicMultiSend.atomicMultiSend reference semantics

        Phase 1 validates every transfer without touching state, phase 2
        moves ERC20 tokens, then the aggregated native amount, then refunds
        excess value to the owner. Any failure reverts the whole call.
        """
        sender_key = self.key(sender)
        contract_key = self.key(self.contract_address)

        if self._balance(sender_key, self.native_denom) < value:
            raise LocalChainError("insufficient funds for value", 'insufficient_funds')

        def operation():
            self._debit(sender_key, self.native_denom, value)
            self._credit(contract_key, self.native_denom, value)

            self._only_owner(sender)
            if recipient is None or recipient.lower() == ZERO_ADDRESS:
                raise LocalChainError("Invalid recipient")
            if not transfers:
                raise LocalChainError("No transfers specified")
            recipient_key = self.key(recipient)
            owner_key = self.state.contract_owner

            # Phase 1: validate-all
            native_total = 0
            token_totals: Dict[str, int] = {}
            for token, amount in transfers:
                if amount <= 0:
                    raise LocalChainError("Amount must be greater than 0")
                if token.lower() == NATIVE_TOKEN_SENTINEL.lower():
                    native_total += amount
                else:
                    token = to_checksum_address(token)
                    token_totals[token] = token_totals.get(token, 0) + amount

            for token, total in token_totals.items():
                if self._balance(owner_key, self.denom_for_token(token)) < total:
                    raise LocalChainError(f"Insufficient token balance for {token}")
                if self.state.allowances.get((token, owner_key, contract_key), 0) < total:
                    raise LocalChainError(f"Insufficient allowance for {token}")
            if value < native_total:
                raise LocalChainError("Insufficient native value sent")

            # Phase 2: execute-all, native last
            for token, amount in transfers:
                if token.lower() != NATIVE_TOKEN_SENTINEL.lower():
                    token = to_checksum_address(token)
                    try:
                        self._transfer_from(token, owner_key, recipient_key, amount)
                    except LocalChainError as e:
                        raise LocalChainError(f"TokenTransferFailed({token}): {e.reason}") from e

            if native_total:
                self._debit(contract_key, self.native_denom, native_total)
                self._credit(recipient_key, self.native_denom, native_total)

            refund = value - native_total
            if refund:
                self._debit(contract_key, self.native_denom, refund)
                self._credit(owner_key, self.native_denom, refund)

            self.events.append({
                'event': 'AtomicTransfer',
                'recipient': to_checksum_address(recipient_key),
                'nativeAmount': native_total,
                'transfers': [(token, amount) for token, amount in transfers],
            })

        return self._run(Environment.LEDGER_B, 'atomicMultiSend', operation)

    # ========================================================================
    # CONTRACT ADMINISTRATION
    # ========================================================================

    def deposit_token(self, sender: str, token: str, amount: int) -> LocalTransaction:
        token = to_checksum_address(token)

        def operation():
            self._only_owner(sender)
            self._transfer_from(token, self.key(sender), self.key(self.contract_address), amount)

        return self._run(Environment.LEDGER_B, 'depositToken', operation)

    def withdraw_token(self, sender: str, token: str, amount: int) -> LocalTransaction:
        token = to_checksum_address(token)

        def operation():
            self._only_owner(sender)
            denom = self.denom_for_token(token)
            contract_key = self.key(self.contract_address)
            if self._balance(contract_key, denom) < amount:
                raise LocalChainError("Insufficient contract balance")
            self._debit(contract_key, denom, amount)
            self._credit(self.state.contract_owner, denom, amount)

        return self._run(Environment.LEDGER_B, 'withdrawToken', operation)

    def withdraw_native(self, sender: str, amount: int) -> LocalTransaction:
        def operation():
            self._only_owner(sender)
            contract_key = self.key(self.contract_address)
            if self._balance(contract_key, self.native_denom) < amount:
                raise LocalChainError("Insufficient contract balance")
            self._debit(contract_key, self.native_denom, amount)
            self._credit(self.state.contract_owner, self.native_denom, amount)

        return self._run(Environment.LEDGER_B, 'withdrawNative', operation)

    def emergency_recover(self, sender: str) -> LocalTransaction:
        """Move everything the contract holds back to the owner"""
        def operation():
            self._only_owner(sender)
            contract_key = self.key(self.contract_address)
            for denom, amount in list(self.state.balances.get(contract_key, {}).items()):
                if amount:
                    self._debit(contract_key, denom, amount)
                    self._credit(self.state.contract_owner, denom, amount)

        return self._run(Environment.LEDGER_B, 'emergencyRecover', operation)

    def transfer_ownership(self, sender: str, new_owner: str) -> LocalTransaction:
        def operation():
            self._only_owner(sender)
            if new_owner.lower() == ZERO_ADDRESS:
                raise LocalChainError("Ownable: new owner is the zero address")
            self.state.contract_owner = self.key(new_owner)

        return self._run(Environment.LEDGER_B, 'transferOwnership', operation)


# ============================================================================
# CLIENT ADAPTERS
# ============================================================================

def _map_rejection(error: LocalChainError, what: str):
    if error.code == 'insufficient_funds':
        return InsufficientOperatorFunds(f"{what} rejected: {error.reason}")
    return ChainSubmissionError(f"{what} rejected: {error.reason}")


class LocalLedgerAClient:
    """LedgerAClient interface over a LocalChain"""

    def __init__(self, chain: LocalChain):
        self.chain = chain

    async def get_balances(self, address: str, assets: List[Asset]) -> Dict[str, int]:
        try:
            return {
                asset.symbol: self.chain.bank_balance(address, asset.denom)
                for asset in assets if asset.eligible_for(Environment.LEDGER_A)
            }
        except Exception as e:
            raise BalanceQueryError(f"Local balance query failed: {e}", recipient=address) from e

    async def get_latest_block_height(self) -> int:
        return self.chain.block_number

    async def send_coins(self, session, recipient: str, coins: List[Tuple[str, int]]) -> str:
        async with session.lock_for(Environment.LEDGER_A):
            try:
                tx = self.chain.bank_send(session.ledger_a_address, recipient, coins)
            except LocalChainError as e:
                raise _map_rejection(e, "Ledger-A send") from e

        if tx.status != 1:
            raise ChainSubmissionError(f"Ledger-A transaction {tx.tx_hash} failed: {tx.revert_reason}")
        logger.info(f"✓ Local Ledger-A transaction committed: {tx.tx_hash}")
        return tx.tx_hash

    async def close(self):
        pass


class LocalLedgerBClient:
    """LedgerBClient interface over a LocalChain"""

    def __init__(self, chain: LocalChain):
        self.chain = chain

    async def get_native_balance(self, address: str) -> int:
        return self.chain.native_balance(address)

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        return self.chain.token_balance(token_address, owner)

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        return self.chain.allowance(token_address, owner, spender)

    async def get_asset_balance(self, asset: Asset, address: str) -> int:
        if asset.is_native:
            return await self.get_native_balance(address)
        return await self.get_token_balance(asset.erc20_contract, address)

    async def get_balances(self, address: str, assets: List[Asset]) -> Dict[str, int]:
        balances = {}
        for asset in assets:
            if not asset.eligible_for(Environment.LEDGER_B):
                continue
            try:
                balances[asset.symbol] = await self.get_asset_balance(asset, address)
            except Exception as e:
                raise BalanceQueryError(
                    f"Local balance query failed: {e}", asset=asset.symbol, recipient=address
                ) from e
        return balances

    async def call_view(self, contract_address: str, abi, function_name: str, args: Sequence):
        if function_name == 'owner':
            return self.chain.contract_owner
        if function_name == 'getBalance':
            return self.chain.contract_balance(args[0])
        raise ChainSubmissionError(f"Local chain has no view {function_name}")

    async def get_chain_id(self) -> int:
        return self.chain.evm_chain_id

    async def get_block_number(self) -> int:
        return self.chain.block_number

    async def send_contract_call(
        self,
        session,
        contract_address: str,
        abi,
        function_name: str,
        args: Sequence,
        value: int = 0,
        gas_limit: Optional[int] = None
    ) -> Dict:
        sender = session.ledger_b_address

        async with session.lock_for(Environment.LEDGER_B):
            try:
                if function_name == 'atomicMultiSend':
                    if to_checksum_address(contract_address) != self.chain.contract_address:
                        raise ChainSubmissionError(f"No AtomicMultiSend deployed at {contract_address}")
                    recipient, transfers = args
                    tx = self.chain.atomic_multi_send(sender, recipient, transfers, value)
                elif function_name == 'approve':
                    spender, amount = args
                    tx = self.chain.approve(sender, contract_address, spender, amount)
                elif function_name == 'transferOwnership':
                    tx = self.chain.transfer_ownership(sender, args[0])
                else:
                    raise ChainSubmissionError(f"Local chain does not support {function_name}")
            except LocalChainError as e:
                raise _map_rejection(e, f"Ledger-B {function_name}") from e

        return {
            'transactionHash': tx.tx_hash,
            'status': tx.status,
            'blockNumber': tx.block_number,
            'revertReason': tx.revert_reason,
        }

    async def replay_call(
        self,
        session,
        contract_address: str,
        abi,
        function_name: str,
        args: Sequence,
        value: int = 0
    ) -> Optional[str]:
        """Local receipts already carry their revert reason"""
        return None

    async def approve(self, session, token_address: str, spender: str, amount: int = 2 ** 256 - 1) -> Dict:
        return await self.send_contract_call(session, token_address, None, 'approve', [spender, amount])

    async def close(self):
        pass
