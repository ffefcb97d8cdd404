"""
Ledger-B Client

Async JSON-RPC access to the EVM environment through web3:
- native and ERC20 balances, allowances
- chain id / latest block for health checks
- signed contract calls from the operator, waited to a receipt
"""

import asyncio
from typing import Dict, List, Optional, Sequence

from aiohttp import ClientTimeout
from loguru import logger
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception

from .address_translator import Environment
from .errors import (
    BalanceQueryError,
    ChainSubmissionError,
    ChainTimeout,
    ContractReverted,
    InsufficientOperatorFunds,
)
from .faucet_config import Asset, ChainSettings, LedgerBSettings


ERC20_ABI = [
    {
        "constant": True,
        "inputs": [{"name": "account", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": True,
        "inputs": [
            {"name": "owner", "type": "address"},
            {"name": "spender", "type": "address"},
        ],
        "name": "allowance",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "spender", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "approve",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
    {
        "constant": False,
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "amount", "type": "uint256"},
        ],
        "name": "transfer",
        "outputs": [{"name": "", "type": "bool"}],
        "stateMutability": "nonpayable",
        "type": "function",
    },
]

MAX_UINT256 = 2 ** 256 - 1

# Headroom applied on top of eth_estimateGas
GAS_ESTIMATE_MULTIPLIER = 1.2


def _is_insufficient_funds(message: str) -> bool:
    message = message.lower()
    return "insufficient funds" in message or "insufficient balance" in message


def _revert_text(error: ContractLogicError) -> str:
    """Revert message plus raw revert data (custom errors only decode from the data)"""
    data = error.data if isinstance(error.data, str) else ""
    text = str(error.message or error)
    return f"{text} [{data}]" if data and data not in text else text


class LedgerBClient:
    """
    Ledger-B (EVM) client

    Features:
    - Native balance via eth_getBalance
    - ERC20 balanceOf / allowance
    - Operator contract calls with gas estimation fallback
    - Receipt wait bounded by the configured timeout
    """

    def __init__(self, settings: LedgerBSettings, chain: ChainSettings):
        """
        Initialize client

        Args:
            settings: Ledger-B endpoint and gas settings
            chain: Chain ids and timeouts
        """
        self.settings = settings
        self.chain = chain
        self.w3 = AsyncWeb3(AsyncHTTPProvider(
            settings.rpc_endpoint,
            request_kwargs={'timeout': ClientTimeout(total=settings.request_timeout_seconds)}
        ))

        logger.info(f"Ledger-B client initialized: {settings.rpc_endpoint}")

    def _token(self, token_address: str):
        return self.w3.eth.contract(address=Web3.to_checksum_address(token_address), abi=ERC20_ABI)

    # ========================================================================
    # READS
    # ========================================================================

    async def get_native_balance(self, address: str) -> int:
        return int(await self.w3.eth.get_balance(Web3.to_checksum_address(address)))

    async def get_token_balance(self, token_address: str, owner: str) -> int:
        contract = self._token(token_address)
        return int(await contract.functions.balanceOf(Web3.to_checksum_address(owner)).call())

    async def get_allowance(self, token_address: str, owner: str, spender: str) -> int:
        contract = self._token(token_address)
        return int(await contract.functions.allowance(
            Web3.to_checksum_address(owner),
            Web3.to_checksum_address(spender)
        ).call())

    async def get_asset_balance(self, asset: Asset, address: str) -> int:
        """Balance of one asset, Ledger-B base units"""
        if asset.is_native:
            return await self.get_native_balance(address)
        return await self.get_token_balance(asset.erc20_contract, address)

    async def get_balances(self, address: str, assets: List[Asset]) -> Dict[str, int]:
        """
        Read every asset balance of an address

        Raises:
            BalanceQueryError: any single read failed
        """
        eligible = [asset for asset in assets if asset.eligible_for(Environment.LEDGER_B)]
        results = await asyncio.gather(
            *(self.get_asset_balance(asset, address) for asset in eligible),
            return_exceptions=True
        )

        balances = {}
        for asset, result in zip(eligible, results):
            if isinstance(result, BaseException):
                logger.error(f"✗ Ledger-B balance query failed for {asset.symbol}: {result}")
                raise BalanceQueryError(
                    f"Ledger-B balance query failed: {result}",
                    asset=asset.symbol,
                    recipient=address
                ) from result
            balances[asset.symbol] = result

        logger.debug(f"Ledger-B balances for {address}: {balances}")
        return balances

    async def call_view(self, contract_address: str, abi: Sequence[Dict], function_name: str, args: Sequence):
        """Call a read-only contract function"""
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)
        return await getattr(contract.functions, function_name)(*args).call()

    async def get_chain_id(self) -> int:
        return int(await self.w3.eth.chain_id)

    async def get_block_number(self) -> int:
        return int(await self.w3.eth.block_number)

    # ========================================================================
    # WRITES
    # ========================================================================

    async def send_contract_call(
        self,
        session,
        contract_address: str,
        abi: Sequence[Dict],
        function_name: str,
        args: Sequence,
        value: int = 0,
        gas_limit: Optional[int] = None
    ) -> Dict:
        """
        Sign and submit a contract call from the operator, wait for its receipt

        Holds the operator's Ledger-B lock from nonce lookup through the
        receipt, so at most one operator transaction is outstanding.

        Args:
            session: OperatorSession
            contract_address: Target contract
            abi: Contract ABI
            function_name: Function to call
            args: Positional call arguments
            value: Native value attached, base units
            gas_limit: Fallback gas limit when estimation fails

        Returns:
            Receipt dict with a hex 'transactionHash'

        Raises:
            ContractReverted: gas estimation reverted
            InsufficientOperatorFunds: the node rejected for lack of funds
            ChainSubmissionError: any other RPC rejection
            ChainTimeout: no receipt within chain.tx_timeout_seconds
        """
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)
        function = getattr(contract.functions, function_name)(*args)
        sender = session.ledger_b_address
        fallback_gas = gas_limit or self.settings.gas_limit

        async with session.lock_for(Environment.LEDGER_B):
            try:
                nonce = await self.w3.eth.get_transaction_count(sender, 'pending')
                gas_price = await self.w3.eth.gas_price
            except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
                raise ChainSubmissionError(f"Ledger-B node unavailable: {e}") from e

            try:
                estimate = await function.estimate_gas({'from': sender, 'value': value})
                gas = int(estimate * GAS_ESTIMATE_MULTIPLIER)
            except ContractLogicError as e:
                raise ContractReverted(f"{function_name} would revert: {_revert_text(e)}") from e
            except (Web3Exception, ValueError) as e:
                if _is_insufficient_funds(str(e)):
                    raise InsufficientOperatorFunds(f"Operator cannot cover {function_name}: {e}") from e
                logger.warning(f"⚠ Gas estimation failed for {function_name}, using {fallback_gas}: {e}")
                gas = fallback_gas

            transaction = await function.build_transaction({
                'from': sender,
                'value': value,
                'nonce': nonce,
                'gas': gas,
                'gasPrice': gas_price,
                'chainId': self.chain.evm_chain_id,
            })
            raw = session.sign_ledger_b_transaction(transaction)

            try:
                tx_hash = await self.w3.eth.send_raw_transaction(raw)
            except (Web3Exception, ValueError) as e:
                if _is_insufficient_funds(str(e)):
                    raise InsufficientOperatorFunds(f"Operator cannot cover {function_name}: {e}") from e
                raise ChainSubmissionError(f"Ledger-B rejected {function_name}: {e}") from e

            tx_hex = Web3.to_hex(tx_hash)
            logger.info(f"Ledger-B transaction sent: {tx_hex} ({function_name}, gas {gas})")

            try:
                receipt = await self.w3.eth.wait_for_transaction_receipt(
                    tx_hash,
                    timeout=self.chain.tx_timeout_seconds,
                    poll_latency=self.chain.poll_interval_seconds
                )
            except TimeExhausted as e:
                logger.warning(f"⚠ No receipt for {tx_hex} after {self.chain.tx_timeout_seconds}s")
                raise ChainTimeout(f"No receipt for {tx_hex} within {self.chain.tx_timeout_seconds}s") from e

        result = dict(receipt)
        result['transactionHash'] = tx_hex
        return result

    async def replay_call(
        self,
        session,
        contract_address: str,
        abi: Sequence[Dict],
        function_name: str,
        args: Sequence,
        value: int = 0
    ) -> Optional[str]:
        """
        Re-run a call with eth_call from the operator to recover its revert reason

        Returns:
            Revert text (with raw revert data), or None when the call now succeeds
            or the node cannot be reached
        """
        contract = self.w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi)
        function = getattr(contract.functions, function_name)(*args)

        try:
            await function.call({'from': session.ledger_b_address, 'value': value})
        except ContractLogicError as e:
            return _revert_text(e)
        except (Web3Exception, ValueError, OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Replay of {function_name} failed: {e}")
        return None

    async def approve(self, session, token_address: str, spender: str, amount: int = MAX_UINT256) -> Dict:
        """Approve a spender for one of the operator's tokens"""
        return await self.send_contract_call(
            session,
            token_address,
            ERC20_ABI,
            'approve',
            [Web3.to_checksum_address(spender), amount],
            gas_limit=100000
        )

    async def close(self):
        """Close the underlying HTTP session"""
        try:
            await self.w3.provider.disconnect()
        except Exception as e:
            logger.debug(f"Error closing Ledger-B provider: {e}")
