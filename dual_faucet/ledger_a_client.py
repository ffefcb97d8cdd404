"""
Ledger-A Client

REST access to the bank ledger:
- balances by denom
- account number / sequence
- a single multi-coin MsgSend, signed once by the operator (eth_secp256k1),
  broadcast in sync mode and polled until committed
"""

import asyncio
import base64
from typing import Dict, List, Optional, Tuple

import aiohttp
from google.protobuf.any_pb2 import Any as ProtoAny
from loguru import logger

from cosmpy.protos.cosmos.bank.v1beta1.tx_pb2 import MsgSend
from cosmpy.protos.cosmos.base.v1beta1.coin_pb2 import Coin
from cosmpy.protos.cosmos.crypto.secp256k1.keys_pb2 import PubKey
from cosmpy.protos.cosmos.tx.signing.v1beta1.signing_pb2 import SignMode
from cosmpy.protos.cosmos.tx.v1beta1.tx_pb2 import (
    AuthInfo,
    Fee,
    ModeInfo,
    SignDoc,
    SignerInfo,
    TxBody,
    TxRaw,
)

from .address_translator import Environment
from .balance_reconciler import TransferPlan
from .errors import (
    BalanceQueryError,
    ChainSubmissionError,
    ChainTimeout,
    InsufficientOperatorFunds,
)
from .faucet_config import Asset, ChainSettings, LedgerASettings


MSG_SEND_TYPE_URL = "/cosmos.bank.v1beta1.MsgSend"

# sdkerrors.ErrInsufficientFunds
INSUFFICIENT_FUNDS_CODE = 5


def coins_from_plan(plan: TransferPlan) -> List[Tuple[str, int]]:
    """
    (denom, amount) pairs for a Ledger-A plan

    Sorted by denom with duplicates merged, as the bank module requires.
    """
    if plan.environment != Environment.LEDGER_A:
        raise ValueError(f"Bank sends only serve Ledger-A plans, got {plan.environment.value}")

    totals: Dict[str, int] = {}
    for planned in plan.transfers:
        totals[planned.reference] = totals.get(planned.reference, 0) + planned.amount
    return sorted(totals.items())


def parse_account(data: Dict) -> Tuple[int, int]:
    """
    Extract (account_number, sequence) from an auth account response

    Handles plain BaseAccount as well as wrapped account types that nest it
    under 'base_account' (EthAccount, vesting accounts).
    """
    account = data.get('account') or {}
    while 'base_account' in account and 'account_number' not in account:
        account = account['base_account'] or {}
    return int(account.get('account_number', 0)), int(account.get('sequence', 0))


class LedgerAClient:
    """
    Ledger-A (bank ledger) REST client

    Features:
    - Bank balances by denom
    - One MsgSend carrying every coin of a plan
    - Sync broadcast + commit polling bounded by the configured timeout
    """

    def __init__(self, settings: LedgerASettings, chain: ChainSettings):
        """
        Initialize client

        Args:
            settings: REST endpoint, fee and key settings
            chain: Chain ids and timeouts
        """
        self.settings = settings
        self.chain = chain
        self.base_url = settings.rest_endpoint.rstrip('/')
        self._session: Optional[aiohttp.ClientSession] = None

        logger.info(f"Ledger-A client initialized: {self.base_url}")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.settings.request_timeout_seconds)
            )
        return self._session

    async def _get(self, path: str, params: Optional[Dict] = None) -> Tuple[int, Dict]:
        async with self._get_session().get(f"{self.base_url}{path}", params=params) as response:
            data = await response.json(content_type=None)
            return response.status, data or {}

    async def _post(self, path: str, payload: Dict) -> Tuple[int, Dict]:
        async with self._get_session().post(f"{self.base_url}{path}", json=payload) as response:
            data = await response.json(content_type=None)
            return response.status, data or {}

    # ========================================================================
    # READS
    # ========================================================================

    async def get_denom_balance(self, address: str, denom: str) -> int:
        status, data = await self._get(
            f"/cosmos/bank/v1beta1/balances/{address}/by_denom",
            params={'denom': denom}
        )
        if status != 200:
            raise BalanceQueryError(
                f"Ledger-A balance query returned HTTP {status}: {data.get('message', '')}",
                recipient=address
            )
        balance = data.get('balance') or {}
        return int(balance.get('amount', 0))

    async def get_balances(self, address: str, assets: List[Asset]) -> Dict[str, int]:
        """
        Read every asset balance of an address

        Raises:
            BalanceQueryError: any single read failed
        """
        eligible = [asset for asset in assets if asset.eligible_for(Environment.LEDGER_A)]
        results = await asyncio.gather(
            *(self.get_denom_balance(address, asset.denom) for asset in eligible),
            return_exceptions=True
        )

        balances = {}
        for asset, result in zip(eligible, results):
            if isinstance(result, BaseException):
                logger.error(f"✗ Ledger-A balance query failed for {asset.symbol}: {result}")
                raise BalanceQueryError(
                    f"Ledger-A balance query failed: {result}",
                    asset=asset.symbol,
                    recipient=address
                ) from result
            balances[asset.symbol] = result

        logger.debug(f"Ledger-A balances for {address}: {balances}")
        return balances

    async def get_account_info(self, address: str) -> Tuple[int, int]:
        """
        Returns:
            Tuple of (account_number, sequence)

        Raises:
            InsufficientOperatorFunds: the account does not exist yet (never funded)
            ChainSubmissionError: the endpoint failed
        """
        try:
            status, data = await self._get(f"/cosmos/auth/v1beta1/accounts/{address}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ChainSubmissionError(f"Ledger-A account query failed: {e}") from e

        if status == 404:
            raise InsufficientOperatorFunds(f"Ledger-A account {address} does not exist on chain")
        if status != 200:
            raise ChainSubmissionError(f"Ledger-A account query returned HTTP {status}: {data.get('message', '')}")

        return parse_account(data)

    async def get_latest_block_height(self) -> int:
        status, data = await self._get("/cosmos/base/tendermint/v1beta1/blocks/latest")
        if status != 200:
            raise ChainSubmissionError(f"Ledger-A latest block returned HTTP {status}")
        block = data.get('sdk_block') or data.get('block') or {}
        return int(block.get('header', {}).get('height', 0))

    # ========================================================================
    # TRANSACTION BUILDING
    # ========================================================================

    def build_sign_doc(
        self,
        session,
        recipient: str,
        coins: List[Tuple[str, int]],
        account_number: int,
        sequence: int
    ) -> SignDoc:
        """Build the SIGN_MODE_DIRECT SignDoc for one multi-coin MsgSend"""
        message = MsgSend(
            from_address=session.ledger_a_address,
            to_address=recipient,
            amount=[Coin(denom=denom, amount=str(amount)) for denom, amount in coins]
        )
        body = TxBody(messages=[ProtoAny(type_url=MSG_SEND_TYPE_URL, value=message.SerializeToString())])

        public_key = ProtoAny(
            type_url=self.settings.pubkey_type_url,
            value=PubKey(key=session.public_key_compressed).SerializeToString()
        )
        auth_info = AuthInfo(
            signer_infos=[SignerInfo(
                public_key=public_key,
                mode_info=ModeInfo(single=ModeInfo.Single(mode=SignMode.SIGN_MODE_DIRECT)),
                sequence=sequence
            )],
            fee=Fee(
                amount=[Coin(denom=self.settings.fee_denom, amount=str(self.settings.fee_amount))],
                gas_limit=self.settings.gas_limit
            )
        )

        return SignDoc(
            body_bytes=body.SerializeToString(),
            auth_info_bytes=auth_info.SerializeToString(),
            chain_id=self.chain.cosmos_chain_id,
            account_number=account_number
        )

    @staticmethod
    def _raise_for_code(tx_response: Dict, stage: str):
        code = int(tx_response.get('code', 0))
        if code == 0:
            return

        raw_log = tx_response.get('raw_log', '')
        codespace = tx_response.get('codespace', 'sdk')
        if code == INSUFFICIENT_FUNDS_CODE and codespace == 'sdk':
            raise InsufficientOperatorFunds(f"Ledger-A {stage} rejected: {raw_log}")
        raise ChainSubmissionError(f"Ledger-A {stage} failed with {codespace} code {code}: {raw_log}")

    # ========================================================================
    # WRITES
    # ========================================================================

    async def send_coins(self, session, recipient: str, coins: List[Tuple[str, int]]) -> str:
        """
        Send every coin to a recipient in one MsgSend

        Args:
            session: OperatorSession
            recipient: bech32 recipient
            coins: (denom, amount) pairs sorted by denom

        Returns:
            Transaction hash

        Raises:
            InsufficientOperatorFunds, ChainSubmissionError, ChainTimeout
        """
        if not coins:
            raise ValueError("send_coins needs at least one coin")

        async with session.lock_for(Environment.LEDGER_A):
            account_number, sequence = await self.get_account_info(session.ledger_a_address)

            sign_doc = self.build_sign_doc(session, recipient, coins, account_number, sequence)
            signature = session.sign_ledger_a_doc(sign_doc.SerializeToString())
            tx_raw = TxRaw(
                body_bytes=sign_doc.body_bytes,
                auth_info_bytes=sign_doc.auth_info_bytes,
                signatures=[signature]
            )

            payload = {
                'tx_bytes': base64.b64encode(tx_raw.SerializeToString()).decode('ascii'),
                'mode': 'BROADCAST_MODE_SYNC',
            }

            try:
                status, data = await self._post("/cosmos/tx/v1beta1/txs", payload)
            except asyncio.TimeoutError as e:
                # The transaction may already be in the mempool
                logger.warning(f"⚠ Ledger-A broadcast timed out after {self.settings.request_timeout_seconds}s")
                raise ChainTimeout(f"Ledger-A broadcast to {recipient} timed out, outcome unknown") from e
            except aiohttp.ClientError as e:
                raise ChainSubmissionError(f"Ledger-A broadcast failed: {e}") from e

            tx_response = data.get('tx_response')
            if status != 200 or not tx_response:
                raise ChainSubmissionError(f"Ledger-A broadcast returned HTTP {status}: {data.get('message', data)}")

            self._raise_for_code(tx_response, 'broadcast')
            tx_hash = tx_response['txhash']
            logger.info(f"Ledger-A transaction broadcast: {tx_hash} ({len(coins)} coin(s) to {recipient})")

            await self.wait_for_commit(tx_hash)

        return tx_hash

    async def wait_for_commit(self, tx_hash: str):
        """
        Poll until the transaction is included in a block

        Raises:
            ChainTimeout: not included within chain.tx_timeout_seconds
            InsufficientOperatorFunds, ChainSubmissionError: included with a failure code
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.chain.tx_timeout_seconds

        while loop.time() < deadline:
            try:
                status, data = await self._get(f"/cosmos/tx/v1beta1/txs/{tx_hash}")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.debug(f"Error polling {tx_hash}: {e}")
                status, data = None, {}

            tx_response = data.get('tx_response') if status == 200 else None
            if tx_response:
                self._raise_for_code(tx_response, 'execution')
                logger.info(f"✓ Ledger-A transaction committed: {tx_hash} (height {tx_response.get('height')})")
                return

            await asyncio.sleep(self.chain.poll_interval_seconds)

        logger.warning(f"⚠ Ledger-A transaction {tx_hash} not committed after {self.chain.tx_timeout_seconds}s")
        raise ChainTimeout(f"Ledger-A transaction {tx_hash} not committed within {self.chain.tx_timeout_seconds}s")

    async def close(self):
        """Close the HTTP session"""
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
