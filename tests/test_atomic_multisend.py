"""
Tests for the AtomicMultiSend invoker.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from eth_utils import to_checksum_address

from dual_faucet.address_translator import Environment
from dual_faucet.atomic_multisend import (
    ATOMIC_MULTISEND_ABI,
    AtomicTransferInvoker,
    build_transfers,
)
from dual_faucet.balance_reconciler import PlannedTransfer, TransferPlan
from dual_faucet.errors import (
    BalanceQueryError,
    ContractReverted,
    ErrorKind,
    InsufficientOperatorFunds,
)
from dual_faucet.faucet_config import NATIVE_TOKEN_SENTINEL

from conftest import CONTRACT, RECIPIENT


def ledger_b_plan(config, amounts):
    transfers = [
        PlannedTransfer(config.get_asset(symbol), amount, Environment.LEDGER_B)
        for symbol, amount in amounts.items()
    ]
    return TransferPlan(Environment.LEDGER_B, RECIPIENT, transfers)


def mock_client(token_balance=10 ** 30, allowance=10 ** 30, native_balance=10 ** 30, status=1):
    client = Mock()
    client.get_token_balance = AsyncMock(return_value=token_balance)
    client.get_allowance = AsyncMock(return_value=allowance)
    client.get_native_balance = AsyncMock(return_value=native_balance)
    client.send_contract_call = AsyncMock(return_value={
        'transactionHash': "0xabc",
        'status': status,
        'blockNumber': 12,
        'revertReason': "Insufficient allowance" if status != 1 else None,
    })
    client.call_view = AsyncMock()
    client.replay_call = AsyncMock(return_value=None)
    return client


class TestBuildTransfers:
    """Plan -> contract arguments."""

    def test_tokens_and_native(self, config):
        plan = ledger_b_plan(config, {'NATIVE': 10 ** 18, 'X': 5, 'Y': 10})
        transfers, native_total = build_transfers(plan)

        assert transfers == [
            (NATIVE_TOKEN_SENTINEL, 10 ** 18),
            (config.get_asset('X').erc20_contract, 5),
            (config.get_asset('Y').erc20_contract, 10),
        ]
        assert native_total == 10 ** 18

    def test_tokens_only(self, config):
        _, native_total = build_transfers(ledger_b_plan(config, {'X': 5}))
        assert native_total == 0

    def test_empty_plan_rejected(self, config):
        with pytest.raises(ValueError):
            build_transfers(TransferPlan(Environment.LEDGER_B, RECIPIENT))

    def test_ledger_a_plan_rejected(self, config):
        plan = TransferPlan(Environment.LEDGER_A, "cosmos1x", [
            PlannedTransfer(config.get_asset('X'), 5, Environment.LEDGER_A)
        ])
        with pytest.raises(ValueError):
            build_transfers(plan)

    def test_non_positive_amount_rejected(self, config):
        with pytest.raises(ValueError):
            build_transfers(ledger_b_plan(config, {'X': 0}))


class TestPreflight:
    """Operator funds and allowance checks."""

    @pytest.mark.asyncio
    async def test_passes_with_enough_funds(self, config, session):
        invoker = AtomicTransferInvoker(mock_client(), session, CONTRACT)
        await invoker.preflight(ledger_b_plan(config, {'NATIVE': 10 ** 18, 'X': 5}))

    @pytest.mark.asyncio
    async def test_low_token_balance(self, config, session):
        invoker = AtomicTransferInvoker(mock_client(token_balance=4), session, CONTRACT)

        with pytest.raises(InsufficientOperatorFunds) as exc_info:
            await invoker.preflight(ledger_b_plan(config, {'X': 5}))

        assert exc_info.value.asset == 'X'

    @pytest.mark.asyncio
    async def test_low_allowance(self, config, session):
        client = mock_client(allowance=1)
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(InsufficientOperatorFunds) as exc_info:
            await invoker.preflight(ledger_b_plan(config, {'Y': 10}))

        assert exc_info.value.asset == 'Y'
        assert "allowance" in exc_info.value.message
        client.get_allowance.assert_awaited_once_with(
            config.get_asset('Y').erc20_contract, session.ledger_b_address, to_checksum_address(CONTRACT)
        )

    @pytest.mark.asyncio
    async def test_low_native_balance(self, config, session):
        invoker = AtomicTransferInvoker(mock_client(native_balance=1), session, CONTRACT)

        with pytest.raises(InsufficientOperatorFunds) as exc_info:
            await invoker.preflight(ledger_b_plan(config, {'NATIVE': 10 ** 18}))

        assert exc_info.value.asset == 'NATIVE'

    @pytest.mark.asyncio
    async def test_read_failure(self, config, session):
        client = mock_client()
        client.get_token_balance = AsyncMock(side_effect=ConnectionError("rpc down"))
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(BalanceQueryError):
            await invoker.preflight(ledger_b_plan(config, {'X': 5}))


class TestExecute:
    """One contract call per plan."""

    @pytest.mark.asyncio
    async def test_single_call_with_native_value(self, config, session):
        client = mock_client()
        invoker = AtomicTransferInvoker(client, session, CONTRACT, gas_limit=300000)
        plan = ledger_b_plan(config, {'NATIVE': 10 ** 18, 'X': 5})

        tx_hash = await invoker.execute(plan)

        assert tx_hash == "0xabc"
        client.send_contract_call.assert_awaited_once()
        args, kwargs = client.send_contract_call.await_args
        assert args[0] is session
        assert args[1] == to_checksum_address(CONTRACT)
        assert args[2] is ATOMIC_MULTISEND_ABI
        assert args[3] == 'atomicMultiSend'
        assert args[4][0] == RECIPIENT
        assert kwargs == {'value': 10 ** 18, 'gas_limit': 300000}

    @pytest.mark.asyncio
    async def test_reverted_receipt(self, config, session):
        invoker = AtomicTransferInvoker(mock_client(status=0), session, CONTRACT)

        with pytest.raises(ContractReverted) as exc_info:
            await invoker.execute(ledger_b_plan(config, {'X': 5}))

        assert exc_info.value.kind == ErrorKind.CONTRACT_REVERTED
        assert "Insufficient allowance" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_preflight_failure_skips_submission(self, config, session):
        client = mock_client(token_balance=0)
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(InsufficientOperatorFunds):
            await invoker.execute(ledger_b_plan(config, {'X': 5}))

        client.send_contract_call.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_owner_and_balance_views(self, session):
        client = mock_client()
        client.call_view = AsyncMock(side_effect=[session.ledger_b_address, 42])
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        assert await invoker.get_owner() == session.ledger_b_address
        assert await invoker.get_contract_balance(NATIVE_TOKEN_SENTINEL) == 42


class TestRevertAttribution:
    """Reverts name the asset that could not be delivered."""

    @pytest.mark.asyncio
    async def test_live_receipt_replayed_for_reason(self, config, session):
        client = mock_client()
        client.send_contract_call = AsyncMock(return_value={
            'transactionHash': "0xabc", 'status': 0, 'blockNumber': 12,
        })
        token_y = config.get_asset('Y').erc20_contract
        # TokenTransferFailed(address) revert data: selector + padded address
        client.replay_call = AsyncMock(
            return_value=f"execution reverted [0x1b2c3d4e{'0' * 24}{token_y[2:].lower()}]"
        )
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(ContractReverted) as exc_info:
            await invoker.execute(ledger_b_plan(config, {'X': 5, 'Y': 10}))

        assert exc_info.value.asset == 'Y'
        assert "asset=Y" in exc_info.value.describe()
        client.replay_call.assert_awaited_once()
        assert client.replay_call.await_args.args[3] == 'atomicMultiSend'
        assert client.replay_call.await_args.kwargs == {'value': 0}

    @pytest.mark.asyncio
    async def test_allowance_drop_found_by_second_preflight(self, config, session):
        client = mock_client(status=0)
        client.send_contract_call.return_value['revertReason'] = None
        # First pre-flight passes, the re-check after the revert sees the dropped allowance
        client.get_allowance = AsyncMock(side_effect=[10 ** 30, 10 ** 30, 10 ** 30, 0])
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(ContractReverted) as exc_info:
            await invoker.execute(ledger_b_plan(config, {'X': 5, 'Y': 10}))

        assert exc_info.value.asset == 'Y'
        assert exc_info.value.recipient == RECIPIENT

    @pytest.mark.asyncio
    async def test_estimation_revert_gets_asset(self, config, session):
        client = mock_client()
        token_x = config.get_asset('X').erc20_contract
        client.send_contract_call = AsyncMock(
            side_effect=ContractReverted(f"atomicMultiSend would revert: TokenTransferFailed({token_x})")
        )
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(ContractReverted) as exc_info:
            await invoker.execute(ledger_b_plan(config, {'NATIVE': 10 ** 18, 'X': 5}))

        assert exc_info.value.asset == 'X'
        assert exc_info.value.recipient == RECIPIENT

    @pytest.mark.asyncio
    async def test_unattributable_revert(self, config, session):
        client = mock_client(status=0)
        client.send_contract_call.return_value['revertReason'] = None
        invoker = AtomicTransferInvoker(client, session, CONTRACT)

        with pytest.raises(ContractReverted) as exc_info:
            await invoker.execute(ledger_b_plan(config, {'X': 5}))

        assert exc_info.value.asset is None
        assert "execution reverted" in exc_info.value.message
