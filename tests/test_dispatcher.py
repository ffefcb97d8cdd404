"""
End-to-end dispatcher tests against the local chain.
"""

import asyncio
from unittest.mock import AsyncMock, Mock

import pytest
from eth_utils import to_checksum_address

from dual_faucet.address_translator import Environment, to_environment_a
from dual_faucet.dispatcher import DispatchState, Dispatcher, graceful_shutdown
from dual_faucet.errors import ContractReverted, ErrorKind
from dual_faucet.faucet_config import parse_config

from conftest import RECIPIENT, TOKEN_X, TOKEN_Y, make_raw_config


X = to_checksum_address(TOKEN_X)
Y = to_checksum_address(TOKEN_Y)
ONE_NATIVE = 10 ** 18
OTHER = "0x" + "5e" * 20


def fund_to_targets(chain, config, address):
    for asset in config.assets_for(Environment.LEDGER_B):
        chain.mint(asset, address, asset.target_balance)


class TestLedgerBDistribution:
    """Hex recipients are served through AtomicMultiSend."""

    @pytest.mark.asyncio
    async def test_fresh_recipient_receives_full_bundle(self, dispatcher, chain):
        result = await dispatcher.distribute(RECIPIENT, client_ip="10.0.0.1")

        assert result.success
        assert result.state == DispatchState.COMPLETED
        assert result.environment == "ledger_b"
        assert {t.asset: t.amount for t in result.transfers} == {'NATIVE': ONE_NATIVE, 'X': 5, 'Y': 10}
        assert len(result.tx_references) == 1

        assert chain.native_balance(RECIPIENT) == ONE_NATIVE
        assert chain.token_balance(X, RECIPIENT) == 5
        assert chain.token_balance(Y, RECIPIENT) == 10
        assert len(chain.events) == 1

    @pytest.mark.asyncio
    async def test_partial_top_up(self, dispatcher, chain, config):
        chain.mint(config.get_asset('X'), RECIPIENT, 3)
        chain.mint(config.get_asset('Y'), RECIPIENT, 50)

        result = await dispatcher.distribute(RECIPIENT)

        assert {t.asset: t.amount for t in result.transfers} == {'NATIVE': ONE_NATIVE, 'X': 2}
        assert chain.token_balance(X, RECIPIENT) == 5
        assert chain.token_balance(Y, RECIPIENT) == 50

    @pytest.mark.asyncio
    async def test_quota_consumed_on_success(self, dispatcher):
        await dispatcher.distribute(RECIPIENT)
        assert dispatcher.rate_limiter.recorded_count(RECIPIENT.lower()) == 1


class TestLedgerADistribution:
    """bech32 recipients are served with one multi-coin bank send."""

    @pytest.mark.asyncio
    async def test_bech32_recipient(self, dispatcher, chain):
        recipient_a = to_environment_a(OTHER, "cosmos")
        transactions_before = len(chain.transactions)

        result = await dispatcher.distribute(recipient_a)

        assert result.success
        assert result.environment == "ledger_a"
        assert result.recipient == recipient_a
        assert {t.asset: t.amount for t in result.transfers} == {'NATIVE': ONE_NATIVE, 'X': 5, 'Z': 2}
        assert len(chain.transactions) == transactions_before + 1
        assert chain.transactions[-1].kind == 'bank_send'

        assert chain.bank_balance(recipient_a, "atest") == ONE_NATIVE
        assert chain.bank_balance(recipient_a, "xdenom") == 5
        assert chain.bank_balance(recipient_a, "zdenom") == 2

    @pytest.mark.asyncio
    async def test_y_is_not_sent_to_ledger_a(self, dispatcher, chain):
        recipient_a = to_environment_a(OTHER, "cosmos")
        await dispatcher.distribute(recipient_a)
        assert chain.token_balance(Y, OTHER) == 0


class TestNoop:
    """Recipients already at every target."""

    @pytest.mark.asyncio
    async def test_noop_makes_no_chain_writes(self, dispatcher, chain, config):
        fund_to_targets(chain, config, RECIPIENT)
        transactions_before = len(chain.transactions)

        result = await dispatcher.distribute(RECIPIENT)

        assert result.success
        assert result.noop
        assert result.state == DispatchState.NOOP_COMPLETE
        assert result.transfers == []
        assert len(chain.transactions) == transactions_before

    @pytest.mark.asyncio
    async def test_noop_does_not_consume_quota(self, dispatcher, chain, config):
        fund_to_targets(chain, config, RECIPIENT)

        await dispatcher.distribute(RECIPIENT)

        assert dispatcher.rate_limiter.recorded_count(RECIPIENT.lower()) == 0
        assert dispatcher.rate_limiter.check_admission(RECIPIENT.lower()).allowed


class TestFailures:
    """Failures are reported, never partially applied, never charged."""

    @pytest.mark.asyncio
    async def test_invalid_address_stops_before_planning(self, dispatcher):
        dispatcher.reconciler.plan_distribution = AsyncMock()

        result = await dispatcher.distribute("0xnot-an-address")

        assert not result.success
        assert result.error_kind == ErrorKind.INVALID_ADDRESS
        assert result.environment == "invalid"
        assert result.recipient == "0xnot-an-address"
        dispatcher.reconciler.plan_distribution.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_second_request_is_rate_limited(self, dispatcher):
        await dispatcher.distribute(RECIPIENT)

        # Same account in the other encoding
        result = await dispatcher.distribute(to_environment_a(RECIPIENT, "cosmos"))

        assert not result.success
        assert result.error_kind == ErrorKind.RATE_LIMITED
        assert result.retry_after_seconds > 0

    @pytest.mark.asyncio
    async def test_concurrent_requests_one_admitted(self, dispatcher):
        results = await asyncio.gather(
            dispatcher.distribute(RECIPIENT),
            dispatcher.distribute(RECIPIENT.lower()),
        )
        assert [r.success for r in results].count(True) == 1
        assert any(r.error_kind == ErrorKind.RATE_LIMITED for r in results)

    @pytest.mark.asyncio
    async def test_contract_revert_leaves_recipient_untouched(self, dispatcher, chain):
        chain.freeze_token(Y)

        result = await dispatcher.distribute(RECIPIENT)

        assert not result.success
        assert result.error_kind == ErrorKind.CONTRACT_REVERTED
        assert "asset=Y" in result.message
        assert chain.native_balance(RECIPIENT) == 0
        assert chain.token_balance(X, RECIPIENT) == 0
        assert chain.events == []

    @pytest.mark.asyncio
    async def test_contract_revert_does_not_consume_quota(self, dispatcher):
        dispatcher.invoker.execute = AsyncMock(side_effect=ContractReverted("execution reverted"))

        result = await dispatcher.distribute(RECIPIENT)

        assert result.error_kind == ErrorKind.CONTRACT_REVERTED
        assert dispatcher.rate_limiter.check_admission(RECIPIENT.lower()).allowed

    @pytest.mark.asyncio
    async def test_under_approved_token_caught_before_submission(self, dispatcher, chain, session):
        chain.approve(session.ledger_b_address, Y, chain.contract_address, 1)
        transactions_before = len(chain.transactions)

        result = await dispatcher.distribute(RECIPIENT)

        assert result.error_kind == ErrorKind.INSUFFICIENT_OPERATOR_FUNDS
        assert "asset=Y" in result.message
        assert len(chain.transactions) == transactions_before
        assert chain.native_balance(RECIPIENT) == 0

    @pytest.mark.asyncio
    async def test_balance_query_error(self, dispatcher):
        source = Mock()
        source.get_balances = AsyncMock(side_effect=ConnectionError("rpc down"))
        dispatcher.reconciler.balance_sources[Environment.LEDGER_B] = source

        result = await dispatcher.distribute(RECIPIENT)

        assert result.error_kind == ErrorKind.BALANCE_QUERY_ERROR
        assert dispatcher.rate_limiter.check_admission(RECIPIENT.lower()).allowed

    @pytest.mark.asyncio
    async def test_unexpected_error_is_reported(self, dispatcher):
        dispatcher.invoker.execute = AsyncMock(side_effect=RuntimeError("boom"))

        result = await dispatcher.distribute(RECIPIENT)

        assert result.state == DispatchState.FAILED
        assert result.error_kind == ErrorKind.CHAIN_SUBMISSION_ERROR
        assert "boom" in result.message
        assert dispatcher.rate_limiter.check_admission(RECIPIENT.lower()).allowed


class TestHistoryAndLifecycle:
    """History recording and shutdown."""

    @pytest.mark.asyncio
    async def test_results_are_recorded(self, dispatcher, history):
        success = await dispatcher.distribute(RECIPIENT)
        await dispatcher.distribute("bogus")

        record = history.get_distribution(success.request_id)
        assert record['state'] == "COMPLETED"
        assert {t['asset']: t['amount'] for t in record['transfers']} == {'NATIVE': ONE_NATIVE, 'X': 5, 'Y': 10}

        stats = history.get_statistics()
        assert stats['total_requests'] == 2
        assert stats['failures_by_kind'] == {'InvalidAddress': 1}

    @pytest.mark.asyncio
    async def test_result_to_dict(self, dispatcher):
        data = (await dispatcher.distribute(RECIPIENT)).to_dict()
        assert data['state'] == "COMPLETED"
        assert data['error_kind'] is None
        assert {'asset': 'X', 'amount': '5', 'tx_reference': data['transfers'][0]['tx_reference']} in data['transfers']

    @pytest.mark.asyncio
    async def test_testing_mode_sends_one_unit(self, session):
        raw = make_raw_config()
        raw['faucet'] = {'testing_mode': True}
        dispatcher = Dispatcher.from_config(parse_config(raw), session)

        result = await dispatcher.distribute(RECIPIENT)

        assert {t.asset: t.amount for t in result.transfers} == {'NATIVE': 1, 'X': 1, 'Y': 1}

    @pytest.mark.asyncio
    async def test_new_dispatcher_restores_window_from_history(self, config, session, history):
        """A restarted faucet (or a second CLI run) still sees earlier deliveries."""
        first = Dispatcher.from_config(config, session, history=history)
        assert (await first.distribute(RECIPIENT)).success

        second = Dispatcher.from_config(config, session, history=history)
        result = await second.distribute(to_environment_a(RECIPIENT, "cosmos"))

        assert result.error_kind == ErrorKind.RATE_LIMITED
        assert result.retry_after_seconds > 0

    @pytest.mark.asyncio
    async def test_failed_distribution_is_not_restored(self, config, session, history, chain):
        first = Dispatcher.from_config(config, session, history=history, local_chain=chain)
        chain.freeze_token(Y)
        assert not (await first.distribute(RECIPIENT)).success

        second = Dispatcher.from_config(config, session, history=history)
        assert second.rate_limiter.check_admission(RECIPIENT.lower()).allowed

    @pytest.mark.asyncio
    async def test_graceful_shutdown_closes_history(self, dispatcher, history):
        await graceful_shutdown(dispatcher, timeout=1)
        assert history.conn is None
