"""
Shared fixtures: a local-mode configuration, the operator session and a
bootstrapped LocalChain.
"""

import pytest

from dual_faucet.dispatcher import Dispatcher
from dual_faucet.distribution_history import DistributionHistoryDB
from dual_faucet.faucet_config import NATIVE_TOKEN_SENTINEL, parse_config
from dual_faucet.local_chain import LocalChain
from dual_faucet.operator_session import OperatorSession


TEST_PRIVATE_KEY = "0x4c0883a69102937d6231471b5dbb6204fe5129617082792ae468d01a3f362318"

TOKEN_X = "0x" + "11" * 20
TOKEN_Y = "0x" + "22" * 20
CONTRACT = "0x" + "ab" * 20

# Fresh recipient (EIP-55 test vector)
RECIPIENT = "0x5aAeb6053F3E94C9b9A09f33669435E7Ef1BeAed"


def make_raw_config():
    return {
        'network': {'name': 'testnet', 'mode': 'local'},
        'chain': {
            'evm_chain_id': 262144,
            'cosmos_chain_id': 'cosmos_262144-1',
            'bech32_prefix': 'cosmos',
            'tx_timeout_seconds': 5,
            'poll_interval_seconds': 0.01,
        },
        'ledger_a': {
            'rest_endpoint': 'http://localhost:1317/',
            'fee_denom': 'atest',
            'fee_amount': 5000,
        },
        'ledger_b': {
            'rpc_endpoint': 'http://localhost:8545',
            'atomic_multisend': CONTRACT,
        },
        'limits': {'window_hours': 12, 'address': 1, 'ip': 10},
        'assets': [
            {
                'symbol': 'NATIVE',
                'denom': 'atest',
                'erc20_contract': NATIVE_TOKEN_SENTINEL,
                'decimals': 18,
                'amount_per_request': '1000000000000000000',
                'target_balance': '1000000000000000000',
            },
            {
                'symbol': 'X',
                'denom': 'xdenom',
                'erc20_contract': TOKEN_X,
                'decimals': 6,
                'amount_per_request': 5,
                'target_balance': 5,
            },
            {
                'symbol': 'Y',
                'erc20_contract': TOKEN_Y,
                'decimals': 6,
                'amount_per_request': 10,
                'target_balance': 10,
            },
            {
                'symbol': 'Z',
                'denom': 'zdenom',
                'decimals': 6,
                'amount_per_request': 2,
                'target_balance': 2,
            },
        ],
    }


@pytest.fixture
def raw_config():
    return make_raw_config()


@pytest.fixture
def config(raw_config):
    return parse_config(raw_config)


@pytest.fixture
def session(config):
    return OperatorSession.from_private_key(TEST_PRIVATE_KEY, config.chain.bech32_prefix)


@pytest.fixture
def chain(config, session):
    return LocalChain.from_config(config, session.ledger_b_address)


@pytest.fixture
def history():
    db = DistributionHistoryDB(":memory:")
    yield db
    db.close()


@pytest.fixture
def dispatcher(config, session, chain, history):
    return Dispatcher.from_config(config, session, history=history, local_chain=chain)
