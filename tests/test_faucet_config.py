"""
Tests for configuration loading and validation.
"""

import pytest
import yaml
from eth_utils import to_checksum_address

from dual_faucet.address_translator import Environment
from dual_faucet.errors import ConfigError
from dual_faucet.faucet_config import (
    NATIVE_TOKEN_SENTINEL,
    load_config,
    parse_amount,
    parse_config,
)

from conftest import CONTRACT, TOKEN_X, make_raw_config


class TestParseConfig:
    """parse_config() on valid input."""

    def test_sections(self, config):
        assert config.network_mode == 'local'
        assert config.chain.bech32_prefix == 'cosmos'
        assert config.chain.evm_chain_id == 262144
        assert config.ledger_a.rest_endpoint == 'http://localhost:1317'
        assert config.ledger_b.atomic_multisend.lower() == CONTRACT
        assert config.limits.window_seconds == 12 * 3600
        assert config.limits.ip == 10

    def test_assets_in_order(self, config):
        assert [asset.symbol for asset in config.assets] == ['NATIVE', 'X', 'Y', 'Z']

    def test_token_addresses_are_checksummed(self, config):
        assert config.get_asset("X").erc20_contract == to_checksum_address(TOKEN_X)
        assert config.ledger_b.atomic_multisend == to_checksum_address(CONTRACT)

    def test_native_sentinel_recognized(self, config):
        native = config.get_asset('NATIVE')
        assert native.is_native
        assert native.erc20_contract == NATIVE_TOKEN_SENTINEL
        assert native.target_balance == 10 ** 18

    def test_assets_for_environment(self, config):
        assert [a.symbol for a in config.assets_for(Environment.LEDGER_A)] == ['NATIVE', 'X', 'Z']
        assert [a.symbol for a in config.assets_for(Environment.LEDGER_B)] == ['NATIVE', 'X', 'Y']

    def test_defaults_for_optional_sections(self, raw_config):
        del raw_config['limits']
        config = parse_config(raw_config)
        assert config.limits.address == 1
        assert config.logging.level == 'INFO'
        assert config.history.db_path == '.faucet/history.db'
        assert config.testing_mode is False

    def test_ip_limit_disabled_with_zero(self, raw_config):
        raw_config['limits']['ip'] = 0
        assert parse_config(raw_config).limits.ip is None

    def test_testing_mode(self, raw_config):
        raw_config['faucet'] = {'testing_mode': True}
        assert parse_config(raw_config).testing_mode

    def test_unknown_symbol(self, config):
        with pytest.raises(KeyError):
            config.get_asset('NOPE')


class TestConfigErrors:
    """Missing or malformed fields raise ConfigError."""

    @pytest.mark.parametrize("section", ['network', 'chain', 'ledger_a', 'ledger_b'])
    def test_missing_section(self, raw_config, section):
        del raw_config[section]
        with pytest.raises(ConfigError, match=section):
            parse_config(raw_config)

    def test_missing_prefix(self, raw_config):
        del raw_config['chain']['bech32_prefix']
        with pytest.raises(ConfigError, match="bech32_prefix"):
            parse_config(raw_config)

    def test_uppercase_prefix(self, raw_config):
        raw_config['chain']['bech32_prefix'] = 'Cosmos'
        with pytest.raises(ConfigError):
            parse_config(raw_config)

    def test_bad_mode(self, raw_config):
        raw_config['network']['mode'] = 'mainnet'
        with pytest.raises(ConfigError, match="network.mode"):
            parse_config(raw_config)

    def test_no_assets(self, raw_config):
        raw_config['assets'] = []
        with pytest.raises(ConfigError, match="assets"):
            parse_config(raw_config)

    def test_asset_without_reference(self, raw_config):
        raw_config['assets'].append({'symbol': 'Q', 'decimals': 6, 'amount_per_request': 1, 'target_balance': 1})
        with pytest.raises(ConfigError, match="Q"):
            parse_config(raw_config)

    def test_duplicate_symbols(self, raw_config):
        raw_config['assets'].append(dict(raw_config['assets'][1]))
        with pytest.raises(ConfigError, match="Duplicate"):
            parse_config(raw_config)

    def test_two_native_assets(self, raw_config):
        extra = dict(raw_config['assets'][0])
        extra['symbol'] = 'NATIVE2'
        raw_config['assets'].append(extra)
        with pytest.raises(ConfigError, match="native"):
            parse_config(raw_config)

    def test_bad_contract_address(self, raw_config):
        raw_config['ledger_b']['atomic_multisend'] = '0x1234'
        with pytest.raises(ConfigError, match="atomic_multisend"):
            parse_config(raw_config)

    def test_evm_decimals_only_for_native(self, raw_config):
        raw_config['assets'][1]['evm_decimals'] = 18
        with pytest.raises(ConfigError, match="evm_decimals"):
            parse_config(raw_config)

    def test_root_must_be_mapping(self):
        with pytest.raises(ConfigError):
            parse_config(["not", "a", "mapping"])

    @pytest.mark.parametrize("section,key,value", [
        ('chain', 'tx_timeout_seconds', 'soon'),
        ('chain', 'poll_interval_seconds', 0),
        ('ledger_a', 'request_timeout_seconds', [1]),
        ('ledger_b', 'request_timeout_seconds', -3),
        ('limits', 'window_hours', True),
        ('logging', 'retention', 'forever'),
        ('health', 'cache_minutes', 'nan'),
    ])
    def test_malformed_numbers(self, raw_config, section, key, value):
        raw_config.setdefault(section, {})[key] = value
        with pytest.raises(ConfigError, match=f"{section}.{key}"):
            parse_config(raw_config)

    def test_numeric_strings_accepted(self, raw_config):
        raw_config['chain']['tx_timeout_seconds'] = '30'
        raw_config['limits']['window_hours'] = 0.5

        config = parse_config(raw_config)

        assert config.chain.tx_timeout_seconds == 30.0
        assert config.limits.window_seconds == 1800


class TestParseAmount:
    """Amounts are exact integers."""

    def test_int_and_digit_string(self):
        assert parse_amount(5, 'x') == 5
        assert parse_amount("1000000000000000000000", 'x') == 10 ** 21

    @pytest.mark.parametrize("value", [1.5, "1e18", True, -1, "abc", None])
    def test_rejected(self, value):
        with pytest.raises(ConfigError):
            parse_amount(value, 'x')


class TestLoadConfig:
    """load_config() from YAML files."""

    def test_load_from_file(self, tmp_path):
        path = tmp_path / "faucet.yaml"
        path.write_text(yaml.safe_dump(make_raw_config()))

        config = load_config(str(path))

        assert config.network_name == 'testnet'
        assert len(config.assets) == 4

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            load_config(str(tmp_path / "missing.yaml"))

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("network: [unclosed")
        with pytest.raises(ConfigError, match="YAML"):
            load_config(str(path))
