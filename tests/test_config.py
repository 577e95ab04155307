"""
Config Loading / Validation Tests
"""
import copy
from pathlib import Path

import pytest
import yaml

from chainarb.config import DEFAULT_CONFIG, load_config, network_timeout, validate_config
from chainarb.errors import ConfigError
from chainarb.market_engine import MarketEngine, SourceRegistry, default_registry


class TestLoadConfig:
    def test_missing_file_yields_defaults(self, tmp_path):
        cfg = load_config(str(tmp_path / "absent.yaml"))
        assert cfg['detection']['min_profit_pct'] == 0.03
        assert cfg['encoding']['decimals'] == 18

    def test_file_overrides_merge_over_defaults(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({'risk_compliance': {'stop_loss_pct': 0.2}}))
        cfg = load_config(str(path))

        assert cfg['risk_compliance']['stop_loss_pct'] == 0.2
        assert cfg['risk_compliance']['max_total_exposure'] == 1000.0
        assert DEFAULT_CONFIG['risk_compliance']['stop_loss_pct'] == 0.10

    def test_invalid_values_raise(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump({'encoding': {'decimals': 8}}))
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_non_mapping_rejected(self, tmp_path):
        path = tmp_path / "config.yaml"
        path.write_text("- just\n- a list\n")
        with pytest.raises(ConfigError):
            load_config(str(path))

    def test_shipped_config_is_valid(self):
        cfg = load_config(str(Path(__file__).resolve().parent.parent / "config.yaml"))
        assert set(cfg['assets']) >= {'ETH', 'BTC'}

    def test_network_timeout_in_seconds(self):
        assert network_timeout(DEFAULT_CONFIG) == 10.0


class TestValidateConfig:
    def test_single_chain_asset_flagged(self):
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        cfg['assets'] = {'ETH': {'chains': {'ethereum': []}}}
        ok, errors = validate_config(cfg)
        assert not ok
        assert any("at least 2 chains" in e for e in errors)

    def test_unknown_chain_flagged(self):
        cfg = copy.deepcopy(DEFAULT_CONFIG)
        cfg['chains'] = {'ethereum': {}}
        cfg['assets'] = {'ETH': {'chains': {'ethereum': [], 'solana': []}}}
        ok, errors = validate_config(cfg)
        assert not ok
        assert any("solana" in e for e in errors)


class TestSourceRegistry:
    def test_default_keys(self):
        assert default_registry().keys() == sorted([
            'binance', 'ccxt', 'coinbase', 'coingecko_history', 'coingecko_sentiment',
            'dexscreener', 'fear_greed', 'polymarket',
        ])

    def test_unknown_key_is_config_error(self):
        with pytest.raises(ConfigError):
            SourceRegistry().create({'type': 'nope'})

    def test_market_engine_builds_from_config(self, config, logger):
        market = MarketEngine(config, logger, registry=_fake_registry())
        market.build_sources()
        assert market.chains_for('YES') == ['polygon', 'arbitrum']
        assert len(market.price_sources['YES']['polygon']) == 1


def _fake_registry():
    from chainarb.market_engine import PriceSource
    registry = SourceRegistry()
    registry.register('fake', PriceSource)
    return registry
