# chainarb/config.py
import copy
import os
from typing import Any, Dict, List, Optional, Tuple

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_PATH = "config.yaml"

DEFAULT_CONFIG: Dict[str, Any] = {
    'system': {
        'dry_run': True,
        'environment': 'testnet',
        'cycle_interval_s': 15,
        'log_level': 'INFO',
    },
    'performance': {
        'network_timeout_ms': 10000,
    },
    'chains': {},
    'assets': {},
    'aggregation': {
        'agreement_tolerance': 0.02,   # 2% relative difference
        'synthetic_spread': 0.001,     # 0.1% of price when no venue has a book
        'history_max_points': 100,
    },
    'scoring': {
        'min_history_points': 10,
        'short_ma_period': 5,
        'long_ma_period': 10,
        'rsi_period': 14,
        'momentum_lookback': 6,
        'trend_band': 0.02,
        'rsi_oversold': 30,
        'rsi_overbought': 70,
        'signal_volume_ratio': 1.2,
        'signal_momentum': 0.1,
        # piecewise sentiment impact, checked in order
        'sentiment_bands': [
            [80, 'gt', 0.12],
            [70, 'gt', 0.06],
            [60, 'gt', 0.03],
            [20, 'lt', -0.15],
            [30, 'lt', -0.08],
            [40, 'lt', -0.04],
        ],
        'momentum_weight': 0.5,
        'rsi_bands': [
            [25, 'lt', 0.08],
            [35, 'lt', 0.04],
            [75, 'gt', -0.06],
            [65, 'gt', -0.03],
        ],
        'trend_confirmation': 0.05,
        'volume_amplify_above': 1.5,
        'volume_amplify_factor': 1.3,
        'volume_damp_below': 0.7,
        'volume_damp_factor': 0.7,
        'structure_cap': 0.05,
        'tight_spread': 0.001,
        'wide_spread': 0.01,
        'spread_impact': 0.02,
        'volume_trend_weight': 0.1,
        'horizon_decay_hours': 168,
        'external_weight': 0.5,
        'prediction_horizon_hours': 24,
    },
    'detection': {
        'min_profit_pct': 0.03,
        'opportunity_ttl_s': 300,
        'min_confidence': 0.2,
    },
    'risk_compliance': {
        'starting_balance': 1000.0,
        'liquidity_fraction': 0.10,
        'max_position_size': 500.0,
        'max_total_exposure': 1000.0,
        'max_market_exposure': 1000.0,
        'max_chain_exposure': 1000.0,
        'max_daily_volume_fraction': 0.10,
        'max_spread_pct': 0.05,
        'stop_loss_pct': 0.10,
        'cross_chain_fee_rate': 0.01,
        'min_net_profit': 0.0,
        'max_daily_drawdown': 100.0,
        'max_consecutive_failures': 5,
    },
    'messaging': {
        'max_retries': 3,
        'retry_base_delay_s': 1.0,
        'monitoring_interval_s': 5.0,
        'status_stale_after_s': 1200,
        'fee_buffer_pct': 10,
        'relay_url': '',
    },
    'encoding': {
        'decimals': 18,
    },
    'audit': {
        'trade_log': 'logs/trades.csv',
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def validate_config(cfg: Dict[str, Any]) -> Tuple[bool, List[str]]:
    """
    Check ranges and cross-field constraints.

    Returns:
        tuple: (is_valid, list_of_errors)
    """
    errors: List[str] = []
    risk = cfg['risk_compliance']
    detection = cfg['detection']

    if detection['min_profit_pct'] <= 0:
        errors.append("detection.min_profit_pct must be positive")
    if detection['opportunity_ttl_s'] <= 0:
        errors.append("detection.opportunity_ttl_s must be positive")
    if not (0 < risk['liquidity_fraction'] <= 1):
        errors.append("risk_compliance.liquidity_fraction must be in (0, 1]")
    if not (0 < risk['stop_loss_pct'] < 1):
        errors.append("risk_compliance.stop_loss_pct must be in (0, 1)")
    if risk['max_position_size'] <= 0 or risk['max_total_exposure'] <= 0:
        errors.append("risk_compliance position/exposure limits must be positive")
    if risk['cross_chain_fee_rate'] < 0:
        errors.append("risk_compliance.cross_chain_fee_rate cannot be negative")
    if cfg['messaging']['max_retries'] < 0:
        errors.append("messaging.max_retries cannot be negative")
    if cfg['encoding']['decimals'] not in (6, 18):
        errors.append("encoding.decimals must be 6 or 18")
    if cfg['performance']['network_timeout_ms'] <= 0:
        errors.append("performance.network_timeout_ms must be positive")

    for asset, spec in cfg['assets'].items():
        chains = spec.get('chains', {})
        if len(chains) < 2:
            errors.append(f"assets.{asset} needs at least 2 chains for arbitrage")
        for chain in chains:
            if cfg['chains'] and chain not in cfg['chains']:
                errors.append(f"assets.{asset}.chains.{chain} is not a configured chain")

    return (len(errors) == 0, errors)


def load_config(path: Optional[str] = None) -> Dict[str, Any]:
    """Read YAML over the defaults. A missing file yields the defaults."""
    path = path or DEFAULT_CONFIG_PATH
    raw: Dict[str, Any] = {}
    if os.path.exists(path):
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    cfg = _deep_merge(DEFAULT_CONFIG, raw)
    ok, errors = validate_config(cfg)
    if not ok:
        raise ConfigError("; ".join(errors))
    return cfg


def network_timeout(cfg: Dict[str, Any]) -> float:
    """Per-call timeout in seconds."""
    return cfg['performance']['network_timeout_ms'] / 1000.0
