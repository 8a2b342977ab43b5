"""JSON configuration.

Example::

    {
      "db_path": "./deposits.db",
      "poll_interval": 5,
      "reconcile": {"retry_interval": 30, "max_retry_window": 3600},
      "notifications": {"webhook_url": "https://example.invalid/hooks/deposits"},
      "chains": [
        {"name": "base-sepolia", "family": "evm", "chain_id": "84532",
         "rpc_http": "https://sepolia.base.org", "contract": "0x...",
         "start_position": 12000000, "confirmation_depth": 12},
        {"name": "sui-testnet", "family": "sui", "chain_id": "sui-testnet",
         "rpc_http": "https://fullnode.testnet.sui.io", "contract": "0x...",
         "module": "payment_vault"}
      ]
    }
"""

from typing import Any, Dict, List

from deposit_indexer.errors import ConfigurationError
from deposit_indexer.util import load_json

DEFAULTS: Dict[str, Any] = {
    "db_path": "./deposits.db",
    "batch_size": 100,
    "poll_interval": 5,
    "request_timeout": 30,
    "max_attempts": 5,
    "retry_base_delay": 1.0,
    "retry_max_delay": 60.0,
    "busy_timeout": 30,
}

RECONCILE_DEFAULTS: Dict[str, Any] = {
    "retry_interval": 30,
    "max_retry_interval": 600,
    "max_retry_window": 3600,
    "settle_inline": True,
    "order_expiry": None,
    "sweep_interval": 15,
}

NOTIFICATION_DEFAULTS: Dict[str, Any] = {
    "webhook_url": None,
    "interval": 60,
    "timeout": 10,
}

SCANNER_KEYS = (
    "batch_size",
    "poll_interval",
    "request_timeout",
    "max_attempts",
    "retry_base_delay",
    "retry_max_delay",
)


def load_config(path: str) -> Dict[str, Any]:
    try:
        raw = load_json(path)
    except (OSError, ValueError) as exc:
        raise ConfigurationError(f"cannot read config {path}: {exc}") from exc
    return normalize_config(raw)


def normalize_config(raw: Dict[str, Any]) -> Dict[str, Any]:
    if not isinstance(raw, dict):
        raise ConfigurationError("config must be a JSON object")
    cfg = dict(DEFAULTS)
    cfg.update({k: v for k, v in raw.items() if k not in ("reconcile", "notifications", "chains")})
    cfg["reconcile"] = {**RECONCILE_DEFAULTS, **(raw.get("reconcile") or {})}
    cfg["notifications"] = {**NOTIFICATION_DEFAULTS, **(raw.get("notifications") or {})}
    chains = raw.get("chains")
    if not chains or not isinstance(chains, list):
        raise ConfigurationError("config.chains is empty")
    cfg["chains"] = [dict(chain) for chain in chains if isinstance(chain, dict)]
    if len(cfg["chains"]) != len(chains):
        raise ConfigurationError("every entry of config.chains must be an object")
    return cfg


def scanner_settings(cfg: Dict[str, Any], chain: Dict[str, Any]) -> Dict[str, Any]:
    """Global scan settings overlaid with the chain's own values."""
    settings = {key: cfg.get(key) for key in SCANNER_KEYS}
    for key in SCANNER_KEYS:
        if chain.get(key) is not None:
            settings[key] = chain[key]
    settings["start_position"] = chain.get("start_position", 0)
    settings["confirmation_depth"] = chain.get("confirmation_depth")
    for key in ("batch_size", "start_position", "max_attempts"):
        try:
            settings[key] = int(settings[key])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"chain {chain.get('name')}: {key} must be an integer") from exc
    if settings["confirmation_depth"] is not None:
        try:
            settings["confirmation_depth"] = int(settings["confirmation_depth"])
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"chain {chain.get('name')}: confirmation_depth must be an integer") from exc
    return settings


def chain_names(cfg: Dict[str, Any]) -> List[str]:
    return [chain.get("name") or str(chain.get("chain_id")) for chain in cfg["chains"]]
