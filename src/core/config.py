"""
Configuration loading for the copy-follow engine.

Settings live in ``config.yaml`` at the project root; exchange credentials
live in the environment (optionally a ``.env`` file loaded with
python-dotenv) and are never written to the YAML file.

Credential variables:
    - Testnet: BINANCE_TESTNET_API_KEY, BINANCE_TESTNET_API_SECRET
    - Mainnet: BINANCE_MAINNET_API_KEY, BINANCE_MAINNET_API_SECRET
"""

import os
from pathlib import Path
from typing import Optional, Tuple, Union

import yaml
from dotenv import load_dotenv
from loguru import logger
from pydantic import BaseModel, Field, ValidationError

from .models import MarginType


PROJECT_ROOT = Path(__file__).parent.parent.parent
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"

_PLACEHOLDER_TEXTS = ["your_", "_here", "placeholder"]


class ConfigError(Exception):
    """
    Raised when config.yaml is missing or invalid.

    This indicates a configuration problem that must be fixed before the
    engine can run.
    """
    pass


class CredentialError(Exception):
    """Raised when exchange credentials are missing or still placeholders."""
    pass


class FollowerConfig(BaseModel):
    """
    Validated follower settings.

    Attributes:
        agent_name: Followed agent, if fixed by configuration
        use_testnet: Trade on Binance futures testnet
        risk_only: Assess risk without placing orders
        price_tolerance: Allowed entry-price drift in percent
        allocation_fraction: Share of available balance committed per ENTER
        margin_type: Margin mode applied to follower positions
        ledger_path: SQLite file of the idempotency ledger
        plan_deadline_seconds: Deadline for processing one follow plan
        total_margin: Informational total margin budget in USDT
    """

    agent_name: Optional[str] = None
    use_testnet: bool = True
    risk_only: bool = False
    price_tolerance: float = Field(default=1.0, gt=0)
    allocation_fraction: float = Field(default=0.2, gt=0, le=1)
    margin_type: MarginType = MarginType.CROSSED
    ledger_path: str = "data/order_history.db"
    plan_deadline_seconds: float = Field(default=30.0, gt=0)
    total_margin: Optional[float] = Field(default=None, gt=0)

    def resolved_ledger_path(self, base: Optional[Path] = None) -> Path:
        """Ledger path, relative paths resolved against ``base`` (project root)."""
        path = Path(self.ledger_path)
        if path.is_absolute():
            return path
        return (base or PROJECT_ROOT) / path


def load_config(config_path: Optional[Union[str, Path]] = None) -> FollowerConfig:
    """
    Load and validate config.yaml.

    Args:
        config_path: Path to the YAML file. Defaults to config.yaml in the
            project root.

    Returns:
        FollowerConfig: Validated settings

    Raises:
        ConfigError: If the file is missing, empty, unparsable or invalid
    """
    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH

    if not path.exists():
        raise ConfigError(f"Configuration file not found: {path}")

    try:
        with open(path, "r") as f:
            raw = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse configuration file: {e}") from e

    if raw is None:
        raise ConfigError("Configuration file is empty")
    if not isinstance(raw, dict):
        raise ConfigError(
            f"Configuration root must be a mapping, got {type(raw).__name__}"
        )

    if "margin_type" in raw and isinstance(raw["margin_type"], str):
        raw["margin_type"] = raw["margin_type"].upper()

    try:
        config = FollowerConfig(**raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid configuration in {path}: {e}") from e

    logger.debug(f"Loaded configuration from {path}")
    return config


def load_credentials(
    use_testnet: bool,
    env_file: Optional[Union[str, Path]] = None,
) -> Tuple[str, str]:
    """
    Load Binance API credentials from the environment.

    Args:
        use_testnet: Select testnet or mainnet variables
        env_file: Optional .env file loaded first (existing variables win)

    Returns:
        Tuple of (api_key, api_secret)

    Raises:
        CredentialError: If a variable is missing or is a placeholder
    """
    if env_file is not None:
        load_dotenv(env_file, override=False)
    else:
        load_dotenv(PROJECT_ROOT / ".env", override=False)

    if use_testnet:
        api_key_var = "BINANCE_TESTNET_API_KEY"
        api_secret_var = "BINANCE_TESTNET_API_SECRET"
        env_name = "testnet"
    else:
        api_key_var = "BINANCE_MAINNET_API_KEY"
        api_secret_var = "BINANCE_MAINNET_API_SECRET"
        env_name = "mainnet"

    api_key = os.getenv(api_key_var)
    api_secret = os.getenv(api_secret_var)

    missing_vars = []
    if not api_key:
        missing_vars.append(api_key_var)
    if not api_secret:
        missing_vars.append(api_secret_var)

    if missing_vars:
        raise CredentialError(
            f"Missing required {env_name} credentials: {', '.join(missing_vars)}. "
            f"Please set these environment variables in your .env file or environment."
        )

    for var_name, value in [(api_key_var, api_key), (api_secret_var, api_secret)]:
        if any(placeholder in value.lower() for placeholder in _PLACEHOLDER_TEXTS):
            raise CredentialError(
                f"{var_name} appears to be a placeholder value. "
                f"Please set your actual {env_name} API credentials."
            )

    logger.debug(f"Loaded {env_name} credentials successfully")
    return api_key, api_secret
