"""
Configuration from .env, config.json and the environment.
"""
import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

import base58
import dotenv
from solders.keypair import Keypair

from .cache_store import network_from_rpc_url
from .constants import ARB_SLEEP_SECONDS, DEFAULT_FLM_PROGRAM_ID, DEFAULT_RPC_URL

logger = logging.getLogger(__name__)

PROJECT_ROOT = Path(__file__).parent.parent


@dataclass
class BotConfig:
    """Runtime settings. Environment variables override config.json."""
    rpc_url: str = DEFAULT_RPC_URL
    fallback_rpc_url: Optional[str] = None
    flm_program_id: str = DEFAULT_FLM_PROGRAM_ID
    jupiter_api_url: Optional[str] = None  # None = endpoint fallback list
    jupiter_api_key: Optional[str] = None
    cache_dir: Path = PROJECT_ROOT / 'cache'
    priority_fee_lamports: int = 0
    arb_sleep_seconds: float = ARB_SLEEP_SECONDS
    log_file: str = 'flash_arb.log'

    @property
    def network(self) -> str:
        return network_from_rpc_url(self.rpc_url)


def load_json_config(config_path: Optional[Path] = None) -> Dict[str, Any]:
    """Load config.json, or an empty dict when it is absent."""
    config_path = config_path or PROJECT_ROOT / 'config.json'
    if not config_path.exists():
        logger.debug(f"config.json not found at {config_path}")
        return {}
    with open(config_path, 'r') as f:
        return json.load(f)


def load_config(env_path: Optional[Path] = None, config_path: Optional[Path] = None) -> BotConfig:
    """
    Build a BotConfig from .env, config.json and the process environment.

    Raises:
        ValueError: If a numeric setting cannot be parsed
    """
    env_path = env_path or PROJECT_ROOT / '.env'
    if env_path.exists():
        dotenv.load_dotenv(env_path)
    else:
        logger.debug(f".env file not found at {env_path}")

    config = load_json_config(config_path)
    defaults = BotConfig()

    def setting(env_name: str, config_key: str, default: Any) -> Any:
        value = os.getenv(env_name)
        if value is not None and value.strip():
            return value.strip()
        return config.get(config_key, default)

    rpc_url = os.getenv('RPC_URL') or os.getenv('RPC_URI') or config.get('rpc_url', defaults.rpc_url)
    try:
        return BotConfig(
            rpc_url=rpc_url,
            fallback_rpc_url=setting('FALLBACK_RPC_URL', 'fallback_rpc_url', None),
            flm_program_id=setting('FLM_PROGRAM_ID', 'flm_program_id', defaults.flm_program_id),
            jupiter_api_url=setting('JUPITER_API_URL', 'jupiter_api_url', None),
            jupiter_api_key=setting('JUPITER_API_KEY', 'jupiter_api_key', None),
            cache_dir=Path(setting('CACHE_DIR', 'cache_dir', defaults.cache_dir)),
            priority_fee_lamports=int(setting('PRIORITY_FEE_LAMPORTS', 'priority_fee_lamports', 0)),
            arb_sleep_seconds=float(setting('ARB_SLEEP_SECONDS', 'arb_sleep_seconds', defaults.arb_sleep_seconds)),
            log_file=setting('LOG_FILE', 'log_file', defaults.log_file)
        )
    except ValueError as e:
        raise ValueError(f"Invalid configuration value: {e}") from e


def load_wallet(keypair_path: Optional[str] = None, private_key_str: Optional[str] = None) -> Optional[Keypair]:
    """
    Load the wallet from a JSON secret key file or a base58 private key.

    The file takes precedence; otherwise WALLET_PRIVATE_KEY is used.

    Returns:
        Keypair, or None if no key is configured or it cannot be decoded
    """
    if keypair_path:
        try:
            with open(keypair_path, 'r') as f:
                secret = json.load(f)
            return Keypair.from_bytes(bytes(secret))
        except (OSError, TypeError, ValueError) as e:
            logger.error(f"Error loading keypair file {keypair_path}: {e}")
            return None

    if not private_key_str:
        private_key_str = os.getenv('WALLET_PRIVATE_KEY')

    if not private_key_str:
        logger.warning("No wallet private key provided")
        return None

    try:
        return Keypair.from_bytes(base58.b58decode(private_key_str))
    except ValueError as e:
        logger.error(f"Error loading wallet: {e}")
        return None
