"""Application configuration."""

import os
from pathlib import Path

from dotenv import load_dotenv


def _load_dotenv_safe(dotenv_path: str | None = None, *, override: bool = False) -> None:
    """Load dotenv using UTF-8-SIG so BOM-prefixed files don't break first key parsing."""
    try:
        load_dotenv(dotenv_path=dotenv_path, override=override, encoding="utf-8-sig")
    except TypeError:
        # Older python-dotenv versions may not expose the `encoding` argument.
        load_dotenv(dotenv_path=dotenv_path, override=override)


# Load base environment first, then optional per-instance override env file.
_load_dotenv_safe()
_BOT_ENV_FILE = os.getenv("BOT_ENV_FILE", "").strip()
if _BOT_ENV_FILE:
    _bot_env_path = Path(_BOT_ENV_FILE).expanduser()
    if not _bot_env_path.is_absolute():
        _bot_env_path = (Path.cwd() / _bot_env_path).resolve()
    if not _bot_env_path.exists():
        raise FileNotFoundError(f"BOT_ENV_FILE does not exist: {_bot_env_path}")
    if not _bot_env_path.is_file():
        raise IsADirectoryError(f"BOT_ENV_FILE is not a file: {_bot_env_path}")
    try:
        _load_dotenv_safe(str(_bot_env_path), override=True)
    except (OSError, UnicodeError, ValueError) as exc:
        raise RuntimeError(f"Failed to load BOT_ENV_FILE '{_bot_env_path}': {exc}") from exc


def _optional_fraction(name: str) -> float | None:
    raw = os.getenv(name, "").strip()
    if not raw:
        return None
    value = float(raw)
    if value <= 0:
        return None
    return min(0.99, value)


DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///trades.db")

# Solana ledger.
SOLANA_RPC_URL = os.getenv("SOLANA_RPC_URL", "https://api.mainnet-beta.solana.com")
RPC_TIMEOUT_SECONDS = max(1.0, float(os.getenv("RPC_TIMEOUT_SECONDS", "15")))
SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000

# Jupiter quote/swap gateway.
JUPITER_API_BASE = os.getenv("JUPITER_API_BASE", "https://lite-api.jup.ag/swap/v1").rstrip("/")
JUPITER_TIMEOUT_SECONDS = max(1.0, float(os.getenv("JUPITER_TIMEOUT_SECONDS", "10")))
GATEWAY_MIN_INTERVAL_SECONDS = max(0.0, float(os.getenv("GATEWAY_MIN_INTERVAL_SECONDS", "0.5")))
GATEWAY_RETRY_ATTEMPTS = max(1, int(os.getenv("GATEWAY_RETRY_ATTEMPTS", "3")))
GATEWAY_BACKOFF_BASE_SECONDS = max(0.0, float(os.getenv("GATEWAY_BACKOFF_BASE_SECONDS", "1.0")))
GATEWAY_RETRY_AFTER_DEFAULT_SECONDS = max(0.0, float(os.getenv("GATEWAY_RETRY_AFTER_DEFAULT_SECONDS", "5")))
CIRCUIT_FAILURE_THRESHOLD = max(1, int(os.getenv("CIRCUIT_FAILURE_THRESHOLD", "5")))
CIRCUIT_OPEN_SECONDS = max(1.0, float(os.getenv("CIRCUIT_OPEN_SECONDS", "60")))
HTTP_CONNECTOR_LIMIT = max(1, int(os.getenv("HTTP_CONNECTOR_LIMIT", "30")))

# Price source.
DEXSCREENER_API = os.getenv("DEXSCREENER_API", "https://api.dexscreener.com/latest/dex").rstrip("/")
PRICE_TIMEOUT_SECONDS = max(1.0, float(os.getenv("PRICE_TIMEOUT_SECONDS", "8")))
PRICE_MIN_INTERVAL_SECONDS = max(0.0, float(os.getenv("PRICE_MIN_INTERVAL_SECONDS", "0.2")))

# Swap building.
SLIPPAGE_BPS = max(1, min(5000, int(os.getenv("SLIPPAGE_BPS", "100"))))
PRIORITY_FEE_MAX_LAMPORTS = max(0, int(os.getenv("PRIORITY_FEE_MAX_LAMPORTS", "10000000")))
PRIORITY_FEE_LEVEL = os.getenv("PRIORITY_FEE_LEVEL", "veryHigh").strip() or "veryHigh"

# Fees.
BASE_NETWORK_FEE_LAMPORTS = max(0, int(os.getenv("BASE_NETWORK_FEE_LAMPORTS", "5000")))
BOT_FEE_FRACTION = max(0.0, min(0.5, float(os.getenv("BOT_FEE_FRACTION", "0.01"))))
FEE_TREASURY_WALLET = os.getenv("FEE_TREASURY_WALLET", "").strip()
FEE_REWARD_WALLET = os.getenv("FEE_REWARD_WALLET", "").strip()
FEE_TREASURY_SHARE = max(0.0, min(1.0, float(os.getenv("FEE_TREASURY_SHARE", "0.6"))))

# Transaction execution.
TX_EXECUTE_ATTEMPTS = max(1, int(os.getenv("TX_EXECUTE_ATTEMPTS", "3")))
TX_RETRY_DELAY_SECONDS = max(0.0, float(os.getenv("TX_RETRY_DELAY_SECONDS", "1.0")))
TX_CONFIRM_TIMEOUT_SECONDS = max(5.0, float(os.getenv("TX_CONFIRM_TIMEOUT_SECONDS", "90")))
TX_CONFIRM_POLL_SECONDS = max(0.1, float(os.getenv("TX_CONFIRM_POLL_SECONDS", "2")))

# Buy rate limit.
BUY_RATE_LIMIT = max(1, int(os.getenv("BUY_RATE_LIMIT", "5")))
BUY_RATE_WINDOW_SECONDS = max(1.0, float(os.getenv("BUY_RATE_WINDOW_SECONDS", "3600")))

# Exit rules and evaluation loop.
DEFAULT_STOP_LOSS_FRACTION = max(0.001, min(0.99, float(os.getenv("DEFAULT_STOP_LOSS_FRACTION", "0.1"))))
DEFAULT_TAKE_PROFIT_FRACTION = max(0.001, float(os.getenv("DEFAULT_TAKE_PROFIT_FRACTION", "0.2")))
DEFAULT_TRAILING_STOP_FRACTION = _optional_fraction("DEFAULT_TRAILING_STOP_FRACTION")
POSITION_EVAL_INTERVAL_SECONDS = max(1.0, float(os.getenv("POSITION_EVAL_INTERVAL_SECONDS", "15")))

# Signer used by the command line and the position monitor.
LIVE_PRIVATE_KEY = os.getenv("LIVE_PRIVATE_KEY", "")
LIVE_USER_ID = os.getenv("LIVE_USER_ID", "local").strip() or "local"

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_DIR = os.getenv("LOG_DIR", "logs")
APP_LOG_FILE = os.path.join(LOG_DIR, "app.log")
