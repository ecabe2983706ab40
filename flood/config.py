import os
from pathlib import Path

from dotenv import load_dotenv

# Load flood/.env into os.environ BEFORE reading any env-backed settings.
# override=False means Docker/shell env vars take precedence over .env.
load_dotenv(Path(__file__).resolve().parent / ".env", override=False)


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() in ("true", "1", "yes")


# Osmosis endpoints
LCD_URL = os.environ.get("FLOOD_LCD_URL", "http://localhost:1317")
RPC_URL = os.environ.get("FLOOD_RPC_URL", "http://localhost:26657")
CHAIN_ID = os.environ.get("FLOOD_CHAIN_ID", "osmosis-1")
ADDRESS_PREFIX = os.environ.get("FLOOD_ADDRESS_PREFIX", "osmo")
REQUEST_TIMEOUT = float(os.environ.get("FLOOD_REQUEST_TIMEOUT", "10"))

# Signer (osmosisd keyring)
OSMOSISD_BIN = os.environ.get("FLOOD_OSMOSISD_BIN", "osmosisd")
SIGNER_KEY = os.environ.get("FLOOD_SIGNER_KEY", "flood")
KEYRING_BACKEND = os.environ.get("FLOOD_KEYRING_BACKEND", "test")
KEYRING_DIR = os.environ.get("FLOOD_KEYRING_DIR", "")
GAS = os.environ.get("FLOOD_GAS", "auto")
GAS_ADJUSTMENT = os.environ.get("FLOOD_GAS_ADJUSTMENT", "1.5")
GAS_PRICES = os.environ.get("FLOOD_GAS_PRICES", "0.025uosmo")
BROADCAST_TIMEOUT = int(os.environ.get("FLOOD_BROADCAST_TIMEOUT", "60"))

# Power perp contract; config and state (pools, index scale,
# normalisation factor) are read from it on every run
POWER_CONTRACT_ADDRESS = os.environ.get("FLOOD_POWER_CONTRACT_ADDRESS", "")

# Strategy params
SPREAD = os.environ.get("FLOOD_SPREAD", "0.05")
TICK_SPACING = int(os.environ.get("FLOOD_TICK_SPACING", "100"))  # fallback when the pool omits it
INVERT_PRICES = _env_bool("FLOOD_INVERT_PRICES", "true")
POLL_INTERVAL = float(os.environ.get("FLOOD_POLL_INTERVAL", "6"))  # ~1 block
DRY_RUN = _env_bool("FLOOD_DRY_RUN", "false")

# Failure policies
WITHDRAW_ON_TICK_FAILURE = _env_bool("FLOOD_WITHDRAW_ON_TICK_FAILURE", "true")
ISOLATE_ACCOUNT_FAILURES = _env_bool("FLOOD_ISOLATE_ACCOUNT_FAILURES", "false")

# Logs and run journal
LOG_DIR = os.environ.get(
    "FLOOD_LOG_DIR", str(Path(__file__).resolve().parent.parent / "logs")
)
JOURNAL_FILE = os.environ.get("FLOOD_JOURNAL_FILE", os.path.join(LOG_DIR, "runs.jsonl"))

# Message type URLs
GENERIC_AUTHORIZATION_TYPE_URL = "/cosmos.authz.v1beta1.GenericAuthorization"
MSG_CREATE_POSITION = "/osmosis.concentratedliquidity.v1beta1.MsgCreatePosition"
MSG_WITHDRAW_POSITION = "/osmosis.concentratedliquidity.v1beta1.MsgWithdrawPosition"

# Grants every granter must have given the agent before it rebalances for them
REQUIRED_GRANTS = frozenset({MSG_CREATE_POSITION, MSG_WITHDRAW_POSITION})
