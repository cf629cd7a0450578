"""
VaultDAO Constants

This module consolidates the network constants, vault policy defaults and
environment-backed logger settings used throughout the engine. Constants are
organized by category for easy reference and maintenance.
"""
import ast
import re
from dotenv import dotenv_values

# =============================================================================
# ENVIRONMENT CONFIGURATION
# =============================================================================
# Load environment variables once at module import
_config = dotenv_values(".env")

LOGGER_DEFAULTS = {
    'LOG_LEVEL':                       'INFO',
    'LOG_FORMAT':                      '%(asctime)s - %(levelname)s - %(name)s - %(message)s',
    'LOG_DATE_FORMAT':                 '%Y-%m-%dT%H:%M:%S',
    'LOG_CONSOLE_HIGHLIGHTING':        'True',
    'LOG_FILE_OUTPUT':                 'False',
}

LOG_MAX_FILE_SIZE = 10 * 1024 * 1024  # 10MB
LOG_BACKUP_COUNT = 5


# ==================================================================================
# NETWORK DEFAULTS
# ==================================================================================
DEFAULT_RPC_URL = 'https://soroban-testnet.stellar.org'
DEFAULT_NETWORK_PASSPHRASE = 'Test SDF Network ; September 2015'
DEFAULT_NETWORK_ID = 'TESTNET'
DEFAULT_BASE_FEE = 100  # stroops per operation
DEFAULT_TX_TIMEOUT_SECONDS = 30  # validity window set on built transactions


# ==================================================================================
# LEDGER TIMING
# ==================================================================================
SECONDS_PER_LEDGER = 5
DAY_IN_LEDGERS = 17_280  # ~24 hours at 5s per ledger
PROPOSAL_EXPIRY_LEDGERS = DAY_IN_LEDGERS * 7


# ==================================================================================
# PIPELINE TIMEOUTS (seconds)
# ==================================================================================
SIMULATE_TIMEOUT = 15.0
SIGN_TIMEOUT = 120.0  # a human is usually on the other side of the agent
SUBMIT_TIMEOUT = 60.0
SUBMIT_POLL_INTERVAL = 1.0
RPC_CONNECTION_TIMEOUT = 10.0


# ==================================================================================
# ACTIVITY FEED
# ==================================================================================
FEED_PAGE_SIZE = 100
FEED_MAX_PAGES = 10
FEED_FETCH_TIMEOUT = 20.0
FEED_DEDUP_WINDOW = 10_000  # event ids remembered for redelivery checks


# ==================================================================================
# VALIDATION
# ==================================================================================
MEMO_MAX_LENGTH = 32  # contract memos are ledger symbols

# Account (G...) and contract (C...) strkeys: 56 chars of RFC 4648 base32
VALID_ADDRESS_PATTERN = re.compile(r'^[GC][A-Z2-7]{55}$')

VALID_AMOUNT_PATTERN = re.compile(r'^[0-9]+$')

NATIVE_TOKEN = 'NATIVE'


# ==================================================================================
# CONFIGURATION WRAPPERS
# ==================================================================================
class ConfigString(str):
    """
    String subclass that stores a default value.
    """
    def __new__(cls, value, default):
        obj = str.__new__(cls, value)
        obj._default = default
        return obj

    def default(self):
        return self._default


class ConfigBool(int):
    """
    Int subclass acting as a boolean that stores a default value.
    """
    def __new__(cls, value, default):
        obj = int.__new__(cls, bool(value))
        obj._default = default
        return obj

    def default(self):
        return self._default

    def __repr__(self):
        return str(bool(self))

    def __str__(self):
        return str(bool(self))

    def __eq__(self, other):
        return bool(self) == other

    __hash__ = int.__hash__


# ==================================================================================
# DYNAMIC CONFIGURATION LOADING
# ==================================================================================
namespace = globals()


def parse_bool(v):
    """
    Convert "True"/"False" (any casing, with surrounding whitespace) into bool.
    Only known literals reach ast.literal_eval.
    """
    if not isinstance(v, str):
        return v
    s = v.strip()
    if not s:
        return v
    if s.casefold() in {"true", "false"}:
        return ast.literal_eval(s.title())
    return v


for key, default_raw in LOGGER_DEFAULTS.items():
    # dotenv_values returns strings or None. None is treated as missing.
    raw = _config.get(key)
    value_raw = default_raw if raw is None else raw

    value = parse_bool(value_raw)
    default_val = parse_bool(default_raw)

    if isinstance(value, bool):
        namespace[key] = ConfigBool(value, default_val)
    else:
        namespace[key] = ConfigString(value_raw, default_val)
