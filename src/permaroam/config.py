"""Configuration constants for permaroam."""

import os
from pathlib import Path

# Data gateways (HTTP API: /info, /block/height/N, /TXID). First one is primary.
DEFAULT_GATEWAYS: list[str] = ["https://arweave.net"]

# GraphQL gateways, tried in order until one answers.
DEFAULT_GRAPHQL_GATEWAYS: list[str] = [
    "https://arweave.net",
    "https://ardrive.net",
    "https://permagate.io",
]

# Directory with state (history database). First directory which is found is used.
DATA_DIRECTORIES: list[Path] = [
    Path("~/.local/share/permaroam").expanduser(),
    Path("~/.permaroam").expanduser(),
]

# Header sent with every gateway request.
CLIENT_HEADER: tuple[str, str] = ("x-roam-client", "permaroam")

# Request timeouts in seconds.
GRAPHQL_TIMEOUT = 15.0
BLOCK_TIMEOUT = 3.0
INFO_TIMEOUT = 5.0

# Retry policy for a single gateway.
RETRY_ATTEMPTS = 3
RETRY_BASE_DELAY = 0.5
RETRY_MAX_DELAY = 3.0

# Client-side rate limit per gateway.
RATE_LIMIT_REQUESTS = 15
RATE_LIMIT_WINDOW = 60.0

# Chain tip used when /info cannot be reached.
DEFAULT_HEIGHT = 1_666_042

# Blocks kept between the chain tip and the newest block we query.
TIP_MARGIN = 15

# Key under which navigation history is persisted.
HISTORY_KEY = "roam-history"

# Key under which served transaction IDs are persisted.
SEEN_IDS_KEY = "roam-seen-ids"

# Consecutive failed auto-advances before explicit user action is required.
MAX_AUTO_RETRY_FAILURES = 3


def _split_env(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [part.strip().rstrip("/") for part in raw.split(",") if part.strip()]


def resolve_gateways() -> list[str]:
    """Return data gateways, honoring PERMAROAM_GATEWAYS."""
    return _split_env("PERMAROAM_GATEWAYS") or list(DEFAULT_GATEWAYS)


def resolve_graphql_gateways() -> list[str]:
    """Return GraphQL gateways, honoring PERMAROAM_GRAPHQL_GATEWAYS."""
    return _split_env("PERMAROAM_GRAPHQL_GATEWAYS") or list(DEFAULT_GRAPHQL_GATEWAYS)


def resolve_data_directory() -> Path:
    """Return the state directory: PERMAROAM_DATA_DIR, first existing candidate, or the default."""
    env_dir = os.environ.get("PERMAROAM_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser()
    for candidate in DATA_DIRECTORIES:
        if candidate.is_dir():
            return candidate
    return DATA_DIRECTORIES[0]
