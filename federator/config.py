import os
from pathlib import Path

import pydantic
import tomli

from federator.utils.version import get_version_commit

ROOT_DIR = Path(__file__).parent.parent.resolve()

_CONFIG_FILE = os.getenv("FEDERATOR_CONFIG_FILE", "federator.toml")

VERSION_COMMIT = "dev"

try:
    from federator._version import VERSION_COMMIT  # type: ignore
except ImportError:
    VERSION_COMMIT = get_version_commit()

VERSION = f"1.0.0+{VERSION_COMMIT}"
USER_AGENT = f"federator/{VERSION}"
AP_CONTENT_TYPE = "application/activity+json"


class _BlockedServer(pydantic.BaseModel):
    hostname: str
    reason: str | None = None


class Config(pydantic.BaseModel):
    domain: str
    https: bool
    debug: bool = False
    blocked_servers: list[_BlockedServer] = []

    # Sign every GET, otherwise only retry with a signature on 401
    sign_fetches: bool = False

    actor_cache_ttl_seconds: int = 300
    actor_refresh_hours: int = 24

    delivery_workers: int = 4
    delivery_sweep_interval_seconds: int = 60
    delivery_sweep_limit: int = 500
    delivery_max_concurrent_per_domain: int = 2

    # Config items to make tests easier
    sqlalchemy_database: str | None = None
    key_path: str | None = None


def load_config() -> Config:
    try:
        return Config.model_validate(
            tomli.loads((ROOT_DIR / "data" / _CONFIG_FILE).read_text())
        )
    except FileNotFoundError:
        raise ValueError(
            f"Please create the configuration file, {_CONFIG_FILE} is missing"
        )


CONFIG = load_config()
DOMAIN = CONFIG.domain
_SCHEME = "https" if CONFIG.https else "http"
BASE_URL = f"{_SCHEME}://{DOMAIN}"

# The instance actor signs fetches and deliveries
INSTANCE_ACTOR_ID = f"{BASE_URL}/actor"

BLOCKED_SERVERS = {blocked_server.hostname for blocked_server in CONFIG.blocked_servers}

DEBUG = CONFIG.debug
SIGN_FETCHES = CONFIG.sign_fetches
ACTOR_CACHE_TTL_SECONDS = CONFIG.actor_cache_ttl_seconds
ACTOR_REFRESH_HOURS = CONFIG.actor_refresh_hours
DELIVERY_WORKERS = CONFIG.delivery_workers
DELIVERY_SWEEP_INTERVAL_SECONDS = CONFIG.delivery_sweep_interval_seconds
DELIVERY_SWEEP_LIMIT = CONFIG.delivery_sweep_limit
DELIVERY_MAX_CONCURRENT_PER_DOMAIN = CONFIG.delivery_max_concurrent_per_domain

DB_PATH = (
    (ROOT_DIR / CONFIG.sqlalchemy_database)
    if CONFIG.sqlalchemy_database
    else ROOT_DIR / "data" / "federator.db"
)
KEY_PATH = (
    (ROOT_DIR / CONFIG.key_path) if CONFIG.key_path else ROOT_DIR / "data" / "key.pem"
)
