import os
from dataclasses import dataclass
from typing import Any, Dict, Tuple

import yaml

ROOT_DIR = os.path.dirname(__file__)


def _load_dotenv(path: str, existing_env: set[str], allow_override: bool = False) -> None:
    if not os.path.exists(path):
        return
    try:
        with open(path, "r", encoding="utf-8") as handle:
            for raw_line in handle:
                line = raw_line.strip()
                if not line or line.startswith("#"):
                    continue
                if line.startswith("export "):
                    line = line[7:].strip()
                if "=" not in line:
                    continue
                key, value = line.split("=", 1)
                key = key.strip()
                if not key:
                    continue
                current_value = str(os.environ.get(key, "") or "").strip()
                # Do not treat empty pre-existing env vars as authoritative.
                if key in existing_env and current_value:
                    continue
                if key in os.environ and (not allow_override) and current_value:
                    continue
                value = value.strip()
                if len(value) >= 2 and value[0] == value[-1] and value[0] in {"'", '"'}:
                    value = value[1:-1]
                os.environ[key] = value
    except OSError:
        return


_EXISTING_ENV = set(os.environ.keys())
_load_dotenv(os.path.join(ROOT_DIR, ".env"), _EXISTING_ENV, allow_override=False)
_load_dotenv(os.path.join(ROOT_DIR, ".env.local"), _EXISTING_ENV, allow_override=True)

APP_ENV = os.getenv("APP_ENV", "dev")
CONFIG_PATH = os.getenv("CONFIG_PATH", os.path.join(ROOT_DIR, "config.yaml"))

_ENV_ONLY_KEYS = {
    "AUTH_TOKEN_SECRET",
    "SHOPIFY_CLIENT_SECRET",
}


def _load_config(path: str, env: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as handle:
            raw_data: Any = yaml.safe_load(handle)
    except (OSError, yaml.YAMLError):
        return {}
    data = raw_data or {}
    if isinstance(data, dict) and env in data and isinstance(data[env], dict):
        return dict(data[env])
    if isinstance(data, dict):
        return dict(data)
    return {}


_CONFIG = _load_config(CONFIG_PATH, APP_ENV)


def _get(name: str, default: Any) -> Any:
    if name in os.environ:
        return os.environ[name]
    if name in _ENV_ONLY_KEYS:
        return default
    if isinstance(_CONFIG, dict):
        if name in _CONFIG:
            return _CONFIG[name]
        lower = name.lower()
        if lower in _CONFIG:
            return _CONFIG[lower]
    return default


def _parse_bool(value: Any, default: bool) -> bool:
    if value is None:
        return default
    return str(value).strip().lower() in {"1", "true", "yes"}


APP_VERSION = str(_get("APP_VERSION", "0.3.0"))
APP_URL = str(_get("APP_URL", "http://localhost:5173")).strip().rstrip("/")
PUBLIC_BASE_URL = str(_get("PUBLIC_BASE_URL", "http://127.0.0.1:8010")).strip().rstrip("/")
API_HOST = _get("API_HOST", "127.0.0.1")
API_PORT = int(_get("API_PORT", "8010"))
DATABASE_URL = str(
    _get(
        "DATABASE_URL",
        f"sqlite:///{os.path.join(ROOT_DIR, '.lynkscope', 'lynkscope.db')}",
    )
).strip()
DATABASE_ECHO = _parse_bool(_get("DATABASE_ECHO", "false"), False)
STARTUP_BOOTSTRAP_ENABLED = _parse_bool(_get("STARTUP_BOOTSTRAP_ENABLED", "true"), True)
AUTH_TOKEN_SECRET = str(_get("AUTH_TOKEN_SECRET", "")).strip()

SHOPIFY_CLIENT_ID = str(_get("SHOPIFY_CLIENT_ID", "")).strip()
SHOPIFY_CLIENT_SECRET = str(_get("SHOPIFY_CLIENT_SECRET", "")).strip()
SHOPIFY_API_VERSION = str(_get("SHOPIFY_API_VERSION", "2024-01")).strip() or "2024-01"
SHOPIFY_SCOPES = str(_get("SHOPIFY_SCOPES", "read_products,write_products")).strip()
SHOPIFY_TEST_MODE = _parse_bool(_get("SHOPIFY_TEST_MODE", "false"), False)
SHOPIFY_PLAN_NAME = str(_get("SHOPIFY_PLAN_NAME", "LynkScope Pro")).strip() or "LynkScope Pro"
SHOPIFY_PLAN_PRICE = float(_get("SHOPIFY_PLAN_PRICE", "20.0"))
SHOPIFY_TRIAL_DAYS = max(0, int(_get("SHOPIFY_TRIAL_DAYS", "14")))
SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS = max(1, int(_get("SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS", "600")))
SHOPIFY_OAUTH_SIGN_STATE = _parse_bool(_get("SHOPIFY_OAUTH_SIGN_STATE", "false"), False)
SHOPIFY_HTTP_TIMEOUT_SECONDS = float(_get("SHOPIFY_HTTP_TIMEOUT_SECONDS", "10"))

CORS_ORIGINS = [
    origin.strip()
    for origin in str(_get("CORS_ORIGINS", APP_URL)).split(",")
    if origin.strip()
]


class ConfigError(RuntimeError):
    pass


@dataclass(frozen=True)
class ShopifySettings:
    """
    Process-wide Shopify configuration.

    Built once at startup and handed to each component's constructor so
    nothing reads secrets from module globals at call time.
    """

    client_id: str
    client_secret: str
    app_url: str
    public_base_url: str
    api_version: str = "2024-01"
    scopes: str = "read_products,write_products"
    test_mode: bool = False
    plan_name: str = "LynkScope Pro"
    plan_price: float = 20.0
    trial_days: int = 14
    state_max_age_seconds: int = 600
    sign_state: bool = False
    http_timeout_seconds: float = 10.0

    @property
    def oauth_redirect_uri(self) -> str:
        return f"{self.public_base_url}/shopify/oauth/callback"

    @property
    def confirm_charge_url(self) -> str:
        return f"{self.public_base_url}/shopify/billing/confirm-charge"

    def missing(self) -> Tuple[str, ...]:
        required = {
            "SHOPIFY_CLIENT_ID": self.client_id,
            "SHOPIFY_CLIENT_SECRET": self.client_secret,
            "APP_URL": self.app_url,
            "PUBLIC_BASE_URL": self.public_base_url,
        }
        return tuple(name for name, value in required.items() if not str(value or "").strip())

    def require(self) -> "ShopifySettings":
        missing = self.missing()
        if missing:
            raise ConfigError(f"missing required configuration: {', '.join(missing)}")
        return self


def load_shopify_settings() -> ShopifySettings:
    return ShopifySettings(
        client_id=SHOPIFY_CLIENT_ID,
        client_secret=SHOPIFY_CLIENT_SECRET,
        app_url=APP_URL,
        public_base_url=PUBLIC_BASE_URL,
        api_version=SHOPIFY_API_VERSION,
        scopes=SHOPIFY_SCOPES,
        test_mode=SHOPIFY_TEST_MODE,
        plan_name=SHOPIFY_PLAN_NAME,
        plan_price=SHOPIFY_PLAN_PRICE,
        trial_days=SHOPIFY_TRIAL_DAYS,
        state_max_age_seconds=SHOPIFY_OAUTH_STATE_MAX_AGE_SECONDS,
        sign_state=SHOPIFY_OAUTH_SIGN_STATE,
        http_timeout_seconds=SHOPIFY_HTTP_TIMEOUT_SECONDS,
    )
