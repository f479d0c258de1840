"""Process-wide configuration for the purchase gateway.

Everything here is read once at startup. ``load_settings`` fails fast with
``ConfigurationMissing`` so the server never serves requests with a partial
configuration.
"""

import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from dotenv import load_dotenv
from web3 import Web3

from logging_utils import mask_secret

PROJECT_ROOT = Path(__file__).resolve().parent

DEFAULT_CROSSMINT_BASE_URL = "https://www.crossmint.com/api/2022-06-09"
DEFAULT_SERP_API_URL = "https://serpapi.com/search"
DEFAULT_CATALOG_PATH = PROJECT_ROOT / "config" / "product-catalog.json"

REQUIRED_ENV = (
    "PRODUCT_SIGNING_SECRET",
    "SERP_API_KEY",
    "CROSSMINT_API_KEY",
    "EXACT_RECIPIENT",
    "FACILITATOR_URL",
)

_EVM_NETWORK = re.compile(r"^eip155:(\d+)$")


class ConfigurationMissing(RuntimeError):
    """Raised at startup when required configuration is absent or invalid."""


@dataclass(frozen=True)
class GatewaySettings:
    signing_secret: bytes
    serp_api_key: str
    crossmint_api_key: str
    exact_recipient: str
    facilitator_url: str
    crossmint_base_url: str = DEFAULT_CROSSMINT_BASE_URL
    serp_api_url: str = DEFAULT_SERP_API_URL
    exact_asset: str = "USDC"
    exact_chain: str = "solana"
    catalog_path: Path = DEFAULT_CATALOG_PATH
    idempotency_ttl_seconds: int = 3600
    idempotency_reap_interval_seconds: int = 1800
    payment_pending_ttl_seconds: int = 3600
    http_timeout_seconds: float = 30.0
    port: int = 8787
    cors_allow_origins: tuple[str, ...] = ("*",)

    def summary(self) -> dict[str, str]:
        return {
            "PRODUCT_SIGNING_SECRET": mask_secret(self.signing_secret.decode("utf-8", "replace")),
            "SERP_API_KEY": mask_secret(self.serp_api_key),
            "CROSSMINT_API_KEY": mask_secret(self.crossmint_api_key),
            "CROSSMINT_BASE_URL": self.crossmint_base_url,
            "EXACT_CHAIN": self.exact_chain,
            "EXACT_ASSET": self.exact_asset,
            "EXACT_RECIPIENT": mask_secret(self.exact_recipient, visible=8),
            "FACILITATOR_URL": self.facilitator_url,
            "PRODUCT_CATALOG_PATH": str(self.catalog_path),
        }


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigurationMissing(f"{name} must be an integer, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationMissing(f"{name} must be > 0")
    return value


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigurationMissing(f"{name} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigurationMissing(f"{name} must be > 0")
    return value


def _resolve_recipient(chain: str, raw: str) -> str:
    # EVM payouts need a real address; other chains are passed through as-is.
    if not _EVM_NETWORK.match(chain):
        return raw
    try:
        return Web3.to_checksum_address(raw)
    except Exception as exc:
        raise ConfigurationMissing(f"Invalid EXACT_RECIPIENT for {chain}: {raw}") from exc


def load_settings(environ: Mapping[str, str] | None = None) -> GatewaySettings:
    if environ is None:
        load_dotenv()
        environ = os.environ

    env = {key: value.strip() for key, value in environ.items() if isinstance(value, str)}
    missing = [name for name in REQUIRED_ENV if not env.get(name)]
    if missing:
        raise ConfigurationMissing(
            f"Missing required environment variables: {', '.join(missing)}"
        )

    ttl = _env_int(env, "IDEMPOTENCY_TTL_SECONDS", 3600)
    reap_interval = _env_int(env, "IDEMPOTENCY_REAP_INTERVAL_SECONDS", 1800)
    if reap_interval > ttl:
        raise ConfigurationMissing(
            "IDEMPOTENCY_REAP_INTERVAL_SECONDS must not exceed IDEMPOTENCY_TTL_SECONDS"
        )

    chain = env.get("EXACT_CHAIN") or "solana"
    origins = tuple(
        origin.strip()
        for origin in (env.get("CORS_ALLOW_ORIGINS") or "*").split(",")
        if origin.strip()
    )

    return GatewaySettings(
        signing_secret=env["PRODUCT_SIGNING_SECRET"].encode("utf-8"),
        serp_api_key=env["SERP_API_KEY"],
        crossmint_api_key=env["CROSSMINT_API_KEY"],
        exact_recipient=_resolve_recipient(chain, env["EXACT_RECIPIENT"]),
        facilitator_url=env["FACILITATOR_URL"],
        crossmint_base_url=(env.get("CROSSMINT_BASE_URL") or DEFAULT_CROSSMINT_BASE_URL).rstrip("/"),
        serp_api_url=env.get("SERP_API_URL") or DEFAULT_SERP_API_URL,
        exact_asset=env.get("EXACT_ASSET") or "USDC",
        exact_chain=chain,
        catalog_path=Path(env.get("PRODUCT_CATALOG_PATH") or DEFAULT_CATALOG_PATH),
        idempotency_ttl_seconds=ttl,
        idempotency_reap_interval_seconds=reap_interval,
        payment_pending_ttl_seconds=_env_int(env, "PAYMENT_PENDING_TTL_SECONDS", 3600),
        http_timeout_seconds=_env_float(env, "HTTP_TIMEOUT_SECONDS", 30.0),
        port=_env_int(env, "PORT", 8787),
        cors_allow_origins=origins or ("*",),
    )
