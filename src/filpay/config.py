"""Configuration for filpay.

Two layers:
    1. Settings: process-level values loaded from the environment (.env
       supported), cached once per process.
    2. GatewayConfig / BatchConfig: explicit, immutable objects handed to
       the gateway and services. Nothing downstream reads the environment.

Pattern:
    settings = get_settings()
    gateway = Web3ChainGateway(
        settings.gateway_config(rpc_url=args.rpc),
        private_key=args.key or settings.private_key,
    )
    token = resolve_token(args.token or settings.token)
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from functools import lru_cache

from dotenv import find_dotenv, load_dotenv

from filpay.errors import ConfigurationError
from filpay.types import NoncePolicy, TokenDescriptor

DEFAULT_RPC_URL = "https://rpc.ankr.com/filecoin"
DEFAULT_CHAIN_ID = 314
FILECOIN_PAY_V1 = "0x23b1e018F08BB982348b15a86ee926eEBf7F4DAa"

USDFC = TokenDescriptor(
    symbol="USDFC",
    address="0x80B98d3aa09ffff255c3ba4A241111Ff1262F045",
    decimals=18,
)

KNOWN_TOKENS: dict[str, TokenDescriptor] = {USDFC.symbol: USDFC}


@dataclass(frozen=True)
class GatewayConfig:
    """
    Chain gateway configuration.

    Attributes:
        rpc_url: JSON-RPC endpoint.
        chain_id: Chain id used when signing. Default 314 (Filecoin mainnet).
        payments_contract: Address of the payments contract.
        nonce_policy: PENDING (reference behavior) or LATEST.
        confirmation_timeout_seconds: How long to wait for a receipt.
        poll_interval_seconds: Receipt polling interval.
    """

    rpc_url: str = DEFAULT_RPC_URL
    chain_id: int = DEFAULT_CHAIN_ID
    payments_contract: str = FILECOIN_PAY_V1
    nonce_policy: NoncePolicy = NoncePolicy.PENDING
    confirmation_timeout_seconds: int = 300
    poll_interval_seconds: float = 2.0

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not self.rpc_url:
            raise ConfigurationError("rpc_url is required")
        if self.chain_id < 1:
            raise ConfigurationError("chain_id must be positive")
        if not self.payments_contract:
            raise ConfigurationError("payments_contract is required")
        if self.confirmation_timeout_seconds < 1:
            raise ConfigurationError("confirmation_timeout_seconds must be at least 1")
        if self.poll_interval_seconds <= 0:
            raise ConfigurationError("poll_interval_seconds must be positive")


@dataclass(frozen=True)
class BatchConfig:
    """
    Batch settlement configuration.

    Attributes:
        preview_concurrency: Rails previewed at once in preview mode.
            Execute mode is always sequential. Default 1.
    """

    preview_concurrency: int = 1

    def __post_init__(self) -> None:
        """Validate configuration."""
        if not 1 <= self.preview_concurrency <= 32:
            raise ConfigurationError("preview_concurrency must be between 1 and 32")


@dataclass(frozen=True)
class Settings:
    """Process settings loaded from environment."""

    rpc_url: str
    chain_id: int
    payments_contract: str
    token: str
    private_key: str | None
    nonce_policy: NoncePolicy
    confirmation_timeout_seconds: int
    journal_url: str | None
    log_level: str
    batch: BatchConfig = field(default_factory=BatchConfig)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables."""
        load_dotenv(find_dotenv(usecwd=True))

        policy = os.getenv("FILPAY_NONCE_POLICY", NoncePolicy.PENDING.value).lower()
        try:
            nonce_policy = NoncePolicy(policy)
        except ValueError:
            raise ConfigurationError(f"FILPAY_NONCE_POLICY must be 'pending' or 'latest', got {policy!r}") from None

        try:
            chain_id = int(os.getenv("FILPAY_CHAIN_ID", str(DEFAULT_CHAIN_ID)))
            timeout = int(os.getenv("FILPAY_CONFIRMATION_TIMEOUT", "300"))
            concurrency = int(os.getenv("FILPAY_PREVIEW_CONCURRENCY", "1"))
        except ValueError as e:
            raise ConfigurationError(f"Invalid numeric setting: {e}") from e

        return cls(
            rpc_url=os.getenv("FILPAY_RPC_URL", DEFAULT_RPC_URL),
            chain_id=chain_id,
            payments_contract=os.getenv("FILPAY_PAYMENTS_CONTRACT", FILECOIN_PAY_V1),
            token=os.getenv("FILPAY_TOKEN", USDFC.symbol),
            private_key=os.getenv("FILPAY_PRIVATE_KEY") or None,
            nonce_policy=nonce_policy,
            confirmation_timeout_seconds=timeout,
            journal_url=os.getenv("FILPAY_JOURNAL_URL") or None,
            log_level=os.getenv("FILPAY_LOG_LEVEL", "WARNING").upper(),
            batch=BatchConfig(preview_concurrency=concurrency),
        )

    def gateway_config(self, **overrides: object) -> GatewayConfig:
        """Build a GatewayConfig, letting non-None overrides win."""
        config = GatewayConfig(
            rpc_url=self.rpc_url,
            chain_id=self.chain_id,
            payments_contract=self.payments_contract,
            nonce_policy=self.nonce_policy,
            confirmation_timeout_seconds=self.confirmation_timeout_seconds,
        )
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(config, **changes) if changes else config


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings.from_env()


def resolve_token(selector: str, decimals: int | None = None) -> TokenDescriptor:
    """Resolve a token symbol or address into a TokenDescriptor.

    Known symbols and addresses map to their registered descriptor. Any
    other 0x address is accepted with explicit or default (18) decimals.
    """
    if not selector:
        raise ConfigurationError("token is required")

    known = KNOWN_TOKENS.get(selector.upper())
    if known is None:
        for token in KNOWN_TOKENS.values():
            if token.address.lower() == selector.lower():
                known = token
                break

    if known is not None:
        if decimals is not None and decimals != known.decimals:
            raise ConfigurationError(
                f"{known.symbol} has {known.decimals} decimals, not {decimals}"
            )
        return known

    if selector.startswith("0x") and len(selector) == 42:
        try:
            int(selector, 16)
        except ValueError:
            raise ConfigurationError(f"Invalid token address: {selector}") from None
        return TokenDescriptor(
            symbol=selector[:10],
            address=selector,
            decimals=18 if decimals is None else decimals,
        )

    raise ConfigurationError(
        f"Unknown token {selector!r}; use one of {sorted(KNOWN_TOKENS)} or a token address"
    )


def gateway_config_warnings(config: GatewayConfig) -> list[str]:
    """
    List configuration choices an operator should be aware of.

    Returns an empty list when nothing stands out.
    """
    issues: list[str] = []

    if config.nonce_policy is NoncePolicy.PENDING:
        issues.append(
            "Nonces follow the pending transaction count; a failed submission can leave a nonce gap."
        )
    if config.rpc_url.startswith("http://") and "localhost" not in config.rpc_url:
        issues.append(f"RPC endpoint {config.rpc_url} is not using TLS.")
    if config.payments_contract != FILECOIN_PAY_V1:
        issues.append(f"Using non-default payments contract {config.payments_contract}.")

    return issues
