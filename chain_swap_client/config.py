"""Configuration management for the swap client."""

from typing import Optional

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def websocket_url(service_url: str) -> str:
    """Update stream endpoint of the service at `service_url`."""
    base = service_url.rstrip("/")
    if base.startswith("https://"):
        base = "wss://" + base[len("https://"):]
    elif base.startswith("http://"):
        base = "ws://" + base[len("http://"):]
    return f"{base}/v2/ws"


class Config(BaseSettings):
    """Application configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    # Swap service endpoints
    service_url: str = Field(
        default="http://127.0.0.1:9006",
        description="Base URL of the swap service REST API"
    )
    ws_url: Optional[str] = Field(
        default=None,
        description="WebSocket URL for swap updates (derived from service_url if unset)"
    )
    signing_chain: str = Field(
        default="BTC",
        description="Ledger whose lockup is a Taproot output spent cooperatively"
    )

    # Claim transaction parameters
    fee_rate_sat_vbyte: float = Field(
        default=1.0,
        description="Target fee rate for claim and refund transactions"
    )
    dust_limit_sats: int = Field(
        default=330,
        description="Smallest output value a claim may produce"
    )
    verify_signatures: bool = Field(
        default=True,
        description="Verify aggregated signatures before broadcasting"
    )

    # Quote renegotiation bounds
    quote_min_amount: Optional[int] = Field(
        default=None,
        description="Reject renegotiated quotes below this amount"
    )
    quote_max_amount: Optional[int] = Field(
        default=None,
        description="Reject renegotiated quotes above this amount"
    )
    quote_max_deviation: Optional[float] = Field(
        default=None,
        description="Reject quotes deviating more than this fraction from the requested amount"
    )

    # Network behaviour
    request_timeout: float = Field(
        default=30.0,
        description="Timeout in seconds for a single HTTP request"
    )
    max_retries: int = Field(
        default=3,
        description="Maximum number of retries for idempotent requests"
    )
    retry_backoff: float = Field(
        default=2.0,
        description="Seconds to wait per retry attempt (linear backoff)"
    )
    counterparty_timeout: float = Field(
        default=60.0,
        description="Seconds to wait for the counterparty's nonce or partial signature"
    )
    session_idle_timeout: Optional[float] = Field(
        default=None,
        description="Fail a session that receives no update for this many seconds"
    )

    # Application Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )
    enable_health_server: bool = Field(
        default=False,
        description="Expose /health and /status endpoints"
    )
    health_port: int = Field(
        default=8080,
        description="Port for the health server"
    )

    @model_validator(mode="after")
    def derive_ws_url(self) -> "Config":
        """Point the WebSocket at the service's /v2/ws endpoint by default."""
        if not self.ws_url:
            self.ws_url = websocket_url(self.service_url)
        return self

    @model_validator(mode="after")
    def validate_quote_bounds(self) -> "Config":
        """Quote bounds must describe a non-empty range."""
        if (
            self.quote_min_amount is not None
            and self.quote_max_amount is not None
            and self.quote_min_amount > self.quote_max_amount
        ):
            raise ValueError("quote_min_amount must not exceed quote_max_amount")
        if self.quote_max_deviation is not None and self.quote_max_deviation < 0:
            raise ValueError("quote_max_deviation must be non-negative")
        return self


# Global config instance
config = Config()
