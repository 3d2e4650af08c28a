from pydantic_settings import BaseSettings
from pydantic import Field, validator

class Settings(BaseSettings):
    # API Keys
    graph_api_key: str = Field(default="", description="The Graph gateway API key")
    coingecko_api_key: str = Field(default="", description="CoinGecko API key")

    # Subgraph endpoints per (protocol, chain). May contain an {api_key} placeholder.
    aave_subgraph_polygon: str = Field(default="", description="Aave subgraph URL on Polygon")
    aave_subgraph_arbitrum: str = Field(default="", description="Aave subgraph URL on Arbitrum")
    compound_subgraph_arbitrum: str = Field(default="", description="Compound subgraph URL on Arbitrum")
    compound_subgraph_base: str = Field(default="", description="Compound subgraph URL on Base")

    # URLs
    coingecko_base_url: str = "https://api.coingecko.com/api/v3"

    # Subgraph retrieval
    subgraph_page_size: int = Field(default=1000, description="Rows requested per page")
    subgraph_timeout: float = Field(default=30.0, description="HTTP timeout in seconds")
    subgraph_retry_attempts: int = Field(default=3, description="Attempts on connection errors")

    # Sync job
    event_store_path: str = Field(default="cache/strategy_events.db", description="SQLite event store")
    sync_concurrency: int = Field(default=5, description="Wallets synced per batch")
    usd_policy: str = Field(default="prefer_direct", description="prefer_direct/prefer_external")
    usd_disagreement_tolerance: float = Field(default=0.05, description="Relative USD mismatch flagged for review")

    # Environment
    environment: str = Field(default="development", description="dev/staging/production")

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @validator("subgraph_page_size")
    def validate_page_size(cls, v):
        # The Graph rejects `first` above 1000
        return max(1, min(v, 1000))

    @validator("usd_policy")
    def validate_usd_policy(cls, v):
        v = (v or "prefer_direct").lower()
        if v not in ("prefer_direct", "prefer_external"):
            raise ValueError("usd_policy must be prefer_direct or prefer_external")
        return v

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

settings = Settings()
