"""
Metrics Cache Backend
Centralized Configuration Management

Pydantic settings with environment variable support for the cache connection,
key-space addressing, bulk population, parallel retrieval and aggregation.
"""

from functools import lru_cache
from typing import Optional
from pydantic import Field, field_validator, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisSettings(BaseSettings):
    """Redis Cache Configuration"""

    model_config = SettingsConfigDict(env_prefix="REDIS_")

    host: str = Field(default="localhost", description="Redis host")
    port: int = Field(default=6379, description="Redis port")
    password: Optional[SecretStr] = Field(default=None, description="Redis password")
    db: int = Field(default=0, description="Redis database number")
    max_connections: int = Field(default=100, description="Max connections")
    socket_timeout: int = Field(default=5, description="Socket timeout in seconds")
    decode_responses: bool = Field(default=True, description="Decode responses to strings")
    url: Optional[str] = Field(default=None, alias="REDIS_URL", description="Redis URL (overrides host/port)")

    def get_url(self) -> str:
        """Redis connection URL - uses REDIS_URL if set, otherwise builds from host/port"""
        if self.url:
            return self.url
        if self.password:
            return f"redis://:{self.password.get_secret_value()}@{self.host}:{self.port}/{self.db}"
        return f"redis://{self.host}:{self.port}/{self.db}"


class KeySpaceSettings(BaseSettings):
    """Cache key addressing"""

    model_config = SettingsConfigDict(env_prefix="KEYSPACE_")

    default_scheme: str = Field(default="shortened", description="verbose, shortened or hashed")
    hash_length: int = Field(default=8, ge=4, le=32, description="Hex digits kept from the dimension hash")

    @field_validator("default_scheme")
    @classmethod
    def validate_scheme(cls, v: str) -> str:
        allowed = ["verbose", "shortened", "hashed"]
        if v.lower() not in allowed:
            raise ValueError(f"Key scheme must be one of: {allowed}")
        return v.lower()


class PopulationSettings(BaseSettings):
    """Bulk population defaults"""

    model_config = SettingsConfigDict(env_prefix="POPULATION_")

    batch_size: int = Field(default=1000, gt=0, description="Keys per pipeline batch")
    ttl_seconds: int = Field(default=86400, gt=0, description="TTL applied to every written key")
    records_per_key: int = Field(default=100, gt=0, description="Synthetic records generated per key")
    seed: Optional[int] = Field(default=None, description="Random seed for synthetic data")


class RetrievalSettings(BaseSettings):
    """Parallel retrieval defaults"""

    model_config = SettingsConfigDict(env_prefix="RETRIEVAL_")

    concurrency: int = Field(default=8, gt=0, description="Max multi-gets in flight")
    max_chunk_size: int = Field(default=500, gt=0, description="Max keys per MGET")
    scan_count: int = Field(default=100, gt=0, description="SCAN COUNT hint")


class AggregationSettings(BaseSettings):
    """Group-by aggregation defaults"""

    model_config = SettingsConfigDict(env_prefix="AGGREGATION_")

    concurrency: int = Field(default=4, gt=0, description="Sources processed in parallel")
    separator: str = Field(default="|", min_length=1, description="Group key separator")
    output_dir: str = Field(default="./output", description="Aggregation output folder")
    output_name: str = Field(default="grouped_metrics_results", description="Output file stem")


class DataSettings(BaseSettings):
    """Local data folders"""

    model_config = SettingsConfigDict(env_prefix="DATA_")

    data_dir: str = Field(default="./data", description="Archived *_records.json pages")
    input_dir: str = Field(default="./input", description="Seed pools (one JSON array file per pool)")
    output_dir: str = Field(default="./output", description="Transformed/regenerated files")
    dictionary_file: str = Field(default="metadata.json", description="Persisted dictionary file name")


class MonitoringSettings(BaseSettings):
    """Logging Configuration"""

    model_config = SettingsConfigDict(env_prefix="")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL", description="Logging level")
    log_format: str = Field(default="json", alias="LOG_FORMAT", description="Log format: json or text")


class Settings(BaseSettings):
    """
    Main Application Settings

    Aggregates all configuration sections and provides a single entry point
    for accessing application configuration.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_env: str = Field(default="development", alias="APP_ENV", description="Environment")

    # Subsystem configurations
    redis: RedisSettings = Field(default_factory=RedisSettings)
    keyspace: KeySpaceSettings = Field(default_factory=KeySpaceSettings)
    population: PopulationSettings = Field(default_factory=PopulationSettings)
    retrieval: RetrievalSettings = Field(default_factory=RetrievalSettings)
    aggregation: AggregationSettings = Field(default_factory=AggregationSettings)
    data: DataSettings = Field(default_factory=DataSettings)
    monitoring: MonitoringSettings = Field(default_factory=MonitoringSettings)

    @field_validator("app_env")
    @classmethod
    def validate_env(cls, v: str) -> str:
        """Validate environment value"""
        allowed = ["development", "staging", "production", "testing"]
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached application settings.

    Uses LRU cache to ensure settings are only loaded once.

    Returns:
        Settings: Application settings instance
    """
    return Settings()
