"""
Configuration models for kv-relations.

Handles Redis connection settings, audit/repair tuning and global settings.
"""

from typing import Any, Dict, Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class RedisConfig(BaseModel):
    """Redis connection configuration"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    # Connection settings
    url: str = "redis://localhost:6379/0"
    socket_timeout: Optional[float] = 5.0
    max_connections: int = Field(default=16, ge=1, le=512)

    # Key layout
    key_delimiter: str = ":"

    @field_validator('url')
    @classmethod
    def validate_url(cls, v: str) -> str:
        """Validate Redis URL scheme"""
        if not v.startswith(('redis://', 'rediss://', 'unix://')):
            raise ValueError('Redis URL must start with redis://, rediss:// or unix://')
        return v.rstrip('/')

    @field_validator('key_delimiter')
    @classmethod
    def validate_delimiter(cls, v: str) -> str:
        if len(v) != 1:
            raise ValueError('Key delimiter must be a single character')
        return v


class AuditConfig(BaseModel):
    """Audit and repair tuning"""
    model_config = ConfigDict(validate_assignment=True)

    # SCAN page size and members loaded per round trip
    batch_size: int = Field(default=100, ge=1, le=10000)

    # Upper bound on members checked per multi-index value set (None = all)
    sample_size: Optional[int] = Field(default=None, ge=1)

    # Indexes with more findings than this are rebuilt instead of patched
    rebuild_threshold: int = Field(default=0, ge=0)

    # Commands per repair pipeline
    repair_batch_size: int = Field(default=100, ge=1, le=10000)


class StoreConfig(BaseModel):
    """Top-level configuration with validation"""
    model_config = ConfigDict(
        str_strip_whitespace=True,
        validate_assignment=True
    )

    redis: RedisConfig = Field(default_factory=RedisConfig)
    audit: AuditConfig = Field(default_factory=AuditConfig)

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")
    version: str = "1.0.0"

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization"""
        return self.model_dump()

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'StoreConfig':
        """Create from dictionary"""
        return cls(**data)


class GlobalSettings(BaseSettings):
    """Global application settings with environment variable support"""
    model_config = SettingsConfigDict(
        env_prefix="KVR_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    redis_url: str = "redis://localhost:6379/0"
    default_batch_size: int = Field(default=100, ge=1)
    default_timeout: float = Field(default=5.0, ge=0.1, le=300.0)
    key_delimiter: str = ":"

    log_level: str = Field(default="INFO", pattern="^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$")

    def to_store_config(self) -> StoreConfig:
        """Build a StoreConfig seeded from these settings"""
        return StoreConfig(
            redis=RedisConfig(url=self.redis_url, socket_timeout=self.default_timeout,
                              key_delimiter=self.key_delimiter),
            audit=AuditConfig(batch_size=self.default_batch_size,
                              repair_batch_size=self.default_batch_size),
            log_level=self.log_level,
        )
