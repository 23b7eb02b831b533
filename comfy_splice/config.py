"""
Comfy Splice - Configuration Management
=======================================

Type-safe configuration using pydantic-settings. Every setting can be
overridden through environment variables with the COMFY_SPLICE_ prefix.

Example:
    COMFY_SPLICE_EXECUTOR__URL=http://192.168.1.100:8188
    COMFY_SPLICE_LOGGING__LEVEL=DEBUG
    COMFY_SPLICE_POLLING__MAX_ATTEMPTS=30
    COMFY_SPLICE_COMPILER__DEFAULT_STACK_CAPACITY=8

Features:
- Nested config via double underscore delimiter (__)
- .env file support
- Cached settings instance via @lru_cache
"""

from functools import lru_cache

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

__all__ = [
    "Settings",
    "settings",
    "get_settings",
    "reload_settings",
    # Sub-configs
    "ExecutorConfig",
    "RetryConfig",
    "LoggingConfig",
    "HttpConfig",
    "CompilerConfig",
    "PollingConfig",
    "StorageConfig",
]


# =============================================================================
# CONFIGURATION CLASSES
# =============================================================================


class ExecutorConfig(BaseSettings):
    """Connection settings for the graph executor (a ComfyUI server)."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_EXECUTOR__",
        env_ignore_empty=True,
    )

    url: str = "http://localhost:8188"
    client_id: str = "comfy-splice"
    timeout_connect: float = 5.0
    timeout_read: float = 30.0
    timeout_queue: float = 10.0
    timeout_image: float = 60.0
    # Deadline for the single /object_info introspection call
    timeout_schema: float = 10.0


class RetryConfig(BaseSettings):
    """Retry and resilience configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_RETRY__",
        env_ignore_empty=True,
    )

    max_retries: int = Field(default=3, ge=1)
    backoff_base: float = 1.5
    backoff_max: float = 30.0
    backoff_jitter: bool = True
    circuit_breaker_threshold: int = 5
    circuit_breaker_reset: float = 60.0


class LoggingConfig(BaseSettings):
    """Logging configuration."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_LOGGING__",
        env_ignore_empty=True,
    )

    level: str = "INFO"
    format: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    file: str | None = None
    json_output: bool = False

    @field_validator("level")
    @classmethod
    def normalize_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level


class HttpConfig(BaseSettings):
    """httpx client configuration (pooling, HTTP/2, timeouts)."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_HTTP__",
        env_ignore_empty=True,
    )

    max_connections: int = 100
    max_keepalive_connections: int = 20
    keepalive_expiry: float = 5.0

    http2: bool = True

    connect_timeout: float = 5.0
    read_timeout: float = 30.0
    write_timeout: float = 30.0
    pool_timeout: float = 10.0


class CompilerConfig(BaseSettings):
    """
    Graph compiler settings.

    The node type names are the ones shipped by the ComfyUI-Easy-Use and
    Comfyroll custom node packs. Installations that rename them can point
    the compiler at different types without code changes.
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_COMPILER__",
        env_ignore_empty=True,
    )

    stack_node_type: str = "easy loraStack"
    stack_apply_node_type: str = "CR Apply LoRA Stack"
    chain_node_types: tuple[str, ...] = ("LoraLoader", "FluxLoraLoader")
    # Used when the stack type exists but its slot count cannot be read
    default_stack_capacity: int = Field(default=10, ge=1)
    stack_mode: str = "advanced"
    empty_adapter_sentinel: str = "None"
    prefer_stacked: bool = True


class PollingConfig(BaseSettings):
    """Bounded output polling."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_POLLING__",
        env_ignore_empty=True,
    )

    max_attempts: int = Field(default=15, ge=1)
    delay: float = Field(default=2.0, ge=0.0)
    output_type: str = "output"


class StorageConfig(BaseSettings):
    """Artifact persistence settings."""

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_STORAGE__",
        env_ignore_empty=True,
    )

    bucket: str = "images-2d"
    artifact_type: str = "image_2d"


class Settings(BaseSettings):
    """
    Main settings container.

    Usage:
        from comfy_splice.config import get_settings

        settings = get_settings()
        print(settings.executor.url)
        print(settings.polling.max_attempts)
    """

    model_config = SettingsConfigDict(
        env_prefix="COMFY_SPLICE_",
        env_file=".env",
        env_file_encoding="utf-8",
        env_ignore_empty=True,
        env_nested_delimiter="__",
        extra="ignore",
    )

    executor: ExecutorConfig = ExecutorConfig()
    retry: RetryConfig = RetryConfig()
    logging: LoggingConfig = LoggingConfig()
    http: HttpConfig = HttpConfig()
    compiler: CompilerConfig = CompilerConfig()
    polling: PollingConfig = PollingConfig()
    storage: StorageConfig = StorageConfig()

    version: str = "0.4.0"
    name: str = "comfy_splice"

    def to_dict(self) -> dict:
        """Export settings as dictionary."""
        return {
            "version": self.version,
            "executor": {
                "url": self.executor.url,
                "timeout_connect": self.executor.timeout_connect,
                "timeout_read": self.executor.timeout_read,
                "timeout_schema": self.executor.timeout_schema,
            },
            "retry": {
                "max_retries": self.retry.max_retries,
                "backoff_base": self.retry.backoff_base,
                "backoff_jitter": self.retry.backoff_jitter,
            },
            "logging": {"level": self.logging.level, "json_output": self.logging.json_output},
            "http": {
                "http2": self.http.http2,
                "max_connections": self.http.max_connections,
                "connect_timeout": self.http.connect_timeout,
                "read_timeout": self.http.read_timeout,
            },
            "compiler": {
                "stack_node_type": self.compiler.stack_node_type,
                "stack_apply_node_type": self.compiler.stack_apply_node_type,
                "chain_node_types": list(self.compiler.chain_node_types),
                "default_stack_capacity": self.compiler.default_stack_capacity,
            },
            "polling": {
                "max_attempts": self.polling.max_attempts,
                "delay": self.polling.delay,
            },
            "storage": {"bucket": self.storage.bucket},
        }


# =============================================================================
# CACHED SETTINGS INSTANCE
# =============================================================================


@lru_cache
def get_settings() -> Settings:
    """
    Get cached settings instance.

    Call get_settings.cache_clear() (or reload_settings()) to re-read the
    environment.
    """
    return Settings()


settings = get_settings()


def reload_settings() -> Settings:
    """Reload all settings from environment variables."""
    get_settings.cache_clear()
    global settings
    settings = get_settings()
    return settings
