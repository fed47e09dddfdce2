from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration for the demonstrations, the cache and the API.

    Notes
    -----
    - Every field can be overridden with a `LEAKLAB_`-prefixed environment
      variable (e.g. `LEAKLAB_CACHE_CAPACITY=50`) or a `.env` file.
    - Durations are expressed in seconds.
    - `payload_bytes` sizes each `ExpensiveObject`; the default mirrors the
      1 MiB objects of the classic JVM examples.
    """

    model_config = SettingsConfigDict(
        env_prefix="LEAKLAB_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Bounded cache
    cache_capacity: int = Field(default=20, ge=1, description="Maximum cached entries")
    cache_idle_seconds: float = Field(default=60.0, gt=0, description="Idle time before an unheld entry is reclaimable")
    sweep_interval_seconds: float = Field(default=30.0, ge=0, description="API sweeper period, 0 disables it")

    # Demonstrations
    payload_bytes: int = Field(default=1024 * 1024, ge=0)
    static_items: int = 10
    listener_count: int = 5
    worker_count: int = 3
    worker_tick_seconds: float = 1.0
    worker_run_seconds: float = 3.0
    closure_count: int = 5
    naive_cache_keys: int = 100
    report_every: int = 20
    resource_count: int = 5
    resource_task_seconds: float = 1.0
    resource_hold_seconds: float = 3.0
    mutable_key_count: int = 5
    weak_cache_keys: int = 5

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")
    log_format: str = Field(default="console", description="Log format (json or console)")

    # Server
    host: str = "127.0.0.1"
    port: int = 8000


settings = Settings()
