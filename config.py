# config.py
import logging
from typing import Optional

from pydantic import AliasChoices, Field, ValidationError
from pydantic_settings import BaseSettings, SettingsConfigDict

from errors import ConfigError

logger = logging.getLogger(__name__)

# Fixed by the rate limiter's contract; not read from env or the store.
RATE_LIMIT_WINDOW_SECONDS = 5
# Never read from the config table: it lives inside the database being selected.
NOT_STORED = ("database_url",)


class SchedulerConfig(BaseSettings):
    """Settings read from SCHEDULER_* environment variables, overridable per process."""

    database_url: str = "sqlite::memory:"
    rate_limit_num: int = Field(default=5, gt=0)
    user_cleanup_every: float = Field(default=12.0, gt=0)
    # pull_every belongs to the integration settings, so it keeps their variable name
    pull_every: float = Field(default=2.0, gt=0, validation_alias=AliasChoices("pull_every", "INTEGRATION_PULL_EVERY"))
    concurrency: int = Field(default=4, gt=0)
    max_attempts: int = Field(default=3, gt=0)
    handler_timeout_seconds: float = Field(default=60.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    cron_poll_interval: float = Field(default=5.0, gt=0)
    backoff_base: float = Field(default=2.0, ge=0)
    lease_seconds: Optional[float] = Field(default=None, gt=0)  # defaults to handler timeout + 30s
    shutdown_grace_seconds: float = Field(default=10.0, ge=0)

    model_config = SettingsConfigDict(env_prefix="SCHEDULER_", env_ignore_empty=True, validate_assignment=True)

    @classmethod
    def keys(cls):
        return list(cls.model_fields)

    @classmethod
    def settable_keys(cls):
        return [k for k in cls.model_fields if k not in NOT_STORED]

    @classmethod
    def load(cls, storage=None, **overrides):
        """Defaults, then environment, then the store's config table, then explicit overrides."""
        values = {}
        if storage is not None:
            for key, value, _ in storage.list_config():
                if key in cls.settable_keys():
                    values[key] = value
                else:
                    logger.warning("Ignoring unknown or fixed config key %r in store", key)
        values.update({k: v for k, v in overrides.items() if v is not None})
        try:
            # init kwargs take priority over the environment
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"invalid scheduler configuration: {e}") from e

    @property
    def rate_limit_window_seconds(self):
        return RATE_LIMIT_WINDOW_SECONDS

    @property
    def effective_lease_seconds(self):
        if self.lease_seconds is not None:
            return self.lease_seconds
        return self.handler_timeout_seconds + 30

    def as_dict(self):
        return {**self.model_dump(), "rate_limit_window_seconds": self.rate_limit_window_seconds}


def coerce(key, raw):
    """Validate a raw (usually string) value against SchedulerConfig.<key> and return it typed."""
    if key not in SchedulerConfig.model_fields:
        raise ConfigError(f"unknown config key {key!r}")
    config = SchedulerConfig.model_construct()
    try:
        setattr(config, key, raw)
    except ValidationError as e:
        raise ConfigError(f"invalid value for {key}: {raw!r}") from e
    return getattr(config, key)
