"""Configuration schema using Pydantic."""

from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

from habitclock.utils.helpers import get_data_path


class AlarmDefaults(BaseModel):
    """Defaults applied to new alarms and to re-arming."""

    owner_id: str = "local"
    default_verification_delay: str = "10 minutes"
    rearm_interval_days: int = Field(default=7, ge=1)

    @field_validator("default_verification_delay")
    @classmethod
    def validate_delay(cls, v: str) -> str:
        from habitclock.alarms.resolver import parse_delay_minutes

        parse_delay_minutes(v)
        return v


class DeliveryConfig(BaseModel):
    """Local notification delivery.

    ``permission_granted`` stands in for the OS-level notification
    permission; when false, scheduling is refused without side effects.
    """

    model_config = ConfigDict(extra="ignore")

    permission_granted: bool = True
    alarm_body: str = "Time for your habit!"
    verification_title: str = "Did you complete: {title}?"
    verification_body: str = "Tap to mark as completed"
    sound: bool = True


class DispatcherConfig(BaseModel):
    """Delivery loop configuration."""

    max_sleep_s: float = Field(default=60.0, gt=0)
    missed_after_minutes: int = Field(default=60, ge=1)  # older timers are skipped, not shown


class Config(BaseSettings):
    """Root configuration for habitclock.

    ``HABITCLOCK_*`` environment variables override values read from
    config.json, which is passed in as init kwargs.
    """

    model_config = SettingsConfigDict(env_prefix="HABITCLOCK_", env_nested_delimiter="__")

    workspace: str = ""  # empty: <data dir>/workspace
    alarms: AlarmDefaults = Field(default_factory=AlarmDefaults)
    delivery: DeliveryConfig = Field(default_factory=DeliveryConfig)
    dispatcher: DispatcherConfig = Field(default_factory=DispatcherConfig)

    @property
    def workspace_path(self) -> Path:
        """Get expanded workspace path."""
        if self.workspace:
            return Path(self.workspace).expanduser()
        return get_data_path() / "workspace"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        return env_settings, init_settings, dotenv_settings, file_secret_settings
