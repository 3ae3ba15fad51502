"""Application configuration for the pod metadata exporter."""

import socket
from pathlib import Path
from typing import Annotated, Any, Self

import yaml
from pydantic import AliasChoices, Field, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
)
from safir.logging import LogLevel, Profile, configure_logging
from safir.pydantic import HumanTimedelta

from .constants import (
    BACKOFF_INITIAL,
    BACKOFF_MAX,
    DESTINATION_DIR,
    ENV_PREFIX,
    LEGACY_ENV_PREFIX,
    RECONNECT_TIMEOUT,
    RETENTION_PERIOD,
    ROOT_LOGGER,
)

__all__ = ["Config"]


class EnvFirstSettings(BaseSettings):
    """Base class for Pydantic settings with environment overrides.

    Classes that inherit from this base class will prioritize environment
    variables over arguments to the class constructor.
    """

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX, extra="forbid", populate_by_name=True
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        """Override the sources of settings.

        Deactivate :file:`.env` and secret file support, which are not used.
        Allow environment variables to override init parameters, since init
        parameters come from the YAML configuration file and we want
        environment variables to take precedence.
        """
        return (env_settings, init_settings)


class Config(EnvFirstSettings):
    """Configuration for the pod metadata exporter."""

    node_name: Annotated[
        str,
        Field(
            title="Node to track",
            description="Name of the node whose pods should be exported",
            default_factory=socket.gethostname,
            validation_alias=AliasChoices(
                ENV_PREFIX + "NODE_NAME",
                LEGACY_ENV_PREFIX + "NODE_NAME",
                "nodeName",
            ),
        ),
    ]

    retention_period: Annotated[
        HumanTimedelta,
        Field(
            title="Retention period",
            description=(
                "How long to keep the metadata file of a pod after the pod"
                " was deleted"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "RETENTION_PERIOD",
                LEGACY_ENV_PREFIX + "RETENTION_PERIOD",
                "retentionPeriod",
            ),
        ),
    ] = RETENTION_PERIOD

    destination_dir: Annotated[
        Path,
        Field(
            title="Destination directory",
            description="Directory in which to write metadata files",
            validation_alias=AliasChoices(
                ENV_PREFIX + "DESTINATION_DIR",
                LEGACY_ENV_PREFIX + "DESTINATION_DIR",
                "destinationDir",
            ),
        ),
    ] = DESTINATION_DIR

    reconnect_timeout: Annotated[
        HumanTimedelta,
        Field(
            title="Watch reconnect timeout",
            description=(
                "How long to let the API server hold a watch open before"
                " reopening it"
            ),
            validation_alias=AliasChoices(
                ENV_PREFIX + "RECONNECT_TIMEOUT", "reconnectTimeout"
            ),
        ),
    ] = RECONNECT_TIMEOUT

    backoff_initial: Annotated[
        HumanTimedelta,
        Field(
            title="Initial retry delay",
            description="Upper bound of the delay before the first retry",
            validation_alias=AliasChoices(
                ENV_PREFIX + "BACKOFF_INITIAL", "backoffInitial"
            ),
        ),
    ] = BACKOFF_INITIAL

    backoff_max: Annotated[
        HumanTimedelta,
        Field(
            title="Maximum retry delay",
            description="Ceiling on the delay between connection retries",
            validation_alias=AliasChoices(
                ENV_PREFIX + "BACKOFF_MAX", "backoffMax"
            ),
        ),
    ] = BACKOFF_MAX

    debug: Annotated[
        bool,
        Field(
            title="Show debug output and log style",
            description=(
                "If True, log at debug level with human-readable rather"
                " than JSON output"
            ),
        ),
    ] = False

    log_profile: Annotated[
        Profile,
        Field(
            title="Logging profile",
            validation_alias=AliasChoices(
                ENV_PREFIX + "LOG_PROFILE", "logProfile"
            ),
        ),
    ] = Profile.production

    log_level: Annotated[
        LogLevel,
        Field(
            title="Log level",
            validation_alias=AliasChoices(
                ENV_PREFIX + "LOG_LEVEL", "logLevel"
            ),
        ),
    ] = LogLevel.INFO

    add_timestamp: Annotated[
        bool,
        Field(
            title="Add timestamp to log lines",
            validation_alias=AliasChoices(
                ENV_PREFIX + "ADD_TIMESTAMP", "addTimestamp"
            ),
        ),
    ] = False

    @model_validator(mode="after")
    def validate_backoff(self) -> Self:
        if self.backoff_initial.total_seconds() <= 0:
            raise ValueError("backoffInitial must be positive")
        if self.backoff_max < self.backoff_initial:
            msg = "backoffMax must not be less than backoffInitial"
            raise ValueError(msg)
        return self

    @classmethod
    def from_file(cls, path: Path) -> Self:
        """Construct the configuration from a YAML file.

        Parameters
        ----------
        path
            Path to the configuration file in YAML.

        Returns
        -------
        Config
            The corresponding configuration.
        """
        with path.open("r") as f:
            config = cls.model_validate(yaml.safe_load(f) or {})
        return config

    def to_logging_dict(self) -> dict[str, Any]:
        """Return the configuration in a form suitable for logging."""
        return self.model_dump(mode="json", by_alias=False)

    def configure_logging(self) -> None:
        """Configure logging based on the exporter configuration."""
        if self.debug:
            log_level = LogLevel.DEBUG
            log_profile = Profile.development
        else:
            log_level = self.log_level
            log_profile = self.log_profile

        configure_logging(
            profile=log_profile,
            log_level=log_level,
            add_timestamp=self.add_timestamp,
            name=ROOT_LOGGER,
        )
