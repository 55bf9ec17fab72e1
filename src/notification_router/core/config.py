"""Configuration system for the notification dispatch engine.

This module implements the configuration schema using Pydantic for
validation, with support for environment variable resolution and fail-fast
validation with actionable error messages. An empty file yields a valid
console-only configuration.
"""

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Annotated, Final, Self

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from notification_router.types.requests import BatchSettings

# Matches ${VARIABLE_NAME} where VARIABLE_NAME is upper-case letters, digits and underscores
ENV_VAR_PATTERN: Final[re.Pattern[str]] = re.compile(r"\$\{([A-Z0-9_]+)\}")


class ApplicationConfig(BaseModel):
    """Application-level settings: logging level and syslog integration."""

    log_level: Annotated[
        str,
        Field(
            description="Logging level",
            pattern=r"^(DEBUG|INFO|WARNING|ERROR|CRITICAL)$",
        ),
    ] = "INFO"
    syslog_enabled: Annotated[
        bool,
        Field(
            description="Enable syslog integration",
        ),
    ] = False


class DeliveryConfig(BaseModel):
    """Delivery Pipeline settings."""

    send_timeout_seconds: Annotated[
        float,
        Field(
            gt=0,
            description="Upper bound on a single channel send call",
        ),
    ] = 15.0


class RetryConfig(BaseModel):
    """Retry / escalation policy settings.

    Backoff is fixed at ``2**retry_count`` minutes; ``max_retries`` caps the
    number of re-attempts before a notification is escalated to dead-letter.
    """

    max_retries: Annotated[
        int,
        Field(
            ge=0,
            le=10,
            description="Re-attempts before escalation to dead-letter",
        ),
    ] = 3
    redrive_poll_seconds: Annotated[
        float,
        Field(
            gt=0,
            description="Safety poll interval for the retry re-driver",
        ),
    ] = 30.0


class BatchConfig(BaseModel):
    """Batch Orchestrator defaults and fan-out bound."""

    batch_size: Annotated[int, Field(gt=0, description="Recipients per chunk")] = 50
    delay_between_batches_ms: Annotated[
        int,
        Field(ge=0, description="Pause between chunks in milliseconds"),
    ] = 1000
    parallel: Annotated[bool, Field(description="Process chunks concurrently")] = True
    continue_on_error: Annotated[
        bool,
        Field(description="Keep delivering within a chunk after a failure"),
    ] = True
    max_parallel_chunks: Annotated[
        int,
        Field(gt=0, description="Upper bound on concurrently processed chunks"),
    ] = 8

    def default_settings(self) -> BatchSettings:
        """Return the per-request settings implied by these defaults."""
        return BatchSettings(
            batch_size=self.batch_size,
            delay_between_batches_ms=self.delay_between_batches_ms,
            parallel=self.parallel,
            continue_on_error=self.continue_on_error,
        )


class SchedulerConfig(BaseModel):
    """Scheduler settings."""

    misfire_buffer_seconds: Annotated[
        float,
        Field(
            ge=0,
            description="Delay applied to jobs whose fire time already passed",
        ),
    ] = 30.0
    job_group: Annotated[
        str,
        Field(
            min_length=1,
            description="Group name shared by all notification jobs",
        ),
    ] = "notification_jobs"
    recover_on_start: Annotated[
        bool,
        Field(
            description="Re-arm uncompleted jobs from the job store on startup",
        ),
    ] = True


class BusConfig(BaseModel):
    """Event bus settings. When disabled, submissions are delivered directly."""

    enabled: Annotated[bool, Field(description="Route submissions through the event bus")] = False
    transport_max_retries: Annotated[
        int,
        Field(ge=0, description="Retry-lane redeliveries before dead-letter"),
    ] = 3
    retry_base_delay_ms: Annotated[
        int,
        Field(gt=0, description="Base delay for retry-lane redelivery"),
    ] = 1000
    retry_max_delay_ms: Annotated[
        int,
        Field(gt=0, description="Ceiling on retry-lane redelivery delay"),
    ] = 10000

    @model_validator(mode="after")
    def validate_delay_bounds(self) -> Self:
        if self.retry_max_delay_ms < self.retry_base_delay_ms:
            msg = "retry_max_delay_ms must be >= retry_base_delay_ms"
            raise ValueError(msg)
        return self


class ConsoleChannelConfig(BaseModel):
    """Console channel: renders the notification to stdout and the log."""

    enabled: Annotated[bool, Field(description="Register this channel")] = True
    priority: Annotated[int, Field(ge=0, description="Lower value wins resolution")] = 2


class SmtpChannelConfig(BaseModel):
    """SMTP email channel."""

    enabled: Annotated[bool, Field(description="Register this channel")] = False
    priority: Annotated[int, Field(ge=0, description="Lower value wins resolution")] = 1
    host: Annotated[str, Field(description="SMTP server hostname")] = "localhost"
    port: Annotated[int, Field(gt=0, le=65535, description="SMTP server port")] = 587
    username: Annotated[str | None, Field(description="SMTP login user")] = None
    password: Annotated[str | None, Field(description="SMTP login password")] = None
    use_tls: Annotated[bool, Field(description="Upgrade the connection with STARTTLS")] = True
    from_address: Annotated[
        str,
        Field(description="Envelope sender address"),
    ] = "noreply@notificationservice.com"
    timeout_seconds: Annotated[float, Field(gt=0, description="SMTP operation timeout")] = 10.0


class TwilioChannelConfig(BaseModel):
    """Twilio SMS channel."""

    enabled: Annotated[bool, Field(description="Register this channel")] = False
    priority: Annotated[int, Field(ge=0, description="Lower value wins resolution")] = 1
    account_sid: Annotated[str, Field(description="Twilio account SID")] = ""
    auth_token: Annotated[str, Field(description="Twilio auth token")] = ""
    from_number: Annotated[str, Field(description="Sender phone number in E.164 form")] = ""

    @model_validator(mode="after")
    def validate_credentials(self) -> Self:
        if self.enabled and not (self.account_sid and self.auth_token and self.from_number):
            msg = "account_sid, auth_token and from_number are required when Twilio is enabled"
            raise ValueError(msg)
        return self


class WebhookPushChannelConfig(BaseModel):
    """Push channel posting to an HTTP push gateway."""

    enabled: Annotated[bool, Field(description="Register this channel")] = False
    priority: Annotated[int, Field(ge=0, description="Lower value wins resolution")] = 1
    url: Annotated[str, Field(description="Push gateway endpoint")] = ""
    timeout_seconds: Annotated[float, Field(gt=0, description="Per-request timeout")] = 10.0
    max_retries: Annotated[int, Field(ge=0, le=10, description="HTTP-level retry attempts")] = 2

    @field_validator("url", mode="after")
    @classmethod
    def validate_url_scheme(cls, v: str) -> str:
        if v and not v.startswith(("http://", "https://")):
            msg = f"Push gateway URL must use http or https: {v}"
            raise ValueError(msg)
        return v

    @model_validator(mode="after")
    def validate_url_present(self) -> Self:
        if self.enabled and not self.url:
            msg = "url is required when the push gateway channel is enabled"
            raise ValueError(msg)
        return self


class EmailChannelsConfig(BaseModel):
    console: ConsoleChannelConfig = ConsoleChannelConfig()
    smtp: SmtpChannelConfig = SmtpChannelConfig()


class SmsChannelsConfig(BaseModel):
    console: ConsoleChannelConfig = ConsoleChannelConfig()
    twilio: TwilioChannelConfig = TwilioChannelConfig()


class PushChannelsConfig(BaseModel):
    console: ConsoleChannelConfig = ConsoleChannelConfig()
    webhook: WebhookPushChannelConfig = WebhookPushChannelConfig()


class ChannelsConfig(BaseModel):
    """Channel enablement and per-channel settings, grouped by channel type."""

    email: EmailChannelsConfig = EmailChannelsConfig()
    sms: SmsChannelsConfig = SmsChannelsConfig()
    push: PushChannelsConfig = PushChannelsConfig()


class MainConfig(BaseModel):
    """Top-level configuration.

    Aggregates every section; each has defaults so ``MainConfig()`` is a
    valid console-only configuration with the event bus disabled.
    """

    application: Annotated[
        ApplicationConfig,
        Field(description="Application-level configuration"),
    ] = ApplicationConfig()
    delivery: Annotated[
        DeliveryConfig,
        Field(description="Delivery pipeline configuration"),
    ] = DeliveryConfig()
    retry: Annotated[
        RetryConfig,
        Field(description="Retry and escalation configuration"),
    ] = RetryConfig()
    batch: Annotated[
        BatchConfig,
        Field(description="Batch fan-out configuration"),
    ] = BatchConfig()
    scheduler: Annotated[
        SchedulerConfig,
        Field(description="Deferred delivery configuration"),
    ] = SchedulerConfig()
    bus: Annotated[
        BusConfig,
        Field(description="Event bus configuration"),
    ] = BusConfig()
    channels: Annotated[
        ChannelsConfig,
        Field(description="Delivery channel configuration"),
    ] = ChannelsConfig()


class EnvironmentVariableError(Exception):
    """Raised when a referenced environment variable is not set.

    The message names the variable but never its value.
    """


class ConfigurationError(Exception):
    """Raised when configuration loading or validation fails."""


def resolve_env_var(value: str) -> str:
    """Resolve ``${VARIABLE_NAME}`` references in a string value.

    Args:
        value: String potentially containing environment variable references

    Returns:
        String with environment variables resolved

    Raises:
        EnvironmentVariableError: If a referenced variable is not set

    Examples:
        >>> os.environ["SMTP_PASSWORD"] = "secret_value"
        >>> resolve_env_var("${SMTP_PASSWORD}")
        'secret_value'
    """

    def replace_match(match: re.Match[str]) -> str:
        var_name = match.group(1)
        env_value = os.environ.get(var_name)
        if env_value is None:
            msg = (
                f"Required environment variable '{var_name}' is not set. "
                f"Please set this variable before starting the application."
            )
            raise EnvironmentVariableError(msg)
        return env_value

    return ENV_VAR_PATTERN.sub(replace_match, value)


def resolve_env_vars_in_dict(data: Mapping[str, object]) -> dict[str, object]:
    """Recursively resolve environment variables in a YAML mapping.

    Strings nested in dicts and lists are resolved; other values are kept
    as-is. Runs before Pydantic validation.
    """
    return {key: _resolve_node(value) for key, value in data.items()}


def _resolve_node(value: object) -> object:
    if isinstance(value, str):
        return resolve_env_var(value)
    if isinstance(value, dict):
        # YAML data is untyped at load time; validated by Pydantic after resolution
        return resolve_env_vars_in_dict(value)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    if isinstance(value, list):
        return [_resolve_node(item) for item in value]  # pyright: ignore[reportUnknownVariableType]  # YAML boundary
    return value


def load_yaml_mapping(path: Path, *, description: str = "configuration") -> dict[str, object]:
    """Load a YAML file whose root must be a mapping, resolving ``${VAR}`` references.

    An empty file yields an empty mapping.

    Raises:
        ConfigurationError: If the file is missing, unreadable, malformed, or
            references an unset environment variable
    """
    if not path.exists():
        msg = f"{description.capitalize()} file not found: {path}\nPlease create the file at this location."
        raise ConfigurationError(msg)

    try:
        with path.open("r") as f:
            raw_data: object = yaml.safe_load(f)  # pyright: ignore[reportAny]  # YAML boundary
    except yaml.YAMLError as e:
        msg = (
            f"Failed to parse YAML {description} file: {path}\n"
            f"YAML parsing error: {e}\n"
            f"Please check the file for syntax errors."
        )
        raise ConfigurationError(msg) from e
    except OSError as e:
        msg = f"Failed to read {description} file: {path}\nError: {e}\nPlease check file permissions."
        raise ConfigurationError(msg) from e

    if raw_data is None:
        return {}

    if not isinstance(raw_data, dict):
        msg = (
            f"Invalid {description} file format: {path}\n"
            f"Expected YAML dictionary at root level, got: {type(raw_data).__name__}"
        )
        raise ConfigurationError(msg)

    try:
        return resolve_env_vars_in_dict(raw_data)  # pyright: ignore[reportUnknownArgumentType]  # YAML boundary
    except EnvironmentVariableError as e:
        msg = (
            f"Environment variable resolution failed in: {path}\n"
            f"{e}\n"
            f"Set the required environment variable before starting the application."
        )
        raise ConfigurationError(msg) from e


def format_validation_error(error: ValidationError, *, source: Path | None, heading: str) -> str:
    """Render a Pydantic error as field-level diagnostics."""
    error_lines = [heading, ""]
    for detail in error.errors():
        field_path = " → ".join(str(loc) for loc in detail["loc"])
        error_lines.append(f"  Field: {field_path}")
        error_lines.append(f"  Error: {detail['msg']}")
        error_lines.append(f"  Type: {detail['type']}")
        error_lines.append("")
    if source is not None:
        error_lines.append(f"Configuration file: {source}")
    error_lines.append("Please fix the above errors and try again.")
    return "\n".join(error_lines)


def load_main_config(config_path: Path) -> MainConfig:
    """Load and validate the engine configuration from a YAML file.

    Args:
        config_path: Path to the configuration YAML file

    Returns:
        Validated MainConfig instance

    Raises:
        ConfigurationError: If the file cannot be loaded or is invalid

    Examples:
        >>> config = load_main_config(Path("config/notification-router.yaml"))
        >>> config.batch.max_parallel_chunks
        8
    """
    resolved_data = load_yaml_mapping(config_path)

    try:
        return MainConfig.model_validate(resolved_data)
    except ValidationError as e:
        msg = format_validation_error(e, source=config_path, heading="Configuration validation failed:")
        raise ConfigurationError(msg) from e
