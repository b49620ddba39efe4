"""
Configuration management for STREAM-LEASE.

Handles environment variable loading, validation, and provides sensible defaults
for all configuration parameters.
"""

import os
import uuid
from typing import Annotated, List, Optional, Union

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode


class ConfigurationError(ValueError):
    """
    Raised when configuration is invalid.

    Fatal at process startup: no partition is claimed once this is raised.
    """


def generate_consumer_id() -> str:
    """Generate a unique consumer ID for this process."""
    hostname = os.getenv("HOSTNAME", "unknown")
    unique_suffix = str(uuid.uuid4())[:8]
    return f"consumer-{hostname}-{unique_suffix}"


class StreamLeaseConfig(BaseSettings):
    """
    STREAM-LEASE configuration loaded from environment variables.

    All configuration parameters can be set via environment variables with
    the STREAM_LEASE_ prefix. For example, STREAM_LEASE_LEASE_DURATION_SECONDS
    sets the lease_duration_seconds field.
    """

    # Consumer identity
    consumer_id: str = Field(
        default_factory=generate_consumer_id,
        description="Unique identifier of this consumer process (lease owner id)"
    )
    consumer_group: str = Field(
        default="$Default",
        description="Consumer group the fleet reads with"
    )

    # Leasing
    lease_duration_seconds: float = Field(
        default=15.0,
        ge=2.0,
        le=300.0,
        description="How long an acquired or renewed lease stays valid"
    )
    renew_interval_seconds: Optional[float] = Field(
        default=None,
        gt=0,
        description="Interval between lease renewals (defaults to half the lease duration)"
    )
    dispatch_interval_seconds: float = Field(
        default=5.0,
        gt=0,
        le=300.0,
        description="Interval between dispatcher claim/rebalance cycles"
    )
    balancing_mode: str = Field(
        default="dynamic",
        description="Partition balancing mode (dynamic or static)"
    )
    process_index: int = Field(
        default=0,
        ge=0,
        description="Index of this process in the fleet (static balancing only)"
    )
    process_count: int = Field(
        default=1,
        ge=1,
        description="Number of processes in the fleet (static balancing only)"
    )

    # Consumption
    receive_batch_size: int = Field(
        default=100,
        ge=1,
        le=10000,
        description="Maximum number of events per received batch"
    )
    receive_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        le=600.0,
        description="Maximum wait for a batch before an empty receive"
    )
    start_position: str = Field(
        default="earliest",
        description="Where to start a partition with no checkpoint (earliest or latest)"
    )
    partition_ids: Annotated[Optional[List[str]], NoDecode] = Field(
        default=None,
        description="Explicit partition IDs (comma-separated); discovered from the source when unset"
    )

    # Resilience
    checkpoint_max_attempts: int = Field(
        default=5,
        ge=1,
        le=50,
        description="Maximum attempts for a single checkpoint write"
    )
    shutdown_grace_seconds: float = Field(
        default=30.0,
        gt=0,
        le=600.0,
        description="Time workers are given to close on shutdown"
    )
    max_consecutive_store_failures: int = Field(
        default=10,
        ge=1,
        description="Dispatcher cycles with store errors before the run is aborted"
    )
    max_idle_claim_cycles: int = Field(
        default=12,
        ge=0,
        description="Cycles in which store errors kept every unowned partition unclaimed before the run is aborted (0 disables)"
    )
    default_base_delay_ms: int = Field(
        default=100,
        ge=10,
        le=5000,
        description="Base delay in milliseconds for backoff"
    )
    default_max_delay_ms: int = Field(
        default=30000,
        ge=100,
        le=300000,
        description="Maximum delay in milliseconds for backoff"
    )

    # Storage
    storage_mode: str = Field(
        default="sqlite",
        description="Lease and checkpoint store backend (memory, sqlite or snowflake)"
    )
    lease_db_path: str = Field(
        default="stream_lease_leases.db",
        description="SQLite database file holding partition leases"
    )
    checkpoint_db_path: str = Field(
        default="stream_lease_checkpoints.db",
        description="SQLite database file holding partition checkpoints"
    )
    snowflake_account: Optional[str] = Field(default=None, description="Snowflake account identifier")
    snowflake_user: Optional[str] = Field(default=None, description="Snowflake username")
    snowflake_password: Optional[str] = Field(default=None, description="Snowflake password")
    snowflake_database: Optional[str] = Field(default=None, description="Snowflake database name")
    snowflake_schema: str = Field(default="PUBLIC", description="Snowflake schema name")
    snowflake_warehouse: Optional[str] = Field(default=None, description="Snowflake warehouse name (optional)")
    snowflake_role: Optional[str] = Field(default=None, description="Snowflake role name (optional)")

    # Event source
    source_mode: str = Field(
        default="eventhub",
        description="Event source (memory or eventhub)"
    )
    eventhub_connection_string: Optional[str] = Field(
        default=None,
        description="Event Hubs namespace or entity connection string"
    )
    eventhub_name: Optional[str] = Field(
        default=None,
        description="Event Hub name"
    )
    eventhub_prefetch: int = Field(
        default=300,
        ge=1,
        description="Event Hubs receive prefetch count"
    )

    # Telemetry
    telemetry_endpoint: Optional[str] = Field(
        default=None,
        description="HTTP endpoint receiving telemetry batches (optional)"
    )
    telemetry_queue_size: int = Field(
        default=1000,
        ge=1,
        description="Telemetry events buffered before new ones are dropped"
    )

    # API Configuration
    api_enabled: bool = Field(
        default=True,
        description="Serve the read-only status API"
    )
    api_host: str = Field(
        default="0.0.0.0",
        description="Host address for the status API"
    )
    api_port: int = Field(
        default=8000,
        ge=1024,
        le=65535,
        description="Port for the status API"
    )

    # Logging Configuration
    log_level: str = Field(
        default="INFO",
        description="Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)"
    )
    log_format: str = Field(
        default="json",
        description="Log format (json or console)"
    )

    model_config = {"env_prefix": "STREAM_LEASE_", "case_sensitive": False}

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v):
        """Validate log level is one of the standard Python logging levels."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v):
        """Validate log format is supported."""
        valid_formats = {"json", "console"}
        if v.lower() not in valid_formats:
            raise ValueError(f"log_format must be one of {valid_formats}")
        return v.lower()

    @field_validator("storage_mode")
    @classmethod
    def validate_storage_mode(cls, v):
        valid_modes = {"memory", "sqlite", "snowflake"}
        if v.lower() not in valid_modes:
            raise ValueError(f"storage_mode must be one of {valid_modes}")
        return v.lower()

    @field_validator("source_mode")
    @classmethod
    def validate_source_mode(cls, v):
        valid_modes = {"memory", "eventhub"}
        if v.lower() not in valid_modes:
            raise ValueError(f"source_mode must be one of {valid_modes}")
        return v.lower()

    @field_validator("balancing_mode")
    @classmethod
    def validate_balancing_mode(cls, v):
        valid_modes = {"dynamic", "static"}
        if v.lower() not in valid_modes:
            raise ValueError(f"balancing_mode must be one of {valid_modes}")
        return v.lower()

    @field_validator("start_position")
    @classmethod
    def validate_start_position(cls, v):
        valid_positions = {"earliest", "latest"}
        if v.lower() not in valid_positions:
            raise ValueError(f"start_position must be one of {valid_positions}")
        return v.lower()

    @field_validator("partition_ids", mode="before")
    @classmethod
    def split_partition_ids(cls, v: Union[str, List[str], None]):
        """Accept a comma-separated string as well as a list."""
        if v is None or v == "":
            return None
        if isinstance(v, str):
            v = [part.strip() for part in v.split(",")]
        cleaned = [str(part) for part in v if str(part)]
        if not cleaned:
            return None
        if len(set(cleaned)) != len(cleaned):
            raise ValueError("partition_ids must not contain duplicates")
        return cleaned

    @model_validator(mode='after')
    def validate_timing_relationships(self):
        """Validate relationships between timing and mode fields."""
        if (self.renew_interval_seconds is not None and
                self.renew_interval_seconds >= self.lease_duration_seconds):
            raise ValueError(
                f"renew_interval_seconds ({self.renew_interval_seconds}) must be less than "
                f"lease_duration_seconds ({self.lease_duration_seconds})"
            )

        if self.default_max_delay_ms <= self.default_base_delay_ms:
            raise ValueError(
                f"default_max_delay_ms ({self.default_max_delay_ms}) must be greater than "
                f"default_base_delay_ms ({self.default_base_delay_ms})"
            )

        if self.balancing_mode == "static" and self.process_index >= self.process_count:
            raise ValueError(
                f"process_index ({self.process_index}) must be less than "
                f"process_count ({self.process_count})"
            )

        if self.storage_mode == "snowflake":
            missing = [
                name for name in (
                    "snowflake_account", "snowflake_user",
                    "snowflake_password", "snowflake_database",
                )
                if not (getattr(self, name) or "").strip()
            ]
            if missing:
                raise ValueError(
                    f"storage_mode 'snowflake' requires: {', '.join(missing)}"
                )

        if self.source_mode == "eventhub":
            if not self.eventhub_connection_string:
                raise ValueError("source_mode 'eventhub' requires eventhub_connection_string")

        return self

    @property
    def effective_renew_interval_seconds(self) -> float:
        """Renewal interval, half the lease duration unless configured."""
        if self.renew_interval_seconds is not None:
            return self.renew_interval_seconds
        return self.lease_duration_seconds / 2

    @property
    def snowflake_connection_params(self) -> dict:
        """Get Snowflake connection parameters as a dictionary."""
        params = {
            "account": self.snowflake_account,
            "user": self.snowflake_user,
            "password": self.snowflake_password,
            "database": self.snowflake_database,
            "schema": self.snowflake_schema,
        }

        if self.snowflake_warehouse:
            params["warehouse"] = self.snowflake_warehouse
        if self.snowflake_role:
            params["role"] = self.snowflake_role

        return params


def load_config(**overrides) -> StreamLeaseConfig:
    """
    Load and validate configuration from environment variables.

    Args:
        **overrides: Field values taking precedence over the environment

    Returns:
        StreamLeaseConfig: Validated configuration instance

    Raises:
        ConfigurationError: If configuration validation fails, with one line
            per offending field
    """
    try:
        return StreamLeaseConfig(**overrides)
    except Exception as e:
        error_details = []

        if hasattr(e, 'errors'):
            for error in e.errors():
                field = '.'.join(str(loc) for loc in error['loc']) or "config"
                message = error['msg']
                error_details.append(f"\n  - {field}: {message}")

        if error_details:
            detailed_message = (
                f"Configuration validation failed with the following errors:"
                f"{''.join(error_details)}\n\n"
                f"Please check your environment variables with STREAM_LEASE_ prefix.\n"
                f"Example: export STREAM_LEASE_EVENTHUB_CONNECTION_STRING='Endpoint=sb://...'"
            )
        else:
            detailed_message = (
                f"Configuration validation failed: {str(e)}. "
                f"Please check your environment variables with STREAM_LEASE_ prefix."
            )

        raise ConfigurationError(detailed_message) from e


def validate_config_at_startup(config: StreamLeaseConfig) -> None:
    """
    Perform additional runtime validation of configuration.

    Args:
        config: The loaded configuration to validate

    Raises:
        ConfigurationError: If runtime validation fails
    """
    renew_interval = config.effective_renew_interval_seconds
    if renew_interval > config.lease_duration_seconds * 0.75:
        raise ConfigurationError(
            f"renew interval ({renew_interval}s) leaves too little slack before the "
            f"lease expires ({config.lease_duration_seconds}s); use at most 75% of the duration"
        )

    if config.dispatch_interval_seconds > config.lease_duration_seconds * 4:
        raise ConfigurationError(
            f"dispatch_interval_seconds ({config.dispatch_interval_seconds}) should not exceed "
            f"4x lease_duration_seconds ({config.lease_duration_seconds}); expired partitions "
            f"would sit unclaimed for several lease intervals"
        )

    if config.source_mode == "eventhub" and config.partition_ids is None and not config.eventhub_name:
        if "EntityPath=" not in (config.eventhub_connection_string or ""):
            raise ConfigurationError(
                "eventhub_name is required when the connection string has no EntityPath"
            )
