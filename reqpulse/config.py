import logging
import socket
from functools import lru_cache

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    service_name: str = Field(default="reqpulse", alias="OTEL_SERVICE_NAME", min_length=1)
    service_version: str = Field(default="1.0.0", alias="OTEL_SERVICE_VERSION")
    service_namespace: str = Field(default="development", alias="OTEL_SERVICE_NAMESPACE")
    service_instance_id: str = Field(default_factory=socket.gethostname, alias="OTEL_SERVICE_INSTANCE_ID")
    environment: str = Field(default="development", alias="DEPLOYMENT_ENVIRONMENT")

    exporter_endpoint: str = Field(default="http://localhost:4318/v1/traces", alias="OTEL_COLLECTOR_URL")
    exporter_headers: dict[str, str] = Field(default_factory=dict, alias="OTEL_COLLECTOR_HEADERS")
    exporter_otlp_enabled: bool = Field(default=True, alias="OTEL_EXPORTER_OTLP_ENABLED")
    exporter_console_enabled: bool = Field(default=False, alias="OTEL_EXPORTER_CONSOLE_ENABLED")
    sampling_ratio: float = Field(default=1.0, alias="OTEL_SAMPLING_RATIO", ge=0.0, le=1.0)

    batch_size: int = Field(default=512, alias="OTEL_BSP_MAX_EXPORT_BATCH_SIZE", gt=0)
    max_queue_size: int = Field(default=2048, alias="OTEL_BSP_MAX_QUEUE_SIZE", gt=0)
    flush_interval_ms: int = Field(default=5000, alias="OTEL_BSP_SCHEDULE_DELAY", gt=0)
    export_timeout_ms: int = Field(default=30000, alias="OTEL_BSP_EXPORT_TIMEOUT", gt=0)
    export_retry_delay_s: float = Field(default=1.0, alias="OTEL_EXPORT_RETRY_DELAY", ge=0.0)
    shutdown_timeout_s: float = Field(default=10.0, alias="OTEL_SHUTDOWN_TIMEOUT", gt=0.0)

    instrument_http_server: bool = Field(default=True, alias="OTEL_INSTRUMENT_HTTP_SERVER")
    instrument_http_client: bool = Field(default=True, alias="OTEL_INSTRUMENT_HTTP_CLIENT")
    instrument_log_correlation: bool = Field(default=True, alias="OTEL_INSTRUMENT_LOGGING")

    trace_exclude_paths: list[str] = Field(
        default_factory=lambda: ["/health", "/live", "/ready", "/metrics", "/favicon.ico"],
        alias="TRACE_EXCLUDE_PATHS",
    )
    # Prometheus and Jaeger UIs on the local host.
    trace_exclude_hosts: list[str] = Field(
        default_factory=lambda: ["localhost:9090", "localhost:3000"],
        alias="TRACE_EXCLUDE_HOSTS",
    )
    metrics_exclude_paths: list[str] = Field(default_factory=lambda: ["/metrics"], alias="METRICS_EXCLUDE_PATHS")
    route_label_limit: int = Field(default=100, alias="ROUTE_LABEL_LIMIT", ge=0)

    broadcast_interval_s: float = Field(default=5.0, alias="BROADCAST_INTERVAL", gt=0.0)
    broadcast_trace_limit: int = Field(default=20, alias="BROADCAST_TRACE_LIMIT", ge=0)
    trace_buffer_size: int = Field(default=100, alias="TRACE_BUFFER_SIZE", gt=0)
    subscriber_queue_size: int = Field(default=8, alias="SUBSCRIBER_QUEUE_SIZE", ge=2)
    subscriber_send_timeout_s: float = Field(default=2.0, alias="SUBSCRIBER_SEND_TIMEOUT", gt=0.0)
    dashboard_error_status: int = Field(default=400, alias="DASHBOARD_ERROR_STATUS", ge=100, le=599)
    enable_process_metrics: bool = Field(default=True, alias="ENABLE_PROCESS_METRICS")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    host: str = Field(default="127.0.0.1", alias="HOST")
    port: int = Field(default=3000, alias="PORT", gt=0, lt=65536)

    @field_validator("trace_exclude_paths", "metrics_exclude_paths")
    @classmethod
    def _paths_are_absolute(cls, value: list[str]) -> list[str]:
        for path in value:
            if not path.startswith("/"):
                raise ValueError(f"path {path!r} must start with '/'")
        return value

    @field_validator("trace_exclude_hosts")
    @classmethod
    def _hosts_are_well_formed(cls, value: list[str]) -> list[str]:
        for entry in value:
            host, sep, port = entry.rpartition(":")
            if sep and (not host or not port.isdigit()):
                raise ValueError(f"host entry {entry!r} must be 'host' or 'host:port'")
        return value

    @field_validator("log_level")
    @classmethod
    def _known_log_level(cls, value: str) -> str:
        level = value.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"unknown log level {value!r}")
        return level

    @model_validator(mode="after")
    def _batch_fits_queue(self) -> "Settings":
        if self.batch_size > self.max_queue_size:
            raise ValueError("OTEL_BSP_MAX_EXPORT_BATCH_SIZE must not exceed OTEL_BSP_MAX_QUEUE_SIZE")
        return self

    @property
    def log_level_number(self) -> int:
        return logging.getLevelName(self.log_level)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
