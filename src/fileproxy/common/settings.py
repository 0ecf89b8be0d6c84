"""Application configuration for the proxy service."""

from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

from pydantic import Field, SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ProxySettings(BaseSettings):
    """Runtime settings for the caching proxy and the direct file endpoint."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", populate_by_name=True)

    storage_backend: Literal["local", "memory", "s3"] = env_field("local", "FILEPROXY_STORAGE_BACKEND")
    storage_path: Path = env_field(Path("./storage"), "FILEPROXY_STORAGE_PATH")
    read_chunk_size: int = env_field(64 * 1024, "FILEPROXY_READ_CHUNK_SIZE")
    s3_endpoint_url: Optional[str] = env_field(None, "FILEPROXY_S3_ENDPOINT")
    s3_bucket: Optional[str] = env_field(None, "FILEPROXY_S3_BUCKET")
    s3_region: Optional[str] = env_field(None, "FILEPROXY_S3_REGION")
    s3_max_retries: int = env_field(3, "FILEPROXY_S3_MAX_RETRIES")
    s3_retry_base_seconds: float = env_field(0.2, "FILEPROXY_S3_RETRY_BASE")
    s3_retry_max_seconds: float = env_field(2.0, "FILEPROXY_S3_RETRY_MAX")
    s3_circuit_breaker_failures: int = env_field(5, "FILEPROXY_S3_CIRCUIT_FAILURES")
    s3_circuit_breaker_reset_seconds: float = env_field(30.0, "FILEPROXY_S3_CIRCUIT_RESET")
    remote_url: Optional[str] = env_field(None, "FILEPROXY_REMOTE_URL")
    remote_username: Optional[str] = env_field(None, "FILEPROXY_REMOTE_USERNAME")
    remote_password: Optional[SecretStr] = env_field(None, "FILEPROXY_REMOTE_PASSWORD")
    remote_token: Optional[SecretStr] = env_field(None, "FILEPROXY_REMOTE_TOKEN")
    remote_connect_timeout: float = env_field(5.0, "FILEPROXY_REMOTE_CONNECT_TIMEOUT")
    remote_read_timeout: float = env_field(30.0, "FILEPROXY_REMOTE_READ_TIMEOUT")
    remote_verify_tls: bool = env_field(True, "FILEPROXY_REMOTE_VERIFY_TLS")
    proxy_cache_enabled: bool = env_field(True, "FILEPROXY_PROXY_CACHE_ENABLED")
    cache_write_buffer_chunks: int = env_field(256, "FILEPROXY_CACHE_WRITE_BUFFER_CHUNKS")
    max_artifact_bytes: int = env_field(100 * 1024 * 1024, "FILEPROXY_MAX_ARTIFACT_BYTES")  # 100MB default
    upload_token: Optional[SecretStr] = env_field(None, "FILEPROXY_UPLOAD_TOKEN")
    metrics_token: Optional[SecretStr] = env_field(None, "FILEPROXY_METRICS_TOKEN")
    log_level: str = env_field("INFO", "FILEPROXY_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "FILEPROXY_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "FILEPROXY_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "FILEPROXY_OTEL_SAMPLER_RATIO")

    @field_validator("remote_url", mode="before")
    @classmethod
    def _normalize_remote_url(cls, value):
        if value is None:
            return value
        value = str(value).strip()
        if not value:
            return None
        if not value.startswith(("http://", "https://")):
            raise ValueError("remote_url must use the http or https scheme")
        return value.rstrip("/")

    @field_validator("read_chunk_size", "cache_write_buffer_chunks")
    @classmethod
    def _require_positive(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("must be greater than zero")
        return value

    @model_validator(mode="after")
    def _check_remote_credentials(self) -> "ProxySettings":
        if (self.remote_username is None) != (self.remote_password is None):
            raise ValueError("remote_username and remote_password must be set together")
        if self.remote_username is not None and self.remote_token is not None:
            raise ValueError("Configure either basic credentials or a bearer token for the remote, not both")
        return self
