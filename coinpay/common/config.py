"""Central environment-driven settings for the payments service.

The service process loads this once at startup. Behavior is controlled by
environment variables (see `.env.example`).
"""

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Typed view of runtime configuration from environment variables."""

    service_name: str = "payments"
    log_level: str = "INFO"
    database_dsn: str
    api_key: str
    gateway_base_url: str = "https://api.razorpay.com/v1"
    gateway_key_id: str = ""
    gateway_key_secret: str
    gateway_webhook_secret: str
    gateway_timeout_seconds: float = 10.0
    webhook_signature_header: str = "X-Razorpay-Signature"
    kafka_bootstrap_servers: str = "kafka:9092"
    fulfillment_topic: str = "orders.paid"
    outbox_publisher_enabled: bool = True
    tracing_enabled: bool = True
    otel_exporter_otlp_endpoint: str = "http://otel-collector:4318/v1/traces"
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")


settings = Settings()
