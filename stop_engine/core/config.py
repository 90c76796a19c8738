"""
Application configuration — loaded from environment / .env file.
"""
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    # ── App ──
    app_name: str = "stop-engine"
    app_env: str = "development"
    log_level: str = "INFO"
    engine_version: str = "2.0.0"
    host: str = "0.0.0.0"
    port: int = 8000

    # ── Policy registry ──
    default_policy_version: str = "2.0.0"

    # ── Risk model ──
    veto_threshold: float = 0.75
    amount_threshold_low: float = 100.0
    amount_threshold_medium: float = 500.0
    amount_threshold_high: float = 1500.0

    # ── Scoring ──
    sensitivity_perturbation: float = 0.10

    # ── Pipeline ──
    # When true, each stage sleeps duration/8 ms so progress observers can animate.
    simulate_stage_latency: bool = False

    # ── OIDC / JWT (policy admin surface) ──
    oidc_issuer_url: str = "https://auth.example.com/realms/wallet"
    oidc_audience: str = "stop-policy-api"
    policy_admin_role: str = "stop-policy-admin"
    auth_enabled: bool = False

    # ── Kafka ──
    kafka_bootstrap: str = "kafka:9092"
    kafka_topic_audit_events: str = "stop.routing.audit"
    kafka_enabled: bool = False  # toggle for local dev

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


@lru_cache
def get_settings() -> Settings:
    return Settings()
