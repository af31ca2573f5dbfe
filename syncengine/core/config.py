"""Configuration settings for the sync engine service."""

from typing import Optional, Dict, Any
from pydantic_settings import BaseSettings
from functools import lru_cache


class Settings(BaseSettings):
    """Application settings."""
    
    # Service Configuration
    service_name: str = "sync-engine-service"
    port: int = 8000
    environment: str = "development"
    debug: bool = False
    
    # Security
    encryption_key: str
    encryption_salt: str = "sync-engine-credentials"
    
    # Database
    mongodb_url: str = "mongodb://localhost:27017"
    mongodb_db_name: str = "sync_engine"
    redis_url: str = "redis://localhost:6379"
    
    # Auth Service
    auth_service_url: str = "http://localhost:8001"
    
    # Job locking
    lock_backend: str = "redis"  # redis | local
    lock_ttl_seconds: int = 3600
    
    # Sync jobs
    sync_jobs_page_size: int = 50
    audit_logs_page_size: int = 100
    job_liveness_seconds: int = 7200
    cancel_poll_seconds: float = 2.0
    progress_flush_every: int = 25
    max_recorded_record_errors: int = 100
    scheduler_enabled: bool = False
    scheduler_interval_seconds: int = 60
    stamp_local_records: bool = True
    
    # Logging
    log_level: str = "INFO"
    log_format: str = "json"
    
    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:8080"]
    
    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


# Adapter specific configurations, keyed by integration type
ADAPTER_CONFIGS: Dict[str, Dict[str, Any]] = {
    "accounting_platform": {
        "name": "QuickBooks Online",
        "type": "oauth2",
        "token_url": "https://oauth.platform.intuit.com/oauth2/v1/tokens/bearer",
        "api_base_url": {
            "sandbox": "https://sandbox-quickbooks.api.intuit.com/v3/company",
            "production": "https://quickbooks.api.intuit.com/v3/company",
        },
        "minor_version": "65",
        "concurrency": 4,
        "timeout": 30.0,
        "retry_attempts": 3,
        "rate_limit": {
            "calls": 500,
            "window": 60,  # seconds
        }
    },
    "tax_gateway": {
        "name": "KRA e-TIMS",
        "type": "api_key",
        "api_base_url": {
            "sandbox": "https://etims-api-sbx.kra.go.ke/etims-api",
            "production": "https://etims-api.kra.go.ke/etims-api",
        },
        "concurrency": 2,
        "timeout": 45.0,
        "retry_attempts": 3,
        "rate_limit": {
            "calls": 60,
            "window": 60,
        }
    },
    "payment_gateway": {
        "name": "Paystack",
        "type": "api_key",
        "api_base_url": {
            "sandbox": "https://api.paystack.co",
            "production": "https://api.paystack.co",
        },
        "concurrency": 4,
        "timeout": 20.0,
        "retry_attempts": 3,
        "rate_limit": {
            "calls": 100,
            "window": 10,
        }
    },
    "custom": {
        "name": "Custom Webhook",
        "type": "api_key",
        "concurrency": 2,
        "timeout": 30.0,
        "retry_attempts": 2,
        "rate_limit": {
            "calls": 60,
            "window": 60,
        }
    },
}


def get_adapter_config(integration_type: str, overrides: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Return the adapter profile for an integration type, with optional overrides applied."""
    profile = dict(ADAPTER_CONFIGS.get(integration_type, ADAPTER_CONFIGS["custom"]))
    if overrides:
        profile.update({k: v for k, v in overrides.items() if v is not None})
    return profile
