"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings

from .emi import DEFAULT_ANNUAL_INTEREST_RATE


class LoanServicingConfig(BaseSettings):
    """Loan servicing core configuration"""
    
    # Storage configuration
    storage_backend: str = "memory"  # memory or sqlite
    sqlite_path: str = "loan_servicing.db"
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Lending policy
    default_annual_interest_rate: Decimal = DEFAULT_ANNUAL_INTEREST_RATE  # percent p.a., used when no tie-up rate
    allowed_tenures: List[int] = [3, 6, 9, 12]
    processing_fee_percent: Decimal = Decimal("3")  # percent of principal when no flat fee
    processing_fee_tax_percent: Decimal = Decimal("18")  # GST on the processing fee
    
    # Optional override for the application number prefix
    application_number_prefix: Optional[str] = "LN"
    
    class Config:
        env_prefix = "LOANS_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = LoanServicingConfig()


def get_config() -> LoanServicingConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> LoanServicingConfig:
    """Reload configuration from environment"""
    global config
    config = LoanServicingConfig()
    return config
