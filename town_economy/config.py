"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class EconomyConfig(BaseSettings):
    """Town economy configuration"""
    
    # Database configuration
    database_url: str = "sqlite:///town_economy.db"  # memory://, sqlite:///path or postgresql://...
    database_pool_min: int = 1
    database_pool_size: int = 10
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8090
    cors_origins: str = "*"  # Comma separated
    
    # Security configuration
    jwt_secret: str = "change-me-in-production"
    jwt_algorithm: str = "HS256"
    auth_enabled: bool = True
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout
    
    # Economy rules
    initial_treasury_balance: str = "10000000.00"
    basic_salary_amount: str = "1500.00"
    land_appreciation_rate: str = "0.02"  # Per complete week owned
    land_min_offer_ratio: str = "0.9"
    loan_due_days: int = 30
    loan_min_amount: str = "1.00"
    loan_max_term_months: int = 60
    
    # Feature flags
    enable_audit_logging: bool = True
    
    class Config:
        env_prefix = "TOWN_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = EconomyConfig()


def get_config() -> EconomyConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> EconomyConfig:
    """Reload configuration from environment"""
    global config
    config = EconomyConfig()
    return config
