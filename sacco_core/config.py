"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
Business rules (interest rate, distribution ratios, category targets) live here so
the cooperative can change its rule set without touching the engines.
"""

from pydantic_settings import BaseSettings
from typing import Dict, Optional


class SaccoConfig(BaseSettings):
    """SACCO core configuration"""

    # Database configuration
    database_url: str = "memory://"  # memory://, sqlite:///path.db or postgresql://...

    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    log_file: Optional[str] = None  # If None, logs to stdout

    # Currency
    currency: str = "EUR"

    # Loan rules
    loan_interest_rate: str = "0.05"  # Fixed 5% on principal
    loan_number_prefix: str = "LN"
    loan_number_attempts: int = 20
    repayment_cutoff_day: int = 22  # 22nd day rule for 1-month loans

    # Interest distribution rules
    borrower_rebate_ratio: str = "0.5"  # Share of interest returned to the borrower
    committee_share_ratio: str = "0.5"  # Share of the pool paid to the committee at year end
    member_share_basis: str = "savings"  # savings (pro-rata) or equal

    # Savings categories: monthly target per category
    category_targets: Dict[str, str] = {
        "A": "500",
        "B": "300",
        "C": "100",
    }

    # Percentage split of every monthly target
    savings_breakdown: Dict[str, str] = {
        "main_savings": "75.0",
        "social_fund": "17.5",
        "welfare_fund": "7.5",
    }

    # Informational loan ranges per category (not enforced by the engine)
    category_loan_limits: Dict[str, Dict[str, str]] = {
        "A": {"min": "2000", "max": "7500"},
        "B": {"min": "1000", "max": "5000"},
        "C": {"min": "300", "max": "500"},
    }

    # Period layout
    periods_per_year: int = 3
    months_per_period: int = 4

    # Feature flags
    enable_audit_logging: bool = True

    class Config:
        env_prefix = "SACCO_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = SaccoConfig()


def get_config() -> SaccoConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> SaccoConfig:
    """Reload configuration from environment"""
    global config
    config = SaccoConfig()
    return config
