"""
Configuration Management Module

Provides centralized configuration using pydantic-settings for environment-based configuration.
"""

from pydantic_settings import BaseSettings
from typing import Optional


class WalletLedgerConfig(BaseSettings):
    """Wallet ledger service configuration"""
    
    # Storage configuration
    database_url: str = "sqlite:///wallet_ledger.db"  # or memory://
    
    # API configuration
    api_host: str = "0.0.0.0"
    api_port: int = 3001
    cors_origins: str = "*"  # Comma separated
    
    # Logging configuration
    log_level: str = "INFO"
    log_format: str = "json"  # json or text
    
    # Business rules configuration
    initial_balance: str = "0"  # Native display units credited to new wallets
    native_approval_window_ms: int = 30_000
    fiat_approval_window_ms: int = 60_000
    
    # Quote oracle configuration
    quote_provider: str = "skip"  # skip or fixed
    skip_api_url: str = "https://api.skip.build"
    skip_api_key: str = ""
    skip_timeout: float = 10.0
    skip_fee_recipient: str = "0x742d35Cc6634C0532925a3b8D4C9db96c728b0B4"
    skip_slippage_percent: str = "1"
    fixed_native_per_fiat: str = "0.0005"  # Used when quote_provider == fixed
    
    # Notification configuration
    notifications_enabled: bool = True
    smtp_host: str = ""  # Empty = email disabled
    smtp_port: int = 587
    smtp_username: str = ""
    smtp_password: str = ""
    smtp_use_tls: bool = True
    smtp_sender: Optional[str] = None
    notification_webhook_url: str = ""
    notification_workers: int = 2
    
    class Config:
        env_prefix = "WALLET_LEDGER_"
        env_file = ".env"
        case_sensitive = False


# Global configuration instance
config = WalletLedgerConfig()


def get_config() -> WalletLedgerConfig:
    """Get global configuration instance"""
    return config


def reload_config() -> WalletLedgerConfig:
    """Reload configuration from environment"""
    global config
    config = WalletLedgerConfig()
    return config
