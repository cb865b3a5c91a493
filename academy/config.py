from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Academy Core'
    app_env: str = 'local'
    app_timezone: str = 'UTC'
    database_url: str = 'sqlite:///./academy.db'
    default_currency: str = 'USD'
    invoice_prefix: str = 'INV'
    invoice_number_width: int = 3
    invoice_due_days: int = 30
    enable_scheduler: bool = False
    billing_run_time: str = '02:00'
    enable_notifications: bool = True
    bootstrap_admin_name: str = 'Academy Admin'
    bootstrap_admin_email: str = ''
    allow_availability_override: bool = True
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200


settings = Settings()
