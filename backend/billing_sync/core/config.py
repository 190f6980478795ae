from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', env_file_encoding='utf-8', extra='ignore')

    app_name: str = 'billing-sync-api'
    app_env: str = Field(default='dev', alias='APP_ENV')
    app_port: int = Field(default=8000, alias='APP_PORT')

    database_url: str = Field(default='sqlite:///./data/billing_sync.db', alias='DATABASE_URL')
    postgres_password: str = Field(default='', alias='POSTGRES_PASSWORD')
    db_pool_size: int = Field(default=10, alias='DB_POOL_SIZE')
    db_max_overflow: int = Field(default=20, alias='DB_MAX_OVERFLOW')
    db_pool_timeout: int = Field(default=30, alias='DB_POOL_TIMEOUT')
    db_pool_recycle: int = Field(default=1800, alias='DB_POOL_RECYCLE')
    db_bootstrap_on_start: bool = Field(default=False, alias='DB_BOOTSTRAP_ON_START')

    mysql_host: str = Field(default='', alias='MYSQL_HOST')
    mysql_port: int = Field(default=3306, alias='MYSQL_PORT')
    mysql_user: str = Field(default='', alias='MYSQL_USER')
    mysql_password: str = Field(default='', alias='MYSQL_PASSWORD')
    mysql_database: str = Field(default='', alias='MYSQL_DATABASE')
    mysql_ssl_disabled: bool = Field(default=True, alias='MYSQL_SSL_DISABLED')
    mysql_connect_timeout: int = Field(default=20, alias='MYSQL_CONNECT_TIMEOUT')
    mysql_group_concat_max_len: int = Field(default=4194304, alias='MYSQL_GROUP_CONCAT_MAX_LEN')

    sync_fetch_batch_size: int = Field(default=1000, alias='SYNC_FETCH_BATCH_SIZE')
    # ISO date/datetime; required the first time a job runs against an empty destination.
    sync_backfill_start: str | None = Field(default=None, alias='SYNC_BACKFILL_START')
    sync_line_item_transfer: str = Field(default='joined', alias='SYNC_LINE_ITEM_TRANSFER')
    sync_run_timeout_seconds: int = Field(default=0, alias='SYNC_RUN_TIMEOUT_SECONDS')
    sync_failed_retry_limit: int = Field(default=200, alias='SYNC_FAILED_RETRY_LIMIT')
    sync_tasks_file: str = Field(default='.crontab.json', alias='SYNC_TASKS_FILE')
    sync_worker_tick_seconds: float = Field(default=5.0, alias='SYNC_WORKER_TICK_SECONDS')
    sync_company_id: int = Field(default=1, alias='SYNC_COMPANY_ID')
    # destination tables owned by other tooling; legacy ids live in their JSON info column
    sync_reference_refresh: bool = Field(default=True, alias='SYNC_REFERENCE_REFRESH')
    sync_user_table: str = Field(default='publico.guard_user', alias='SYNC_USER_TABLE')
    sync_client_table: str = Field(default='publico.cliente', alias='SYNC_CLIENT_TABLE')

    cron_basic_user: str = Field(default='cron', alias='CRON_BASIC_USER')
    cron_basic_password: str = Field(default='change_me_cron_password', alias='CRON_BASIC_PASSWORD')

    cors_origins: str = Field(default='*', alias='CORS_ORIGINS')
    write_rate_limit: int = Field(default=30, alias='WRITE_RATE_LIMIT')
    write_rate_window_seconds: int = Field(default=60, alias='WRITE_RATE_WINDOW_SECONDS')


settings = Settings()
