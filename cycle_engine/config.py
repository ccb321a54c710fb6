import logging
import os
from pathlib import Path

from pydantic import field_validator
from pydantic_settings import BaseSettings


logger = logging.getLogger(__name__)

_RESET_METHODS = {
    'never',
    'monthly_anniversary',
    'first_day_of_month',
    'yearly_anniversary',
    'first_day_of_year',
}


class Settings(BaseSettings):
    # Master switch for every trigger and scheduled job
    CYCLE_ENGINE_ENABLED: bool = True

    # Base day-count used by background recompute when a plan declares nothing
    DEFAULT_INTERVAL_DAYS: int = 30
    # Reset method for plans that leave reset_method unset
    DEFAULT_RESET_METHOD: str = 'monthly_anniversary'

    CYCLE_BATCH_SIZE: int = 100

    # Job cadence in minutes, 0 disables the job
    SYNC_INTERVAL_MINUTES: int = 5
    CHECK_INTERVAL_MINUTES: int = 5
    EARLY_RESET_INTERVAL_MINUTES: int = 60

    ENABLE_EXPIRED_AT_CALCULATION: bool = True

    # Early reset on traffic exhaustion, per policy
    AUTO_RESET_ON_EXCEED_CUSTOM: bool = True
    AUTO_RESET_ON_EXCEED_MONTHLY: bool = True
    AUTO_RESET_ON_EXCEED_FIRST_DAY: bool = True
    TRAFFIC_EXHAUSTION_THRESHOLD: float = 0.99

    # Drift-correction tolerance for stored next_reset_at values
    DRIFT_TOLERANCE_SECONDS: int = 86400

    JOB_LOCK_TTL_SECONDS: int = 300
    JOB_LOCK_PREFIX: str = 'cycle_engine'

    DATABASE_URL: str | None = None
    DATABASE_MODE: str = 'auto'

    POSTGRES_HOST: str = 'postgres'
    POSTGRES_PORT: int = 5432
    POSTGRES_DB: str = 'cycle_engine'
    POSTGRES_USER: str = 'cycle_engine'
    POSTGRES_PASSWORD: str = 'secure_password_123'

    SQLITE_PATH: str = './data/cycle_engine.db'

    REDIS_URL: str = 'redis://localhost:6379/0'

    # Panel connection used by the traffic-reset primitive (optional)
    REMNAWAVE_API_URL: str | None = None
    REMNAWAVE_API_KEY: str | None = None
    REMNAWAVE_SECRET_KEY: str | None = None

    # Inbound triggers (order opened / traffic reset)
    CYCLE_WEBHOOK_ENABLED: bool = False
    CYCLE_WEBHOOK_PATH: str = '/cycle-events'
    CYCLE_WEBHOOK_SECRET: str | None = None  # HMAC-SHA256 shared secret
    WEB_API_HOST: str = '0.0.0.0'
    WEB_API_PORT: int = 8080

    LOG_LEVEL: str = 'INFO'
    LOG_FILE: str = 'logs/cycle_engine.log'
    LOG_FORMAT: str = '%(asctime)s | %(levelname)-8s | %(name)s:%(lineno)d | %(message)s'

    model_config = {'env_file': '.env', 'env_file_encoding': 'utf-8', 'extra': 'ignore'}

    @field_validator('DEFAULT_RESET_METHOD', mode='before')
    @classmethod
    def validate_reset_method(cls, value) -> str:
        normalized = str(value or '').strip().lower()
        if normalized not in _RESET_METHODS:
            raise ValueError(f'Unknown reset method: {value}')
        return normalized

    @field_validator('CYCLE_BATCH_SIZE', mode='before')
    @classmethod
    def validate_batch_size(cls, value) -> int:
        try:
            if value is None:
                return 100
            return max(1, int(value))
        except (TypeError, ValueError):
            return 100

    @field_validator('SYNC_INTERVAL_MINUTES', 'CHECK_INTERVAL_MINUTES', 'EARLY_RESET_INTERVAL_MINUTES', mode='before')
    @classmethod
    def validate_interval(cls, value) -> int:
        try:
            return max(0, int(value))
        except (TypeError, ValueError):
            return 0

    @field_validator('TRAFFIC_EXHAUSTION_THRESHOLD')
    @classmethod
    def validate_threshold(cls, value: float) -> float:
        if value <= 0 or value > 1:
            raise ValueError(f'TRAFFIC_EXHAUSTION_THRESHOLD must be within (0, 1], got {value}')
        return value

    @field_validator('LOG_FILE', mode='before')
    @classmethod
    def ensure_log_dir(cls, v):
        log_path = Path(v)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        return str(log_path)

    def get_database_url(self) -> str:
        if self.DATABASE_URL and self.DATABASE_URL.strip():
            return self.DATABASE_URL

        mode = self.DATABASE_MODE.lower()

        if mode == 'sqlite':
            return self._get_sqlite_url()
        if mode == 'postgresql':
            return self._get_postgresql_url()
        if os.getenv('DOCKER_ENV') == 'true' or os.path.exists('/.dockerenv'):
            return self._get_postgresql_url()
        return self._get_sqlite_url()

    def _get_sqlite_url(self) -> str:
        sqlite_path = Path(self.SQLITE_PATH)
        sqlite_path.parent.mkdir(parents=True, exist_ok=True)
        return f'sqlite+aiosqlite:///{sqlite_path.absolute()}'

    def _get_postgresql_url(self) -> str:
        return (
            f'postgresql+asyncpg://{self.POSTGRES_USER}:{self.POSTGRES_PASSWORD}'
            f'@{self.POSTGRES_HOST}:{self.POSTGRES_PORT}/{self.POSTGRES_DB}'
        )

    def is_postgresql(self) -> bool:
        return 'postgresql' in self.get_database_url()

    def is_remnawave_configured(self) -> bool:
        return bool((self.REMNAWAVE_API_URL or '').strip() and (self.REMNAWAVE_API_KEY or '').strip())

    def get_remnawave_auth_params(self) -> dict[str, str | None]:
        return {
            'base_url': self.REMNAWAVE_API_URL,
            'api_key': self.REMNAWAVE_API_KEY,
            'secret_key': self.REMNAWAVE_SECRET_KEY,
        }

    def is_cycle_webhook_enabled(self) -> bool:
        return self.CYCLE_WEBHOOK_ENABLED and bool(self.CYCLE_WEBHOOK_SECRET)

    def get_default_reset_method(self) -> str:
        """Reset method for plans that leave reset_method unset or unreadable."""
        return self.DEFAULT_RESET_METHOD

    def get_job_interval_minutes(self, job_name: str) -> int:
        """Cadence of a scheduled job in minutes (0 = disabled)."""
        intervals = {
            'plan_tag_sync': self.SYNC_INTERVAL_MINUTES,
            'reset_drift_fix': self.CHECK_INTERVAL_MINUTES,
            'early_reset': self.EARLY_RESET_INTERVAL_MINUTES,
        }
        if job_name not in intervals:
            raise ValueError(f'Unknown job: {job_name}')
        return intervals[job_name]

    def is_early_reset_enabled_for(self, policy_kind: str) -> bool:
        """policy_kind is 'custom' or a structured reset method value."""
        if policy_kind == 'custom':
            return self.AUTO_RESET_ON_EXCEED_CUSTOM
        if policy_kind == 'monthly_anniversary':
            return self.AUTO_RESET_ON_EXCEED_MONTHLY
        if policy_kind == 'first_day_of_month':
            return self.AUTO_RESET_ON_EXCEED_FIRST_DAY
        return False


settings = Settings()

settings.DATABASE_URL = settings.get_database_url()
