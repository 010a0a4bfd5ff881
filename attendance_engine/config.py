from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file='.env', extra='ignore')

    app_name: str = 'Attendance Verification Engine'
    app_env: str = 'local'
    app_timezone: str = 'Asia/Shanghai'
    database_url: str = 'sqlite:///./attendance.db'
    db_slow_query_ms: int = 100
    metrics_slow_ms: int = 200
    enable_scheduler: bool = True

    teaching_week_max: int = 30

    window_open_min_delay_minutes: int = 10
    window_grace_minutes: int = 2
    window_default_duration_minutes: int = 2
    window_max_duration_minutes: int = 30

    checkin_late_threshold_minutes: int = 15
    checkin_auto_absent_after_minutes: int = 60
    self_checkin_lead_minutes: int = 10
    checkin_queue_max_pending: int = 5000
    checkin_max_retries: int = 3
    checkin_retry_base_seconds: int = 2
    checkin_worker_batch_size: int = 100
    checkin_worker_interval_seconds: int = 2
    checkin_visibility_timeout_seconds: int = 120

    absence_sweep_interval_minutes: int = 5
    absence_sweep_lookback_hours: int = 24

    leave_reason_max_length: int = 1000
    approval_comment_max_length: int = 1000
    makeup_reason_max_length: int = 500


settings = Settings()
