from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    database_url: str | None = None
    supabase_url: str
    supabase_service_role_key: str
    brevo_api_key: str | None = None
    brevo_base_url: str = "https://api.brevo.com/v3"
    brevo_sender_email: str | None = None
    brevo_sender_name: str | None = None
    brevo_default_list_id: int | None = 17
    brevo_default_template_id: int = 105
    brevo_timeout_seconds: float = 30.0
    metform_allowed_referrers: str | None = None  # comma separated URL prefixes
    internal_scheduler_secret: str | None = None
    dispatch_max_attempts: int = 3
    dispatch_retry_base_delay_seconds: float = 30.0
    dispatch_retry_max_delay_seconds: float = 600.0
    dispatch_max_concurrent_workers: int = 4
    dispatch_queue_size: int = 8
    dispatch_batch_size: int = 25
    dispatch_job_lease_seconds: float = 900.0  # running jobs older than this are reclaimed

    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore",
    )


settings = Settings()
