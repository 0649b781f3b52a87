from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    database_url: str = "sqlite:///./review.db"
    upload_dir: str = "uploads"

    ai_review_enabled: bool = True
    ai_api_endpoint: str = "https://api.anthropic.com/v1/messages"
    ai_api_key: str | None = None
    ai_model: str = "claude-sonnet-4-5"
    anthropic_version: str = "2023-06-01"
    ai_max_tokens: int = 4000
    ai_max_retries: int = 3
    ai_backoff_seconds: float = 2.0

    request_timeout_seconds: float = 120.0

    max_context_chars: int = 50000
    max_theory_chars: int = 10000

    # пороги фильтра вопросов
    min_question_chars: int = 10
    min_source_chars: int = 20
    min_keywords: int = 3
    keyword_min_length: int = 3
    answered_threshold: float = 0.7
    near_duplicate_threshold: float = 0.8
    definition_max_words: int = 8

    max_questions: int = 10
    max_list_items: int = 10
    max_error_chars: int = 500

    poll_interval_seconds: float = 5.0
    stale_after_seconds: int = 900   # 0 отключает таймаут

    log_level: str = "INFO"

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

settings = Settings()
