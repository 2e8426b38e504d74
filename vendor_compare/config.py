from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Webhooks
    webhook_mode: str = "production"  # production | testing
    webhook_base_url: str = "https://n8n.lakestrom.com/webhook"
    compare_vendor_criterion_path: str = "find-criterion-vendor-stage1"
    rank_criterion_results_path: str = "rank-criteria-stage2"
    summarize_criterion_row_path: str = "summarize-criterion-row-production"
    battlecard_row_path: str = "clarioo-battlecard-row"
    testing_compare_vendor_criterion_path: str = "a7f3e891-2d4b-4c5e-9a1f-8b3c6d7e9f2a"
    testing_rank_criterion_results_path: str = "b2c4d8f1-3e5a-4f6b-8c9d-1a2b3c4d5e6f"
    testing_summarize_criterion_row_path: str = "summarize-criterion-row-testing"
    testing_battlecard_row_path: str = "e08eae12-70d9-4669-8ee5-f31ffe5b1407"
    user_id: str = "anonymous"
    session_id: str = ""

    # Remote call timeouts
    stage1_timeout_seconds: float = 45.0
    stage2_timeout_seconds: float = 90.0
    summary_timeout_seconds: float = 60.0
    battlecard_timeout_seconds: float = 90.0

    # Orchestration
    max_concurrent_workflows: int = 5
    max_cell_retries: int = 3
    summaries_enabled: bool = False

    # Battlecards
    battlecard_min_rows: int = 10
    battlecard_max_rows: int = 10
    battlecard_max_retries_per_row: int = 3
    battlecard_max_duplicate_attempts: int = 3

    # Persistence
    store_dir: str = ".cache/comparison"

    # App
    log_dir: str = "logs"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    def webhook_url(self, name: str) -> str:
        """Resolve a webhook path setting (e.g. ``rank_criterion_results``) to a URL."""
        prefix = "testing_" if self.webhook_mode.lower().strip() == "testing" else ""
        path = getattr(self, f"{prefix}{name}_path")
        return f"{self.webhook_base_url.rstrip('/')}/{path}"


settings = Settings()
