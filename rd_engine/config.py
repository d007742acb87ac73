from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Anthropic (planner, synthesis, verification)
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"

    # xAI / Grok (discovery agents)
    xai_api_key: str = ""
    xai_base_url: str = "https://api.x.ai/v1"
    xai_model: str = "grok-beta"

    # Voyage embeddings (optional; empty key => local hashed embeddings)
    voyage_api_key: str = ""
    voyage_base_url: str = "https://api.voyageai.com/v1"
    voyage_model: str = "voyage-3-lite"

    # Token budgets
    planner_max_tokens: int = 16000
    planner_thinking_budget: int = 10000
    synthesis_max_tokens: int = 16000
    synthesis_thinking_budget: int = 10000
    verification_max_tokens: int = 8000
    verification_thinking_budget: int = 5000
    discovery_max_tokens: int = 4000
    discovery_temperature: float = 0.7

    # Timeouts (seconds)
    llm_timeout_seconds: float = 180.0
    discovery_agent_timeout_seconds: float = 120.0
    embedding_timeout_seconds: float = 30.0
    pipeline_deadline_seconds: float = 600.0

    # Aggregation / synthesis controls
    dedup_threshold: float = 0.85
    max_findings: int = 30
    embedding_text_max_chars: int = 1000
    max_synthesis_iterations: int = 2

    # Step retry policy
    step_max_attempts: int = 3
    step_retry_base_delay_seconds: float = 1.0
    step_retry_max_delay_seconds: float = 10.0

    # Durable checkpoints
    checkpoint_backend: str = "file"  # file | memory
    checkpoint_dir: str = ".cache/checkpoints"

    # Session writers
    session_worker_idle_seconds: float = 300.0

    # App
    cors_origins: str = "http://localhost:3000"
    app_log_level: str = "INFO"
    noisy_log_level: str = "WARNING"
    log_dir: str = "logs"

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
    }

    @property
    def cors_origin_list(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",")]


settings = Settings()
