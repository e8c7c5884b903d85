from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Database
    adaptrain_db_url: str = "sqlite+aiosqlite:///./adaptrain.db"

    # Logging
    adaptrain_log_level: str = "info"

    # CORS
    adaptrain_cors_origins: str = "http://localhost:3000"

    # Training loop cadence
    adaptrain_progress_interval: int = 10  # emit progress every N steps
    adaptrain_structure_interval: int = 5  # adapter structure review every N epochs
    adaptrain_persist_every_steps: int = 10
    adaptrain_history_limit: int = 500
    adaptrain_run_deadline_seconds: float | None = None  # None = no deadline

    # Base model / data
    adaptrain_base_model_seed: int = 1234
    adaptrain_input_dim: int = 128
    adaptrain_num_classes: int = 8
    adaptrain_train_samples: int = 512
    adaptrain_dataset_path: str | None = None  # None = synthetic data

    model_config = {"env_prefix": "", "case_sensitive": False, "env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
