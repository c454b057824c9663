"""Environment-based configuration for the extraction orchestrator."""

from pathlib import Path

from pydantic_settings import BaseSettings

SERVICE_DIR = Path(__file__).parent


class Settings(BaseSettings):
    """Extraction orchestrator settings, loaded from environment variables."""

    # Server
    PORT: int = 8092
    LOG_LEVEL: str = "INFO"

    # Schema and persisted state
    SCHEMA_PATH: Path = SERVICE_DIR / "schemas" / "iep.json"
    INPUT_DIR: Path = Path("./samples")
    INPUT_PATTERN: str = "*.pdf"
    RESULTS_DIR: Path = Path("./output/batch_results")
    PROGRESS_FILE: Path = Path("./batch_progress.json")

    # Extractor chain: fallback order and consensus tie-break priority
    EXTRACTORS: list[str] = ["openai", "ollama"]
    CONSENSUS_MODE: str = "fallback"  # "fallback" | "all"
    DEFAULT_EFFORT: str = "medium"
    MAX_CONTENT_BYTES: int = 512 * 1024 * 1024

    # Batch scheduling
    BATCH_CONCURRENCY: int = 3
    BATCH_DELAY_SECONDS: float = 3.0
    EXTRACT_TIMEOUT_SECONDS: float = 600.0

    # Per-extractor retry on rate_limited / transient
    RETRY_ATTEMPTS: int = 3
    RETRY_DELAY: float = 2.0
    RETRY_BACKOFF: float = 2.0
    RETRY_MAX_DELAY: float = 60.0

    # OpenAI (prices in USD per million tokens)
    OPENAI_API_KEY: str = ""
    OPENAI_MODEL: str = "o4-mini"
    OPENAI_INPUT_COST: float = 1.10
    OPENAI_CACHED_INPUT_COST: float = 0.275
    OPENAI_OUTPUT_COST: float = 4.40
    OPENAI_REASONING_BILLED_AS_OUTPUT: bool = True

    # Ollama (empty URL = disabled)
    OLLAMA_URL: str = ""
    OLLAMA_MODEL: str = "llama3.1"

    # Self-hosted inference service (empty URL = disabled)
    INFERENCE_SERVICE_URL: str = ""
    INFERENCE_CONNECT_TIMEOUT: float = 30.0

    model_config = {"env_prefix": "", "case_sensitive": True}


settings = Settings()
