"""Centralized configuration for the RAG relay."""
from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

DOTENV_PATH = Path(__file__).resolve().parents[2] / ".env"
if DOTENV_PATH.exists():
    load_dotenv(dotenv_path=DOTENV_PATH, override=False)
else:
    load_dotenv()


class ServerSettings(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=3000)
    cors_origins: list[str] = Field(default_factory=lambda: ["*"])


class Paths(BaseModel):
    project_root: Path = Field(default=Path(__file__).resolve().parents[2])
    data_dir: Path = Field(default=Path("data"))
    database_path: Path = Field(default=Path("data/store.sqlite3"))


class ModelSettings(BaseModel):
    llm_runner_addr: str = Field(default="127.0.0.1:11434")
    llm_model: str = Field(default="mistral")
    temperature: float = Field(default=0.2)
    max_output_tokens: int = Field(default=1024)
    embedder_path: Path | None = Field(default=None)
    embed_provider: Literal["ollama", "openai"] = Field(default="ollama")
    embed_model: str = Field(default="nomic-embed-text")
    embed_base_url: str | None = Field(default=None)
    openai_api_base: str | None = Field(default="https://api.openai.com/v1")
    embedding_dimension: int | None = Field(default=None)

    @field_validator("llm_runner_addr")
    @classmethod
    def _check_runner_addr(cls, value: str) -> str:
        host, sep, port = value.rpartition(":")
        if not sep or not host or not port.isdigit():
            raise ValueError(f"llm_runner_addr must be host:port, got {value!r}")
        return value


class IndexSettings(BaseModel):
    address: str | None = Field(default=None)
    collection: str = Field(default="document_chunks")


class RAGSettings(BaseModel):
    top_k: int = Field(default=3, ge=1)
    min_score: float = Field(default=0.5)
    prompt_budget_chars: int = Field(default=6000, ge=1)
    chunk_size_chars: int = Field(default=600)
    chunk_overlap_chars: int = Field(default=120)
    tie_break: Literal["recency", "document_id"] = Field(default="recency")


class RunnerSettings(BaseModel):
    max_connect_attempts: int = Field(default=4, ge=1)
    backoff_base_seconds: float = Field(default=0.25, ge=0)
    backoff_max_seconds: float = Field(default=4.0, ge=0)
    connect_timeout_seconds: float = Field(default=5.0)
    inactivity_timeout_seconds: float = Field(default=30.0)
    max_concurrent_sessions: int = Field(default=16, ge=1)


class RequestSettings(BaseModel):
    timeout_seconds: float = Field(default=120.0)


class CacheSettings(BaseModel):
    embedding_capacity: int = Field(default=1024, ge=1)
    embedding_timeout_seconds: float = Field(default=10.0)


class ObservabilitySettings(BaseModel):
    log_level: str = Field(default="INFO")
    enable_tracing: bool = Field(default=False)
    otlp_endpoint: str = Field(default="http://localhost:4318/v1/traces")
    enable_prometheus: bool = Field(default=True)


class AppSettings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="RAGRELAY_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        env_nested_delimiter="__",
    )

    environment: str = Field(default="local")
    debug: bool = Field(default=False)
    server: ServerSettings = ServerSettings()
    paths: Paths = Paths()
    model: ModelSettings = ModelSettings()
    index: IndexSettings = IndexSettings()
    rag: RAGSettings = RAGSettings()
    runner: RunnerSettings = RunnerSettings()
    request: RequestSettings = RequestSettings()
    cache: CacheSettings = CacheSettings()
    observability: ObservabilitySettings = ObservabilitySettings()

    @property
    def llm_base_url(self) -> str:
        return f"http://{self.model.llm_runner_addr}"


@lru_cache
def get_settings() -> AppSettings:
    """Return cached settings instance."""

    settings = AppSettings()
    database_path = settings.paths.database_path
    if not database_path.is_absolute():
        database_path = settings.paths.project_root / database_path
    settings.paths.database_path = database_path
    return settings


settings = get_settings()
