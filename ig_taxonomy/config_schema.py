from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _validate_env_var_name(value: str) -> str:
    name = (value or "").strip()
    if not _ENV_NAME_RE.fullmatch(name):
        raise ValueError("must be a valid environment variable name")
    return name


PositiveInt = Annotated[int, Field(ge=1)]
NonNegativeInt = Annotated[int, Field(ge=0)]


class OpenAIConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    api_key_env: str = "OPENAI_API_KEY"
    extraction_model: str = "gpt-5-nano"
    max_output_tokens: PositiveInt = 4096
    batch_max_output_tokens: PositiveInt = 1024
    batch_completion_window: Literal["24h"] = "24h"
    embedding_model: str = "text-embedding-3-small"
    embedding_dimensions: PositiveInt = 1536

    @field_validator("api_key_env")
    @classmethod
    def _api_key_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    chunk_size: PositiveInt = 20
    # Upper bound on how many known category names are sent as a hint.
    max_category_hints: NonNegativeInt = 300


class EmbeddingsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    batch_size: PositiveInt = 100


class CleanupDefaults(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    min_post_threshold: PositiveInt = 3
    reassign_orphans: bool = True
    normalize_names: bool = True
    merge_duplicates: bool = True
    preserve_as_hashtags: bool = True
    embed_categories: bool = True
    reassign_by_similarity: bool = True
    semantic_merge: bool = True
    build_hierarchy: bool = True
    other_categories: bool = True
    similarity_threshold: float = Field(default=0.78, gt=0.0, le=1.0)


class GeocodingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    enabled: bool = True
    access_token_env: str = "MAPBOX_ACCESS_TOKEN"
    base_url: str = "https://api.mapbox.com/geocoding/v5/mapbox.places"
    timeout_seconds: float = Field(10.0, gt=0.0)

    @field_validator("access_token_env")
    @classmethod
    def _token_env_must_be_valid(cls, v: str) -> str:
        return _validate_env_var_name(v)


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    db_path: str = "state/taxonomy.sqlite"
    log_path: str = "state/run.log"


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    openai: OpenAIConfig = Field(default_factory=OpenAIConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    embeddings: EmbeddingsConfig = Field(default_factory=EmbeddingsConfig)
    cleanup: CleanupDefaults = Field(default_factory=CleanupDefaults)
    geocoding: GeocodingConfig = Field(default_factory=GeocodingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
