from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, Field, ConfigDict, field_validator, model_validator


ChatRoute = Literal["narrative", "classifier", "retrieval", "translation", "suggestions", "lorebook", "chapters"]


class AppConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    data_dir: Path = Field(default=Path("./data"))
    log_level: str = Field(default="INFO")


class LLMProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    kind: Literal["openai_compatible", "ollama"] = "openai_compatible"
    base_url: str | None = None
    api_key_env: str | None = None


class ChatEndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    model: str
    temperature: float = 0.7
    timeout_s: int = 60
    max_concurrency: int = 4
    retries: int = 2
    max_tokens: int | None = None
    extra_body: dict[str, Any] = Field(default_factory=dict)

    @field_validator("temperature")
    @classmethod
    def _temperature_range(cls, value: float) -> float:
        if not 0 <= value <= 2:
            raise ValueError("temperature must be between 0 and 2")
        return value

    @field_validator("timeout_s", "max_concurrency", "retries")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("endpoint integer settings must be non-negative")
        return value

    @field_validator("max_tokens")
    @classmethod
    def _positive_optional_max_tokens(cls, value: int | None) -> int | None:
        if value is not None and value <= 0:
            raise ValueError("max_tokens must be positive when provided")
        return value


class ImageEndpointConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    provider: str
    model: str
    size: str = "1024x1024"
    timeout_s: int = 120
    retries: int = 1

    @field_validator("timeout_s", "retries")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("endpoint integer settings must be non-negative")
        return value


class LLMRoutesConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    narrative_chat: str = "narrative_default"
    classifier_chat: str | None = None
    retrieval_chat: str | None = None
    # Translation has no fallback: an unset route means translation is not configured.
    translation_chat: str | None = None
    suggestions_chat: str | None = None
    lorebook_chat: str | None = None
    chapters_chat: str | None = None
    image: str | None = None


class LLMConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    providers: dict[str, LLMProviderConfig]
    chat_endpoints: dict[str, ChatEndpointConfig]
    image_endpoints: dict[str, ImageEndpointConfig] = Field(default_factory=dict)
    routes: LLMRoutesConfig = LLMRoutesConfig()

    @model_validator(mode="after")
    def _validate_references(self) -> "LLMConfig":
        if not self.providers:
            raise ValueError("llm.providers cannot be empty")
        if not self.chat_endpoints:
            raise ValueError("llm.chat_endpoints cannot be empty")

        for endpoint_name, endpoint in self.chat_endpoints.items():
            if endpoint.provider not in self.providers:
                raise ValueError(
                    f"chat endpoint '{endpoint_name}' references unknown provider '{endpoint.provider}'"
                )

        for endpoint_name, endpoint in self.image_endpoints.items():
            if endpoint.provider not in self.providers:
                raise ValueError(
                    f"image endpoint '{endpoint_name}' references unknown provider '{endpoint.provider}'"
                )

        if self.routes.narrative_chat not in self.chat_endpoints:
            raise ValueError(f"llm.routes.narrative_chat not found: {self.routes.narrative_chat}")
        for route_field in (
            "classifier_chat",
            "retrieval_chat",
            "translation_chat",
            "suggestions_chat",
            "lorebook_chat",
            "chapters_chat",
        ):
            endpoint_name = getattr(self.routes, route_field)
            if endpoint_name and endpoint_name not in self.chat_endpoints:
                raise ValueError(f"llm.routes.{route_field} not found: {endpoint_name}")
        if self.routes.image and self.routes.image not in self.image_endpoints:
            raise ValueError(f"llm.routes.image not found: {self.routes.image}")

        return self

    def has_chat_route(self, route: ChatRoute) -> bool:
        if route == "translation":
            return self.routes.translation_chat is not None
        return True

    def resolve_chat_route(self, route: ChatRoute) -> tuple[str, ChatEndpointConfig, LLMProviderConfig]:
        if route == "narrative":
            endpoint_name = self.routes.narrative_chat
        elif route == "translation":
            if self.routes.translation_chat is None:
                raise ValueError("llm.routes.translation_chat is not configured")
            endpoint_name = self.routes.translation_chat
        elif route == "lorebook":
            endpoint_name = self.routes.lorebook_chat or self.routes.classifier_chat or self.routes.narrative_chat
        else:
            endpoint_name = getattr(self.routes, f"{route}_chat") or self.routes.narrative_chat

        endpoint = self.chat_endpoints[endpoint_name]
        provider = self.providers[endpoint.provider]
        return endpoint_name, endpoint, provider

    def resolve_image_route(self) -> tuple[str, ImageEndpointConfig, LLMProviderConfig] | None:
        if not self.routes.image:
            return None
        endpoint_name = self.routes.image
        endpoint = self.image_endpoints[endpoint_name]
        provider = self.providers[endpoint.provider]
        return endpoint_name, endpoint, provider


class NarrativeConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    streaming: bool = True
    max_empty_attempts: int = 3
    recent_entries_window: int = 20
    mode: Literal["adventure", "creative"] = "adventure"

    @field_validator("max_empty_attempts", "recent_entries_window")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("narrative integer settings must be positive")
        return value


class RetrievalConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    llm_selection_enabled: bool = True
    include_live_state: bool = True
    stickiness_window: int = 10
    recent_entries_window: int = 5
    max_tier3_entries: int = 0
    context_token_budget: int = 1500
    max_words_per_entry: int = 0
    min_term_length: int = 2

    @field_validator("stickiness_window", "min_term_length", "context_token_budget")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("retrieval integer settings must be positive")
        return value

    @field_validator("recent_entries_window", "max_tier3_entries", "max_words_per_entry")
    @classmethod
    def _non_negative_int(cls, value: int) -> int:
        if value < 0:
            raise ValueError("retrieval limits must be non-negative")
        return value


class ClassifierConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    narrative_max_chars: int = 0

    @field_validator("narrative_max_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("narrative_max_chars must be non-negative")
        return value


class TranslationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    target_language: str = "en"


class ImageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    # Inline images are requested by the narrative itself, so the image phase stands down.
    mode: Literal["analyzed", "inline"] = "analyzed"
    prompt_max_chars: int = 1000


class SuggestionsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = False
    count: int = 3

    @field_validator("count")
    @classmethod
    def _positive_count(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("suggestions.count must be positive")
        return value


class LorebookConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    batch_size: int = 50
    max_concurrent: int = 5
    description_max_chars: int = 500

    @field_validator("batch_size", "max_concurrent", "description_max_chars")
    @classmethod
    def _positive_int(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lorebook integer settings must be positive")
        return value


class ChaptersConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    previous_chapters: int = 3
    entry_max_chars: int = 2000

    @field_validator("previous_chapters")
    @classmethod
    def _non_negative_previous(cls, value: int) -> int:
        if value < 0:
            raise ValueError("chapters.previous_chapters must be >= 0")
        return value

    @field_validator("entry_max_chars")
    @classmethod
    def _positive_chars(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("chapters.entry_max_chars must be positive")
        return value


class SnapshotConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    interval: int = 10

    @field_validator("interval")
    @classmethod
    def _non_negative_interval(cls, value: int) -> int:
        if value < 0:
            raise ValueError("snapshots.interval must be non-negative")
        return value


class EventsConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    history_size: int = 100

    @field_validator("history_size")
    @classmethod
    def _positive_history(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("events.history_size must be positive")
        return value


class StorageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    sqlite_path: Path = Field(default=Path("./data/storyloom.db"))


class ObservabilityConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    log_json_error_payload: bool = True
    json_error_payload_max_chars: int = 0
    log_retry_attempts: bool = True

    @field_validator("json_error_payload_max_chars")
    @classmethod
    def _non_negative_chars(cls, value: int) -> int:
        if value < 0:
            raise ValueError("json_error_payload_max_chars must be non-negative")
        return value


def default_llm_config() -> LLMConfig:
    return LLMConfig.model_validate(
        {
            "providers": {
                "default": {
                    "kind": "openai_compatible",
                    "base_url": None,
                    "api_key_env": "OPENAI_API_KEY",
                }
            },
            "chat_endpoints": {
                "narrative_default": {
                    "provider": "default",
                    "model": "gpt-4.1-mini",
                    "temperature": 0.8,
                    "timeout_s": 120,
                    "max_concurrency": 2,
                    "retries": 2,
                },
                "classifier_default": {
                    "provider": "default",
                    "model": "gpt-4.1-mini",
                    "temperature": 0.1,
                    "timeout_s": 60,
                    "max_concurrency": 5,
                    "retries": 2,
                },
            },
            "routes": {
                "narrative_chat": "narrative_default",
                "classifier_chat": "classifier_default",
                "retrieval_chat": "classifier_default",
            },
        }
    )


class AppConfigRoot(BaseModel):
    model_config = ConfigDict(extra="forbid")

    app: AppConfig = AppConfig()
    llm: LLMConfig = Field(default_factory=default_llm_config)
    narrative: NarrativeConfig = NarrativeConfig()
    retrieval: RetrievalConfig = RetrievalConfig()
    classifier: ClassifierConfig = ClassifierConfig()
    translation: TranslationConfig = TranslationConfig()
    image: ImageConfig = ImageConfig()
    suggestions: SuggestionsConfig = SuggestionsConfig()
    lorebook: LorebookConfig = LorebookConfig()
    chapters: ChaptersConfig = ChaptersConfig()
    snapshots: SnapshotConfig = SnapshotConfig()
    events: EventsConfig = EventsConfig()
    storage: StorageConfig = StorageConfig()
    observability: ObservabilityConfig = ObservabilityConfig()


def resolve_paths(config: AppConfigRoot, base_dir: Path) -> AppConfigRoot:
    def _resolve(path_value: Path) -> Path:
        return path_value if path_value.is_absolute() else (base_dir / path_value).resolve()

    config.app.data_dir = _resolve(config.app.data_dir)
    config.storage.sqlite_path = _resolve(config.storage.sqlite_path)
    return config
