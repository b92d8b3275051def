"""Configuration management for chat-relay."""

from __future__ import annotations

import enum
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from chat_relay.exceptions import ConfigError


class ProviderGroup(str, enum.Enum):
    LOCAL = "local"
    OFFICIAL = "official"
    THIRD_PARTY = "third_party"


class ModelProvider(str, enum.Enum):
    """Backend family a model configuration targets."""

    OLLAMA = "ollama"
    LMSTUDIO = "lmstudio"
    VLLM = "vllm"
    CHATGPT = "chatgpt"
    CLAUDE = "claude"
    GEMINI = "gemini"
    GROK = "grok"
    MISTRAL = "mistral"
    META = "meta"
    DEEPSEEK = "deepseek"
    QWEN = "qwen"
    DOUBAO = "doubao"
    WENXIN = "wenxin"
    HUNYUAN = "hunyuan"
    SPARK = "spark"
    STEPFUN = "stepfun"
    KIMI = "kimi"
    ZHIPU = "zhipu"
    MINIMAX = "minimax"
    COHERE = "cohere"
    SILICONFLOW = "siliconflow"
    HUGGINGFACE = "huggingface"
    MODELSCOPE = "modelscope"
    OPENROUTER = "openrouter"
    CUSTOM_API = "custom_api"

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self]

    @property
    def group(self) -> ProviderGroup:
        if self in _LOCAL_PROVIDERS:
            return ProviderGroup.LOCAL
        if self in _THIRD_PARTY_PROVIDERS:
            return ProviderGroup.THIRD_PARTY
        return ProviderGroup.OFFICIAL

    @property
    def is_local(self) -> bool:
        return self.group is ProviderGroup.LOCAL


_DISPLAY_NAMES: dict[ModelProvider, str] = {
    ModelProvider.OLLAMA: "Ollama",
    ModelProvider.LMSTUDIO: "LM Studio",
    ModelProvider.VLLM: "vLLM",
    ModelProvider.CHATGPT: "ChatGPT",
    ModelProvider.CLAUDE: "Claude",
    ModelProvider.GEMINI: "Gemini",
    ModelProvider.GROK: "Grok",
    ModelProvider.MISTRAL: "Mistral",
    ModelProvider.META: "Meta",
    ModelProvider.DEEPSEEK: "DeepSeek",
    ModelProvider.QWEN: "Qwen",
    ModelProvider.DOUBAO: "Doubao",
    ModelProvider.WENXIN: "ERNIE Bot",
    ModelProvider.HUNYUAN: "Hunyuan",
    ModelProvider.SPARK: "iFlytek Spark",
    ModelProvider.STEPFUN: "StepFun",
    ModelProvider.KIMI: "Kimi",
    ModelProvider.ZHIPU: "Zhipu AI",
    ModelProvider.MINIMAX: "MiniMax",
    ModelProvider.COHERE: "Cohere",
    ModelProvider.SILICONFLOW: "SiliconFlow",
    ModelProvider.HUGGINGFACE: "Hugging Face",
    ModelProvider.MODELSCOPE: "ModelScope",
    ModelProvider.OPENROUTER: "OpenRouter",
    ModelProvider.CUSTOM_API: "Custom API",
}

_LOCAL_PROVIDERS = frozenset({
    ModelProvider.OLLAMA, ModelProvider.LMSTUDIO, ModelProvider.VLLM,
})
_THIRD_PARTY_PROVIDERS = frozenset({
    ModelProvider.SILICONFLOW, ModelProvider.HUGGINGFACE,
    ModelProvider.MODELSCOPE, ModelProvider.OPENROUTER,
    ModelProvider.CUSTOM_API,
})


class ResponseFormat(str, enum.Enum):
    """Which JSON shape the generic adapter reads streamed text from."""

    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GEMINI = "gemini"
    CUSTOM = "custom"


# provider -> (default base URL, response format). Only consulted when a
# model entry leaves the field empty.
PROVIDER_DEFAULTS: dict[ModelProvider, tuple[str, ResponseFormat]] = {
    ModelProvider.OLLAMA: ("http://localhost:11434", ResponseFormat.OPENAI),
    ModelProvider.LMSTUDIO: ("http://localhost:1234/v1", ResponseFormat.OPENAI),
    ModelProvider.VLLM: ("http://localhost:8000/v1", ResponseFormat.OPENAI),
    ModelProvider.CHATGPT: ("https://api.openai.com/v1/", ResponseFormat.OPENAI),
    ModelProvider.CLAUDE: ("https://api.anthropic.com/v1/", ResponseFormat.ANTHROPIC),
    ModelProvider.GEMINI: ("https://aiplatform.googleapis.com/v1", ResponseFormat.GEMINI),
    ModelProvider.GROK: ("https://api.x.ai/v1/", ResponseFormat.OPENAI),
    ModelProvider.MISTRAL: ("https://api.mistral.ai/v1/", ResponseFormat.OPENAI),
    ModelProvider.META: ("https://api.meta.ai/v1/", ResponseFormat.OPENAI),
    ModelProvider.DEEPSEEK: ("https://api.deepseek.com/v1", ResponseFormat.OPENAI),
    ModelProvider.QWEN: (
        "https://dashscope.aliyuncs.com/compatible-mode/v1/", ResponseFormat.OPENAI,
    ),
    ModelProvider.DOUBAO: ("https://ark.cn-beijing.volces.com/api/v3/", ResponseFormat.OPENAI),
    ModelProvider.WENXIN: ("https://qianfan.baidubce.com/v2/", ResponseFormat.OPENAI),
    ModelProvider.HUNYUAN: ("https://hunyuan.tencentcloudapi.com/", ResponseFormat.OPENAI),
    ModelProvider.SPARK: ("https://spark-api-open.xf-yun.com/v1/", ResponseFormat.OPENAI),
    ModelProvider.STEPFUN: ("https://api.stepfun.ai/v1/", ResponseFormat.OPENAI),
    ModelProvider.KIMI: ("https://api.moonshot.cn/v1/", ResponseFormat.OPENAI),
    ModelProvider.ZHIPU: ("https://open.bigmodel.cn/api/paas/v4", ResponseFormat.OPENAI),
    ModelProvider.MINIMAX: ("https://api.minimaxi.com/v1", ResponseFormat.OPENAI),
    ModelProvider.COHERE: ("https://api.cohere.ai/v1/", ResponseFormat.OPENAI),
    ModelProvider.SILICONFLOW: ("https://api.siliconflow.cn/v1/", ResponseFormat.OPENAI),
    ModelProvider.HUGGINGFACE: ("https://router.huggingface.co/v1/", ResponseFormat.OPENAI),
    ModelProvider.MODELSCOPE: ("https://api-inference.modelscope.cn/v1/", ResponseFormat.OPENAI),
    ModelProvider.OPENROUTER: ("https://openrouter.ai/api/v1/", ResponseFormat.OPENAI),
    ModelProvider.CUSTOM_API: ("", ResponseFormat.CUSTOM),
}


class ModelConfig(BaseModel):
    """One configured backend. Immutable; the core only reads it."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    id: str
    name: str = ""
    provider: ModelProvider = ModelProvider.OLLAMA
    model_name: str = ""
    api_url: str = ""
    api_key: str = ""
    enabled: bool = True
    temperature: float | None = 0.7
    max_tokens: int | None = 8192
    response_format: ResponseFormat | None = None
    custom_content_path: str = "choices[0].delta.content"
    stream: bool = True

    @model_validator(mode="before")
    @classmethod
    def _apply_provider_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        provider = ModelProvider(data.get("provider", ModelProvider.OLLAMA))
        default_url, default_format = PROVIDER_DEFAULTS[provider]
        if not data.get("api_url"):
            data["api_url"] = default_url
        if not data.get("response_format"):
            data["response_format"] = default_format
        if not data.get("name"):
            data["name"] = data.get("model_name") or data.get("id", "")
        return data

    @property
    def display_name(self) -> str:
        return f"{self.name} ({self.provider.display_name})"

    def is_valid(self) -> bool:
        if not (self.name.strip() and self.model_name.strip() and self.api_url.strip()):
            return False
        return self.provider.is_local or bool(self.api_key.strip())


class TransportSettings(BaseModel):
    connect_timeout: float = 30
    read_timeout: float = 60
    local_read_timeout: float = 120  # local inference can be slow to start
    core_workers: int = 2
    max_workers: int = 10
    keep_alive: float = 60
    queue_capacity: int = 100
    submit_timeout: float = 1.0  # how long send() may block on a full queue


class RetrySettings(BaseModel):
    max_attempts: int = 3
    max_delay: int = 30


class IsolationSettings(BaseModel):
    superseded_capacity: int = 100


_DEFAULT_SYSTEM_PROMPT = (
    "You are a helpful programming assistant. Answer concisely and use "
    "Markdown code blocks for code."
)


def _default_models() -> list[ModelConfig]:
    return [
        ModelConfig(id="ollama-default", provider=ModelProvider.OLLAMA,
                    model_name="qwen3:8b"),
        ModelConfig(id="vllm-default", provider=ModelProvider.VLLM,
                    model_name="deepseek-ai/DeepSeek-V3.2-Speciale"),
        ModelConfig(id="lmstudio-default", provider=ModelProvider.LMSTUDIO,
                    model_name="minimax/minimax-m2"),
    ]


class RelayConfig(BaseModel):
    models: list[ModelConfig] = Field(default_factory=_default_models)
    default_model: str = "ollama-default"
    system_prompt: str = _DEFAULT_SYSTEM_PROMPT
    transport: TransportSettings = Field(default_factory=TransportSettings)
    retry: RetrySettings = Field(default_factory=RetrySettings)
    isolation: IsolationSettings = Field(default_factory=IsolationSettings)

    def get_model(self, model_id: str | None = None) -> ModelConfig:
        """Look up an enabled model by id (default model when *None*)."""
        wanted = model_id or self.default_model
        for model in self.models:
            if model.id == wanted:
                if not model.enabled:
                    raise ConfigError(f"Model is disabled: {wanted}")
                return model
        raise ConfigError(f"Unknown model: {wanted}")

    def enabled_models(self) -> list[ModelConfig]:
        return [m for m in self.models if m.enabled]


CONFIG_FILENAME = "chat_relay.yaml"


def load_config(
    config_path: str | Path | None = None,
) -> tuple[RelayConfig, Path | None]:
    """Load configuration from a YAML file.

    Returns (config, resolved_path). *resolved_path* is ``None`` when no file
    was found and built-in defaults are used.

    Search order (first match wins):
      1. Explicit ``--config`` path
      2. Current working directory: ``./chat_relay.yaml``
      3. User config dir: ``~/.chat_relay/chat_relay.yaml``
    """
    if config_path is None:
        for d in (Path.cwd(), Path.home() / ".chat_relay"):
            p = d / CONFIG_FILENAME
            if p.exists():
                config_path = p
                break

    if config_path is None:
        return RelayConfig(), None

    resolved = Path(config_path)
    if not resolved.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(resolved) as f:
        try:
            raw: dict[str, Any] = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {resolved}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigError(f"Config root must be a mapping: {resolved}")
    try:
        config = RelayConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigError(f"Invalid config in {resolved}: {e}") from e
    return config, resolved.resolve()
