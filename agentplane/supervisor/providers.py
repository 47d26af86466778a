"""Upstream LLM providers and the environment variable each worker reads."""

from __future__ import annotations

from pydantic import BaseModel


class ProviderInfo(BaseModel):
    id: str
    name: str
    env_var: str


PROVIDERS: dict[str, ProviderInfo] = {
    p.id: p
    for p in [
        ProviderInfo(id="anthropic", name="Anthropic", env_var="ANTHROPIC_API_KEY"),
        ProviderInfo(id="openai", name="OpenAI", env_var="OPENAI_API_KEY"),
        ProviderInfo(id="groq", name="Groq", env_var="GROQ_API_KEY"),
        ProviderInfo(id="gemini", name="Google", env_var="GEMINI_API_KEY"),
        ProviderInfo(id="fireworks", name="Fireworks", env_var="FIREWORKS_API_KEY"),
        ProviderInfo(id="xai", name="xAI", env_var="XAI_API_KEY"),
        ProviderInfo(id="moonshot", name="Moonshot", env_var="MOONSHOT_API_KEY"),
        ProviderInfo(id="together", name="Together", env_var="TOGETHER_API_KEY"),
        ProviderInfo(id="venice", name="Venice", env_var="VENICE_API_KEY"),
    ]
}

# Memory embeddings always go to OpenAI, whatever the chat provider is.
EMBEDDINGS_PROVIDER = "openai"


def get_provider(provider_id: str) -> ProviderInfo | None:
    return PROVIDERS.get(provider_id)
