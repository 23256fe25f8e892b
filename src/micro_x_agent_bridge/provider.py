from typing import Protocol, runtime_checkable

from micro_x_agent_bridge.messages import Usage
from micro_x_agent_bridge.tool import Tool


@runtime_checkable
class LLMProvider(Protocol):
    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> tuple[dict, list[dict], str, Usage]:
        """Stream one turn and coalesce the deltas into a complete message.

        Returns (message_dict, tool_use_blocks, stop_reason, usage) in
        Anthropic-style internal format.
        """
        ...

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        """Convert Tool protocol objects to provider-specific tool schema."""
        ...


def create_provider(provider_name: str, api_key: str) -> LLMProvider:
    """Factory: create an LLMProvider by name."""
    name = provider_name.strip().lower()
    if name == "anthropic":
        from micro_x_agent_bridge.providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(api_key)
    if name == "openai":
        from micro_x_agent_bridge.providers.openai_provider import OpenAIProvider
        return OpenAIProvider(api_key)
    raise ValueError(f"Unknown provider: {provider_name!r}. Supported: 'anthropic', 'openai'")
