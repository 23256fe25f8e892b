from dataclasses import dataclass, field

from micro_x_agent_bridge.tool import Tool


@dataclass
class BridgeConfig:
    model: str = "claude-sonnet-4-5-20250929"
    max_tokens: int = 8192
    temperature: float = 1.0
    tools: list[Tool] = field(default_factory=list)
    system_prompt: str | None = None
    working_directory: str | None = None
    max_tool_result_chars: int = 40_000
    max_turns: int = 50
    max_tokens_retries: int = 3
    subagent_queue_size: int = 64
