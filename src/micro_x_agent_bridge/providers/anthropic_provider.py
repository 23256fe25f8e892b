import anthropic
from loguru import logger
from tenacity import retry

from micro_x_agent_bridge.messages import Usage
from micro_x_agent_bridge.providers.common import default_retry_kwargs, to_internal_tools
from micro_x_agent_bridge.tool import Tool


class AnthropicProvider:
    def __init__(self, api_key: str):
        self._client = anthropic.AsyncAnthropic(api_key=api_key)

    def convert_tools(self, tools: list[Tool]) -> list[dict]:
        return to_internal_tools(tools)

    @retry(**default_retry_kwargs((
        anthropic.RateLimitError,
        anthropic.APIConnectionError,
        anthropic.APITimeoutError,
    )))
    async def stream_chat(
        self,
        model: str,
        max_tokens: int,
        temperature: float,
        system_prompt: str,
        messages: list[dict],
        tools: list[dict],
    ) -> tuple[dict, list[dict], str, Usage]:
        """Stream a chat response and return it once the turn is complete.

        Text deltas are only counted here; the caller sees one coalesced
        message per turn. Returns (message dict, tool_use blocks, stop_reason, usage).
        """
        tool_use_blocks: list[dict] = []
        delta_count = 0

        logger.debug(
            f"API request: model={model}, max_tokens={max_tokens}, "
            f"messages={len(messages)}, tools={len(tools)}"
        )
        kwargs: dict = dict(
            model=model,
            max_tokens=max_tokens,
            temperature=temperature,
            system=system_prompt,
            messages=messages,
        )
        if tools:
            kwargs["tools"] = tools

        async with self._client.messages.stream(**kwargs) as stream:
            async for event in stream:
                if event.type == "content_block_delta" and event.delta.type == "text_delta":
                    delta_count += 1

            response = await stream.get_final_message()

        usage = Usage(response.usage.input_tokens, response.usage.output_tokens)
        logger.debug(
            f"API response: stop_reason={response.stop_reason}, deltas={delta_count}, "
            f"input_tokens={usage.input_tokens}, output_tokens={usage.output_tokens}"
        )

        assistant_content: list[dict] = []
        for block in response.content:
            if block.type == "text":
                assistant_content.append({"type": "text", "text": block.text})
            elif block.type == "tool_use":
                tool_block = {
                    "type": "tool_use",
                    "id": block.id,
                    "name": block.name,
                    "input": block.input,
                }
                assistant_content.append(tool_block)
                tool_use_blocks.append(tool_block)

        message = {"role": "assistant", "content": assistant_content}
        return message, tool_use_blocks, response.stop_reason, usage
