import asyncio
import sys

from ally_ai.client import AiClient
from ally_ai.config import create_registry, get_default_settings, provider_options, setup_logging
from ally_ai.errors import CapabilityUnsupported
from ally_ai.types import ChatMessage, CompletionOptions, FunctionDefinition, StreamChunk, ToolDefinition


def print_chunk(chunk: StreamChunk) -> None:
    if chunk.type == "content":
        print(chunk.text, end="", flush=True)
    elif chunk.type == "reset":
        print(f"\n[retrying in {chunk.delay_s:g}s: {chunk.reason}]")


async def main() -> None:
    settings = get_default_settings()
    setup_logging(settings["log_level"])
    registry = create_registry(settings)
    client = AiClient(registry, provider_options=provider_options(settings))
    history = [ChatMessage(role="user", content=" ".join(sys.argv[1:]) or "Say hi in five words.")]

    # DeepSeek R1 is configured without tool calling.
    try:
        client.stream(
            history,
            model_id="deepseek-r1",
            options=CompletionOptions(tools=[ToolDefinition(function=FunctionDefinition(name="demo_tool"))]),
        )
    except CapabilityUnsupported as e:
        print("Expected error:", type(e).__name__, e)

    try:
        result = await client.chat(history, on_chunk=print_chunk)
    finally:
        await client.aclose()
    print()
    model = registry.get_default_model()
    print(f"model={model.display_name_or_alias} status={result.status.value} attempts={result.attempts}")
    print(f"usage={result.usage}")
    cost = model.estimate_cost(result.usage) if result.usage is not None else None
    if cost is not None:
        print(f"estimated cost: {cost:.6f} {model.pricing.currency}")


if __name__ == "__main__":
    asyncio.run(main())
