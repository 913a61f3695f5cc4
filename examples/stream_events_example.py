"""Print reconstructed events from a streaming chat completion.

Demonstrates:
- Running OpenAICompatibleProvider.stream() with a printing sink
- Rebuilding reasoning_details for the next turn

Usage:
    uv run --env-file=.env examples/stream_events_example.py --base-url https://openrouter.ai/api/v1 --model moonshotai/kimi-k2 --trace
"""

import argparse
import asyncio
import json

from tarsier.events import StreamEvent, TextEvent, ThinkingEvent, ToolCallEvent
from tarsier.provider import OpenAICompatibleProvider
from tarsier.reasoning import reasoning_details_from_events


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from tarsier.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


def print_event(event: StreamEvent) -> None:
    if isinstance(event, TextEvent):
        print(event.text, end="", flush=True)
    elif isinstance(event, ThinkingEvent):
        if event.closes_span:
            print("\n[/thinking]")
        else:
            print(f"\033[2m{event.text}\033[0m", end="", flush=True)
    elif isinstance(event, ToolCallEvent):
        print(f"\n[tool] {event.name}({json.dumps(event.arguments)})")


async def main(args):
    if args.trace:
        setup_tracing("tarsier-example")

    provider = OpenAICompatibleProvider(base_url=args.base_url)
    events: list[StreamEvent] = []

    def sink(event: StreamEvent) -> None:
        events.append(event)
        print_event(event)

    tools = [{
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Current weather for a city.",
            "parameters": {
                "type": "object",
                "properties": {"city": {"type": "string"}},
                "required": ["city"],
            },
        },
    }]
    stats = await provider.stream(
        sink,
        model=args.model,
        messages=[{"role": "user", "content": args.prompt}],
        tools=tools,
    )
    print(f"\n\n{stats}")

    details = reasoning_details_from_events(events)
    if details:
        print("reasoning_details for the next turn:")
        print(json.dumps(details, indent=2))


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--base-url", default=None)
    parser.add_argument("--model", required=True)
    parser.add_argument("--prompt", default="What's the weather in San Francisco?")
    parser.add_argument("--trace", action="store_true")
    asyncio.run(main(parser.parse_args()))
