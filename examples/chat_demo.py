"""Minimal terminal demo: stream one concierge exchange to stdout."""

import asyncio
import sys

from concierge_core.api.service import get_default_agent


async def main(question: str) -> None:
    agent = get_default_agent()
    conv = await agent.store.create_conversation()
    print("User:", question)
    print("Concierge: ", end="", flush=True)
    async for event in agent.send_message(conv.id, question):
        if event.type == "text":
            print(event.text, end="", flush=True)
        elif event.type == "tool_use_start":
            print(f"\n[tool] {event.name}", flush=True)
        elif event.type == "error":
            print(f"\n[error] {event.message}")
    print()


if __name__ == "__main__":
    asyncio.run(main(" ".join(sys.argv[1:]) or "Where should I get dinner in the West Village this Friday?"))
