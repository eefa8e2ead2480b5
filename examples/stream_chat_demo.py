"""Minimal console demonstration of a streaming chat turn."""

import asyncio
import os

from chat_core import create_service


async def main() -> None:
    service = create_service(token=os.getenv("CHAT_TOKEN"))
    service.deep_thinking_enabled = True
    question = "用三句话介绍一下检索增强生成"
    try:
        outcome = await service.send_message(question)
        reply = service.store.get_message(outcome.message_id)
        print("User:", question)
        if reply.thinking:
            print(f"Thinking ({reply.thinking_duration}s):", reply.thinking)
        print("Assistant:", reply.content)
        print("Status:", outcome.status)
    finally:
        await service.aclose()


if __name__ == "__main__":
    asyncio.run(main())
