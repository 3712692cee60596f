"""Minimal demonstration of the chat engine against a running agent backend."""

import asyncio
import sys

from chat_core import ChatService


def render(store):
    turn = store.current_turn
    if turn is not None and turn.agent_message_id is not None:
        text = store.streaming_text(turn.agent_message_id) or ""
        print(f"\rAgent: {text}", end="", flush=True)


async def main(question: str) -> None:
    async with ChatService() as chat:
        thread_id = chat.create_thread()
        chat.subscribe(render)
        print("User:", question)
        await chat.send(thread_id, question)
        print()
        for message in chat.get_thread_messages(thread_id):
            print(message["message_type"], message["content"])


if __name__ == "__main__":
    asyncio.run(main(" ".join(sys.argv[1:]) or "请读取 README.md 的前 20 行，并解释这个文件的主要内容"))
