"""Minimal terminal demonstration of the streaming chat service.

Reads the Azure OpenAI settings from the environment / .env / config.yaml
(or the config saved under storage_root) and streams each answer to stdout.
Answers longer than 120 seconds are stopped like a user pressing "stop".
"""

import asyncio
import sys

from chat_core.api.service import ChatService
from chat_core.config.settings import settings
from chat_core.infrastructure.storage.json_store import JsonConfigStore


def on_event(event):
    if event.kind == "delta":
        sys.stdout.write(event.text)
        sys.stdout.flush()
    elif event.kind == "failed":
        print(f"\n[error] {event.error}")
    elif event.kind == "aborted":
        print("\n[stopped]")
    else:
        print()


async def main() -> None:
    service = ChatService(config_store=JsonConfigStore(root=settings.storage_root), on_event=on_event)
    name = service.config.display_name or "Assistant"
    while True:
        try:
            text = await asyncio.to_thread(input, "You: ")
        except EOFError:
            return
        if not text.strip():
            continue
        sys.stdout.write(f"{name}: ")
        await service.send(text, timeout=120)


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
