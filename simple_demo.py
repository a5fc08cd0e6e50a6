#!/usr/bin/env python3
"""
Super simple Sellable demo: generates one reply for a scraped chat.

Reads a chat context from a JSON file (the same shape the scraper produces)
or uses a built-in sample conversation. If no assistant is configured for the
chat role, a demo assistant is created and remembered in the metadata store.

    python simple_demo.py [context.json]
"""

import asyncio
import json
import logging
import sys

from sellable.assist.builder import build_reply_service
from sellable.assist.errors import ConfigurationError, DataIntegrityError, RunError

SAMPLE_CONTEXT = {
    "chatId": "demo_chat_1",
    "role": "seller",
    "productDetails": {
        "id": "1234567890",
        "title": "Trek road bike, 56cm",
        "price": "$450",
        "condition": "Used - like new",
        "location": "Austin, TX",
        "description": "Aluminium frame, Shimano 105, new tires.",
    },
    "messages": [
        {"id": "msg_demo_1", "content": "Hi, is this still available?", "sentByUs": False},
        {"id": "msg_demo_2", "content": "Yes it is!", "sentByUs": True},
        {"id": "msg_demo_3", "content": "Would you take $400?", "sentByUs": False},
    ],
}

DEMO_INSTRUCTIONS = (
    "You are selling items on a marketplace. Answer buyers briefly and politely, "
    "in the language they write in. Never go below 90% of the listed price."
)

FALLBACK_REPLY = "Thanks for your message! I'll get back to you shortly."


async def main(context):
    print("🤖 Simple Sellable Demo")
    print("=" * 30)

    service = build_reply_service()
    try:
        role = context.get("role") or "seller"
        try:
            assistant_id = service.get_assistant_id_for_role(role)
            print(f"🧑‍💼 Using assistant {assistant_id} for role {role}")
        except ConfigurationError:
            print(f"🧑‍💼 No assistant for role {role}, creating one...")
            assistant_id = await service.create_or_update_assistant(role, f"Sellable {role}", DEMO_INSTRUCTIONS)
            print(f"   ✅ Created assistant {assistant_id}")

        print(f"\n💬 Generating reply for chat {context['chatId']}...")
        try:
            reply = await service.generate_reply(context)
        except (RunError, DataIntegrityError) as e:
            print(f"   ⚠️  Assistant failed ({e}), using fallback reply")
            reply = FALLBACK_REPLY
        print(f"\n📨 Reply: {reply}")

        thread = service.thread_manager.get_thread_info(context["chatId"])
        if thread is not None:
            print(f"\n🧵 Thread {thread.thread_id}, last processed message {thread.last_processed_message_id}")
        print(f"📊 Metrics: {service.get_metrics()}")
    finally:
        await service.api_client.close()
        if service.preparer.image_validator is not None:
            await service.preparer.image_validator.close()
        service.store.close()


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    if len(sys.argv) > 1:
        with open(sys.argv[1]) as f:
            chat_context = json.load(f)
    else:
        chat_context = SAMPLE_CONTEXT
    asyncio.run(main(chat_context))
