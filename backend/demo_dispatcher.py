"""Demo script for MessageDispatcher with a console channel."""
import asyncio
import sys
import tempfile
sys.path.insert(0, '.')

from models.message import InboundMessage, QuotedMessage
from services.channel import Channel
from services.content_assembler import ContentAssembler
from services.conversation_store import ConversationStore
from services.llm_client import LLMClient
from services.message_dispatcher import MessageDispatcher
from services.persona import PersonaProvider


class ConsoleChannel(Channel):
    """Prints replies instead of delivering them."""

    async def send(self, sender: str, text: str) -> None:
        print(f"  -> {sender}: {text}")

    async def set_typing(self, sender: str, typing: bool) -> None:
        if typing:
            print(f"  ({sender} sees typing...)")


async def run_demo():
    print("=== MessageDispatcher Demo ===\n")

    with tempfile.TemporaryDirectory() as data_dir:
        print("1. Initializing services...")
        store = ConversationStore(file_path=f"{data_dir}/chat_history.json", save_delay=1)
        await store.initialize(start_cleanup=False)
        llm_client = LLMClient()
        persona = PersonaProvider(store)
        dispatcher = MessageDispatcher(
            store=store,
            llm_client=llm_client,
            channel=ConsoleChannel(),
            assembler=ContentAssembler(persona.name),
            context_providers=[persona.persona_prompt, persona.time_context],
            persona_name=persona.name
        )
        print("✓ Services initialized\n")

        print("2. Two senders chatting at once...")
        dispatcher.submit(InboundMessage(sender="kasun", text="Ado, kohomada?", id="k1", sender_name="Kasun"))
        dispatcher.submit(InboundMessage(sender="nimali", text="Hey! Free tonight?", id="n1", sender_name="Nimali"))
        dispatcher.submit(InboundMessage(sender="kasun", text="Match eka baluwada?", id="k2", sender_name="Kasun"))
        while dispatcher.get_status()["active_senders"]:
            await asyncio.sleep(0.1)
        print()

        print("3. Replying to a quoted message...")
        dispatcher.submit(InboundMessage(
            sender="nimali",
            text="haha yes",
            id="n2",
            sender_name="Nimali",
            quoted_message=QuotedMessage(text="Want to get kottu?", is_from_bot=True),
            has_quote=True
        ))
        while dispatcher.get_status()["active_senders"]:
            await asyncio.sleep(0.1)
        print()

        print("4. Conversation stats...")
        for sender in ("kasun", "nimali"):
            print(f"  - {sender}: {store.get_conversation_stats(sender)}")
        print()

        print("5. Shutting down...")
        await dispatcher.cleanup()
        print(f"✓ History saved to {store.file_path}")
        print(f"  - Backend stats: {llm_client.get_stats()}\n")

    print("=== Demo complete ===")


def main():
    """Run the dispatcher demo against the real Groq API."""
    try:
        asyncio.run(run_demo())
    except Exception as e:
        print(f"✗ Error: {e}")
        import traceback
        traceback.print_exc()


if __name__ == "__main__":
    main()
