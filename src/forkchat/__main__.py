import asyncio
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

from forkchat.app_config import build_provider_config, load_json_config, parse_app_config, resolve_api_key
from forkchat.commands.router import CommandRouter
from forkchat.commands.tree_commands import TreeCommands
from forkchat.errors import ForkChatError, NotFound
from forkchat.logging_config import setup_logging
from forkchat.memory import EventEmitter, MemoryStore, MessageTree, SqliteChatRepository
from forkchat.streaming.client import CompletionClient
from forkchat.transcript import TranscriptWriter
from forkchat.usage import TiktokenCounter

LINE_PREFIX = "assistant> "


async def main() -> None:
    load_dotenv()

    app = parse_app_config(load_json_config())
    log_descriptions = setup_logging(level=app.log_level, consumers=app.log_consumers)

    api_key, env_var = resolve_api_key()
    if not api_key:
        logger.error(f"{env_var} environment variable is required.")
        sys.exit(1)

    db_path = Path(app.db_path)
    if not db_path.is_absolute():
        db_path = Path.cwd() / db_path
    store = MemoryStore(str(db_path))
    counter = TiktokenCounter()
    tree = MessageTree(SqliteChatRepository(store), counter, events=EventEmitter(store))

    chat_id = app.chat_id
    if chat_id is not None:
        try:
            tree.load(chat_id, user_id=app.user_id)
        except NotFound:
            tree.create_chat(app.user_id, system_prompt=app.system_prompt, chat_id=chat_id)
    else:
        chat_id = tree.create_chat(app.user_id, system_prompt=app.system_prompt).id

    commands = TreeCommands(tree, chat_id, app.user_id, line_prefix=LINE_PREFIX)
    router = CommandRouter(on_unknown=lambda line: print(f"{LINE_PREFIX}Unknown command: {line} (try /help)"))
    for name, handler in commands.handlers().items():
        router.register(name, handler)

    print("forkchat (type 'exit' to quit, '/help' for commands)")
    print(f"Model: {app.model} @ {app.host}")
    print(f"Chat: {chat_id}")
    if log_descriptions:
        print(f"Logging: {', '.join(log_descriptions)}")
    print()

    client = CompletionClient(build_provider_config(app, api_key))
    writer = TranscriptWriter(tree, client, token_counter=counter, require_usage=app.require_usage)
    try:
        while True:
            try:
                user_input = input("you> ")
            except (EOFError, KeyboardInterrupt):
                break

            trimmed = user_input.strip()
            if trimmed in ("exit", "quit"):
                break
            if not trimmed:
                continue

            try:
                if await router.try_handle(trimmed):
                    continue
                print()
                print(LINE_PREFIX, end="", flush=True)
                await writer.send(
                    chat_id,
                    trimmed,
                    user_id=app.user_id,
                    on_delta=lambda delta: print(delta.text, end="", flush=True),
                )
                print("\n")
            except ForkChatError as ex:
                print()
                logger.error(f"{type(ex).__name__}: {ex}")
    finally:
        await client.aclose()
        store.close()


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
