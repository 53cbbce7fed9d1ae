"""
Main entry point - interactive chat with working memory, semantic recall and document context.

Run from src/: python -m main
"""

import asyncio
import sys
from pathlib import Path

from config import MemoryConfig, configure_logging, load_config
from llm.completion import CompletionClient, CompletionError
from llm.template import ChatTemplate
from memory import session_log
from memory.coordinator import EjectionCoordinator
from memory.embeddings import Embedder, Tokenizer, get_backend
from memory.history import RollingHistory
from memory.long_term import SemanticStore, open_store, save_store
from memory.retrieval import EmbeddingCache, RetrievalPipeline
from memory.short_term import WorkingMemory

DEFAULT_SESSION = "default"

CLI_HELP = """
Commands:
  /memories             List memories archived for this session
  /brain                Show current working memory
  /stats                Show memory statistics
  /rag <file,...>       Load plain-text documents as context for following questions
  /rag clear            Stop using document context
  /cache clear          Delete cached document embeddings
  /clear                Delete this session's history (confirmation required)
  /help                 Show this help
  quit, exit, q         Exit chat
"""

SYSTEM_PROMPT = """You are a helpful assistant with a long memory of this conversation.
Use the memories you were shown to stay consistent with earlier exchanges. Be concise."""


def _print_token(token: str) -> None:
    sys.stdout.write(token)
    sys.stdout.flush()


async def handle_cli_command(cmd: str, coordinator: EjectionCoordinator, memory_config: MemoryConfig) -> bool:
    """Handle /commands. Returns True if handled (no further processing)."""
    parts = cmd.strip().split(maxsplit=1)
    name = parts[0].lower()
    arg = parts[1].strip() if len(parts) > 1 else ""
    store = coordinator.store

    if name == "/help":
        print(CLI_HELP)
        return True
    if name == "/stats":
        print(f"\nArchived memories: {len(store) if store is not None else 0}")
        if coordinator.brain is not None:
            brain = coordinator.brain
            print(f"Working memory: {len(brain)} entries, {brain.total_tokens()}/{brain.max_tokens} tokens")
        history = coordinator.history
        print(f"History: {len(history)} turns, {history.total_tokens(coordinator.preamble())}/{history.max_tokens} tokens")
        if coordinator.rag_index is not None:
            print(f"Document chunks: {len(coordinator.rag_index)}")
        print()
        return True
    if name == "/memories":
        if store is None or not len(store):
            print("\nNo memories archived.\n")
        else:
            print(f"\n{len(store)} memories:\n")
            for id, m in sorted(store.id_to_memory.items()):
                print(f"  #{id} [{m.role.value}] {m.content}")
            print()
        return True
    if name == "/brain":
        brain = coordinator.brain
        if brain is None or not len(brain):
            print("\nWorking memory is empty.\n")
        else:
            print()
            for m in brain:
                print(f"  [{m.role.value}] {m.content}")
            print()
        return True
    if name == "/rag":
        if arg.lower() == "clear":
            coordinator.rag_index = None
            print("Document context cleared.\n")
            return True
        paths = [Path(p.strip()).expanduser() for p in arg.split(",") if p.strip()]
        missing = [p for p in paths if not p.is_file()]
        if not paths or missing:
            print(f"Usage: /rag <file,...> (not found: {', '.join(map(str, missing))})\n")
            return True
        coordinator.rag_index = await asyncio.to_thread(coordinator.rag_pipeline.index_files, paths)
        print(f"Indexed {len(coordinator.rag_index)} chunks from {len(paths)} file(s).\n")
        return True
    if name == "/cache" and arg.lower() == "clear":
        removed = coordinator.rag_pipeline.cache.clear()
        print(f"Removed {removed} cached embeddings.\n")
        return True
    if name == "/clear":
        prompt = "Delete this session's history? (yes/no): "
        confirm = (await asyncio.get_running_loop().run_in_executor(None, input, prompt)).strip().lower()
        if confirm == "yes":
            history = coordinator.history
            if history.session_name:
                session_log.delete_session(history.session_name, memory_config.db_path)
            history.turns.clear()
            if coordinator.brain is not None:
                coordinator.brain.clear()
            print("Session history cleared.\n")
        else:
            print("Cancelled.\n")
        return True
    return False


def build_coordinator(config) -> EjectionCoordinator:
    memory_config = config.memory
    session_name = config.session_name or DEFAULT_SESSION
    tokenizer = Tokenizer()
    embedder = Embedder(model_name=memory_config.embed_model_name, tokenizer=tokenizer)
    template = ChatTemplate(system_prompt=SYSTEM_PROMPT)

    store: SemanticStore = open_store(session_name, memory_config, embedder=embedder)
    brain = WorkingMemory(config.brain_max_tokens, template, tokenizer.count_tokens)
    history = RollingHistory.load(
        session_name, config.session_budget(), tokenizer.count_tokens, memory_config.db_path
    )
    cache = EmbeddingCache(memory_config.cache_dir, model_name=memory_config.embed_model_name)
    pipeline = RetrievalPipeline(embedder, tokenizer, cache=cache)
    return EjectionCoordinator(
        config,
        CompletionClient(config),
        template,
        store=store,
        brain=brain,
        history=history,
        rag_pipeline=pipeline,
        count_tokens=tokenizer.count_tokens,
    )


async def chat(coordinator: EjectionCoordinator) -> None:
    config = coordinator.config
    loop = asyncio.get_running_loop()
    while True:
        user_input = (await loop.run_in_executor(None, input, "You: ")).strip()
        if not user_input:
            continue
        if user_input.lower() in ("quit", "exit", "q"):
            print("Goodbye!")
            break
        if user_input.startswith("/"):
            if await handle_cli_command(user_input, coordinator, config.memory):
                continue

        if config.should_stream:
            print("\nAssistant: ", end="")
        try:
            reply = await coordinator.ask(
                user_input, on_token=_print_token if config.should_stream else None
            )
        except CompletionError as e:
            print(f"\n[error] {e}\n", file=sys.stderr)
            continue
        if config.should_stream:
            print("\n")
        else:
            print(f"\nAssistant: {reply}\n")


def main():
    configure_logging()
    config = load_config()
    coordinator = build_coordinator(config)

    print("=== Memory-Enabled Assistant ===")
    print("Type /help for commands, 'quit' to exit.\n")
    print(f"(Session: {coordinator.history.session_name}, model: {config.model} at {config.api_base})")
    print(f"(Embeddings: {get_backend(coordinator.store.embedder)}, {len(coordinator.store)} archived memories)")

    try:
        asyncio.run(chat(coordinator))
    except (KeyboardInterrupt, EOFError):
        print("\nGoodbye!")
    finally:
        path = save_store(coordinator.store, config.memory)
        print(f"(Memories saved to {path})")


if __name__ == "__main__":
    main()
