"""
memfabric CLI - Attributed long-term memory from the command line

Usage:
    pip install memfabric
    memfabric init                                   # Build the storage schema
    memfabric add "I prefer dark roast" --entity u1  # Store a memory
    memfabric search "coffee" --entity u1            # Nearest memories
    memfabric context "what coffee?" --entity u1     # Prompt context block
    memfabric stats                                  # Record count
    memfabric serve                                  # Start the HTTP server

Storage and embedding settings come from MEMFABRIC_* environment variables;
--store and --db-path override them.
"""

import argparse
import asyncio
import logging
import os
import sys
from typing import Optional

from memfabric.backend.modules.memory import Attribution, ClaraConfig, FabricConfig, MemoryFabric
from memfabric.backend.modules.memory.errors import MemoryFabricError

# Default HTTP port for `memfabric serve`
DEFAULT_PORT = 27190

# ANSI colors
GREEN = "\033[92m"
YELLOW = "\033[93m"
RED = "\033[91m"
BLUE = "\033[94m"
RESET = "\033[0m"
BOLD = "\033[1m"


def print_banner():
    """Print memfabric banner."""
    print(f"""
{BLUE}{BOLD}+---------------------------------------------------+
|                   MEMFABRIC                       |
|     Attributed Memory for LLM Applications        |
+---------------------------------------------------+{RESET}
""")


def _attribution(args) -> Optional[Attribution]:
    entity = getattr(args, "entity", None)
    process = getattr(args, "process", None)
    session = getattr(args, "session", None)
    if not (entity or process or session):
        return None
    return Attribution(entity_id=entity, process_id=process, session_id=session)


def build_fabric(args) -> MemoryFabric:
    """Fabric for one CLI invocation: environment config plus command-line overrides."""
    overrides = {}
    if getattr(args, "store", None):
        overrides["store_backend"] = args.store
    if getattr(args, "db_path", None):
        overrides["db_path"] = args.db_path

    compress = getattr(args, "compress", False)
    reason = getattr(args, "reason", False)
    config = FabricConfig.from_env(**overrides)
    if compress or reason:
        config.clara = ClaraConfig(
            enable_compression=compress or config.clara.enable_compression,
            enable_reasoning=reason or config.clara.enable_reasoning,
        )

    llm = None
    if config.clara.enabled:
        from memfabric.sidecar_service import create_generator
        llm = create_generator(getattr(args, "llm", None) or os.environ.get("MEMFABRIC_LLM", "ollama"))

    return MemoryFabric(config=config, llm=llm)


def _run(args, action):
    """Run `action(fabric)` on a fresh fabric and always close it."""
    async def runner():
        fabric = build_fabric(args)
        try:
            await fabric.initialize()
            return await action(fabric)
        finally:
            await fabric.close()

    try:
        return asyncio.run(runner())
    except MemoryFabricError as e:
        print(f"{RED}Error: {e}{RESET}")
        sys.exit(1)


def cmd_init(args):
    """Create the storage schema and report the record count."""
    print_banner()

    async def do_init(fabric):
        return type(fabric.store).__name__, await fabric.count()

    store_name, count = _run(args, do_init)
    print(f"{GREEN}Storage ready{RESET} ({store_name})")
    print(f"  Memories: {count}")


def cmd_add(args):
    """Store one memory."""
    async def do_add(fabric):
        return await fabric.add_memory(args.content, args.role, _attribution(args))

    memory_id = _run(args, do_add)
    print(f"{GREEN}Stored{RESET} memory {memory_id}")


def cmd_search(args):
    """Print the nearest memories to a query."""
    async def do_search(fabric):
        return await fabric.search(args.query, args.limit, _attribution(args))

    results = _run(args, do_search)
    if not results:
        print(f"{YELLOW}No memories found.{RESET}")
        return

    print(f"{BOLD}{len(results)} result(s) for:{RESET} {args.query}\n")
    for r in results:
        role = r.metadata.get("role", "?")
        print(f"  [{r.id}] ({role}, distance {r.distance:.4f}) {r.content}")


def cmd_context(args):
    """Print the context block that would be injected for a query."""
    async def do_context(fabric):
        context = await fabric.retrieve_context(args.query, _attribution(args))
        return context, fabric.stats.last_run

    context, last_run = _run(args, do_context)
    if not context:
        print(f"{YELLOW}No relevant memories.{RESET}")
    else:
        print(context)

    if last_run is not None:
        print(f"\n{BLUE}{last_run.context_chunks} chunk(s) in {last_run.processing_time_ms:.1f} ms{RESET}")
        if last_run.used_query != args.query:
            print(f"{BLUE}Search key: {last_run.used_query}{RESET}")


def cmd_stats(args):
    """Show memory statistics."""
    print_banner()

    async def do_stats(fabric):
        return type(fabric.store).__name__, await fabric.count()

    store_name, count = _run(args, do_stats)
    print(f"{BOLD}Memory Statistics:{RESET}\n")
    print(f"Store: {store_name}")
    print(f"Memories: {count}")


def cmd_serve(args):
    """Start the memfabric server."""
    print_banner()

    if getattr(args, "store", None):
        os.environ["MEMFABRIC_STORE"] = args.store
    if getattr(args, "db_path", None):
        os.environ["MEMFABRIC_DB_PATH"] = args.db_path

    host = args.host or "127.0.0.1"
    print(f"{BOLD}Starting memfabric server...{RESET}\n")
    port = args.port or int(os.environ.get("MEMFABRIC_PORT", DEFAULT_PORT))
    print(f"Health check: http://{host}:{port}/api/health")
    print(f"\nPress Ctrl+C to stop.\n")

    from memfabric.server.main import start_server
    start_server(host=host, port=port)


def _add_attribution_args(parser):
    parser.add_argument("--entity", help="Entity (user/agent) id to scope to")
    parser.add_argument("--process", help="Process (conversation/workflow) id to scope to")
    parser.add_argument("--session", help="Session id to scope to")


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="memfabric - Attributed long-term memory for LLM applications",
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument("--store", choices=["sqlite", "postgres", "chroma"], help="Vector store backend")
    parser.add_argument("--db-path", help="SQLite database file")
    parser.add_argument(
        "--log-level",
        default=os.environ.get("MEMFABRIC_LOG_LEVEL", "WARNING"),
        help="Logging level (default: WARNING, or MEMFABRIC_LOG_LEVEL)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # init command
    subparsers.add_parser("init", help="Create the storage schema")

    # add command
    add_parser = subparsers.add_parser("add", help="Store a memory")
    add_parser.add_argument("content", help="Text to remember")
    add_parser.add_argument("--role", default="user", choices=["user", "assistant", "system"], help="Speaker role")
    add_parser.add_argument("--compress", action="store_true", help="Compress with CLaRa before storing")
    add_parser.add_argument("--llm", choices=["anthropic", "openai", "ollama"], help="Generation provider for CLaRa")
    _add_attribution_args(add_parser)

    # search command
    search_parser = subparsers.add_parser("search", help="Nearest memories to a query")
    search_parser.add_argument("query", help="Search text")
    search_parser.add_argument("--limit", type=int, default=5, help="Maximum results (default: 5)")
    _add_attribution_args(search_parser)

    # context command
    context_parser = subparsers.add_parser("context", help="Context block for prompt injection")
    context_parser.add_argument("query", help="User message")
    context_parser.add_argument("--reason", action="store_true", help="Rewrite the query with CLaRa first")
    context_parser.add_argument("--llm", choices=["anthropic", "openai", "ollama"], help="Generation provider for CLaRa")
    _add_attribution_args(context_parser)

    # stats command
    subparsers.add_parser("stats", help="Show memory statistics")

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Server host")
    serve_parser.add_argument("--port", type=int, default=None, help="Server port (default: 27190)")

    args = parser.parse_args(argv)

    logging.basicConfig(level=str(args.log_level).upper())

    if args.command == "init":
        cmd_init(args)
    elif args.command == "add":
        cmd_add(args)
    elif args.command == "search":
        cmd_search(args)
    elif args.command == "context":
        cmd_context(args)
    elif args.command == "stats":
        cmd_stats(args)
    elif args.command == "serve":
        cmd_serve(args)
    else:
        parser.print_help()


if __name__ == "__main__":
    main()
