"""
Command-line interface for the chat engine.
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

import structlog
import uvicorn

from .config import get_settings

logger = structlog.get_logger()


def configure_logging(level: str = "INFO") -> None:
    """Set up the structlog processor chain on top of stdlib logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty()),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="chat-engine",
        description="Chat-Engine - streaming chat sessions with context compression and tools",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    chat_parser = subparsers.add_parser("chat", help="Chat interactively in the terminal")
    chat_parser.add_argument("--conversation", default="cli", help="Conversation id to use")
    chat_parser.add_argument("--no-persist", action="store_true", help="Keep history in memory only")

    serve_parser = subparsers.add_parser("serve", help="Start the API server")
    serve_parser.add_argument("--host", default=None, help="Host to bind to")
    serve_parser.add_argument("--port", type=int, default=None, help="Port to bind to")
    serve_parser.add_argument("--reload", action="store_true", help="Enable auto-reload")

    config_parser = subparsers.add_parser("config", help="Show configuration")
    config_parser.add_argument("--check", action="store_true", help="Check configuration validity")

    subparsers.add_parser("init", help="Create a starter .env and data directory")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    settings = get_settings()
    configure_logging("DEBUG" if settings.debug else settings.log_level)

    if args.command == "chat":
        asyncio.run(run_chat(args.conversation, persist=not args.no_persist))
    elif args.command == "serve":
        run_server(args.host or settings.host, args.port or settings.port, args.reload)
    elif args.command == "config":
        ok = show_config(args.check)
        if not ok:
            sys.exit(1)
    elif args.command == "init":
        init_project()
    else:
        parser.print_help()


def run_server(host: str, port: int, reload: bool) -> None:
    """Run the FastAPI server."""
    logger.info("Starting Chat-Engine server", host=host, port=port)

    uvicorn.run(
        "chat_engine.api.app:create_app",
        host=host,
        port=port,
        reload=reload,
        factory=True,
        log_level="info",
    )


async def run_chat(conversation_id: str, persist: bool = True) -> None:
    """Interactive chat loop printing deltas as they stream."""
    from .agent import SqlMessageStore, create_orchestrator
    from .errors import ChatEngineError
    from .models import init_database

    settings = get_settings()
    store = None
    if persist:
        store = SqlMessageStore(await init_database(settings.database_url))

    engine = create_orchestrator(settings, store=store)
    history = await engine.load_history(conversation_id)

    print(f"Conversation '{conversation_id}' ({len(history)} messages). /budget, /quit")
    try:
        while True:
            try:
                line = await asyncio.to_thread(input, "\nyou> ")
            except EOFError:
                break

            text = line.strip()
            if not text:
                continue
            if text in ("/quit", "/exit"):
                break
            if text == "/budget":
                budget = engine.budget(conversation_id)
                print(
                    f"{budget.used_tokens}/{budget.limit_tokens} tokens "
                    f"({budget.used_fraction:.1%}) system={budget.breakdown.system_prompt} "
                    f"memory={budget.breakdown.memory} history={budget.breakdown.history}"
                )
                continue

            print("assistant> ", end="", flush=True)
            try:
                result = await engine.send(
                    conversation_id,
                    text,
                    on_delta=lambda delta: print(delta, end="", flush=True),
                )
            except ChatEngineError as e:
                print(f"\n[error] {e.message}")
                continue

            print()
            for request in result.tool_calls:
                print(f"  [tool {request.tool_name}: {request.status.value}]")
            for warning in result.warnings:
                print(f"  [warning] {warning}")
            if result.compressed:
                print("  [context compressed]")
    finally:
        await engine.transport.aclose()


def show_config(check: bool) -> bool:
    """Show current configuration. Returns False if the check found errors."""
    settings = get_settings()

    def mask(value: str | None) -> str:
        if not value:
            return "(not set)"
        return value[:4] + "..." + value[-4:] if len(value) > 10 else "****"

    print("\n=== Chat-Engine Configuration ===\n")

    print("Server:")
    print(f"  Host: {settings.host}")
    print(f"  Port: {settings.port}")
    print(f"  Debug: {settings.debug}")

    print("\nInference:")
    print(f"  Backend URL: {settings.backend_url or '(not set)'}")
    print(f"  Backend Key: {mask(settings.backend_api_key)}")
    print(f"  Offline Mode: {settings.offline_mode}")
    print(f"  Default Model: {settings.default_model}")
    print(f"  Connections: {len(settings.connections)}")
    for conn in settings.connections:
        state = "enabled" if conn.enabled else "disabled"
        print(f"    - {conn.name or conn.id} [{state}, priority {conn.priority}] {conn.url or '(no url)'} key={mask(conn.api_key)}")

    print("\nContext:")
    print(f"  Context Limit: {settings.context_limit or '(from model)'}")
    print(f"  Tokenizer: {settings.tokenizer}")
    print(f"  Compression: {settings.compression_strategy if settings.compression_enabled else 'disabled'}")
    print(f"  Threshold: {settings.compression_threshold:.0%}")
    print(f"  Preserve Last: {settings.preserve_last_n}")
    print(f"  Max Tool Iterations: {settings.max_tool_iterations}")

    print("\nDatabase:")
    print(f"  URL: {settings.database_url}")

    if not check:
        return True

    print("\n=== Configuration Check ===\n")
    errors = []
    warnings = []

    usable = [c for c in settings.connection_descriptors if c.is_usable]
    if not usable and not settings.backend_url and not settings.offline_mode:
        errors.append("No enabled connection, BACKEND_URL or OFFLINE_MODE - every send would fail")

    for conn in settings.connections:
        if conn.enabled and not conn.url:
            warnings.append(f"Connection '{conn.id}' is enabled but has no url")

    if settings.tokenizer == "tiktoken":
        try:
            import tiktoken  # noqa: F401
        except ImportError:
            errors.append("TOKENIZER=tiktoken but tiktoken is not installed")

    if errors:
        print("❌ Errors:")
        for e in errors:
            print(f"   - {e}")

    if warnings:
        print("⚠️  Warnings:")
        for w in warnings:
            print(f"   - {w}")

    if not errors and not warnings:
        print("✅ Configuration looks good!")
    elif not errors:
        print("\n✅ Configuration is valid (with warnings)")
    else:
        print("\n❌ Configuration has errors - fix them before starting")

    return not errors


def init_project() -> None:
    """Write a starter .env and create the data directory."""
    env_file = Path(".env")
    data_dir = Path("data")

    data_dir.mkdir(exist_ok=True)

    if not env_file.exists():
        env_content = """# Chat-Engine Configuration

# === INFERENCE (set at least one) ===

# LM server connections, highest priority wins
# CONNECTIONS=[{"id": "local", "url": "http://localhost:1234/v1", "priority": 1}]

# OpenAI-compatible backend used when no connection is enabled
# BACKEND_URL=https://api.openai.com/v1
# BACKEND_API_KEY=

# Canned replies when nothing is configured
OFFLINE_MODE=true

# === MODEL ===
DEFAULT_MODEL=gpt-4o
# CONTEXT_LIMIT=0
TEMPERATURE=0.7
MAX_TOKENS=4096

# === CONTEXT ===
TOKENIZER=estimate
COMPRESSION_ENABLED=true
COMPRESSION_STRATEGY=hybrid
COMPRESSION_THRESHOLD=0.8
PRESERVE_LAST_N=6
# DROP_LOW_VALUE_MESSAGES=false

# === TOOLS ===
MAX_TOOL_ITERATIONS=10

# Server
HOST=0.0.0.0
PORT=8080
DEBUG=false

# Database
DATABASE_URL=sqlite+aiosqlite:///./data/chat.db
"""
        env_file.write_text(env_content)
        print(f"✅ Created {env_file}")
    else:
        print(f"ℹ️  {env_file} already exists")

    print(f"✅ Created {data_dir}")
    print("\n=== Next Steps ===")
    print("1. Edit .env and configure a connection or BACKEND_URL")
    print("2. Run: chat-engine config --check")
    print("3. Run: chat-engine chat")
    print("4. Or serve the API: chat-engine serve")


if __name__ == "__main__":
    main()
