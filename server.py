"""Command-line entry point for the conversation server."""

from __future__ import annotations

import argparse
import json
import logging
from pathlib import Path
from typing import List, Optional

import uvicorn

from conversation import ChatConfig
from conversation.api import create_app
from conversation.auth import TokenSigner
from conversation.collaborators import InMemoryUserDirectory, UserRecord
from conversation.utils import setup_logging

logger = logging.getLogger(__name__)


def load_users(path: str) -> List[UserRecord]:
    """Read ``[{"id": ..., "displayName": ...}, ...]`` from a JSON file."""
    with Path(path).open("r", encoding="utf-8") as f:
        entries = json.load(f)
    if not isinstance(entries, list):
        raise ValueError("users file must contain a list of user objects")
    return [UserRecord(id=str(entry["id"]), display_name=entry.get("displayName", "")) for entry in entries]


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run the real-time conversation server.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=8010, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument("--llm_endpoint", help="Chat-completions endpoint (env CHAT_LLM_ENDPOINT).")
    parser.add_argument("--llm_model", help="Model name for completions (env CHAT_LLM_MODEL).")
    parser.add_argument("--request_timeout", type=int, help="Timeout for LLM HTTP calls (seconds).")
    parser.add_argument("--embedding_endpoint", help="Embeddings endpoint (env EMBEDDING_ENDPOINT).")
    parser.add_argument("--namespace_root", help="Memory namespace root (env MEMORY_NAMESPACE_ROOT).")
    parser.add_argument("--memory_dir", help="Directory to persist vector memory (env MEMORY_PERSIST_DIR).")
    parser.add_argument("--memory_top_k", type=int, help="Memory hits to retrieve per turn.")
    parser.add_argument("--window_size", type=int, help="Recent turns sent to the model.")
    parser.add_argument("--inject_memory", action="store_true", help="Add retrieved memory to the prompt.")
    parser.add_argument("--users_file", help="JSON file listing the users allowed to connect.")
    parser.add_argument("--issue_token", metavar="USER_ID", help="Print a signed token for USER_ID and exit.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> ChatConfig:
    config = ChatConfig.from_env()
    if args.llm_endpoint:
        config.llm.endpoint = args.llm_endpoint
    if args.llm_model:
        config.llm.model = args.llm_model
    if args.request_timeout:
        config.llm.request_timeout = args.request_timeout
    if args.embedding_endpoint:
        config.embedding.endpoint = args.embedding_endpoint
    if args.namespace_root:
        config.memory.namespace_root = args.namespace_root
    if args.memory_dir:
        config.memory.persist_dir = args.memory_dir
    if args.memory_top_k is not None:
        config.memory.top_k = args.memory_top_k
    if args.window_size:
        config.window_size = args.window_size
    if args.inject_memory:
        config.inject_memory = True
    return config


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    config = build_config(args)
    if not config.auth.signing_secret:
        raise SystemExit("JWT_SECRET must be set to verify connection credentials")

    if args.issue_token:
        signer = TokenSigner(config.auth.signing_secret)
        print(signer.issue({"sub": args.issue_token}, expires_in=config.auth.token_ttl_seconds))
        return

    setup_logging(args.log_dir, logging.INFO)
    users = InMemoryUserDirectory(load_users(args.users_file) if args.users_file else None)
    app = create_app(config, users=users)
    logger.info("Starting conversation server on %s:%d (model=%s)", args.host, args.port, config.llm.model)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
