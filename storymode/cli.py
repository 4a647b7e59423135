from __future__ import annotations

import argparse
import asyncio
import json
import os
import sys
from pathlib import Path
from typing import Any, Dict, List

import uvicorn
import yaml

from storymode.agents.story_agent import StoryAgent
from storymode.schemas.models import UserIdentity
from storymode.schemas.profile import FIELD_DEFINITIONS, render_field_value
from storymode.utils.attachments import SUPPORTED_EXTENSIONS, Attachment
from storymode.utils.classifier import classify_message
from storymode.utils.env import load_env_file
from storymode.utils.logging import get_logger
from storymode.utils.profile_store import WELCOME_MESSAGE, ProfileStore

load_env_file()
log = get_logger(__name__)

_CONFIG_ENV_MAP = {
    ("llm", "base"): "STORYMODE_LLM_BASE",
    ("llm", "model"): "STORYMODE_LLM_MODEL",
    ("llm", "max_tokens"): "STORYMODE_LLM_MAX_TOKENS",
    ("timeouts", "attachment"): "ATTACHMENT_TIMEOUT_SECONDS",
    ("timeouts", "generation"): "GENERATION_TIMEOUT_SECONDS",
    ("extraction", "url"): "EXTRACTION_SERVICE_URL",
}


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        return yaml.safe_load(handle) or {}


def _apply_config(config: Dict[str, Any]) -> None:
    for (section, key), env_var in _CONFIG_ENV_MAP.items():
        value = (config.get(section) or {}).get(key)
        if value is not None:
            os.environ[env_var] = str(value)
    if (config.get("llm") or {}).get("api_key"):
        log.warning("config_api_key_ignored", msg="Use .env for STORYMODE_LLM_API_KEY")


def _load_attachments(paths: List[str]) -> List[Attachment]:
    attachments: List[Attachment] = []
    for raw in paths:
        path = Path(raw)
        if not path.is_file():
            print(f"Attachment not found: {raw}", file=sys.stderr)
            continue
        if path.suffix.lower() not in SUPPORTED_EXTENSIONS:
            log.warning("attachment_extension_unsupported", path=str(path))
        attachments.append(Attachment.from_path(path))
    return attachments


def _identity(args: argparse.Namespace) -> UserIdentity | None:
    if not args.email:
        return None
    return UserIdentity(id=args.user_id or args.email, email=args.email, display_name=args.name)


def _print_profile(store: ProfileStore, session_id: str) -> None:
    state = store.get(session_id)
    if state is None:
        print("Profile: (empty)")
        return
    print(f"Profile completeness: {state.profile.completeness}%")
    for definition in FIELD_DEFINITIONS:
        print(f" - {definition.label}: {render_field_value(state.profile, definition)}")


async def _run_turn(agent: StoryAgent, text: str, session_id: str, attachments: List[Attachment], identity) -> None:
    async for event in agent.process_turn(text, session_id=session_id, attachments=attachments, identity=identity):
        if event.name == "profile":
            print(f"[stage={event.data['stage']} completeness={event.data['profile']['completeness']}%]")
            for item in event.data["attachments"]:
                if not item["ok"]:
                    print(f"Note: Could not process {item['filename']}")
        elif event.name == "chunk":
            print(event.data["delta"], end="", flush=True)
        elif event.name == "completed":
            print()
        elif event.name == "error":
            print(f"\nFailed to generate response: {event.data['message']}", file=sys.stderr)


def cmd_chat(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    store = ProfileStore()
    agent = StoryAgent(store=store)
    identity = _identity(args)
    session_id = store.ensure(None).session_id
    pending = _load_attachments(args.attach or [])

    print(WELCOME_MESSAGE)
    print("\nCommands: /attach <path>, /profile, /quit\n")

    if args.message:
        asyncio.run(_run_turn(agent, args.message, session_id, pending, identity))
        return

    while True:
        try:
            line = input("you> ")
        except (EOFError, KeyboardInterrupt):
            print()
            break
        command = line.strip()
        if command in {"/quit", "/exit"}:
            break
        if command == "/profile":
            _print_profile(store, session_id)
            continue
        if command.startswith("/attach "):
            pending.extend(_load_attachments([command.split(" ", 1)[1].strip()]))
            print(f"{len(pending)} file(s) ready to upload")
            continue
        if not command and not pending:
            continue
        asyncio.run(_run_turn(agent, line, session_id, pending, identity))
        pending = []


def cmd_classify(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    result = classify_message(args.message)
    print(json.dumps(sorted(result), indent=2) if not args.full else json.dumps(result, indent=2, ensure_ascii=False))


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    log.info("api_serve_start", app=args.app, host=args.host, port=args.port, reload=args.reload)
    uvicorn.run(args.app, host=args.host, port=args.port, reload=args.reload)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="StoryMode AI college application narrative assistant")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_chat = sub.add_parser("chat", help="Chat with the assistant in the terminal")
    p_chat.add_argument("--message", "-m", help="Send a single message and exit")
    p_chat.add_argument("--attach", action="append", default=None, help="Attach a document; repeat per file")
    p_chat.add_argument("--email", help="Signed-in user email used to personalise prompts")
    p_chat.add_argument("--name", help="Display name")
    p_chat.add_argument("--user-id", dest="user_id")
    p_chat.set_defaults(func=cmd_chat)

    p_classify = sub.add_parser("classify", help="Show which profile fields a message would populate")
    p_classify.add_argument("message")
    p_classify.add_argument("--full", action="store_true", help="Print fragments as well as field names")
    p_classify.set_defaults(func=cmd_classify)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="storymode.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)
    return parser


def main(argv: List[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
