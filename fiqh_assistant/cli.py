from __future__ import annotations

import argparse
import asyncio
import base64
import mimetypes
import os
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import uvicorn
import yaml

from fiqh_assistant.agents.chat_agent import ChatEngine
from fiqh_assistant.pipelines.speech import AudioOutput, PyAudioOutput, TimelineOutput
from fiqh_assistant.schemas.models import ImageAttachment
from fiqh_assistant.utils.env import load_env_file
from fiqh_assistant.utils.errors import GenerationInterrupted
from fiqh_assistant.utils.logging import get_logger
from fiqh_assistant.utils.translations import split_verbatim

load_env_file()
log = get_logger(__name__)


def _load_config(path: str | None) -> Dict[str, Any]:
    if not path:
        return {}
    cfg_path = Path(path)
    if not cfg_path.exists():
        raise SystemExit(f"Config file not found: {path}")
    with cfg_path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    return data


def _apply_config(config: Dict[str, Any]) -> None:
    gemini_cfg = config.get("gemini", {})
    env_map = {
        "base": "GEMINI_BASE",
        "model": "GEMINI_MODEL",
        "thinking_model": "GEMINI_THINKING_MODEL",
        "thinking_budget": "GEMINI_THINKING_BUDGET",
        "tts_model": "GEMINI_TTS_MODEL",
        "history_limit": "GEMINI_HISTORY_LIMIT",
    }
    for key, env_var in env_map.items():
        value = gemini_cfg.get(key)
        if value:
            os.environ[env_var] = str(value)
    if "api_key" in gemini_cfg:
        log.warning("config_api_key_ignored", msg="Use .env for GEMINI_API_KEY")

    supabase_cfg = config.get("supabase", {})
    if url := supabase_cfg.get("url"):
        os.environ["SUPABASE_URL"] = str(url)
    if table := supabase_cfg.get("table"):
        os.environ["SUPABASE_TABLE"] = str(table)
    if "anon_key" in supabase_cfg or "api_key" in supabase_cfg:
        log.warning("config_api_key_ignored", msg="Use .env for SUPABASE_ANON_KEY")

    cache_cfg = config.get("cache", {})
    if path := cache_cfg.get("path"):
        os.environ["FIQH_CACHE_PATH"] = str(path)


def _build_engine(output_factory: Optional[Callable[[], AudioOutput]] = None) -> ChatEngine:
    return ChatEngine.from_env(output_factory=output_factory)


def _read_image(path: str) -> ImageAttachment:
    image_path = Path(path)
    if not image_path.exists():
        raise SystemExit(f"Image not found: {path}")
    mime_type = mimetypes.guess_type(image_path.name)[0] or "application/octet-stream"
    return ImageAttachment(data=base64.b64encode(image_path.read_bytes()).decode("ascii"), mime_type=mime_type)


def _select_session(engine: ChatEngine, session_id: str | None) -> None:
    if session_id and not engine.switch_session(session_id):
        raise SystemExit(f"Session not found: {session_id}")


def cmd_ask(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    image = _read_image(args.image) if args.image else None

    async def run() -> None:
        engine = _build_engine()
        try:
            await engine.start()
            if args.new:
                engine.new_chat()
            _select_session(engine, args.session_id)
            if args.language:
                engine.set_language(args.language)
            try:
                message = await engine.send(
                    args.prompt,
                    image=image,
                    reply_to_id=args.reply_to,
                    thinking=args.thinking,
                )
            except GenerationInterrupted as exc:
                print(f"Error: {exc}")
                raise SystemExit(1) from exc
            except ValueError as exc:
                raise SystemExit(str(exc)) from exc
            if message is None:
                print("Reply cancelled.")
                return
            answer, verbatim = split_verbatim(message.content)
            print(answer.strip())
            if verbatim:
                print("\nOfficial verbatim record:")
                print(verbatim.strip())
            for i, source in enumerate(message.sources or [], 1):
                print(f"[{i}] {source.title} <{source.uri}>")
            print(f"Session: {engine.active_session_id} | message: {message.id} | status: {engine.status.value}")
        finally:
            await engine.aclose()

    asyncio.run(run())


def cmd_sessions(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        engine = _build_engine()
        try:
            await engine.start()
            if args.list or not args.session_id:
                sessions = engine.sessions
                if not sessions:
                    print("No sessions.")
                    return
                for session in sessions:
                    marker = "*" if session.id == engine.active_session_id else " "
                    print(
                        f"{marker} {session.id} | {session.title} | messages={len(session.messages)}"
                        f" | created={session.created_at.isoformat()}"
                    )
                return

            if args.delete:
                if engine.delete_session(args.session_id):
                    print(f"Deleted session {args.session_id}")
                else:
                    print("Session not found.")
                return

            session = engine.collection.get(args.session_id)
            if session is None:
                print("Session not found.")
                return
            if args.activate:
                engine.switch_session(session.id)
                print(f"Activated session {session.id}")
            print(f"Session: {session.id} ({session.title})")
            for message in session.messages:
                print(f"[{message.role}] {message.id}: {message.content}")
        finally:
            await engine.aclose()

    asyncio.run(run())


def cmd_status(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        engine = _build_engine()
        try:
            await engine.start()
            report = engine.status_report()
            print("Status:", report.status.value)
            print("Sessions:", len(engine.sessions))
            print("Active session:", report.active_session_id or "(none)")
            print(f"Preferences: voice={engine.preferences.voice} language={engine.preferences.language}")
            if report.setup_required:
                table = os.getenv("SUPABASE_TABLE", "chat_sessions")
                print(f"Remote table '{table}' is missing; create it to enable cloud sync.")
            elif engine.state.last_error:
                print("Last error:", engine.state.last_error)
        finally:
            await engine.aclose()

    asyncio.run(run())


def cmd_preferences(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    async def run() -> None:
        engine = _build_engine()
        try:
            await engine.start()
            if args.voice:
                engine.set_voice(args.voice)
            if args.language:
                engine.set_language(args.language)
            print(f"voice={engine.preferences.voice} language={engine.preferences.language}")
        finally:
            await engine.aclose()

    asyncio.run(run())


def cmd_speak(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    output_factory: Callable[[], AudioOutput] = TimelineOutput if args.out else PyAudioOutput

    async def run() -> None:
        engine = _build_engine(output_factory)
        try:
            await engine.start()
            _select_session(engine, args.session_id)
            try:
                target = engine.speech_target(args.message_id)
            except ValueError as exc:
                raise SystemExit(str(exc)) from exc
            segments = await engine.speak(target.id)
            scheduler = engine.speaker(target.id)
            if not segments:
                print("Nothing to speak.")
                return
            if args.out:
                output = scheduler.output if scheduler is not None else None
                if isinstance(output, TimelineOutput):
                    output.write_wav(args.out, output.latest(len(segments)))
                    print(f"Wrote {len(segments)} segments to {args.out}")
                return
            if scheduler is not None:
                await scheduler.wait_until_idle()
            print(f"Played {len(segments)} segments")
        finally:
            await engine.aclose()

    asyncio.run(run())


def cmd_serve(args: argparse.Namespace, config: Dict[str, Any]) -> None:
    app_path = args.app
    host = args.host
    port = args.port
    reload = args.reload
    log.info("api_serve_start", app=app_path, host=host, port=port, reload=reload)
    uvicorn.run(app_path, host=host, port=port, reload=reload)


def main() -> None:
    parser = argparse.ArgumentParser(description="Al-Fiqh Assistant CLI")
    parser.add_argument("--config", help="Path to YAML config", default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_ask = sub.add_parser("ask", help="Send a prompt and print the reply")
    p_ask.add_argument("prompt", nargs="?", default="", help="Question to ask")
    p_ask.add_argument("--thinking", action="store_true", help="Use the deliberate reasoning model")
    p_ask.add_argument("--image", help="Attach an image file")
    p_ask.add_argument("--reply-to", dest="reply_to", help="Anchor the question to a visible message id")
    p_ask.add_argument("--session-id", help="Continue an existing session")
    p_ask.add_argument("--new", action="store_true", help="Start a new session")
    p_ask.add_argument("--language", choices=["en", "ur"])
    p_ask.set_defaults(func=cmd_ask)

    p_sessions = sub.add_parser("sessions", help="List, inspect, activate or delete sessions")
    p_sessions.add_argument("--list", action="store_true", help="List all sessions")
    p_sessions.add_argument("--session-id", help="Session identifier to inspect")
    p_sessions.add_argument("--delete", action="store_true", help="Delete the specified session")
    p_sessions.add_argument("--activate", action="store_true", help="Make the specified session active")
    p_sessions.set_defaults(func=cmd_sessions)

    p_status = sub.add_parser("status", help="Reconcile and report remote connectivity")
    p_status.set_defaults(func=cmd_status)

    p_prefs = sub.add_parser("preferences", help="Show or change voice and language")
    p_prefs.add_argument("--voice", choices=["Ayesha", "Ahmed"])
    p_prefs.add_argument("--language", choices=["en", "ur"])
    p_prefs.set_defaults(func=cmd_preferences)

    p_speak = sub.add_parser("speak", help="Read an assistant reply aloud")
    p_speak.add_argument("--message-id", help="Message to speak (default: latest assistant reply)")
    p_speak.add_argument("--session-id", help="Session holding the message")
    p_speak.add_argument("--out", help="Write a WAV file instead of playing on the sound card")
    p_speak.set_defaults(func=cmd_speak)

    p_serve = sub.add_parser("serve", help="Run the HTTP API server")
    p_serve.add_argument("--app", default="fiqh_assistant.agents.http_api:app", help="ASGI app import path")
    p_serve.add_argument("--host", default="0.0.0.0")
    p_serve.add_argument("--port", type=int, default=8000)
    p_serve.add_argument("--reload", action="store_true")
    p_serve.set_defaults(func=cmd_serve)

    args = parser.parse_args()
    config = _load_config(args.config)
    _apply_config(config)
    args.func(args, config)


if __name__ == "__main__":
    main()
