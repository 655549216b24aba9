"""Command line entry point for synthesising speech."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Optional, Sequence

from rich.console import Console
from rich.markup import escape

from .client import ElevenLabsClient
from .config import get_settings
from .errors import SynthesisError
from .logging_config import configure_logging
from .schemas.synthesis import CacheFormat, OutputFormat, SynthesisRequest, VoiceClip
from .services import TextToSpeechService, VoiceCatalog, list_models

logger = logging.getLogger(__name__)

console = Console(highlight=False)


def build_parser() -> argparse.ArgumentParser:
    settings = get_settings()
    parser = argparse.ArgumentParser(
        prog="voicestream",
        description="Synthesise speech with ElevenLabs and cache the result",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s say 21m00Tcm4TlvDq8ikWAM "Hello there" --cache wav
  %(prog)s say 21m00Tcm4TlvDq8ikWAM "Hello there" --stream --timestamps
  %(prog)s voices
  %(prog)s models
""",
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # say
    say_parser = subparsers.add_parser("say", help="Synthesise text")
    say_parser.add_argument("voice_id", help="Voice ID to speak with")
    say_parser.add_argument("text", help="Text to synthesise (max 5000 characters)")
    say_parser.add_argument(
        "--format", "-f",
        dest="output_format",
        choices=[fmt.value for fmt in OutputFormat],
        default=settings.default_output_format.value,
        help="Output audio format",
    )
    say_parser.add_argument(
        "--cache", "-c",
        dest="cache_format",
        choices=[fmt.value for fmt in CacheFormat],
        default=settings.default_cache_format.value,
        help="Container to cache the result in",
    )
    say_parser.add_argument("--stream", action="store_true", help="Stream partial chunks")
    say_parser.add_argument(
        "--timestamps", action="store_true", help="Request character timestamps"
    )
    say_parser.add_argument(
        "--latency", type=int, choices=range(0, 5), default=None,
        help="optimize_streaming_latency hint (0-4)",
    )
    say_parser.add_argument("--model", default=settings.default_model_id, help="Model ID")

    # voices / models
    subparsers.add_parser("voices", help="List available voices")
    subparsers.add_parser("models", help="List available models")

    return parser


def _print_partial(clip: VoiceClip) -> None:
    line = f"  [dim]part {clip.part}:[/dim] {len(clip.audio)} bytes"
    text = "".join(character.character for character in clip.characters)
    console.print(f"{line} {escape(repr(text))}" if text else line)


async def cmd_say(args: argparse.Namespace, client: ElevenLabsClient) -> int:
    catalog = VoiceCatalog(client)
    request = SynthesisRequest(
        voice_id=args.voice_id,
        text=args.text,
        voice_settings=await catalog.settings_for(args.voice_id),
        output_format=OutputFormat(args.output_format),
        optimize_streaming_latency=args.latency,
        with_timestamps=args.timestamps,
        cache_format=CacheFormat(args.cache_format),
        model_id=args.model,
    )

    service = TextToSpeechService(client)
    clip = await service.synthesize(request, _print_partial if args.stream else None)

    console.print(f"[bold]clip {escape(clip.id)}:[/bold] {len(clip.audio)} bytes")
    if clip.duration_seconds is not None:
        console.print(f"duration: {clip.duration_seconds:.2f}s")
    if clip.cached_path is not None:
        console.print(f"cached: {escape(str(clip.cached_path))}")
    for character in clip.characters:
        console.print(
            f"  {character.start:7.3f}-{character.end:7.3f} {escape(repr(character.character))}"
        )
    return 0


async def cmd_voices(args: argparse.Namespace, client: ElevenLabsClient) -> int:
    catalog = VoiceCatalog(client)
    for voice in sorted(await catalog.refresh(), key=lambda item: item.name.lower()):
        console.print(f"[bold]{escape(voice.voice_id)}[/bold]  {escape(voice.name)}")
    return 0


async def cmd_models(args: argparse.Namespace, client: ElevenLabsClient) -> int:
    for model in await list_models(client):
        if model.can_do_text_to_speech:
            console.print(f"[bold]{escape(model.model_id)}[/bold]  {escape(model.name)}")
    return 0


async def _run(args: argparse.Namespace) -> int:
    commands = {
        "say": cmd_say,
        "voices": cmd_voices,
        "models": cmd_models,
    }
    async with ElevenLabsClient(get_settings()) as client:
        return await commands[args.command](args, client)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level)
    try:
        return asyncio.run(_run(args))
    except SynthesisError as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return 1


if __name__ == "__main__":
    sys.exit(main())
