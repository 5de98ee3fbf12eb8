import argparse
from pathlib import Path
import sys
import time

from loguru import logger
from rich import print as rprint
from rich.table import Table

from .audio_io import get_audio_system, is_system_audio_device
from .core.echo_filter import EchoFilter
from .core.engine import Parley
from .core.errors import ParleyError
from .core.events import ErrorReported, Event, Notice, StateChanged, TranscriptReady
from .utils.resources import resource_path

DEFAULT_CONFIG = resource_path("configs/parley_config.yaml")


def print_event(event: Event) -> None:
    """Render a loop event on the console."""
    match event:
        case StateChanged(state=state):
            rprint(f"[grey50]... {state}")
        case TranscriptReady(transcript=transcript) if not transcript.rejected:
            rprint(f"[bold cyan]You:[/] {transcript.text}")
        case Notice(message=message):
            rprint(f"[yellow]{message}")
        case ErrorReported(kind=kind, user_message=user_message):
            rprint(f"[bold red]{user_message}[/] [grey50]({kind})")


def start(config_path: str | Path = DEFAULT_CONFIG) -> int:
    """
    Run conversational mode until interrupted with Ctrl+C.

    Parameters:
        config_path (str | Path, optional): Path to the configuration YAML file.

    Raises:
        FileNotFoundError: If the specified configuration file cannot be found.
        ValueError: If the configuration file is invalid or cannot be parsed.
    """
    parley = Parley.from_yaml(config_path)
    parley.subscribe(print_event)
    parley.start_conversational_mode()
    try:
        while parley.is_conversational:
            time.sleep(0.2)
    except KeyboardInterrupt:
        logger.info("Keyboard interrupt in main run loop.")
    finally:
        parley.shutdown()
    return 0


def push_to_talk(config_path: str | Path = DEFAULT_CONFIG) -> int:
    """Record one utterance between two presses of Enter and print the transcript."""
    parley = Parley.from_yaml(config_path)
    parley.subscribe(print_event)
    try:
        input("Press Enter to start recording...")
        parley.start_push_to_talk()
        input("Recording. Press Enter to stop...")
        transcript = parley.stop_push_to_talk()
    except ParleyError as e:
        rprint(f"[bold red]{e.user_message}")
        return 1
    except KeyboardInterrupt:
        parley.cancel_push_to_talk()
        return 1
    finally:
        parley.shutdown()

    if transcript.rejected:
        rprint(f"[yellow]Nothing transcribed ({transcript.rejection})")
        return 1
    rprint(transcript.raw)
    return 0


def devices() -> int:
    """List input devices and whether parley would record from them."""
    table = Table(title="Audio input devices")
    table.add_column("Index", justify="right")
    table.add_column("Label")
    table.add_column("Channels", justify="right")
    table.add_column("Usable")

    try:
        inputs = get_audio_system().list_input_devices()
    except ParleyError as e:
        rprint(f"[bold red]{e.user_message}")
        return 1

    for device in inputs:
        refused = is_system_audio_device(device.label)
        table.add_row(
            str(device.index),
            device.label,
            str(device.max_input_channels),
            "[red]no (system audio)" if refused else "[green]yes",
        )
    rprint(table)
    return 0


def filter_transcript(transcript: str, assistant: str) -> int:
    """Show what the self-echo filter keeps of `transcript`."""
    result = EchoFilter().filter(transcript, assistant)
    for fragment in result.removed:
        rprint(f"[red]- {fragment}")
    if result.echo_only:
        rprint("[yellow]Only the assistant's voice was heard.")
        return 1
    rprint(f"[green]{result.text}")
    return 0


def main() -> int:
    """
    Command-line interface (CLI) entry point for parley.

    Provides four commands:
    - 'start': Run conversational mode
    - 'ptt': Record and transcribe one push-to-talk utterance
    - 'devices': List audio input devices and flag system audio routes
    - 'filter': Run the self-echo filter on a transcript

    Optional Arguments:
        --verbose: Log debug output to stderr
    """
    parser = argparse.ArgumentParser(description="parley half-duplex voice companion")
    parser.add_argument("--verbose", action="store_true", help="Show debug logging")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    start_parser = subparsers.add_parser("start", help="Start conversational mode")
    start_parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG})",
    )

    ptt_parser = subparsers.add_parser("ptt", help="Record one push-to-talk utterance")
    ptt_parser.add_argument(
        "--config",
        type=str,
        default=DEFAULT_CONFIG,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG})",
    )

    subparsers.add_parser("devices", help="List audio input devices")

    filter_parser = subparsers.add_parser("filter", help="Strip assistant echo from a transcript")
    filter_parser.add_argument("transcript", type=str, help="Raw transcript")
    filter_parser.add_argument("--assistant", type=str, required=True, help="The assistant's last utterance")

    args = parser.parse_args()

    if args.verbose:
        logger.remove()
        logger.add(sys.stderr, level="DEBUG")

    if args.command == "ptt":
        return push_to_talk(args.config)
    elif args.command == "devices":
        return devices()
    elif args.command == "filter":
        return filter_transcript(args.transcript, args.assistant)
    elif args.command == "start":
        return start(args.config)
    else:
        # Default to start if no command specified
        return start(DEFAULT_CONFIG)


if __name__ == "__main__":
    sys.exit(main())
