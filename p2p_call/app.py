"""
P2P Call command-line entry point.

``p2p-call start`` creates a call and prints its id; ``p2p-call join <id>``
answers it. The session runs until either side hangs up or the link drops.
"""

import argparse
import asyncio
import signal
import sys
from pathlib import Path

from aiortc.contrib.media import MediaBlackhole, MediaPlayer

from p2p_call.config import Config
from p2p_call.core.call_manager import CallManager
from p2p_call.core.errors import SessionNotFound, StoreError
from p2p_call.core.firestore_store import FirestoreSignalingStore
from p2p_call.logging_config import setup_logging, get_logger, get_default_log_file

logger = get_logger("app")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_FOUND = 2


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="p2p-call",
        description="P2P Call - peer-to-peer audio/video calls over WebRTC",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("start", help="Create a new call and wait for someone to join.")
    join = subparsers.add_parser("join", help="Join an existing call.")
    join.add_argument("call_id", help="Call id printed by 'p2p-call start'.")

    parser.add_argument(
        "--config-dir",
        type=str,
        default=None,
        help="Path to config directory (default: ~/.p2p_call).",
    )
    parser.add_argument(
        "--ice-server-url",
        type=str,
        default=None,
        help="Endpoint returning the ICE server list (saved to config).",
    )
    parser.add_argument(
        "--play",
        type=str,
        default=None,
        help="Media file or URL to send as the local audio/video.",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO).",
    )
    parser.add_argument(
        "--log-file",
        type=str,
        default=None,
        help="Path to log file (default: ~/.p2p_call/logs/p2p_call.log).",
    )
    parser.add_argument(
        "--no-log-file",
        action="store_true",
        help="Disable logging to file.",
    )
    return parser


async def run_session(args: argparse.Namespace, config: Config) -> int:
    try:
        store = FirestoreSignalingStore.from_config(config)
    except StoreError as exc:
        logger.error(f"Signaling backend unavailable: {exc}")
        print(f"Cannot reach the signaling backend: {exc}", file=sys.stderr)
        return EXIT_FAILED

    manager = CallManager(store, config)
    sinks: list[MediaBlackhole] = []
    failure: list[str] = []
    background: set[asyncio.Task] = set()

    def spawn(coro) -> None:
        task = asyncio.ensure_future(coro)
        background.add(task)
        task.add_done_callback(background.discard)

    def on_remote_track(track) -> None:
        # Remote media has to be consumed or the receiver stalls
        sink = MediaBlackhole()
        sink.addTrack(track)
        sinks.append(sink)
        spawn(sink.start())

    manager.remote_track.connect(on_remote_track)
    manager.call_created.connect(lambda call_id: print(f"Call id: {call_id}", flush=True))
    manager.call_connected.connect(lambda call_id: print("Connected.", flush=True))
    manager.call_ended.connect(
        lambda call_id, reason: print(f"Call ended ({reason}).", flush=True)
    )
    manager.call_failed.connect(lambda message: failure.append(message))

    tracks = []
    play_file = args.play or config.play_file
    if play_file:
        player = MediaPlayer(play_file)
        tracks = [t for t in (player.audio, player.video) if t is not None]
        logger.info(f"Sending {len(tracks)} track(s) from {play_file}")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, lambda: spawn(manager.hangup()))

    try:
        if args.command == "start":
            call_id = await manager.start_call(tracks)
        else:
            call_id = await manager.join_call(args.call_id, tracks)

        if call_id is None:
            for message in failure:
                print(f"Call failed: {message}", file=sys.stderr)
            if isinstance(manager.last_error, SessionNotFound):
                return EXIT_NOT_FOUND
            return EXIT_FAILED

        await manager.wait_ended()
        return EXIT_OK
    finally:
        for result in await asyncio.gather(*background, return_exceptions=True):
            if isinstance(result, Exception):
                logger.error(f"Background task failed: {result!r}")
        for sink in sinks:
            await sink.stop()
        await manager.shutdown()


def run_app(argv: list[str] | None = None) -> int:
    """
    Entry point for the CLI.
    """
    argv = sys.argv[1:] if argv is None else argv
    args = build_parser().parse_args(argv)

    log_file = None
    if not args.no_log_file:
        log_file = Path(args.log_file) if args.log_file else get_default_log_file()

    setup_logging(level=args.log_level, log_file=log_file, console=True)

    logger.info("P2P Call starting")
    logger.debug(f"Command line arguments: {argv}")

    config_dir = Path(args.config_dir) if args.config_dir else Path.home() / ".p2p_call"
    config_dir.mkdir(parents=True, exist_ok=True)
    logger.info(f"Using config directory: {config_dir}")

    config = Config(config_path=config_dir / "config.json")

    if args.ice_server_url:
        config.ice_server_list_url = args.ice_server_url
        config.save()
        logger.info(f"Saved ICE server URL {args.ice_server_url} to config")

    return asyncio.run(run_session(args, config))


def main() -> None:
    sys.exit(run_app())
