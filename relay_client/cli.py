#!/usr/bin/env python3
"""
Stream a WAV file to a relay server in real time.

Usage:
    relay-send music.wav
    relay-send music.wav --server ws://relay.local:3000/ws --mount /live --bitrate 192
    relay-send jingle.wav --loop --format ogg --name "Night Shift"
"""

import argparse
import asyncio
import logging
import sys
from typing import Any, Dict, List, Optional

from relay_bridge.logging_config import setup_logging
from relay_client.client import BroadcastClient
from relay_client.config import ClientConfig
from relay_client.reconnect import ReconnectState
from relay_client.sources import WavFileSource

logger = logging.getLogger(__name__)


def build_target(args: argparse.Namespace, source: WavFileSource) -> Dict[str, Any]:
    """Collect target overrides from command-line flags.

    Rate and channel count always follow the file.
    """
    target: Dict[str, Any] = {
        "sampleRate": source.sample_rate,
        "channels": source.channels,
    }
    overrides = {
        "host": args.host,
        "port": args.port,
        "password": args.password,
        "mountpoint": args.mount,
        "bitrate": args.bitrate,
        "encoder": args.format,
        "stationName": args.name,
        "stationGenre": args.genre,
    }
    target.update({key: value for key, value in overrides.items() if value is not None})
    return target


async def stream_file(client: BroadcastClient, source: WavFileSource, realtime: bool = True) -> bool:
    """Send every block of ``source`` through ``client``, paced to playback speed.

    Returns:
        False if the client gave up reconnecting before the file ended
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time()

    for block in source.blocks():
        if client.reconnect.state == ReconnectState.EXHAUSTED:
            return False

        await client.send_block(block, source.sample_rate)

        if realtime:
            frames = len(block) // source.channels
            deadline += frames / source.sample_rate
            delay = deadline - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)

    return client.reconnect.state != ReconnectState.EXHAUSTED


async def run(args: argparse.Namespace, config: ClientConfig) -> int:
    source = WavFileSource(args.file, block_frames=config.block_frames, loop=args.loop)
    client = BroadcastClient(config, target=build_target(args, source))

    await client.start()
    try:
        completed = await stream_file(client, source, realtime=not args.fast)
    finally:
        await client.stop()

    if not completed:
        logger.error("Broadcast aborted: relay server unreachable")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Stream a 16-bit PCM WAV file to a browser radio relay server",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument("file", help="16-bit PCM WAV file to broadcast")
    parser.add_argument("--server", help="Relay server WebSocket URL")
    parser.add_argument("--host", help="Ingest server host")
    parser.add_argument("--port", type=int, help="Ingest server port")
    parser.add_argument("--password", help="Source password")
    parser.add_argument("--mount", help="Mountpoint, e.g. /live")
    parser.add_argument("--bitrate", type=int, help="Output bitrate in kbit/s")
    parser.add_argument("--format", choices=["mp3", "aac", "ogg"], help="Output format")
    parser.add_argument("--name", help="Station name")
    parser.add_argument("--genre", help="Station genre")
    parser.add_argument("--loop", action="store_true", help="Repeat the file until interrupted")
    parser.add_argument(
        "--fast", action="store_true", help="Send as fast as possible instead of in real time"
    )
    parser.add_argument("--max-attempts", type=int, help="Reconnection attempts before giving up")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")

    args = parser.parse_args(argv)

    config = ClientConfig.from_env()
    if args.server:
        config.server_url = args.server
    if args.max_attempts is not None:
        config.max_attempts = args.max_attempts

    setup_logging("DEBUG" if args.verbose else config.log_level)

    try:
        config.validate()
        return asyncio.run(run(args, config))
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return 130
    except (OSError, ValueError) as e:
        logger.error(f"Error: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
