#!/usr/bin/env python3
"""
Remote Device Client - Main Entry Point

Runs either side of the relay:
- device: registers with the gateway, executes commands, streams frames
- controller: sends one command to a device and/or watches its telemetry

Environment Variables:
    RELAY_SERVER: Gateway URL (default: http://127.0.0.1:3000)
    DEVICE_ID: Device identity (default: read from DEVICE_ID_FILE)
    DEVICE_ID_FILE: Identity file (default: ~/.config/remote-device/device_id)
    RELAY_TRANSPORTS: Transport list (default: polling,websocket)

Usage:
    python -m client_remote.main device --camera 0
    python -m client_remote.main device --rtsp rtsp://10.8.34.150:8554/cam
    python -m client_remote.main controller --target cane-01 --command SET_LANGUAGE --payload '{"language": "fil"}'
    python -m client_remote.main controller --target cane-01 --watch
"""

import argparse
import asyncio
import json
import logging
import signal
import sys
from typing import Optional

from .agent import DeviceAgent
from .config import (
    AgentConfig,
    ConfigError,
    ControllerConfig,
    EnvDefaults,
    load_device_identity,
    parse_transports,
)
from .controller import ControllerClient, ControllerError
from .message import DeviceStatus, FramePacket

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


def _install_signal_handlers(stop) -> None:
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Shutdown signal received")
        asyncio.create_task(stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)


async def run_device(config: AgentConfig) -> None:
    """Run the device agent until a shutdown signal."""
    agent = DeviceAgent(config)
    _install_signal_handlers(agent.stop)

    try:
        await agent.start()
        await agent.wait_stopped()
    except Exception as e:
        logger.error(f"Agent error: {e}")
    finally:
        await agent.stop()


async def run_controller(
    config: ControllerConfig,
    target: str,
    command: Optional[str],
    payload: Optional[dict],
    watch: bool,
) -> int:
    """Send a command and/or watch a device. Returns the exit code."""
    controller = ControllerClient(config)
    done = asyncio.Event()

    async def shutdown():
        done.set()

    _install_signal_handlers(shutdown)

    def print_status(status: DeviceStatus) -> None:
        fields = json.dumps(status.fields, sort_keys=True)
        logger.info(f"[{status.device_id}] {status.action} {fields}")

    def print_frame(packet: FramePacket) -> None:
        logger.info(f"[{packet.device_id}] {packet.event} #{packet.frame_number} ({len(packet.image)} bytes)")

    controller.on_status(print_status, device_id=target)
    controller.on_frame(print_frame, device_id=target)

    exit_code = 0
    try:
        await controller.start()
        if not await controller.wait_connected(timeout=config.command_timeout):
            logger.error(f"Could not connect to {config.server_url}")
            return 1

        if command:
            try:
                ack = await controller.send_command(target, command, payload)
                logger.info(f"Dispatched {command} to {ack.device_id} at {ack.timestamp}")
            except ControllerError as e:
                logger.error(f"Command failed: {e}")
                exit_code = 1

        if watch:
            logger.info(f"Watching {target} (Ctrl+C to stop)")
            await done.wait()
    finally:
        await controller.stop()

    return exit_code


def _build_parser(defaults: EnvDefaults) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Remote Device Relay Client",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "--server",
        type=str,
        default=defaults.server_url,
        help="Gateway URL",
    )
    parser.add_argument(
        "--transports",
        type=str,
        default=defaults.transports,
        help="Comma separated transports (polling,websocket)",
    )
    parser.add_argument(
        "--initial-backoff",
        type=float,
        default=1.0,
        help="Initial reconnect delay (s)",
    )
    parser.add_argument(
        "--max-backoff",
        type=float,
        default=30.0,
        help="Maximum reconnect delay (s)",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug logging",
    )

    sub = parser.add_subparsers(dest="mode", required=True)

    device = sub.add_parser(
        "device",
        help="Run as a device agent",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    device.add_argument("--device-id", type=str, default=defaults.device_id, help="Device identity")
    device.add_argument("--device-id-file", type=str, default=defaults.device_id_file, help="Identity file")
    device.add_argument("--camera", type=int, default=0, help="Camera device index")
    device.add_argument("--rtsp", type=str, default=None, help="RTSP URL (overrides --camera if set)")
    device.add_argument("--liveness-interval", type=float, default=5.0, help="Liveness check interval (s)")
    device.add_argument("--frame-interval", type=float, default=0.5, help="Frame streaming interval (s)")
    device.add_argument("--max-edge", type=int, default=640, help="Longest edge of streamed frames (px)")
    device.add_argument("--quality", type=int, default=60, help="JPEG quality of streamed frames")
    device.add_argument(
        "--frame-event",
        choices=("previewFrame", "videoFrame"),
        default="previewFrame",
        help="Event used for streamed frames",
    )
    device.add_argument(
        "--no-stream-on-camera-start",
        action="store_true",
        help="Do not start streaming when the camera starts",
    )
    device.add_argument("--captures-dir", type=str, default="captures", help="Directory for captured photos")
    device.add_argument("--languages", type=str, default="en,fil", help="Supported languages (first is default)")

    controller = sub.add_parser(
        "controller",
        help="Send a command or watch a device",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    controller.add_argument("--target", type=str, required=True, help="Target device identity")
    controller.add_argument("--command", type=str, default=None, help="Command type (e.g. SET_LANGUAGE)")
    controller.add_argument("--payload", type=str, default=None, help="Command payload as JSON")
    controller.add_argument("--timeout", type=float, default=10.0, help="Acknowledgment timeout (s)")
    controller.add_argument("--watch", action="store_true", help="Print telemetry and frames from the target")

    return parser


def main(argv=None) -> None:
    """Main entry point."""
    parser = _build_parser(EnvDefaults.from_env())
    args = parser.parse_args(argv)

    if args.debug:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        transports = parse_transports(args.transports)

        if args.mode == "device":
            languages = tuple(lang.strip() for lang in args.languages.split(",") if lang.strip())
            config = AgentConfig(
                server_url=args.server,
                transports=transports,
                initial_backoff=args.initial_backoff,
                max_backoff=args.max_backoff,
                device_id=load_device_identity(args.device_id_file, explicit=args.device_id),
                liveness_interval=args.liveness_interval,
                frame_interval=args.frame_interval,
                max_edge=args.max_edge,
                jpeg_quality=args.quality,
                frame_event=args.frame_event,
                stream_on_camera_start=not args.no_stream_on_camera_start,
                camera_index=args.camera,
                rtsp_url=args.rtsp,
                captures_dir=args.captures_dir,
                languages=languages,
            )
            logger.info(f"Device identity: {config.device_id}")
            runner = run_device(config)
        else:
            payload = None
            if args.payload:
                try:
                    payload = json.loads(args.payload)
                except json.JSONDecodeError as e:
                    raise ConfigError(f"--payload is not valid JSON: {e}") from e
                if not isinstance(payload, dict):
                    raise ConfigError("--payload must be a JSON object")
            if not args.command and not args.watch:
                raise ConfigError("nothing to do: pass --command and/or --watch")
            config = ControllerConfig(
                server_url=args.server,
                transports=transports,
                initial_backoff=args.initial_backoff,
                max_backoff=args.max_backoff,
                command_timeout=args.timeout,
            )
            runner = run_controller(config, args.target, args.command, payload, args.watch)
    except ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)

    try:
        exit_code = asyncio.run(runner)
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)

    sys.exit(exit_code or 0)


if __name__ == "__main__":
    main()
