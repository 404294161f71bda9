import argparse
import asyncio
import logging
import signal
from typing import Optional

from biolink.protocol import Snapshot
from biolink.sensors import BATTERY_INTERVAL, SensorFeed
from biolink.sources import BleHeartRateSource, SimulatedBattery, SimulatedSource
from biolink.transport import WebSocketTransport, build_url

DEFAULT_SERVER = "localhost:8765"
TICK_INTERVAL = 1.0  # seconds

log = logging.getLogger("client")


def server_address(value: str) -> str:
    try:
        build_url(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))
    return value.strip()


def format_status(snapshot: Snapshot, connected: bool) -> str:
    return (
        f"[{'Connected' if connected else 'Disconnected'}] "
        f"Heart Rate: {snapshot.heart_rate:.0f} BPM | "
        f"HRV: {snapshot.hrv:.1f} ms | "
        f"Activity: {snapshot.activity:.1f} kcal | "
        f"Battery: {snapshot.battery_level} %"
    )


async def push_tick(feed: SensorFeed, link: WebSocketTransport) -> bool:
    """Send the current snapshot if the link is up. Returns True if a send was attempted."""
    if not link.is_connected():
        return False
    await link.send_biometric_data(feed.snapshot())
    return True


async def run_pump(feed: SensorFeed, link: WebSocketTransport, interval: float = TICK_INTERVAL,
                   stop: Optional[asyncio.Event] = None, on_tick=None):
    stop = stop or asyncio.Event()
    while not stop.is_set():
        try:
            await asyncio.wait_for(stop.wait(), timeout=interval)
            break
        except asyncio.TimeoutError:
            pass
        await push_tick(feed, link)
        if on_tick:
            on_tick(feed.snapshot(), link.is_connected())


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Stream heart rate, HRV, activity and battery readings to a WebSocket server"
    )
    parser.add_argument(
        "-s", "--server",
        type=server_address,
        default=DEFAULT_SERVER,
        help=f"Server address as host:port (default: {DEFAULT_SERVER})"
    )
    parser.add_argument(
        "-a", "--address",
        type=str,
        default=None,
        help="Bluetooth address of the heart rate sensor (default: scan for one)"
    )
    parser.add_argument(
        "--simulate",
        action="store_true",
        help="Use simulated readings instead of a Bluetooth sensor"
    )
    parser.add_argument(
        "--battery",
        choices=("device", "simulated"),
        default="simulated",
        help="Where battery level comes from (default: simulated)"
    )
    parser.add_argument(
        "--interval",
        type=float,
        default=TICK_INTERVAL,
        help="Seconds between sends (default: 1.0)"
    )
    parser.add_argument(
        "--hardened",
        action="store_true",
        help="Report connected only after the handshake and drop the link on send errors"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Log debug output"
    )
    return parser


def build_components(args):
    if args.simulate:
        source = SimulatedSource()
    else:
        source = BleHeartRateSource(device_address=args.address)

    if args.battery == "device" and not args.simulate:
        battery = source
    else:
        battery = SimulatedBattery()

    feed = SensorFeed(source, battery=battery, battery_interval=BATTERY_INTERVAL)
    link = WebSocketTransport(hardened=args.hardened)
    return source, feed, link


async def main(args):
    log.info("Starting biometric client...")
    source, feed, link = build_components(args)

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGTERM, stop.set)
    except (NotImplementedError, RuntimeError):
        pass

    try:
        if not await feed.request_authorization():
            log.error("Sensor access not granted. Readings will stay at their defaults.")

        link.connect(args.server)
        await run_pump(
            feed, link,
            interval=args.interval,
            stop=stop,
            on_tick=lambda snapshot, connected: log.info(format_status(snapshot, connected)),
        )
    except asyncio.CancelledError:
        log.info("Client task cancelled.")
    finally:
        log.info("Cleaning up...")
        feed.stop_monitoring()
        await link.disconnect()
        try:
            await source.close()
        except Exception as e:
            log.error(f"Error closing sensor source: {e!r}", exc_info=True)
        log.info("Client stopped.")


def run(argv=None):
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    try:
        asyncio.run(main(args))
    except KeyboardInterrupt:
        log.info("Process interrupted by user.")


if __name__ == "__main__":
    run()
