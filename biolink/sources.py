import asyncio
import logging
import random
from collections import deque
from typing import Optional

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from biolink.gatt import (
    BATTERY_LEVEL_CHAR_UUID,
    HEART_RATE_SERVICE_UUID,
    HR_MEASUREMENT_CHAR_UUID,
    parse_hr_measurement,
    rmssd,
)
from biolink.sensors import Metric, QuantitySample, SampleSource, Subscription

log = logging.getLogger("sources")

BATTERY_MIN = 20
BATTERY_MAX = 100


class BleHeartRateSource(SampleSource):
    """
    Heart Rate Service peripheral (chest strap, watch) read through bleak.

    A single 0x2A37 notification stream feeds all three metrics: heart rate,
    RMSSD over the recent RR intervals, and energy expended.
    """

    def __init__(self, device_address: Optional[str] = None, timeout: float = 10.0,
                 hrv_window: int = 30):
        self.device_address = device_address
        self.timeout = timeout

        self._client: BleakClient | None = None
        self._handlers = {}
        self._notifying = False
        self._rr_window: deque = deque(maxlen=hrv_window)

    def is_connected(self) -> bool:
        return self._client is not None and self._client.is_connected

    async def authorize(self, metrics) -> bool:
        if self.is_connected():
            return True

        target = self.device_address
        try:
            if not target:
                log.info(f"Scanning for devices advertising service {HEART_RATE_SERVICE_UUID}...")
                device = await BleakScanner.find_device_by_service_uuid(
                    HEART_RATE_SERVICE_UUID, timeout=self.timeout
                )
                if not device:
                    log.error(f"Could not find device advertising service {HEART_RATE_SERVICE_UUID}")
                    return False
                target = device.address
                log.info(f"Found device: {device.name} ({device.address})")

            log.info(f"Connecting to {target}...")
            self._client = BleakClient(target, disconnected_callback=self._handle_disconnect,
                                       timeout=self.timeout)
            await self._client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            log.error(f"Connection failed: {e!r}", exc_info=True)
            self._client = None
            return False

        char = self._client.services.get_characteristic(HR_MEASUREMENT_CHAR_UUID)
        if char is None or "notify" not in char.properties:
            log.error(f"Device {target} has no notifiable heart rate measurement characteristic")
            await self._client.disconnect()
            self._client = None
            return False

        log.info(f"Connected to {target}; heart rate measurement available.")
        return True

    async def subscribe(self, metric: Metric, handler) -> Subscription:
        if not self.is_connected():
            raise BleakError("Not connected")

        self._handlers[metric] = handler
        if not self._notifying:
            log.info(f"Subscribing to notifications on {HR_MEASUREMENT_CHAR_UUID}...")
            try:
                await self._client.start_notify(HR_MEASUREMENT_CHAR_UUID, self._handle_notification)
            except Exception:
                self._handlers.pop(metric, None)
                raise
            self._notifying = True
            log.info("Subscribed successfully.")

        return Subscription(metric, on_cancel=lambda: self._handlers.pop(metric, None))

    def _deliver(self, metric: Metric, samples=None, error=None):
        handler = self._handlers.get(metric)
        if handler is not None:
            handler(samples, error)

    def _deliver_error(self, error: Exception):
        for metric in list(self._handlers):
            self._deliver(metric, error=error)

    def _handle_notification(self, characteristic, data: bytearray):
        try:
            measurement = parse_hr_measurement(data)
        except ValueError as e:
            log.warning(f"Dropping malformed heart rate measurement {bytes(data).hex()}: {e}")
            return

        self._deliver(Metric.HEART_RATE, [QuantitySample(measurement.heart_rate, "bpm")])

        if measurement.rr_intervals:
            self._rr_window.extend(measurement.rr_intervals)
            value = rmssd(list(self._rr_window))
            if value is not None:
                self._deliver(Metric.HRV, [QuantitySample(value, "ms")])

        if measurement.energy_expended is not None:
            self._deliver(Metric.ACTIVITY_ENERGY, [QuantitySample(measurement.energy_expended, "kJ")])

    def _handle_disconnect(self, client: BleakClient):
        log.warning(f"Device disconnected: {client.address}")
        self._client = None
        self._notifying = False
        self._deliver_error(BleakError("Device disconnected"))

    async def read_level(self) -> int:
        if not self.is_connected():
            raise BleakError("Not connected")
        value = await self._client.read_gatt_char(BATTERY_LEVEL_CHAR_UUID)
        return int(value[0])

    async def close(self):
        self._handlers.clear()
        if not self.is_connected():
            return
        if self._notifying:
            try:
                await self._client.stop_notify(HR_MEASUREMENT_CHAR_UUID)
            except BleakError as e:
                log.warning(f"Failed to stop notifications cleanly: {e}")
            self._notifying = False
        log.info("Disconnecting...")
        await self._client.disconnect()
        log.info("Disconnected.")


class SimulatedSource(SampleSource):
    """Random-walk samples for running without a sensor."""

    # metric -> (start, step, low, high, unit)
    WALKS = {
        Metric.HEART_RATE: (72.0, 2.0, 45.0, 180.0, "bpm"),
        Metric.HRV: (0.045, 0.003, 0.010, 0.150, "s"),
        Metric.ACTIVITY_ENERGY: (0.0, 1.5, 0.0, float("inf"), "kJ"),
    }

    def __init__(self, period: float = 1.0, rng: Optional[random.Random] = None):
        self.period = period
        self._rng = rng or random.Random()
        self._tasks = {}

    async def authorize(self, metrics) -> bool:
        log.info("Simulated sensor: authorization granted")
        return True

    async def subscribe(self, metric: Metric, handler) -> Subscription:
        task = asyncio.get_running_loop().create_task(self._walk(metric, handler))
        self._tasks[metric] = task
        return Subscription(metric, on_cancel=task.cancel)

    async def _walk(self, metric: Metric, handler):
        value, step, low, high, unit = self.WALKS[metric]
        # initial snapshot, as a query over existing samples would deliver
        batch = []
        for _ in range(3):
            value = self._next(metric, value, step, low, high)
            batch.append(QuantitySample(value, unit))
        handler(batch, None)

        while True:
            await asyncio.sleep(self.period)
            value = self._next(metric, value, step, low, high)
            handler([QuantitySample(value, unit)], None)

    def _next(self, metric, value, step, low, high):
        if metric is Metric.ACTIVITY_ENERGY:
            # cumulative, never decreases
            return value + self._rng.uniform(0.0, step)
        return min(high, max(low, value + self._rng.uniform(-step, step)))

    async def close(self):
        for task in self._tasks.values():
            task.cancel()
        self._tasks.clear()


class SimulatedBattery:
    """Stand-in battery provider: a uniform random percentage on each read."""

    def __init__(self, rng: Optional[random.Random] = None):
        self._rng = rng or random.Random()

    async def read_level(self) -> int:
        return self._rng.randint(BATTERY_MIN, BATTERY_MAX)
