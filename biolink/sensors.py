import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import Callable, Optional, Protocol

from biolink.protocol import Snapshot

log = logging.getLogger("sensors")

BATTERY_INTERVAL = 60.0  # seconds
INITIAL_BATTERY_LEVEL = 100


class Metric(Enum):
    HEART_RATE = "heart_rate"
    HRV = "hrv"
    ACTIVITY_ENERGY = "activity"

    @property
    def unit(self) -> str:
        return _PUBLISHED_UNITS[self]


_PUBLISHED_UNITS = {
    Metric.HEART_RATE: "bpm",
    Metric.HRV: "ms",
    Metric.ACTIVITY_ENERGY: "kcal",
}

# (from_unit, to_unit) -> factor
_CONVERSIONS = {
    ("bpm", "bpm"): 1.0,
    ("count/s", "bpm"): 60.0,
    ("ms", "ms"): 1.0,
    ("s", "ms"): 1000.0,
    ("kcal", "kcal"): 1.0,
    ("kJ", "kcal"): 1 / 4.184,
}


def convert(value: float, from_unit: str, to_unit: str) -> float:
    try:
        factor = _CONVERSIONS[(from_unit, to_unit)]
    except KeyError:
        raise ValueError(f"Cannot convert {from_unit!r} to {to_unit!r}") from None
    return float(value) * factor


@dataclass(frozen=True)
class QuantitySample:
    value: float
    unit: str


# handler(samples, error=None)
SampleHandler = Callable[..., None]


class Subscription:
    """Handle for one long-lived metric query."""

    def __init__(self, metric: Metric, on_cancel: Optional[Callable[[], None]] = None):
        self.metric = metric
        self._on_cancel = on_cancel
        self.active = True

    def cancel(self):
        if not self.active:
            return
        self.active = False
        if self._on_cancel:
            self._on_cancel()


class SampleSource(ABC):
    """A sensor backend that can grant access and stream samples per metric."""

    @abstractmethod
    async def authorize(self, metrics) -> bool:
        ...

    @abstractmethod
    async def subscribe(self, metric: Metric, handler: SampleHandler) -> Subscription:
        ...

    async def close(self):
        pass


class BatteryLevelSource(Protocol):
    async def read_level(self) -> int:
        ...


class SensorFeed:
    """
    Latest known value of each tracked metric.

    Values are overwritten in place by subscription callbacks and by the
    battery task; readers get whatever was written last. All mutation happens
    on the event loop thread.
    """

    def __init__(self, source: SampleSource, battery: Optional[BatteryLevelSource] = None,
                 battery_interval: float = BATTERY_INTERVAL):
        self._source = source
        self._battery = battery
        self._battery_interval = battery_interval

        self.heart_rate: float = 0.0
        self.hrv: float = 0.0
        self.activity: float = 0.0
        self.battery_level: int = INITIAL_BATTERY_LEVEL

        self._subscriptions: dict[Metric, Subscription] = {}
        self._battery_task: asyncio.Task | None = None
        self._monitoring = False

    @property
    def is_monitoring(self) -> bool:
        return self._monitoring

    def active_metrics(self) -> list[Metric]:
        return [m for m, sub in self._subscriptions.items() if sub.active]

    def snapshot(self) -> Snapshot:
        return Snapshot(
            heart_rate=self.heart_rate,
            hrv=self.hrv,
            activity=self.activity,
            battery_level=self.battery_level,
        )

    async def request_authorization(self) -> bool:
        try:
            granted = await self._source.authorize(list(Metric))
        except Exception as e:
            log.error(f"Error requesting sensor authorization: {e!r}", exc_info=True)
            return False

        if not granted:
            log.warning("Sensor authorization denied.")
            return False

        log.info("Sensor authorization granted")
        await self.start_monitoring()
        return True

    async def start_monitoring(self):
        missing = [m for m in Metric if m not in self.active_metrics()]
        if self._monitoring and not missing:
            log.info("Already monitoring.")
            return
        self._monitoring = True

        # also reopens subscriptions that were cancelled by a delivery error
        for metric in missing:
            try:
                self._subscriptions[metric] = await self._source.subscribe(
                    metric, partial(self._handle_samples, metric)
                )
            except Exception as e:
                log.error(f"Failed to start {metric.value} monitoring: {e!r}", exc_info=True)

        if self._battery is not None and self._battery_task is None:
            self._battery_task = asyncio.get_running_loop().create_task(self._battery_loop())

    def stop_monitoring(self):
        if not self._monitoring:
            return
        log.info("Stopping monitoring...")
        for sub in self._subscriptions.values():
            sub.cancel()
        self._subscriptions.clear()
        if self._battery_task is not None:
            self._battery_task.cancel()
            self._battery_task = None
        self._monitoring = False

    def _handle_samples(self, metric: Metric, samples, error: Optional[Exception] = None):
        if not self._monitoring:
            return
        sub = self._subscriptions.get(metric)
        if sub is not None and not sub.active:
            return

        if error is not None:
            log.error(f"Error querying {metric.value}: {error}")
            if sub is not None:
                sub.cancel()
            return

        if not samples:
            return
        last = samples[-1]
        try:
            value = convert(last.value, last.unit, metric.unit)
        except ValueError as e:
            log.error(f"Error querying {metric.value}: {e}")
            if sub is not None:
                sub.cancel()
            return

        if metric is Metric.HEART_RATE:
            self.heart_rate = value
        elif metric is Metric.HRV:
            self.hrv = value
        else:
            self.activity = value

    async def _battery_loop(self):
        while True:
            await asyncio.sleep(self._battery_interval)
            await self.update_battery()

    async def update_battery(self):
        try:
            level = int(await self._battery.read_level())
        except asyncio.CancelledError:
            raise
        except Exception as e:
            log.error(f"Failed to read battery level: {e!r}", exc_info=True)
            return
        self.battery_level = level
        log.debug(f"Battery level: {level}%")
