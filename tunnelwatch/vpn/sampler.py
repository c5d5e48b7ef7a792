"""Interface counter sampling and throughput derivation."""

import time
from typing import Callable, Dict, Optional, Tuple

import psutil

from .exceptions import InterfaceGone, ProbeUnavailable
from .models import InterfaceSample, ThroughputRate
from ..logging_utility import logger


def derive_rate(previous: Optional[InterfaceSample], current: InterfaceSample,
                staleness: float) -> ThroughputRate:
    """
    Throughput between two consecutive samples of the same interface.

    Args:
        previous: Earlier sample, or None when there is no predecessor
        current: Latest sample
        staleness: Largest gap in seconds still treated as one interval

    Returns:
        A valid ThroughputRate, or an invalid one naming why the pair was rejected.
        Counter decreases are never corrected for wraparound.
    """
    if previous is None:
        return ThroughputRate.warming_up()
    if previous.interface_id != current.interface_id:
        return ThroughputRate.warming_up("interface changed")

    elapsed = current.timestamp - previous.timestamp
    if elapsed <= 0:
        return ThroughputRate(valid=False, elapsed=elapsed, reason="non-positive interval")
    if elapsed > staleness:
        return ThroughputRate(valid=False, elapsed=elapsed, reason=f"gap of {elapsed:.1f}s")

    received = current.bytes_recv - previous.bytes_recv
    sent = current.bytes_sent - previous.bytes_sent
    if received < 0 or sent < 0:
        return ThroughputRate(valid=False, elapsed=elapsed, reason="counter reset")

    return ThroughputRate(
        down_bps=received / elapsed,
        up_bps=sent / elapsed,
        valid=True,
        elapsed=elapsed,
    )


class MetricSampler:
    """Samples one interface per call and keeps the previous sample for rate derivation.

    The previous-sample cache is private; it is dropped whenever the sampled
    interface changes, a read fails, or :meth:`reset` is called.
    """

    def __init__(self, staleness: float = 5.0,
                 counters: Optional[Callable[..., Dict]] = None,
                 clock: Callable[[], float] = time.time):
        self.staleness = staleness
        self._counters = counters or psutil.net_io_counters
        self._clock = clock
        self._previous: Optional[InterfaceSample] = None

    def sample(self, interface_id: str) -> InterfaceSample:
        try:
            per_nic = self._counters(pernic=True)
        except (psutil.Error, OSError) as e:
            raise ProbeUnavailable(f"Cannot read interface counters: {e}")

        stats = per_nic.get(interface_id)
        if stats is None:
            raise InterfaceGone(f"Interface {interface_id} has no counters")

        return InterfaceSample(
            interface_id=interface_id,
            timestamp=self._clock(),
            bytes_recv=stats.bytes_recv,
            bytes_sent=stats.bytes_sent,
        )

    def update(self, interface_id: str) -> Tuple[InterfaceSample, ThroughputRate]:
        try:
            current = self.sample(interface_id)
        except (InterfaceGone, ProbeUnavailable):
            self._previous = None
            raise

        rate = derive_rate(self._previous, current, self.staleness)
        if not rate.valid and self._previous is not None:
            logger.debug(f"Discarding sample interval on {interface_id}: {rate.reason}")
        self._previous = current
        return current, rate

    def reset(self) -> None:
        self._previous = None

    def readable_interfaces(self) -> Tuple[str, ...]:
        """Interfaces with readable counters; empty when counters are unavailable."""
        try:
            return tuple(sorted(self._counters(pernic=True)))
        except (psutil.Error, OSError) as e:
            logger.error(f"Cannot read interface counters: {e}")
            return ()
