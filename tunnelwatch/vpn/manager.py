"""Connection monitoring engine."""

import configparser
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path
from typing import Dict, List, Optional

import schedule

from .command_factory import VPNCommandFactory
from .config import ConfigProfileStore, MonitorSettings, configure_logging, load_config
from .exceptions import (
    ConfigurationError,
    ConnectError,
    ConnectionStateError,
    DependencyError,
    ProbeError,
    VPNError,
)
from .leaks import LeakDetector
from .models import ConnectionSnapshot, ConnectionState, Profile
from .network_info import NetworkInfoProbe
from .protocols import ProbeContext
from .publisher import SnapshotPublisher, Subscription
from .sampler import MetricSampler
from .scanner import SessionScanner
from .state import ConnectionStateMachine, SampleReading
from .utils import run_command
from ..logging_utility import logger

SCHEDULER_RESOLUTION = 0.1


class ConnectionMonitor:
    """Runs the scan, sample, leak and network probes on their own cadences.

    A single ``schedule.Scheduler`` thread fires the jobs; each job hands its
    probe to a dedicated single-worker pool and is skipped while the previous
    run of the same probe is still in flight. Probe outputs go to the
    ConnectionStateMachine, the only writer of the published snapshot.
    """

    def __init__(self, config_file: Optional[str] = None,
                 settings: Optional[MonitorSettings] = None,
                 profile_store: Optional[ConfigProfileStore] = None,
                 scanner: Optional[SessionScanner] = None,
                 sampler: Optional[MetricSampler] = None,
                 leak_detector: Optional[LeakDetector] = None,
                 network_probe: Optional[NetworkInfoProbe] = None,
                 runner=run_command):
        config = load_config(config_file) if config_file else configparser.ConfigParser()
        base_path = Path(config_file).resolve().parent if config_file else Path.cwd()
        configure_logging(config)
        self.settings = settings or MonitorSettings.from_config(config)
        self.profile_store = profile_store or ConfigProfileStore(config, base_path)

        self.scanner = scanner or SessionScanner(
            self.profile_store.list_profiles(),
            ProbeContext(
                scan_timeout=self.settings.scan_timeout,
                use_sudo=self.settings.use_sudo,
                wireguard_run_dir=self.settings.wireguard_run_dir,
            ),
        )
        self.sampler = sampler or MetricSampler(staleness=self.settings.staleness_threshold)
        self.leak_detector = leak_detector or LeakDetector(
            ipv6_url=self.settings.ipv6_check_url,
            timeout=self.settings.ipv6_timeout,
            resolv_conf=self.settings.resolv_conf,
            resolved_upstream_conf=self.settings.resolved_upstream_conf,
        )
        self.network_probe = network_probe or NetworkInfoProbe(
            ip_info_url=self.settings.ip_info_url,
            ping_target=self.settings.ping_target,
            timeout=self.settings.network_timeout,
            resolv_conf=self.settings.resolv_conf,
        )
        self.runner = runner

        self.publisher = SnapshotPublisher(subscriber_buffer=self.settings.event_log_size)
        self.state_machine = ConnectionStateMachine(self.publisher, self.settings)

        self._scheduler = schedule.Scheduler()
        self._stop = threading.Event()
        self._scheduler_thread: Optional[threading.Thread] = None
        self._pools: Dict[str, ThreadPoolExecutor] = {}
        # Shared by the scheduler thread and start(); guarded by _submit_lock
        self._in_flight: Dict[str, Future] = {}
        self._submit_lock = threading.Lock()
        self._started = False

    # Lifecycle

    def preflight(self) -> None:
        """
        Checks that must pass before monitoring starts.

        Raises:
            ConfigurationError: settings are invalid or no interface counters are readable
        """
        self.settings.validate()
        interfaces = self.sampler.readable_interfaces()
        if not interfaces:
            raise ConfigurationError("Cannot read any network interface counters")
        logger.info(f"Interface counters readable for: {', '.join(interfaces)}")

        for profile in self.profile_store.list_profiles():
            missing = VPNCommandFactory.missing_tools(profile.protocol)
            if missing:
                logger.warning(f"Profile '{profile.name}' needs missing tools: {', '.join(missing)}")

    def start(self) -> None:
        if self._started:
            return
        self.preflight()
        self._stop.clear()
        logger.info("Starting connection monitor")

        self._pools = {
            name: ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"probe-{name}")
            for name in ("scan", "sample", "leak-ipv6", "leak-dns", "network")
        }
        # First tick runs inline so latest_snapshot() reflects the host right away
        self._scan_job()

        s = self.settings
        self._scheduler.every(s.scan_interval).seconds.do(self._submit, "scan", self._scan_job)
        self._scheduler.every(s.sample_interval).seconds.do(self._submit, "sample", self._sample_job)
        self._scheduler.every(s.leak_interval).seconds.do(self._submit_leak_checks)
        self._scheduler.every(s.network_interval).seconds.do(self._submit, "network", self._network_job)
        self._submit("network", self._network_job)

        self._scheduler_thread = threading.Thread(target=self._run_schedule, name="scheduler", daemon=True)
        self._scheduler_thread.start()
        self._started = True

    def _run_schedule(self) -> None:
        while not self._stop.is_set():
            try:
                self._scheduler.run_pending()
            except Exception as e:
                logger.error(f"Scheduler job failed: {str(e)}")
            self._stop.wait(SCHEDULER_RESOLUTION)

    def stop(self) -> None:
        """Stop every periodic task, wait for in-flight probes and end subscriptions."""
        if not self._started:
            self.publisher.close()
            return
        logger.info("Stopping connection monitor")
        self._stop.set()
        self._scheduler.clear()
        if self._scheduler_thread is not None:
            self._scheduler_thread.join()
        for name, pool in self._pools.items():
            pool.shutdown(wait=True, cancel_futures=True)
            logger.info(f"Probe pool '{name}' stopped")
        self._pools.clear()
        with self._submit_lock:
            self._in_flight.clear()
        self.publisher.close()
        self._started = False

    @property
    def running(self) -> bool:
        return self._started

    # Jobs

    def _submit(self, name: str, job) -> Optional[Future]:
        if self._stop.is_set():
            return None
        with self._submit_lock:
            previous = self._in_flight.get(name)
            if previous is not None and not previous.done():
                logger.debug(f"Skipping {name} tick, previous probe still running")
                return None
            pool = self._pools.get(name)
            if pool is None:
                return None
            future = pool.submit(self._guarded, name, job)
            self._in_flight[name] = future
            return future

    @staticmethod
    def _guarded(name: str, job) -> None:
        try:
            job()
        except Exception as e:
            logger.error(f"{name} job failed: {str(e)}")

    def _scan_job(self) -> None:
        snapshot = self.publisher.latest()
        preferred = snapshot.pending_profile or snapshot.active_profile
        try:
            outcome = self.scanner.scan(preferred_profile=preferred)
        except VPNError as e:
            outcome = e
        self.state_machine.on_scan(outcome)

    def _sample_job(self) -> None:
        snapshot = self.publisher.latest()
        if snapshot.state is not ConnectionState.CONNECTED or snapshot.interface_id is None:
            self.sampler.reset()
            return
        try:
            sample, rate = self.sampler.update(snapshot.interface_id)
        except ProbeError as e:
            self.state_machine.submit_sample(e)
            return
        self.state_machine.submit_sample(SampleReading(sample, rate))

    def _submit_leak_checks(self) -> None:
        if self.publisher.latest().state is not ConnectionState.CONNECTED:
            return
        # Separate submissions so a slow IPv6 probe never holds back the DNS verdict
        self._submit("leak-ipv6", self._ipv6_job)
        self._submit("leak-dns", self._dns_job)

    def _ipv6_job(self) -> None:
        self.state_machine.submit_leak(self.leak_detector.check_ipv6())

    def _dns_job(self) -> None:
        snapshot = self.publisher.latest()
        profile = self._find_profile(snapshot.active_profile)
        expected = self.profile_store.expected_dns(profile) if profile else ()
        self.state_machine.submit_leak(self.leak_detector.check_dns(profile, expected))

    def _network_job(self) -> None:
        self.state_machine.submit_network(self.network_probe.collect())

    def _find_profile(self, name: Optional[str]) -> Optional[Profile]:
        if name is None:
            return None
        for profile in self.profile_store.list_profiles():
            if profile.name == name:
                return profile
        return None

    # Presentation

    def latest_snapshot(self) -> ConnectionSnapshot:
        return self.publisher.latest()

    def subscribe_events(self) -> Subscription:
        return self.publisher.subscribe()

    def list_profiles(self) -> List[Profile]:
        return self.profile_store.list_profiles()

    # Control

    def connect(self, profile_name: str) -> ConnectionSnapshot:
        """
        Issue the connect command for a profile.

        The state turns CONNECTING before the command runs; CONNECTED only
        follows once the scanner sees the tunnel.

        Raises:
            ProfileNotFoundError: unknown profile
            ConnectionStateError: not currently disconnected
            DependencyError: the protocol's tools are not installed
            ConnectError: the connect command failed
        """
        profile = self.profile_store.get(profile_name)
        if self.publisher.latest().state is not ConnectionState.DISCONNECTED:
            raise ConnectionStateError(
                f"Cannot connect to '{profile_name}' while {self.publisher.latest().state.value}"
            )
        missing = VPNCommandFactory.missing_tools(profile.protocol)
        if missing:
            raise DependencyError(profile.protocol, missing)

        snapshot = self.state_machine.request_connect(profile.name)
        try:
            self.runner(
                VPNCommandFactory.connect(profile, self.settings.use_sudo),
                timeout=self.settings.command_timeout,
            )
        except ProbeError as e:
            self.state_machine.command_failed("connect", e)
            raise ConnectError(f"Failed to connect to '{profile.name}': {str(e)}")
        logger.info(f"Connect command issued for '{profile.name}'")
        return snapshot

    def disconnect(self) -> ConnectionSnapshot:
        """
        Issue the disconnect command for the active profile.

        Raises:
            ConnectionStateError: nothing to disconnect
            ConnectError: the disconnect command failed or the session is not a known profile
        """
        current = self.publisher.latest()
        profile = self._find_profile(current.active_profile)
        if current.state in (ConnectionState.CONNECTED, ConnectionState.DISCONNECTING) and profile is None:
            raise ConnectError(
                f"Active session on {current.interface_id} matches no profile; disconnect it manually"
            )
        snapshot = self.state_machine.request_disconnect()
        try:
            self.runner(
                VPNCommandFactory.disconnect(profile, self.settings.use_sudo),
                timeout=self.settings.command_timeout,
            )
        except ProbeError as e:
            self.state_machine.command_failed("disconnect", e)
            raise ConnectError(f"Failed to disconnect from '{profile.name}': {str(e)}")
        logger.info(f"Disconnect command issued for '{profile.name}'")
        return snapshot


    def reconnect(self) -> ConnectionSnapshot:
        """
        Take the connected profile down and bring it straight back up.

        Raises:
            ConnectionStateError: not currently connected
            DependencyError: the protocol's tools are not installed
            ConnectError: a command failed or the session is not a known profile
        """
        current = self.publisher.latest()
        if current.state is not ConnectionState.CONNECTED:
            raise ConnectionStateError(f"Cannot reconnect while {current.state.value}")
        profile = self._find_profile(current.active_profile)
        if profile is None:
            raise ConnectError(
                f"Active session on {current.interface_id} matches no profile; reconnect it manually"
            )
        missing = VPNCommandFactory.missing_tools(profile.protocol)
        if missing:
            raise DependencyError(profile.protocol, missing)

        snapshot = self.state_machine.request_reconnect()
        try:
            for cmd in (VPNCommandFactory.disconnect(profile, self.settings.use_sudo),
                        VPNCommandFactory.connect(profile, self.settings.use_sudo)):
                self.runner(cmd, timeout=self.settings.command_timeout)
        except ProbeError as e:
            self.state_machine.command_failed("reconnect", e)
            raise ConnectError(f"Failed to reconnect to '{profile.name}': {str(e)}")
        logger.info(f"Reconnect commands issued for '{profile.name}'")
        return snapshot
