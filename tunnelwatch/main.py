from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from .vpn.config import DEFAULT_CONFIG_PATH
from .vpn.exceptions import (
    ConnectError,
    ConnectionStateError,
    DependencyError,
    ProfileNotFoundError,
    VPNError,
)
from .vpn.manager import ConnectionMonitor
from .vpn.models import ConnectionSnapshot, Event, LeakVerdict, Profile
from .logging_utility import logger

# How often an idle event stream checks whether its client is still there
STREAM_POLL_INTERVAL = 1.0


class ConnectRequest(BaseModel):
    profile: str


class ProfileModel(BaseModel):
    name: str
    protocol: str
    endpoint: Optional[str] = None
    config_path: str

    @classmethod
    def from_profile(cls, profile: Profile) -> "ProfileModel":
        return cls(
            name=profile.name,
            protocol=profile.protocol.value,
            endpoint=profile.endpoint,
            config_path=str(profile.config_path),
        )


class EventModel(BaseModel):
    sequence: int
    timestamp: float
    level: str
    message: str

    @classmethod
    def from_event(cls, event: Event) -> "EventModel":
        return cls(sequence=event.sequence, timestamp=event.timestamp, level=event.level, message=event.message)


class LeakModel(BaseModel):
    status: str
    checked_at: Optional[float] = None
    detail: Optional[str] = None

    @classmethod
    def from_verdict(cls, verdict: LeakVerdict) -> "LeakModel":
        return cls(status=verdict.status.value, checked_at=verdict.checked_at, detail=verdict.detail)


class ThroughputModel(BaseModel):
    valid: bool
    down_bps: Optional[float] = None
    up_bps: Optional[float] = None
    reason: Optional[str] = None


class StatusModel(BaseModel):
    sequence: int
    taken_at: float
    state: str
    active_profile: Optional[str] = None
    pending_profile: Optional[str] = None
    interface: Optional[str] = None
    endpoint: Optional[str] = None
    internal_ip: Optional[str] = None
    session_age: Optional[float] = None
    handshake_age: Optional[float] = None
    transfer_rx: Optional[int] = None
    transfer_tx: Optional[int] = None
    throughput: ThroughputModel
    ipv6_leak: LeakModel
    dns_leak: LeakModel
    scanner_available: bool
    telemetry_available: bool
    public_ip: Optional[str] = None
    isp: Optional[str] = None
    latency_ms: Optional[float] = None
    dns_server: Optional[str] = None

    @classmethod
    def from_snapshot(cls, snapshot: ConnectionSnapshot) -> "StatusModel":
        rate = snapshot.throughput
        session = snapshot.session
        return cls(
            sequence=snapshot.sequence,
            taken_at=snapshot.taken_at,
            state=snapshot.state.value,
            active_profile=snapshot.active_profile,
            pending_profile=snapshot.pending_profile,
            interface=snapshot.interface_id,
            endpoint=session.endpoint if session else None,
            internal_ip=session.internal_ip if session else None,
            session_age=snapshot.session_age,
            handshake_age=snapshot.handshake_age,
            transfer_rx=snapshot.transfer_rx,
            transfer_tx=snapshot.transfer_tx,
            # An invalid rate is "warming up", never zero
            throughput=ThroughputModel(
                valid=rate.valid,
                down_bps=rate.down_bps if rate.valid else None,
                up_bps=rate.up_bps if rate.valid else None,
                reason=rate.reason,
            ),
            ipv6_leak=LeakModel.from_verdict(snapshot.ipv6_leak),
            dns_leak=LeakModel.from_verdict(snapshot.dns_leak),
            scanner_available=snapshot.scanner_available,
            telemetry_available=snapshot.telemetry_available,
            public_ip=snapshot.network.public_ip,
            isp=snapshot.network.isp,
            latency_ms=snapshot.network.latency_ms,
            dns_server=snapshot.network.dns_server,
        )


def _http_error(e: VPNError) -> HTTPException:
    if isinstance(e, ProfileNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, ConnectionStateError):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, DependencyError):
        return HTTPException(status_code=424, detail=str(e))
    if isinstance(e, ConnectError):
        return HTTPException(status_code=502, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def create_app(monitor: Optional[ConnectionMonitor] = None, start_monitor: bool = True) -> FastAPI:
    vpn_monitor = monitor or ConnectionMonitor(DEFAULT_CONFIG_PATH)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if start_monitor:
            vpn_monitor.start()
        try:
            yield
        finally:
            vpn_monitor.stop()

    app = FastAPI(title="TunnelWatch", lifespan=lifespan)
    app.state.monitor = vpn_monitor

    @app.get("/status", response_model=StatusModel)
    async def status():
        """Latest published snapshot"""
        return StatusModel.from_snapshot(vpn_monitor.latest_snapshot())

    @app.get("/events", response_model=List[EventModel])
    async def events(since: int = 0):
        """Logged events newer than ``since``"""
        snapshot = vpn_monitor.latest_snapshot()
        return [EventModel.from_event(e) for e in snapshot.events if e.sequence > since]

    @app.get("/events/stream")
    async def event_stream(request: Request):
        """Server-sent events, one per logged event from now on"""
        subscription = vpn_monitor.subscribe_events()

        async def generate():
            try:
                while not subscription.closed:
                    event = await run_in_threadpool(subscription.get, STREAM_POLL_INTERVAL)
                    if await request.is_disconnected():
                        break
                    if event is not None:
                        yield f"id: {event.sequence}\ndata: {EventModel.from_event(event).model_dump_json()}\n\n"
            finally:
                subscription.close()

        return StreamingResponse(generate(), media_type="text/event-stream")

    @app.get("/profiles", response_model=List[ProfileModel])
    async def profiles():
        try:
            return [ProfileModel.from_profile(p) for p in vpn_monitor.list_profiles()]
        except VPNError as e:
            logger.error(f"Error listing profiles: {str(e)}")
            raise _http_error(e)

    @app.post("/connect", response_model=StatusModel)
    def connect(request: ConnectRequest):
        """Issue the connect command; the state settles on later scans"""
        try:
            return StatusModel.from_snapshot(vpn_monitor.connect(request.profile))
        except VPNError as e:
            logger.error(f"Error connecting to {request.profile}: {str(e)}")
            raise _http_error(e)

    @app.post("/disconnect", response_model=StatusModel)
    def disconnect():
        try:
            return StatusModel.from_snapshot(vpn_monitor.disconnect())
        except VPNError as e:
            logger.error(f"Error disconnecting: {str(e)}")
            raise _http_error(e)

    @app.post("/reconnect", response_model=StatusModel)
    def reconnect():
        """Restart the connected profile's tunnel"""
        try:
            return StatusModel.from_snapshot(vpn_monitor.reconnect())
        except VPNError as e:
            logger.error(f"Error reconnecting: {str(e)}")
            raise _http_error(e)

    return app
