"""Detection of the active VPN session."""

from dataclasses import replace
from typing import Dict, List, Optional, Sequence

from .exceptions import AmbiguousScan, ProbeError
from .models import Profile, ScanResult, SessionDetails, VPNProtocol
from .protocols import DRIVERS, ProbeContext
from ..logging_utility import logger


class SessionScanner:
    """Finds which profile, if any, currently has a tunnel up.

    Every call probes the protocols used by the known profiles, attributes
    each detected interface to a profile name and picks one session to
    report. Unattributed interfaces are still reported.
    """

    def __init__(self, profiles: Sequence[Profile], context: Optional[ProbeContext] = None,
                 drivers=None):
        self.context = context or ProbeContext()
        self.context.profiles = list(profiles)
        self.drivers = drivers or DRIVERS

    @property
    def profiles(self) -> List[Profile]:
        return list(self.context.profiles)

    def _protocols(self) -> List[VPNProtocol]:
        used = {profile.protocol for profile in self.context.profiles}
        if not used:
            used = {VPNProtocol.WIREGUARD}
        return [protocol for protocol in VPNProtocol if protocol in used]

    def resolve_profile(self, session: SessionDetails) -> Optional[str]:
        """Map an interface handle to a profile name, or None if nothing matches."""
        known = {profile.name for profile in self.context.profiles}
        if session.profile_name is not None:
            if session.profile_name in known or not known:
                return session.profile_name
        for profile in self.context.profiles:
            if profile.protocol is session.protocol and profile.interface_name == session.interface_id:
                return profile.name
        return session.profile_name

    def scan(self, preferred_profile: Optional[str] = None) -> ScanResult:
        """
        Probe the host for active tunnels.

        Args:
            preferred_profile: Profile the user selected; wins the tie-break
                when more than one tunnel is up.

        Returns:
            ScanResult with the chosen session (None when nothing is up)

        Raises:
            ProbeError: no session was found and at least one probe failed
        """
        sessions: List[SessionDetails] = []
        errors: List[ProbeError] = []
        details: Dict[str, str] = {}

        for protocol in self._protocols():
            driver = self.drivers[protocol]
            try:
                found = driver.scan(self.context)
            except ProbeError as e:
                logger.warning(f"{protocol.label} probe failed: {e}")
                errors.append(e)
                details[protocol.value] = f"unavailable: {e}"
                continue
            details[protocol.value] = f"{len(found)} active"
            sessions.extend(found)

        if not sessions and errors:
            raise errors[0]

        resolved = sorted(
            (replace(session, profile_name=self.resolve_profile(session)) for session in sessions),
            key=lambda s: s.interface_id,
        )
        warnings: List[Exception] = list(errors)
        chosen = self._choose(resolved, preferred_profile)
        if len(resolved) > 1:
            ambiguity = AmbiguousScan([s.interface_id for s in resolved], chosen.interface_id)
            logger.warning(str(ambiguity))
            warnings.append(ambiguity)
        if chosen is not None and not chosen.attributed:
            logger.info(f"Active interface {chosen.interface_id} matches no known profile")

        return ScanResult(
            session=chosen,
            sessions=tuple(resolved),
            protocol_details=details,
            warnings=tuple(warnings),
        )

    @staticmethod
    def _choose(sessions: List[SessionDetails], preferred_profile: Optional[str]) -> Optional[SessionDetails]:
        if not sessions:
            return None
        if preferred_profile is not None:
            for session in sessions:
                if session.profile_name == preferred_profile:
                    return session
        return sessions[0]
