from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Protocol

from sysauth.config import Settings
from sysauth.logging import get_logger
from sysauth.storage.models import (
    Device,
    DeviceInfo,
    DeviceStatus,
    GeoLocation,
    LoginPattern,
    utcnow,
)

logger = get_logger(__name__)

EARTH_RADIUS_KM = 6371.0

RISK_WEIGHTS: Dict[str, int] = {
    "new_device": 20,
    "new_country": 40,
    "new_city": 10,
    "impossible_travel": 80,
    "unusual_time": 15,
    "different_device_type": 10,
    "trusted_device": -30,
}

# Only used by the spoofing check on already-trusted devices.
SPOOFING_WEIGHTS: Dict[str, int] = {
    "different_browser": 5,
    "different_os": 15,
}

MEDIUM_THRESHOLD = 31
HIGH_THRESHOLD = 61
UNUSUAL_HOUR_DISTANCE = 2

MAX_TYPICAL_COUNTRIES = 10
MAX_TYPICAL_CITIES = 10
MAX_TYPICAL_HOURS = 24
MAX_DEVICE_TYPES = 5


class RiskLevel(str, Enum):
    LOW = "Low"
    MEDIUM = "Medium"
    HIGH = "High"


def level_for(score: int) -> RiskLevel:
    if score >= HIGH_THRESHOLD:
        return RiskLevel.HIGH
    if score >= MEDIUM_THRESHOLD:
        return RiskLevel.MEDIUM
    return RiskLevel.LOW


def _clamp(score: int) -> int:
    return max(0, min(100, score))


@dataclass
class RiskAssessment:
    score: int
    level: RiskLevel
    factors: List[str] = field(default_factory=list)


@dataclass
class SpoofingVerdict:
    is_suspicious: bool
    risk_score: int
    factors: List[str] = field(default_factory=list)


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1, phi2 = math.radians(lat1), math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lon2 - lon1)
    a = (
        math.sin(d_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    )
    return 2 * EARTH_RADIUS_KM * math.asin(math.sqrt(a))


def is_impossible_travel(
    from_lat: Optional[float],
    from_lon: Optional[float],
    from_time: Optional[datetime],
    to: GeoLocation,
    now: datetime,
    max_kmh: float,
) -> bool:
    """True when covering the distance since ``from_time`` needs more than ``max_kmh``."""
    if from_lat is None or from_lon is None or from_time is None or not to.has_coordinates:
        return False
    distance = haversine_km(from_lat, from_lon, to.latitude, to.longitude)
    if distance < 1:
        return False
    hours = (now - from_time).total_seconds() / 3600
    if hours <= 0:
        return True
    return distance / hours > max_kmh


def _hour_distance(a: int, b: int) -> int:
    diff = abs(a - b) % 24
    return min(diff, 24 - diff)


def is_unusual_hour(hour: int, typical_hours: List[int]) -> bool:
    if not typical_hours:
        return False
    return all(_hour_distance(hour, h) > UNUSUAL_HOUR_DISTANCE for h in typical_hours)


def _same(a: Optional[str], b: Optional[str]) -> bool:
    return (a or "").casefold() == (b or "").casefold()


def score_login_risk(
    pattern: Optional[LoginPattern],
    info: DeviceInfo,
    geo: GeoLocation,
    *,
    is_trusted_device: bool,
    now: datetime,
    impossible_travel_kmh: float = 800.0,
) -> RiskAssessment:
    """Deterministic risk score of a login against the principal's history."""
    factors: List[str] = []
    score = 0
    if not is_trusted_device:
        score += RISK_WEIGHTS["new_device"]
        factors.append("new_device")

    if pattern is None or pattern.last_login_at is None:
        score = _clamp(score)
        return RiskAssessment(score=score, level=RiskLevel.LOW, factors=factors)

    if is_impossible_travel(
        pattern.last_latitude,
        pattern.last_longitude,
        pattern.last_login_at,
        geo,
        now,
        impossible_travel_kmh,
    ):
        score += RISK_WEIGHTS["impossible_travel"]
        factors.append("impossible_travel")

    if geo.country_code:
        if pattern.typical_countries and geo.country_code not in pattern.typical_countries:
            score += RISK_WEIGHTS["new_country"]
            factors.append("new_country")
        elif geo.city and pattern.typical_cities and geo.city not in pattern.typical_cities:
            score += RISK_WEIGHTS["new_city"]
            factors.append("new_city")

    if is_unusual_hour(now.hour, pattern.typical_hours):
        score += RISK_WEIGHTS["unusual_time"]
        factors.append("unusual_time")

    if pattern.device_types and info.device_type not in pattern.device_types:
        score += RISK_WEIGHTS["different_device_type"]
        factors.append("different_device_type")

    if is_trusted_device:
        score += RISK_WEIGHTS["trusted_device"]
        factors.append("trusted_device")

    score = _clamp(score)
    return RiskAssessment(score=score, level=level_for(score), factors=factors)


def check_spoofing(
    device: Device,
    geo: GeoLocation,
    info: DeviceInfo,
    fingerprint: Optional[str],
    *,
    now: datetime,
    impossible_travel_kmh: float = 800.0,
) -> SpoofingVerdict:
    """Compare a trusted device's last-known signals against the current request."""
    factors: List[str] = []
    score = 0
    fingerprint_mismatch = bool(
        device.fingerprint and fingerprint and device.fingerprint != fingerprint
    )
    if fingerprint_mismatch:
        factors.append("fingerprint_mismatch")

    if device.country_code and geo.country_code and not _same(
        device.country_code, geo.country_code
    ):
        last_seen = device.last_used_at or device.updated_at
        if device.latitude is not None and geo.has_coordinates:
            if is_impossible_travel(
                device.latitude, device.longitude, last_seen, geo, now, impossible_travel_kmh
            ):
                score += RISK_WEIGHTS["impossible_travel"]
                factors.append("impossible_travel")
        else:
            score += RISK_WEIGHTS["new_country"]
            factors.append("new_country")
    elif device.city and geo.city and not _same(device.city, geo.city):
        score += RISK_WEIGHTS["new_city"]
        factors.append("new_city")

    if device.browser and info.browser and not _same(device.browser, info.browser):
        score += SPOOFING_WEIGHTS["different_browser"]
        factors.append("different_browser")
    if device.operating_system and info.operating_system and not _same(
        device.operating_system, info.operating_system
    ):
        score += SPOOFING_WEIGHTS["different_os"]
        factors.append("different_os")
    if (
        device.device_type != "Unknown"
        and info.device_type != "Unknown"
        and device.device_type != info.device_type
    ):
        score += RISK_WEIGHTS["different_device_type"]
        factors.append("different_device_type")

    score = _clamp(score)
    suspicious = fingerprint_mismatch or score >= MEDIUM_THRESHOLD
    return SpoofingVerdict(is_suspicious=suspicious, risk_score=score, factors=factors)


class TrustedDeviceStore(Protocol):
    def list_devices(
        self, principal_id: str, status: Optional[DeviceStatus] = None
    ) -> List[Device]: ...


class LoginPatternStore(Protocol):
    def get_login_pattern(self, principal_id: str) -> Optional[LoginPattern]: ...

    def save_login_pattern(self, pattern: LoginPattern) -> None: ...


class TrustStatus(str, Enum):
    TRUSTED = "trusted"
    NEW_DEVICE = "new_device"
    SUSPICIOUS = "suspicious"


@dataclass
class TrustVerdict:
    status: TrustStatus
    device: Optional[Device] = None
    risk: Optional[RiskAssessment] = None
    is_new_location: bool = False

    @property
    def requires_approval(self) -> bool:
        return self.status != TrustStatus.TRUSTED


def _push_recent(values: List, value, limit: int) -> List:
    if value is None or value == "":
        return values
    updated = [v for v in values if v != value] + [value]
    return updated[-limit:]


class DeviceTrustEvaluator:
    """Decide whether a login comes from a trusted device.

    Never writes device rows or mints tokens: it returns a ``TrustVerdict``
    carrying the matched trusted row or the risk data needed to open approval.
    """

    def __init__(
        self,
        devices: TrustedDeviceStore,
        patterns: LoginPatternStore,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.devices = devices
        self.patterns = patterns
        self.impossible_travel_kmh = settings.impossible_travel_kmh
        self._clock = clock or utcnow

    def find_trusted_device(
        self, principal_id: str, device_id: str, fingerprint: Optional[str]
    ) -> Optional[Device]:
        trusted = self.devices.list_devices(principal_id, DeviceStatus.TRUSTED)
        for device in trusted:
            if device.device_id == device_id:
                return device
        # a cleared client id with an unchanged fingerprint is still the same device
        if fingerprint:
            for device in trusted:
                if device.fingerprint == fingerprint:
                    return device
        return None

    def evaluate(
        self,
        principal_id: str,
        device_id: str,
        fingerprint: Optional[str],
        info: DeviceInfo,
        geo: GeoLocation,
    ) -> TrustVerdict:
        now = self._clock()
        device = self.find_trusted_device(principal_id, device_id, fingerprint)
        if device is None:
            risk = score_login_risk(
                self.patterns.get_login_pattern(principal_id),
                info,
                geo,
                is_trusted_device=False,
                now=now,
                impossible_travel_kmh=self.impossible_travel_kmh,
            )
            logger.info(
                "device_trust_new_device",
                principal_id=principal_id,
                risk_score=risk.score,
                risk_level=risk.level.value,
                risk_factors=risk.factors,
            )
            return TrustVerdict(status=TrustStatus.NEW_DEVICE, risk=risk)

        is_new_location = bool(
            (geo.country_code and device.country_code
             and not _same(device.country_code, geo.country_code))
            or (geo.city and device.city and not _same(device.city, geo.city))
        )
        verdict = check_spoofing(
            device,
            geo,
            info,
            fingerprint,
            now=now,
            impossible_travel_kmh=self.impossible_travel_kmh,
        )
        if verdict.is_suspicious:
            logger.warning(
                "device_trust_suspicious",
                principal_id=principal_id,
                session_id=device.id,
                risk_score=verdict.risk_score,
                risk_factors=verdict.factors,
            )
            return TrustVerdict(
                status=TrustStatus.SUSPICIOUS,
                device=device,
                risk=RiskAssessment(
                    score=verdict.risk_score,
                    level=level_for(verdict.risk_score),
                    factors=verdict.factors,
                ),
                is_new_location=is_new_location,
            )
        return TrustVerdict(
            status=TrustStatus.TRUSTED, device=device, is_new_location=is_new_location
        )

    def record_login(
        self,
        principal_id: str,
        geo: GeoLocation,
        device_type: str,
        ip_address: Optional[str],
    ) -> LoginPattern:
        """Fold a successful login into the principal's login pattern."""
        now = self._clock()
        pattern = self.patterns.get_login_pattern(principal_id) or LoginPattern(
            principal_id=principal_id
        )
        pattern.typical_countries = _push_recent(
            pattern.typical_countries, geo.country_code, MAX_TYPICAL_COUNTRIES
        )
        pattern.typical_cities = _push_recent(
            pattern.typical_cities, geo.city, MAX_TYPICAL_CITIES
        )
        pattern.typical_hours = _push_recent(pattern.typical_hours, now.hour, MAX_TYPICAL_HOURS)
        pattern.device_types = _push_recent(pattern.device_types, device_type, MAX_DEVICE_TYPES)
        pattern.last_ip = ip_address or pattern.last_ip
        if geo.country_code:
            pattern.last_country = geo.country_code
        if geo.city:
            pattern.last_city = geo.city
        pattern.last_latitude = geo.latitude
        pattern.last_longitude = geo.longitude
        pattern.last_login_at = now
        self.patterns.save_login_pattern(pattern)
        return pattern
