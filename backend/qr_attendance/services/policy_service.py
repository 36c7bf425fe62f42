"""Attendance policy resolution.

A course stores its attendance policy as loosely typed JSON. Every consumer
goes through :func:`resolve_policy`, which turns that JSON into one immutable
:class:`EffectivePolicy`.

Two strictness levels exist:

* ``strict=True`` is used when an administrator creates or edits a course.
  Inconsistent settings raise :class:`PolicyValidationError`.
* ``strict=False`` is used while a student redeems a session. Inconsistent
  settings are coerced to a disabled check and logged, so a data-quality
  issue in one field never blocks attendance marking.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Tuple

from qr_attendance.services.network_service import NetworkService
from qr_attendance.utils.validators import ValidationError

logger = logging.getLogger(__name__)

DELIVERY_MODES = ('in_person', 'online', 'hybrid')
DEFAULT_DELIVERY_MODE = 'in_person'

_TRUE_STRINGS = {'true', '1', 'yes', 'on'}
_FALSE_STRINGS = {'false', '0', 'no', 'off'}


class PolicyValidationError(ValidationError):
    """Attendance policy settings are inconsistent."""


@dataclass(frozen=True)
class PolicyDefaults:
    single_device_per_day: bool = True
    require_signature: bool = True
    require_enrollment: bool = True
    require_ip_allowlist: bool = False
    require_geofence: bool = False
    min_radius_meters: float = 10
    max_radius_meters: float = 100000
    default_radius_meters: float = 120
    clamp_radius: bool = True

    @classmethod
    def from_config(cls, config: Mapping) -> 'PolicyDefaults':
        return cls(
            require_enrollment=config.get('ATTENDANCE_REQUIRE_ENROLLMENT', True),
            min_radius_meters=config.get('GEOFENCE_MIN_RADIUS_METERS', 10),
            max_radius_meters=config.get('GEOFENCE_MAX_RADIUS_METERS', 100000),
            default_radius_meters=config.get('GEOFENCE_DEFAULT_RADIUS_METERS', 120),
            clamp_radius=config.get('GEOFENCE_CLAMP_RADIUS', True),
        )


@dataclass(frozen=True)
class Geofence:
    lat: Optional[float]
    lng: Optional[float]
    radius_meters: float

    def to_dict(self) -> Dict[str, Any]:
        return {'lat': self.lat, 'lng': self.lng, 'radius_meters': self.radius_meters}


@dataclass(frozen=True)
class EffectivePolicy:
    delivery_mode: str
    single_device_per_day: bool
    require_signature: bool
    require_enrollment: bool
    require_ip_allowlist: bool
    ip_allowlist: Tuple[str, ...]
    require_geofence: bool
    geofence: Geofence
    coerced: Tuple[str, ...] = field(default=())

    def public_flags(self) -> Dict[str, bool]:
        """Flags safe to show to a participant before they submit."""
        return {
            'single_device_per_day': self.single_device_per_day,
            'require_signature': self.require_signature,
            'require_enrollment': self.require_enrollment,
            'require_ip_allowlist': self.require_ip_allowlist,
            'require_geofence': self.require_geofence,
        }

    def to_snapshot(self) -> Dict[str, Any]:
        """JSON-ready copy stored next to each attendance record."""
        snapshot = self.public_flags()
        snapshot.update({
            'delivery_mode': self.delivery_mode,
            'ip_allowlist': list(self.ip_allowlist),
            'geofence': self.geofence.to_dict(),
        })
        return snapshot


def normalize_boolean(value: Any, fallback: bool) -> bool:
    if value is None or value == '':
        return fallback
    if isinstance(value, bool):
        return value
    normalized = str(value).strip().lower()
    if normalized in _TRUE_STRINGS:
        return True
    if normalized in _FALSE_STRINGS:
        return False
    return fallback


def to_nullable_number(value: Any) -> Optional[float]:
    if value is None or value == '' or isinstance(value, bool):
        return None
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    return numeric if math.isfinite(numeric) else None


def normalize_delivery_mode(value: Any, strict: bool = False) -> str:
    normalized = str(value or '').strip().lower()
    if not normalized:
        return DEFAULT_DELIVERY_MODE
    if normalized not in DELIVERY_MODES:
        if strict:
            raise PolicyValidationError(
                f"delivery_mode must be one of: {', '.join(DELIVERY_MODES)}"
            )
        return DEFAULT_DELIVERY_MODE
    return normalized


def normalize_ip_allowlist(value: Any) -> Tuple[str, ...]:
    """Trimmed, non-empty, de-duplicated entries in their original order."""
    if not isinstance(value, (list, tuple)):
        return ()
    seen = []
    for entry in value:
        text = str(entry if entry is not None else '').strip()
        if text and text not in seen:
            seen.append(text)
    return tuple(seen)


def _as_mapping(value: Any) -> Mapping:
    return value if isinstance(value, Mapping) else {}


def _require_type(value: Any, expected, message: str) -> None:
    if value is not None and not isinstance(value, expected):
        raise PolicyValidationError(message)


def resolve_policy(
    raw_policy: Any,
    delivery_mode: Any = None,
    strict: bool = False,
    base: Any = None,
    defaults: Optional[PolicyDefaults] = None
) -> EffectivePolicy:
    """Resolve a stored or submitted policy into an :class:`EffectivePolicy`.

    ``base`` is the currently stored policy; on a partial update its values
    take the place of the defaults for every field ``raw_policy`` omits.
    """
    defaults = defaults or PolicyDefaults()
    if strict:
        _require_type(raw_policy, Mapping, 'attendance_policy must be an object')
    source = _as_mapping(raw_policy)
    fallback = _as_mapping(base)

    def flag(name: str) -> bool:
        return normalize_boolean(
            source.get(name),
            normalize_boolean(fallback.get(name), getattr(defaults, name))
        )

    mode = normalize_delivery_mode(delivery_mode, strict=strict)
    single_device_per_day = flag('single_device_per_day')
    require_signature = flag('require_signature')
    require_enrollment = flag('require_enrollment')
    require_ip_allowlist = flag('require_ip_allowlist')
    require_geofence = flag('require_geofence')

    if 'ip_allowlist' in source:
        if strict:
            _require_type(source.get('ip_allowlist'), (list, tuple), 'ip_allowlist must be a list')
        ip_allowlist = normalize_ip_allowlist(source.get('ip_allowlist'))
    else:
        ip_allowlist = normalize_ip_allowlist(fallback.get('ip_allowlist'))

    # Submitted geofence keys override stored ones; an empty or null geofence clears it
    geofence_source = _as_mapping(fallback.get('geofence'))
    if 'geofence' in source:
        submitted = source.get('geofence')
        if strict:
            _require_type(submitted, Mapping, 'geofence must be an object')
        submitted = _as_mapping(submitted)
        geofence_source = {**geofence_source, **submitted} if submitted else {}
    lat = to_nullable_number(geofence_source.get('lat'))
    lng = to_nullable_number(geofence_source.get('lng'))
    radius = to_nullable_number(geofence_source.get('radius_meters'))
    radius_given = radius is not None
    if radius is None:
        radius = float(defaults.default_radius_meters)

    coords_valid = (
        lat is not None and lng is not None and
        -90 <= lat <= 90 and -180 <= lng <= 180
    )
    radius_in_range = defaults.min_radius_meters <= radius <= defaults.max_radius_meters

    if strict:
        if require_ip_allowlist and not ip_allowlist:
            raise PolicyValidationError(
                "ip_allowlist is required when require_ip_allowlist is true"
            )
        unusable = [e for e in ip_allowlist if e not in NetworkService.usable_entries([e])]
        if unusable:
            raise PolicyValidationError(
                f"ip_allowlist contains invalid entries: {', '.join(unusable)}"
            )
        if require_geofence and not coords_valid:
            raise PolicyValidationError(
                "geofence.lat/lng are required when require_geofence is true"
            )
        if (require_geofence or radius_given) and not radius_in_range:
            raise PolicyValidationError(
                f"geofence.radius_meters must be between "
                f"{defaults.min_radius_meters:g} and {defaults.max_radius_meters:g}"
            )
        coerced = ()
    else:
        coerced = []
        if require_ip_allowlist and not ip_allowlist:
            require_ip_allowlist = False
            coerced.append('require_ip_allowlist')
        if not radius_in_range:
            if defaults.clamp_radius:
                radius = max(defaults.min_radius_meters, min(defaults.max_radius_meters, radius))
            elif require_geofence:
                require_geofence = False
                coerced.append('require_geofence')
        if require_geofence and not coords_valid:
            require_geofence = False
            coerced.append('require_geofence')
        coerced = tuple(coerced)
        if coerced:
            logger.warning('Attendance policy coerced to fail-safe defaults: %s', ', '.join(coerced))

    return EffectivePolicy(
        delivery_mode=mode,
        single_device_per_day=single_device_per_day,
        require_signature=require_signature,
        require_enrollment=require_enrollment,
        require_ip_allowlist=require_ip_allowlist,
        ip_allowlist=ip_allowlist,
        require_geofence=require_geofence,
        geofence=Geofence(lat=lat, lng=lng, radius_meters=radius),
        coerced=coerced,
    )
