"""
Manifest and world records.

The manifest is the versioned record of lock state, instance version and
stored world backups. It is fetched once per orchestration pass, mutated in
memory and written back whole (last writer wins).
"""

import json
import socket
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ritual.utils.paths import normalize_key

LOCK_ID_SEPARATOR = '::'
MANIFEST_VERSION = '1'


class ManifestError(ValueError):
    """Raised when a manifest or world payload is invalid."""
    pass


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _format_time(value: datetime) -> str:
    return value.isoformat()


def _parse_time(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str) and value:
        try:
            parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
        except ValueError as e:
            raise ManifestError(f"Invalid {field_name} timestamp {value!r}: {e}") from e
    else:
        raise ManifestError(f"Missing or invalid {field_name}: {value!r}")

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


@dataclass(frozen=True)
class World:
    """One stored world backup: its storage URI and creation time."""

    uri: str
    created_at: datetime = field(default_factory=_now)

    def __post_init__(self):
        if not self.uri:
            raise ValueError("URI cannot be empty")
        object.__setattr__(self, 'uri', normalize_key(self.uri))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'uri': self.uri,
            'created_at': _format_time(self.created_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'World':
        if not isinstance(data, dict):
            raise ManifestError(f"World entry must be an object, got {type(data).__name__}")
        try:
            return cls(uri=data.get('uri') or '', created_at=_parse_time(data.get('created_at'), 'created_at'))
        except ValueError as e:
            if isinstance(e, ManifestError):
                raise
            raise ManifestError(f"Invalid world entry: {e}") from e


def new_world(uri: str, created_at: Optional[datetime] = None) -> World:
    """
    Create a World, validating the URI.

    Args:
        uri: Storage key of the backup (backslashes are normalized)
        created_at: Creation time (default: now)

    Raises:
        ValueError: If uri is empty
    """
    return World(uri=uri, created_at=created_at or _now())


@dataclass
class Manifest:
    """
    Central record of lock state, versions and stored worlds.

    ``worlds`` keeps insertion order, which is not necessarily chronological.
    Every mutating method bumps ``updated_at``.
    """

    ritual_version: str = ''
    locked_by: str = ''
    instance_version: str = ''
    worlds: List[World] = field(default_factory=list)
    updated_at: datetime = field(default_factory=_now)
    manifest_version: str = MANIFEST_VERSION
    world_dirs: List[str] = field(default_factory=list)

    def is_locked(self) -> bool:
        return self.locked_by != ''

    def lock(self, token: str):
        """Mark the manifest as held by ``token``. No compare-and-swap."""
        self.locked_by = token
        self._touch()

    def unlock(self):
        self.locked_by = ''
        self._touch()

    def add_world(self, world: World):
        self.worlds.append(world)
        self._touch()

    def get_latest_world(self) -> Optional[World]:
        """
        Return the world with the greatest created_at, or None.

        On equal timestamps the first one in list order wins.
        """
        latest = None
        for world in self.worlds:
            if latest is None or world.created_at > latest.created_at:
                latest = world
        return latest

    def remove_oldest_worlds(self, max_count: int) -> List[World]:
        """
        Keep only the ``max_count`` newest worlds.

        Args:
            max_count: Number of worlds to keep

        Returns:
            The removed worlds, oldest first. Empty if max_count <= 0 or
            nothing exceeds the limit.
        """
        if max_count <= 0 or len(self.worlds) <= max_count:
            return []

        # sorted() is stable, so equal timestamps keep insertion order
        ordered = sorted(self.worlds, key=lambda w: w.created_at)
        removed_count = len(ordered) - max_count

        removed = ordered[:removed_count]
        self.worlds = ordered[removed_count:]
        self._touch()

        return removed

    def clone(self) -> 'Manifest':
        """Deep copy with a fresh ``updated_at``."""
        return Manifest(
            ritual_version=self.ritual_version,
            locked_by=self.locked_by,
            instance_version=self.instance_version,
            worlds=list(self.worlds),
            updated_at=_now(),
            manifest_version=self.manifest_version,
            world_dirs=list(self.world_dirs),
        )

    def world_uris(self) -> set:
        return {w.uri for w in self.worlds}

    def _touch(self):
        self.updated_at = _now()

    def to_dict(self) -> Dict[str, Any]:
        return {
            'manifest_version': self.manifest_version,
            'ritual_version': self.ritual_version,
            'locked_by': self.locked_by,
            'instance_version': self.instance_version,
            'world_dirs': list(self.world_dirs),
            'worlds': [w.to_dict() for w in self.worlds],
            'updated_at': _format_time(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Manifest':
        if not isinstance(data, dict):
            raise ManifestError(f"Manifest must be an object, got {type(data).__name__}")

        worlds = data.get('worlds') or []
        if not isinstance(worlds, list):
            raise ManifestError("Manifest 'worlds' must be a list")

        updated_at = data.get('updated_at')
        return cls(
            ritual_version=data.get('ritual_version') or '',
            locked_by=data.get('locked_by') or '',
            instance_version=data.get('instance_version') or '',
            worlds=[World.from_dict(w) for w in worlds],
            updated_at=_parse_time(updated_at, 'updated_at') if updated_at else _now(),
            manifest_version=data.get('manifest_version') or MANIFEST_VERSION,
            world_dirs=list(data.get('world_dirs') or []),
        )

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), indent=2)

    @classmethod
    def from_json(cls, raw) -> 'Manifest':
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise ManifestError(f"Failed to decode manifest: {e}") from e
        return cls.from_dict(data)


def new_lock_token(machine_id: Optional[str] = None, now: Optional[float] = None) -> str:
    """
    Build a lock token of the form ``{machine-identifier}::{unix-timestamp}``.

    Args:
        machine_id: Machine identifier (default: hostname)
        now: Unix time in seconds (default: current time)
    """
    machine_id = machine_id or socket.gethostname()
    timestamp = int(time.time() if now is None else now)
    return f"{machine_id}{LOCK_ID_SEPARATOR}{timestamp}"


def parse_lock_token(token: str) -> Tuple[str, datetime]:
    """
    Split a lock token into machine identifier and timestamp.

    Raises:
        ValueError: If the token is malformed
    """
    machine_id, sep, raw_timestamp = token.rpartition(LOCK_ID_SEPARATOR)
    if not sep or not machine_id or not raw_timestamp.isdigit():
        raise ValueError(f"Invalid lock token: {token!r}")
    return machine_id, datetime.fromtimestamp(int(raw_timestamp), tz=timezone.utc)
