"""
In-Memory Deployment Platform.

Stand-ins for the external systems deployment handlers talk to: the artifact
repository that versions component builds and the resource inventory that
maps environments and tiers to hosts. Both can be replaced with clients for
the real services as long as the method signatures are kept.
"""

from typing import Any, Dict, List, Optional, Set, Tuple
from dataclasses import dataclass, field
from datetime import datetime
import fnmatch
import re
import threading


@dataclass(frozen=True)
class ArtifactVersion:
    """One published version of a component artifact."""
    name: str
    version: str
    location: str = ""
    checksum: str = ""
    created_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "version": self.version,
            "location": self.location,
            "checksum": self.checksum,
            "created_at": self.created_at.isoformat(),
        }


def version_key(version: str) -> Tuple:
    """Sort key that orders '1.10.0' after '1.9.2'."""
    return tuple(
        (0, int(part), "") if part.isdigit() else (1, 0, part)
        for part in re.split(r"[.\-+]", version)
    )


class ArtifactRepository:
    """
    Versioned artifact catalog.

    Usage:
        repo = ArtifactRepository()
        repo.publish("web-frontend", "1.4.2")
        repo.resolve("web-frontend", "1.4.*")
    """

    def __init__(self):
        self._artifacts: Dict[str, Dict[str, ArtifactVersion]] = {}
        self._lock = threading.Lock()

    def publish(
        self,
        name: str,
        version: str,
        location: str = "",
        checksum: str = ""
    ) -> ArtifactVersion:
        """Add a version to the catalog."""
        artifact = ArtifactVersion(
            name=name,
            version=version,
            location=location or f"artifacts/{name}/{version}",
            checksum=checksum,
        )
        with self._lock:
            self._artifacts.setdefault(name, {})[version] = artifact
        return artifact

    def versions(self, name: str) -> List[ArtifactVersion]:
        """All versions of an artifact, oldest first."""
        with self._lock:
            known = list(self._artifacts.get(name, {}).values())
        return sorted(known, key=lambda a: version_key(a.version))

    def resolve(self, name: str, version_range: str = "latest") -> ArtifactVersion:
        """
        Pick the newest version matching `version_range`.

        Args:
            name: Artifact name
            version_range: 'latest', an exact version, or a glob such as '1.2.*'

        Raises:
            LookupError: If nothing matches
        """
        candidates = self.versions(name)
        if not candidates:
            raise LookupError(f"Unknown artifact '{name}'")

        pattern = (version_range or "latest").strip()
        if pattern != "latest":
            candidates = [a for a in candidates if fnmatch.fnmatchcase(a.version, pattern)]
        if not candidates:
            raise LookupError(f"No version of '{name}' matches '{pattern}'")
        return candidates[-1]

    def previous(self, name: str, version: str) -> Optional[ArtifactVersion]:
        """The newest version older than `version`, if any."""
        older = [a for a in self.versions(name) if version_key(a.version) < version_key(version)]
        return older[-1] if older else None

    def clear(self) -> None:
        with self._lock:
            self._artifacts.clear()


class ResourceInventory:
    """
    Hosts per environment and tier, plus what is installed on them.

    Hosts marked unavailable reject installs, which is how demos and tests
    provoke a failing deployment.
    """

    def __init__(self):
        self._hosts: Dict[Tuple[str, str], List[str]] = {}
        self._installed: Dict[Tuple[str, str], str] = {}
        self._unavailable: Set[str] = set()
        self._lock = threading.Lock()

    def add_host(self, environment: str, tier: str, host: str) -> None:
        with self._lock:
            hosts = self._hosts.setdefault((environment, tier), [])
            if host not in hosts:
                hosts.append(host)

    def resources_for_tier(self, environment: str, tier: str) -> List[str]:
        """Hosts of `tier` in `environment`."""
        with self._lock:
            return list(self._hosts.get((environment, tier), []))

    def set_available(self, host: str, available: bool = True) -> None:
        with self._lock:
            if available:
                self._unavailable.discard(host)
            else:
                self._unavailable.add(host)

    def is_available(self, host: str) -> bool:
        with self._lock:
            return host not in self._unavailable

    def record_install(self, host: str, component: str, version: str) -> None:
        with self._lock:
            self._installed[(host, component)] = version

    def installed_version(self, host: str, component: str) -> Optional[str]:
        with self._lock:
            return self._installed.get((host, component))

    def clear(self) -> None:
        with self._lock:
            self._hosts.clear()
            self._installed.clear()
            self._unavailable.clear()


# Global platform instances
artifact_repository = ArtifactRepository()
resource_inventory = ResourceInventory()
