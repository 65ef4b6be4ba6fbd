"""
Profile catalog loading.

Centralizes catalog parsing, validation and lookup. The catalog keeps the
declaration order of profiles because that order breaks ties when computing
startup sequences.
"""

from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union
import logging

import yaml
from pydantic import ValidationError

from .models import Profile, ServiceDescriptor


logger = logging.getLogger(__name__)

DEFAULT_CATALOG_PATH = Path(__file__).parent / "catalog" / "profiles.yaml"


class ProfileCatalog:
    """Immutable, ordered collection of profiles."""

    def __init__(self, profiles: Iterable[Profile], legacy_ids: Optional[Dict[str, List[str]]] = None):
        self._profiles: Dict[str, Profile] = {}
        for profile in profiles:
            if profile.id in self._profiles:
                raise ValueError(f"Duplicate profile id in catalog: {profile.id}")
            self._profiles[profile.id] = profile
        self._order = {pid: idx for idx, pid in enumerate(self._profiles)}
        self._legacy_ids = {k: list(v) for k, v in (legacy_ids or {}).items()}
        self._check_references()

    def _check_references(self) -> None:
        for profile in self._profiles.values():
            for ref in [*profile.dependencies, *profile.prerequisites, *profile.conflicts]:
                if ref not in self._profiles:
                    raise ValueError(f"Profile {profile.id} references unknown profile {ref}")

    @property
    def ids(self) -> List[str]:
        return list(self._profiles)

    def __contains__(self, profile_id: str) -> bool:
        return profile_id in self._profiles

    def __len__(self) -> int:
        return len(self._profiles)

    def get(self, profile_id: str) -> Optional[Profile]:
        return self._profiles.get(profile_id)

    def all(self) -> List[Profile]:
        return list(self._profiles.values())

    def order_of(self, profile_id: str) -> int:
        """Declaration index, unknown ids sort last."""
        return self._order.get(profile_id, len(self._order))

    def services(self, profile_ids: Optional[Iterable[str]] = None) -> List[ServiceDescriptor]:
        """Services of the given profiles (all profiles by default) in catalog order."""
        wanted = set(profile_ids) if profile_ids is not None else None
        result = []
        for profile in self._profiles.values():
            if wanted is None or profile.id in wanted:
                result.extend(profile.services)
        return result

    def get_service(self, service_name: str) -> Optional[ServiceDescriptor]:
        for service in self.services():
            if service.name == service_name:
                return service
        return None

    def migrate_ids(self, profile_ids: Iterable[str]) -> List[str]:
        """Translate legacy profile ids to their current equivalents.

        Unknown ids pass through unchanged so validation can report them.
        """
        result: List[str] = []
        for pid in profile_ids:
            replacements = self._legacy_ids.get(pid, [pid]) if pid not in self._profiles else [pid]
            for new_id in replacements:
                if new_id not in result:
                    result.append(new_id)
        return result

    def is_legacy_id(self, profile_id: str) -> bool:
        return profile_id in self._legacy_ids and profile_id not in self._profiles


class ProfileCatalogLoader:
    """Loads and caches profile catalogs from YAML files."""

    def __init__(self):
        self.logger = logging.getLogger(__name__)
        self._cache: Dict[Path, ProfileCatalog] = {}

    def load(self, path: Optional[Union[str, Path]] = None) -> Optional[ProfileCatalog]:
        """
        Load and validate a catalog file.

        Args:
            path: Catalog YAML path, the bundled catalog when omitted

        Returns:
            Validated ProfileCatalog, or None if the file is missing or invalid
        """
        catalog_path = Path(path) if path else DEFAULT_CATALOG_PATH
        if catalog_path in self._cache:
            return self._cache[catalog_path]

        if not catalog_path.exists():
            self.logger.warning("Profile catalog not found: %s", catalog_path)
            return None

        try:
            with open(catalog_path, 'r') as f:
                data = yaml.safe_load(f)

            if not data:
                self.logger.error("Profile catalog is empty: %s", catalog_path)
                return None

            catalog = self.from_dict(data)
            self._cache[catalog_path] = catalog
            self.logger.info("Loaded %d profiles from %s", len(catalog), catalog_path)
            return catalog

        except yaml.YAMLError as e:
            self.logger.error("Failed to parse profile catalog %s: %s", catalog_path, e)
            return None
        except (ValidationError, ValueError) as e:
            self.logger.error("Profile catalog validation failed for %s: %s", catalog_path, e)
            return None

    @staticmethod
    def from_dict(data: dict) -> ProfileCatalog:
        profiles = [Profile(**entry) for entry in data.get("profiles") or []]
        return ProfileCatalog(profiles, legacy_ids=data.get("legacy_ids"))

    def clear_cache(self) -> None:
        self._cache.clear()
