"""Cross-platform discovery of a browser extension's IndexedDB.

Extensions are installed under ``<profile>/Extensions/<id>/<version>/``.
The extension is identified by the ``name`` in its ``manifest.json``; its
IndexedDB then lives in
``<profile>/IndexedDB/chrome-extension_<id>_0.indexeddb.leveldb``.
"""

from __future__ import annotations

import json
import logging
import os
import platform
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Set, Tuple

from .exceptions import ExtensionNotFoundError

logger = logging.getLogger(__name__)

ProfileCandidate = Tuple[str, Path, int]


@dataclass(frozen=True)
class ExtensionLocation:
    """Represents a discovered extension install.

    Attributes:
        extension_id: The browser-assigned extension id
        name: Extension name from its manifest
        browser: Description of the browser (e.g., "Edge", "Chrome")
        profile_dir: The browser profile directory
        priority: Priority for ordering (lower = more preferred)
    """

    extension_id: str
    name: str
    browser: str
    profile_dir: Path
    priority: int = 0

    @property
    def indexeddb_path(self) -> Path:
        """The extension's IndexedDB LevelDB directory."""
        safe_id = self.extension_id.replace("-", "_")
        return (
            self.profile_dir / "IndexedDB" / f"chrome-extension_{safe_id}_0.indexeddb.leveldb"
        )

    @property
    def storage_path(self) -> Path:
        """The extension's ``chrome.storage.local`` LevelDB directory."""
        return self.profile_dir / "Local Extension Settings" / self.extension_id


class ExtensionDiscovery:
    """Finds an installed extension in Edge and Chrome profiles.

    Profiles are searched on Windows, macOS and Linux at the browsers'
    default locations, or in an explicit list of profile directories.
    """

    def __init__(
        self,
        extension_name: str = "yomitan",
        profiles: Optional[Sequence[ProfileCandidate]] = None,
    ) -> None:
        """Initialize the discovery instance.

        Args:
            extension_name: Case-insensitive substring of the manifest name
            profiles: (browser, profile directory, priority) triples to search
                instead of the platform defaults
        """
        self.extension_name = extension_name.lower()
        self._profiles = list(profiles) if profiles is not None else None
        self._system = platform.system()

    def discover(self) -> List[ExtensionLocation]:
        """Discover all installs of the extension.

        Returns:
            List of ExtensionLocation objects, ordered by priority

        Raises:
            ExtensionNotFoundError: If no profile contains the extension
        """
        locations: Set[ExtensionLocation] = set()
        for browser, profile_dir, priority in self.candidate_profiles():
            locations.update(self._scan_profile(browser, profile_dir, priority))

        if not locations:
            raise ExtensionNotFoundError(
                f"No extension named like '{self.extension_name}' found on {self._system}. "
                "Please ensure the extension is installed in Edge or Chrome."
            )

        return sorted(locations, key=lambda loc: (loc.priority, loc.extension_id))

    def find_first(self) -> ExtensionLocation:
        """Find the highest priority (most preferred) install.

        Raises:
            ExtensionNotFoundError: If no profile contains the extension
        """
        return self.discover()[0]

    def candidate_profiles(self) -> List[ProfileCandidate]:
        """Browser profile directories to search on this platform."""
        if self._profiles is not None:
            return list(self._profiles)

        home = Path.home()
        if self._system == "Windows":
            local_app_data = Path(os.environ.get("LOCALAPPDATA", home / "AppData" / "Local"))
            return [
                ("Edge", local_app_data / "Microsoft" / "Edge" / "User Data" / "Default", 1),
                ("Chrome", local_app_data / "Google" / "Chrome" / "User Data" / "Default", 2),
            ]
        if self._system == "Darwin":
            support = home / "Library" / "Application Support"
            return [
                ("Edge", support / "Microsoft Edge" / "Default", 1),
                ("Chrome", support / "Google" / "Chrome" / "Default", 2),
            ]
        return [
            ("Edge", home / ".config" / "microsoft-edge" / "Default", 1),
            ("Chrome", home / ".config" / "google-chrome" / "Default", 2),
            ("Chromium", home / ".config" / "chromium" / "Default", 3),
        ]

    def _scan_profile(
        self, browser: str, profile_dir: Path, priority: int
    ) -> Set[ExtensionLocation]:
        """Look for matching manifests in one profile's Extensions directory."""
        locations: Set[ExtensionLocation] = set()
        extensions_dir = profile_dir / "Extensions"
        if not extensions_dir.is_dir():
            logger.debug("%s extensions directory not found: %s", browser, extensions_dir)
            return locations

        try:
            extension_dirs = sorted(extensions_dir.iterdir())
        except OSError as e:
            logger.warning("Cannot list %s: %s", extensions_dir, e)
            return locations

        for extension_dir in extension_dirs:
            if not extension_dir.is_dir() or extension_dir.name.startswith("."):
                continue
            try:
                version_dirs = sorted(extension_dir.iterdir())
            except OSError:
                continue

            for version_dir in version_dirs:
                name = read_manifest_name(version_dir)
                if name and self.extension_name in name.lower():
                    logger.info("Found %s extension ID: %s", name, extension_dir.name)
                    locations.add(
                        ExtensionLocation(
                            extension_id=extension_dir.name,
                            name=name,
                            browser=browser,
                            profile_dir=profile_dir,
                            priority=priority,
                        )
                    )
                    break

        return locations

    def validate_location(self, location: ExtensionLocation) -> bool:
        """Check that the extension's IndexedDB directory looks like a LevelDB.

        Returns:
            True if the directory exists and holds CURRENT or a MANIFEST file
        """
        path = location.indexeddb_path
        if not path.is_dir():
            return False

        try:
            for item in path.iterdir():
                if item.name == "CURRENT" or item.name.startswith("MANIFEST-"):
                    return True
        except (PermissionError, OSError):
            return False

        return False


def read_manifest_name(version_dir: Path) -> Optional[str]:
    """Read an extension's name, resolving ``__MSG_key__`` placeholders.

    Returns:
        The name, or None if the manifest is missing or unreadable
    """
    manifest_path = version_dir / "manifest.json"
    if not manifest_path.is_file():
        return None

    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError):
        return None
    if not isinstance(manifest, dict):
        return None

    name = manifest.get("name")
    if not isinstance(name, str):
        return None

    if name.startswith("__MSG_") and name.endswith("__"):
        locale = manifest.get("default_locale") or "en"
        resolved = _localized_message(version_dir, str(locale), name[6:-2])
        if resolved:
            return resolved
    return name


def _localized_message(version_dir: Path, locale: str, key: str) -> Optional[str]:
    messages_path = version_dir / "_locales" / locale / "messages.json"
    try:
        messages = json.loads(messages_path.read_text(encoding="utf-8-sig"))
    except (OSError, ValueError):
        return None
    if not isinstance(messages, dict):
        return None

    for message_key, entry in messages.items():
        if message_key.lower() == key.lower() and isinstance(entry, dict):
            message = entry.get("message")
            if isinstance(message, str):
                return message
    return None
