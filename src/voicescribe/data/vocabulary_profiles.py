"""Vocabulary Profile Manager module."""

import json
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from voicescribe.utils.logger import get_logger

logger = get_logger("VocabularyProfiles")

BUILTIN_PROFILES: Dict[str, str] = {
    "physical-therapy": (
        "Capture physical therapy exercises, sets, and reps. For example: theraband external "
        "rotation four sets twelve reps. kettle bell squats three sets ten reps. active assistive "
        "extension three sets fifteen reps."
    ),
}


# Exceptions.
class ProfileCreationException(Exception):
    """Exception raised for profile creation failure."""

    def __init__(self, message: str = "Failed to create profile."):
        super().__init__(message)


class ProfileNotFoundError(KeyError):
    """Exception raised when a vocabulary profile does not exist."""

    def __init__(self, name: str):
        super().__init__(name)
        self.name = name

    def __str__(self) -> str:
        return f"Vocabulary profile not found: {self.name}"


# Class definition.
class VocabularyProfileManager:
    """
    Named domain-vocabulary hints.

    A hint is appended to the model's conditioning context so domain terms
    ("theraband", "kettle bell") are recognized more reliably.

    Raises:
        ProfileCreationException: Raised for failures in creating a profile.
        ProfileNotFoundError: Requested profile does not exist.
    """

    # Profiles maps profile name to hint text.
    profiles: Dict[str, str]

    # Change log. Each entry holds time of change, profile name and the action.
    change_log: List[Tuple[datetime, str, str]]

    def __init__(self, include_builtin: bool = True):
        """Constructor."""
        self.profiles = dict(BUILTIN_PROFILES) if include_builtin else {}
        self.change_log = []

    def create_profile(self, name: str, hint: str, overwrite: bool = False) -> str:
        """
        Creates a profile.

        Args:
            name (str): Profile name.
            hint (str): Vocabulary hint text.
            overwrite (bool): Replace an existing profile with the same name.

        Raises:
            ProfileCreationException: Name or hint is empty, or the name is taken.

        Returns:
            str: Normalized profile name.
        """
        key = (name or "").strip().lower()
        if not key:
            raise ProfileCreationException("Failed to create profile. Name is empty.")
        if not (hint or "").strip():
            raise ProfileCreationException(f"Failed to create profile {key}. Hint is empty.")
        if key in self.profiles and not overwrite:
            raise ProfileCreationException(f"Profile already exists: {key}")

        self.profiles[key] = hint.strip()
        self.change_log.append((datetime.now(), key, "create"))
        return key

    def get_hint(self, name: str) -> str:
        """
        Loads a profile's hint.

        Raises:
            ProfileNotFoundError: No profile with that name.
        """
        key = (name or "").strip().lower()
        if key not in self.profiles:
            raise ProfileNotFoundError(key)
        return self.profiles[key]

    def resolve_hint(self, name: Optional[str], explicit_hint: Optional[str] = None) -> Optional[str]:
        """An explicit hint wins; otherwise the named profile's hint, if any."""
        if explicit_hint:
            return explicit_hint
        if not name:
            return None
        return self.get_hint(name)

    def list_profiles(self) -> List[str]:
        return sorted(self.profiles)

    def delete_profile(self, name: str) -> bool:
        key = (name or "").strip().lower()
        if key not in self.profiles:
            return False
        del self.profiles[key]
        self.change_log.append((datetime.now(), key, "delete"))
        return True

    def load_file(self, path: Union[str, Path]) -> int:
        """
        Merge profiles from a JSON object mapping names to hints.

        Returns:
            int: Number of profiles loaded.
        """
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ProfileCreationException(f"Profiles file must hold a JSON object: {path}")
        for name, hint in data.items():
            self.create_profile(name, str(hint), overwrite=True)
        logger.info(f"Loaded {len(data)} vocabulary profile(s) from {path}")
        return len(data)
