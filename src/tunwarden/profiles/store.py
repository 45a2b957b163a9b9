"""In-memory profile registry plus opportunistic latency measurements."""

from __future__ import annotations

from dataclasses import dataclass, field

from tunwarden.profiles.models import Profile, ProfileError


@dataclass
class ProfileStore:
    """Profiles keyed by id, in insertion order.

    Profiles themselves are frozen; the latency the health monitor measures
    is kept alongside them rather than on the profile.
    """

    _profiles: dict[str, Profile] = field(default_factory=dict)
    _latency_ms: dict[str, float] = field(default_factory=dict)

    def add(self, profile: Profile) -> None:
        if profile.id in self._profiles:
            raise ProfileError(f"Duplicate profile id {profile.id!r}")
        self._profiles[profile.id] = profile

    def get(self, profile_id: str) -> Profile | None:
        return self._profiles.get(profile_id)

    def all(self) -> list[Profile]:
        return list(self._profiles.values())

    def latency(self, profile_id: str) -> float | None:
        return self._latency_ms.get(profile_id)

    def set_latency(self, profile_id: str, latency_ms: float) -> None:
        if profile_id in self._profiles:
            self._latency_ms[profile_id] = latency_ms

    def __len__(self) -> int:
        return len(self._profiles)

    def __contains__(self, profile_id: object) -> bool:
        return profile_id in self._profiles
