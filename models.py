from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Dict, Any

PLATFORMS = ("twitch", "youtube")


def normalize_platform(value: str) -> str:
    platform = (value or "").strip().lower()
    if platform not in PLATFORMS:
        raise ValueError(f"unknown platform: {value!r}")
    return platform


@dataclass(frozen=True)
class SongCandidate:
    artist: str
    title: str
    album: Optional[str] = None
    catalog_url: Optional[str] = None

    @property
    def label(self) -> str:
        return f"{self.artist} - {self.title}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "artist": self.artist,
            "title": self.title,
            "album": self.album,
            "catalog_url": self.catalog_url,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SongCandidate":
        return cls(
            artist=str(data.get("artist") or ""),
            title=str(data.get("title") or ""),
            album=data.get("album") or None,
            catalog_url=data.get("catalog_url") or None,
        )
