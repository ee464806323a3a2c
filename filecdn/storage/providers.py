from __future__ import annotations
"""
Static provider table and the selection rule.

`select_provider` is a pure function of (mime type, size, table): the first
entry in priority order that accepts the category and fits the size wins,
otherwise DEFAULT_PROVIDER.
"""

from dataclasses import dataclass
from typing import FrozenSet, Optional, Sequence

MB = 1024 * 1024

ANY = "any"

CLOUDINARY = "cloudinary"
IMAGEKIT = "imagekit"
SUPABASE = "supabase"
NEON = "neon"
TURSO = "turso"

DEFAULT_PROVIDER = SUPABASE


@dataclass(frozen=True)
class ProviderSpec:
    id: str
    role: str
    priority: int
    max_size: int
    categories: FrozenSet[str]

    def accepts(self, category: str, size: int) -> bool:
        if size > self.max_size:
            return False
        return ANY in self.categories or category in self.categories


PROVIDER_TABLE: Sequence[ProviderSpec] = (
    ProviderSpec(CLOUDINARY, "media-cdn-a", 1, 100 * MB, frozenset({"image", "video", "audio"})),
    ProviderSpec(IMAGEKIT, "media-cdn-b", 2, 25 * MB, frozenset({"image", "video"})),
    ProviderSpec(SUPABASE, "primary-object-store", 3, 50 * MB, frozenset({ANY})),
    ProviderSpec(NEON, "serverless-sql-a", 4, 10 * MB, frozenset({ANY})),
    ProviderSpec(TURSO, "serverless-sql-b", 5, 5 * MB, frozenset({ANY})),
)

PROVIDER_IDS = tuple(p.id for p in PROVIDER_TABLE)


def category_for(mime_type: Optional[str]) -> str:
    major = (mime_type or "").split("/", 1)[0].strip().lower()
    if major in ("image", "video", "audio"):
        return major
    return "raw"


def select_provider(
    mime_type: Optional[str],
    size: int,
    table: Sequence[ProviderSpec] = PROVIDER_TABLE,
    default: str = DEFAULT_PROVIDER,
) -> str:
    category = category_for(mime_type)
    for spec in sorted(table, key=lambda p: p.priority):
        if spec.accepts(category, size):
            return spec.id
    return default


def get_provider_spec(provider_id: str) -> Optional[ProviderSpec]:
    for spec in PROVIDER_TABLE:
        if spec.id == provider_id:
            return spec
    return None
