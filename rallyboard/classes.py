"""Competition class ordering shared by every leaderboard."""

from __future__ import annotations

import unicodedata
from typing import Callable, Dict, Iterable, List, Optional, Tuple, TypeVar

T = TypeVar("T")

UNKNOWN_CLASS = "Teadmata klass"


def class_priority(class_name: Optional[str]) -> int:
    """Return the fixed display rank of a class: Pro, Semi, Junior, other."""
    lower = (class_name or "").lower()
    if "pro" in lower and "semi" not in lower:
        return 1
    if "semi" in lower:
        return 2
    if "junior" in lower or "juunior" in lower:
        return 3
    return 4


def _collation_key(name: str) -> str:
    # Case- and accent-insensitive: "Ähtri" sorts with "ahtri".
    decomposed = unicodedata.normalize("NFKD", name.casefold())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def class_sort_key(class_name: Optional[str]) -> Tuple[int, str, str]:
    name = class_name or ""
    return (class_priority(name), _collation_key(name), name)


def group_and_order_by_class(items: Iterable[T], class_name_of: Callable[[T], Optional[str]]) -> Dict[str, List[T]]:
    """Group ``items`` by class, with groups in class display order.

    Items keep their incoming order inside each group, so callers sort by
    position before grouping. Items without a class land in
    :data:`UNKNOWN_CLASS`.
    """
    groups: Dict[str, List[T]] = {}
    for item in items:
        groups.setdefault(class_name_of(item) or UNKNOWN_CLASS, []).append(item)
    return {name: groups[name] for name in sorted(groups, key=class_sort_key)}


__all__ = [
    "UNKNOWN_CLASS",
    "class_priority",
    "class_sort_key",
    "group_and_order_by_class",
]
