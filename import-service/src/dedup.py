# import-service/src/dedup.py
from typing import Set

from models import TargetEntity


def composite_key(entity: TargetEntity) -> str:
    parts = ((p or "").strip().casefold() for p in entity.identity())
    return f"{entity.collection.value}|" + "|".join(parts)


class Deduplicator:
    """Remembers composite keys for one run only."""

    def __init__(self) -> None:
        self._seen: Set[str] = set()

    def admit(self, entity: TargetEntity) -> bool:
        key = composite_key(entity)
        if key in self._seen:
            return False
        self._seen.add(key)
        return True

    def __len__(self) -> int:
        return len(self._seen)

    def clear(self) -> None:
        self._seen.clear()
