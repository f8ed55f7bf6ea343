"""Persistence for knowledge source records."""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Iterable, List, Protocol

from .models import KnowledgeSource

logger = logging.getLogger(__name__)


class SourceRepository(Protocol):
    """Storage interface for knowledge source metadata and content."""

    def list(self) -> List[KnowledgeSource]: ...

    def get(self, source_id: str) -> KnowledgeSource | None: ...

    def save(self, source: KnowledgeSource) -> None: ...

    def save_many(self, sources: Iterable[KnowledgeSource]) -> None: ...

    def delete(self, source_id: str) -> bool: ...


class InMemorySourceRepository:
    """Volatile repository used by tests and the bulk-import dry runs."""

    def __init__(self) -> None:
        self._items: dict[str, KnowledgeSource] = {}
        self._lock = threading.Lock()

    def list(self) -> List[KnowledgeSource]:
        with self._lock:
            return list(self._items.values())

    def get(self, source_id: str) -> KnowledgeSource | None:
        with self._lock:
            return self._items.get(source_id)

    def save(self, source: KnowledgeSource) -> None:
        with self._lock:
            self._items[source.id] = source

    def save_many(self, sources: Iterable[KnowledgeSource]) -> None:
        with self._lock:
            for source in sources:
                self._items[source.id] = source

    def delete(self, source_id: str) -> bool:
        with self._lock:
            return self._items.pop(source_id, None) is not None


class JsonSourceRepository:
    """File-based repository storing every source in one JSON document."""

    def __init__(self, path: Path) -> None:
        self._path = path
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def list(self) -> List[KnowledgeSource]:
        with self._lock:
            return [KnowledgeSource.from_dict(item) for item in self._read()]

    def get(self, source_id: str) -> KnowledgeSource | None:
        with self._lock:
            for item in self._read():
                if item.get("id") == source_id:
                    return KnowledgeSource.from_dict(item)
        return None

    def save(self, source: KnowledgeSource) -> None:
        self.save_many([source])

    def save_many(self, sources: Iterable[KnowledgeSource]) -> None:
        with self._lock:
            records = {item["id"]: item for item in self._read()}
            saved = 0
            for source in sources:
                records[source.id] = source.to_dict()
                saved += 1
            self._write(list(records.values()))
        logger.debug("sources.saved count=%s path=%s", saved, self._path)

    def delete(self, source_id: str) -> bool:
        with self._lock:
            records = self._read()
            remaining = [item for item in records if item.get("id") != source_id]
            if len(remaining) == len(records):
                return False
            self._write(remaining)
        logger.info("sources.removed id=%s", source_id)
        return True

    def _read(self) -> list[dict]:
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as handle:
            data = json.load(handle)
        return data.get("sources", []) if isinstance(data, dict) else []

    def _write(self, records: list[dict]) -> None:
        tmp_path = self._path.with_suffix(".tmp")
        with tmp_path.open("w", encoding="utf-8") as handle:
            json.dump({"sources": records}, handle, indent=2, ensure_ascii=False)
        tmp_path.replace(self._path)


__all__ = ["SourceRepository", "InMemorySourceRepository", "JsonSourceRepository"]
