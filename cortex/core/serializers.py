"""Export/import operations for cortex.

Bulk read and write of the whole memory set, outside the normal decay and
session semantics: exported records carry stored base confidence,
timestamps and access counts, and importing restores them as they were.
"""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Union

from cortex.kinds import parse_kind
from cortex.protocols import ValidationFailure
from cortex.types import (
    CausalLink,
    Importance,
    Memory,
    MemoryFilter,
    ParseDatetimeError,
    Relation,
    parse_datetime,
    to_iso,
)

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = 1


def memory_to_dict(memory: Memory) -> Dict[str, Any]:
    return {
        "id": memory.id,
        "kind": memory.kind.value,
        "summary": memory.summary,
        "knowledge": memory.knowledge,
        "base_confidence": memory.base_confidence,
        "importance": memory.importance.value,
        "tags": sorted(memory.tags),
        "created_at": to_iso(memory.created_at) if memory.created_at else None,
        "updated_at": to_iso(memory.updated_at) if memory.updated_at else None,
        "last_accessed_at": to_iso(memory.last_accessed_at) if memory.last_accessed_at else None,
        "access_count": memory.access_count,
        "soft_deleted": memory.soft_deleted,
    }


def link_to_dict(link: CausalLink) -> Dict[str, Any]:
    return {
        "source_id": link.source_id,
        "target_id": link.target_id,
        "relation": link.relation.value,
        "weight": link.weight,
        "created_at": to_iso(link.created_at) if link.created_at else None,
    }


def _timestamp(data: Mapping[str, Any], key: str) -> Optional[datetime]:
    try:
        return parse_datetime(data.get(key), strict=True)
    except ParseDatetimeError:
        raise ValidationFailure(
            f"Invalid timestamp in '{key}': {data.get(key)!r}", field=key
        ) from None


def memory_from_dict(data: Mapping[str, Any]) -> Memory:
    """Rebuild a Memory from an exported record.

    Raises:
        InvalidKindError: unknown kind
        ValidationFailure: missing id or bad field
    """
    if not isinstance(data, Mapping):
        raise ValidationFailure("memory record must be an object", field="memories")
    memory_id = data.get("id")
    if not isinstance(memory_id, str) or not memory_id.strip():
        raise ValidationFailure("memory record is missing an id", field="id")
    try:
        importance = Importance(data.get("importance") or Importance.NORMAL.value)
    except ValueError:
        raise ValidationFailure(
            f"Invalid importance: {data.get('importance')!r}", field="importance"
        ) from None
    access_count = data.get("access_count") or 0
    if not isinstance(access_count, int) or access_count < 0:
        raise ValidationFailure("access_count must be a non-negative integer", field="access_count")

    return Memory(
        id=memory_id,
        kind=parse_kind(data.get("kind")),
        summary=data.get("summary") or "",
        knowledge=data.get("knowledge") or {},
        base_confidence=data.get("base_confidence", 1.0),
        importance=importance,
        tags=set(data.get("tags") or []),
        created_at=_timestamp(data, "created_at"),
        updated_at=_timestamp(data, "updated_at"),
        last_accessed_at=_timestamp(data, "last_accessed_at"),
        access_count=access_count,
        soft_deleted=bool(data.get("soft_deleted", False)),
    )


class SerializersMixin:
    """Export/import operations."""

    def export_memories(self, include_deleted: bool = False) -> Dict[str, Any]:
        """Export every memory and the links between exported memories."""
        memories = list(self._storage.iter_memories(MemoryFilter(include_deleted=include_deleted)))
        ids = {m.id for m in memories}
        links = [
            link
            for link in self._storage.all_links()
            if link.source_id in ids and link.target_id in ids
        ]
        logger.info(f"Exporting {len(memories)} memories and {len(links)} links")
        return {
            "version": EXPORT_FORMAT_VERSION,
            "stack_id": self.stack_id,
            "exported_at": to_iso(self._now()),
            "memories": [memory_to_dict(m) for m in memories],
            "links": [link_to_dict(link) for link in links],
        }

    def import_memories(self, data: Mapping[str, Any], skip_existing: bool = True) -> Dict[str, Any]:
        """Import an export produced by ``export_memories``.

        Ids, timestamps, base confidence and access counts are preserved.
        Invalid records are reported, not stored. Existing ids are skipped;
        with ``skip_existing=False`` they are overwritten instead.

        Returns:
            ``{"imported", "updated", "skipped", "links_imported", "errors"}``
        """
        if not isinstance(data, Mapping) or not isinstance(data.get("memories"), list):
            raise ValidationFailure("import data must contain a 'memories' list", field="memories")
        version = data.get("version", EXPORT_FORMAT_VERSION)
        if version != EXPORT_FORMAT_VERSION:
            raise ValidationFailure(f"Unsupported export version: {version!r}", field="version")

        result: Dict[str, Any] = {
            "imported": 0,
            "updated": 0,
            "skipped": 0,
            "links_imported": 0,
            "errors": [],
        }
        errors: List[Dict[str, Any]] = result["errors"]

        for index, record in enumerate(data["memories"]):
            try:
                memory = memory_from_dict(record)
                if self._storage.import_memory(memory):
                    result["imported"] += 1
                elif skip_existing:
                    result["skipped"] += 1
                else:
                    self._storage.replace_imported(memory)
                    result["updated"] += 1
            except ValueError as e:
                record_id = record.get("id") if isinstance(record, Mapping) else None
                errors.append({"index": index, "id": record_id, "error": str(e)})
                logger.warning(f"Skipping invalid memory record {index}: {e}")

        for index, record in enumerate(data.get("links") or []):
            try:
                link = CausalLink(
                    source_id=record["source_id"],
                    target_id=record["target_id"],
                    relation=Relation(record["relation"]),
                    weight=float(record.get("weight", 1.0)),
                    created_at=_timestamp(record, "created_at"),
                )
                for mid in (link.source_id, link.target_id):
                    if self._storage.get(mid) is None:
                        raise ValidationFailure(f"Linked memory not found: {mid}", field="links")
                self._storage.add_link(link)
                result["links_imported"] += 1
            except (ValueError, KeyError, TypeError, AttributeError) as e:
                errors.append({"index": index, "link": True, "error": str(e)})
                logger.warning(f"Skipping invalid link record {index}: {e}")

        logger.info(
            f"Imported {result['imported']} memories ({result['updated']} updated, "
            f"{result['skipped']} skipped, {len(errors)} errors), "
            f"{result['links_imported']} links"
        )
        return result

    def export_to_file(self, path: Union[str, Path], include_deleted: bool = False) -> Path:
        path = Path(path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(self.export_memories(include_deleted), indent=2, default=str),
            encoding="utf-8",
        )
        return path

    def import_from_file(self, path: Union[str, Path], skip_existing: bool = True) -> Dict[str, Any]:
        path = Path(path).expanduser()
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise ValidationFailure(f"{path} is not valid JSON: {e}", field="path") from e
        return self.import_memories(data, skip_existing=skip_existing)
