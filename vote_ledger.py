from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import Any, Iterable

logger = logging.getLogger(__name__)


@dataclass
class VoteRecord:
    total: int = 0
    topics: dict[str, int] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "topics": dict(self.topics)}


def _as_count(value: Any) -> int:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else 0
    if isinstance(value, str):
        try:
            n = float(value.strip())
        except ValueError:
            return 0
        return int(n) if math.isfinite(n) else 0
    return 0


def _is_pair(item: Any) -> bool:
    return isinstance(item, (list, tuple)) and len(item) == 2 and isinstance(item[0], str)


def _counts_from_ids(ids: Iterable[Any]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for topic_id in ids:
        if isinstance(topic_id, str):
            counts[topic_id] = counts.get(topic_id, 0) + 1
    return counts


def _counts_from_pairs(pairs: Iterable[Any]) -> dict[str, int]:
    counts: dict[str, int] = {}
    for item in pairs:
        if not _is_pair(item):
            continue
        topic_id, raw_count = item
        n = _as_count(raw_count)
        if n > 0:
            counts[topic_id] = counts.get(topic_id, 0) + n
    return counts


def _counts_from_mapping(mapping: dict) -> dict[str, int]:
    counts: dict[str, int] = {}
    for topic_id, raw_count in mapping.items():
        if not isinstance(topic_id, str):
            continue
        n = _as_count(raw_count)
        if n > 0:
            counts[topic_id] = n
    return counts


def _counts_from_topics_field(topics: Any) -> dict[str, int]:
    if isinstance(topics, dict):
        return _counts_from_mapping(topics)
    if isinstance(topics, (list, tuple)):
        if any(_is_pair(item) for item in topics):
            return _counts_from_pairs(topics)
        return _counts_from_ids(topics)
    if isinstance(topics, (set, frozenset)):
        return _counts_from_ids(topics)
    return {}


def normalize(raw: Any) -> VoteRecord:
    # Input is never modified.
    if raw is None:
        return VoteRecord()
    if isinstance(raw, VoteRecord):
        counts = _counts_from_mapping(raw.topics)
        stored_total: Any = raw.total
    elif isinstance(raw, (set, frozenset)):
        counts = _counts_from_ids(raw)
        stored_total = None
    elif isinstance(raw, (list, tuple)):
        counts = _counts_from_topics_field(raw)
        stored_total = None
    elif isinstance(raw, dict):
        if "topics" in raw:
            counts = _counts_from_topics_field(raw.get("topics"))
            stored_total = raw.get("total")
        else:
            counts = _counts_from_mapping({k: v for k, v in raw.items() if k != "total"})
            stored_total = raw.get("total")
    else:
        return VoteRecord()

    total = sum(counts.values())
    if stored_total is not None and _as_count(stored_total) != total:
        logger.warning("vote record total %r disagrees with topic counts (%d); using counts", stored_total, total)
    return VoteRecord(total=total, topics=counts)


class VoteLedger:
    # Records stay in their stored encoding until first touched.

    def __init__(self, records: dict[str, Any] | None = None):
        self._records: dict[str, Any] = dict(records or {})

    def __len__(self) -> int:
        return len(self._records)

    def __contains__(self, participant_id: object) -> bool:
        return participant_id in self._records

    def _store(self, participant_id: str, record: VoteRecord) -> VoteRecord:
        if record.total > 0:
            self._records[participant_id] = record
        else:
            self._records.pop(participant_id, None)
        return record

    def peek(self, participant_id: str | None) -> VoteRecord | None:
        if not participant_id or participant_id not in self._records:
            return None
        record = self._store(participant_id, normalize(self._records[participant_id]))
        return record if record.total > 0 else None

    def ensure(self, participant_id: str | None) -> VoteRecord:
        if not participant_id:
            return VoteRecord()
        return self.peek(participant_id) or VoteRecord()

    def cast_vote(self, participant_id: str, topic_id: str, limit: int) -> bool:
        if not participant_id or not topic_id:
            return False
        record = self.ensure(participant_id)
        if record.total >= limit:
            return False
        record.topics[topic_id] = record.topics.get(topic_id, 0) + 1
        record.total += 1
        self._store(participant_id, record)
        return True

    def retract_vote(self, participant_id: str, topic_id: str) -> bool:
        record = self.peek(participant_id)
        if record is None:
            return False
        current = record.topics.get(topic_id, 0)
        if current <= 0:
            return False
        if current == 1:
            del record.topics[topic_id]
        else:
            record.topics[topic_id] = current - 1
        record.total = max(0, record.total - 1)
        self._store(participant_id, record)
        return True

    def purge_topic(self, topic_id: str) -> dict[str, int]:
        removed: dict[str, int] = {}
        for participant_id in list(self._records.keys()):
            record = normalize(self._records[participant_id])
            count = record.topics.pop(topic_id, 0)
            if count > 0:
                record.total = max(0, record.total - count)
                removed[participant_id] = count
            self._store(participant_id, record)
        return removed

    def total_votes_cast(self) -> int:
        return sum(normalize(raw).total for raw in self._records.values())

    def counts_for(self, participant_id: str | None) -> dict[str, int]:
        record = self.peek(participant_id)
        return dict(record.topics) if record else {}

    def to_document(self) -> dict[str, dict[str, Any]]:
        out: dict[str, dict[str, Any]] = {}
        for participant_id, raw in self._records.items():
            record = normalize(raw)
            if record.total > 0:
                out[participant_id] = record.to_dict()
        return out
