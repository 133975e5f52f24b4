from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

from meeting_store import Meeting, MeetingStore, Topic, clamp, parse_int
from phase_timer import PhaseTimer
from schemas import Column, Phase
from settings import MAX_DURATION_MIN, MAX_VOTE_LIMIT, MIN_DURATION_MIN, MIN_VOTE_LIMIT, TOPIC_TITLE_MAX
from vote_ledger import VoteLedger, normalize

logger = logging.getLogger(__name__)


def _read_json_file(path: Path) -> Any:
    last_exc: Exception | None = None
    for enc in ("utf-8", "utf-8-sig"):
        try:
            return json.loads(path.read_text(encoding=enc))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            last_exc = exc
    if last_exc:
        raise last_exc
    raise RuntimeError(f"failed to read json: {path}")


def _ledger_entries(raw: Any) -> dict[str, Any]:
    # Current files key records by participant; older ones stored [pid, record] pairs.
    if isinstance(raw, dict):
        return {str(pid): value for pid, value in raw.items()}
    out: dict[str, Any] = {}
    if isinstance(raw, list):
        for item in raw:
            if isinstance(item, (list, tuple)) and len(item) == 2 and item[0]:
                out[str(item[0])] = item[1]
    return out


class PersistenceGateway:
    def __init__(self, state_file: Path | str):
        self.state_file = Path(state_file)

    @staticmethod
    def serialize_meeting(meeting: Meeting) -> dict[str, Any]:
        return {
            "id": meeting.id,
            "adminToken": meeting.admin_token,
            "topics": [
                {
                    "id": t.id,
                    "title": t.title,
                    "authorId": t.author_id,
                    "votes": t.votes,
                    "column": t.column.value,
                    "createdAt": t.created_at,
                }
                for t in meeting.topics
            ],
            "participants": sorted(meeting.participants),
            "votesByParticipant": meeting.ledger.to_document(),
            "durations": dict(meeting.durations),
            "maxVotesPerParticipant": meeting.max_votes_per_participant,
            "phase": meeting.phase.value if meeting.phase else None,
            "phaseEndsAt": meeting.phase_ends_at,
            "phasePaused": meeting.phase_paused,
            "phaseRemainingMs": meeting.phase_remaining_ms,
            "currentTopicId": meeting.current_topic_id,
            "createdAt": meeting.created_at,
        }

    def snapshot_all(self, store: MeetingStore) -> dict[str, dict[str, Any]]:
        return {meeting.id: self.serialize_meeting(meeting) for meeting in store.all()}

    def save(self, document: dict[str, Any]) -> bool:
        tmp_name: str | None = None
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            payload = json.dumps(document, ensure_ascii=False)
            fd, tmp_name = tempfile.mkstemp(prefix=".state-", suffix=".json", dir=str(self.state_file.parent))
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self.state_file)
            tmp_name = None
            return True
        except (OSError, TypeError, ValueError):
            logger.exception("persist failed: %s", self.state_file)
            return False
        finally:
            if tmp_name is not None:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass

    def persist(self, store: MeetingStore) -> bool:
        return self.save(self.snapshot_all(store))

    def load(self) -> dict[str, Any]:
        if not self.state_file.exists():
            return {}
        try:
            payload = _read_json_file(self.state_file)
        except (OSError, UnicodeDecodeError, json.JSONDecodeError):
            logger.exception("restore failed: unreadable state file %s", self.state_file)
            return {}
        if not isinstance(payload, dict):
            logger.error("restore failed: state file %s is not an object", self.state_file)
            return {}
        return payload

    def _restore_topics(self, raw_topics: Any, now: int) -> list[Topic]:
        topics: list[Topic] = []
        seen: set[str] = set()
        for raw in raw_topics or []:
            if not isinstance(raw, dict) or not raw.get("id"):
                continue
            topic_id = str(raw["id"])
            if topic_id in seen:
                continue
            seen.add(topic_id)
            try:
                column = Column(raw.get("column") or Column.TODO.value)
            except ValueError:
                column = Column.TODO
            topics.append(
                Topic(
                    id=topic_id,
                    title=str(raw.get("title") or "")[:TOPIC_TITLE_MAX],
                    author_id=str(raw.get("authorId") or ""),
                    column=column,
                    created_at=parse_int(raw.get("createdAt")) or now,
                )
            )
        return topics

    def restore_meeting(self, meeting_id: str, raw: dict[str, Any], store: MeetingStore) -> Meeting:
        now = store.clock()
        meeting = store.new_meeting(str(raw.get("id") or meeting_id).upper(), str(raw.get("adminToken") or ""))
        meeting.topics = self._restore_topics(raw.get("topics"), now)
        meeting.participants = {str(p) for p in (raw.get("participants") or []) if p}
        meeting.created_at = parse_int(raw.get("createdAt")) or now

        durations = raw.get("durations") if isinstance(raw.get("durations"), dict) else {}
        for key in meeting.durations:
            n = parse_int(durations.get(key))
            if n is not None:
                meeting.durations[key] = clamp(n, MIN_DURATION_MIN, MAX_DURATION_MIN)
        limit = parse_int(raw.get("maxVotesPerParticipant"))
        if limit:
            meeting.max_votes_per_participant = clamp(limit, MIN_VOTE_LIMIT, MAX_VOTE_LIMIT)

        # Ledger is the source of truth; topic voters and totals are derived from it.
        known = {t.id for t in meeting.topics}
        records: dict[str, Any] = {}
        for pid, value in _ledger_entries(raw.get("votesByParticipant")).items():
            record = normalize(value)
            stale = [tid for tid in record.topics if tid not in known]
            for tid in stale:
                record.total -= record.topics.pop(tid)
            if record.total > 0:
                records[pid] = record
        meeting.ledger = VoteLedger(records)
        by_id = {t.id: t for t in meeting.topics}
        for pid, record in records.items():
            for tid, count in record.topics.items():
                topic = by_id[tid]
                topic.voters[pid] = count
                topic.votes += count

        try:
            meeting.phase = Phase(raw["phase"]) if raw.get("phase") else None
        except ValueError:
            meeting.phase = None
        meeting.phase_ends_at = parse_int(raw.get("phaseEndsAt"))
        meeting.phase_paused = bool(raw.get("phasePaused"))
        meeting.phase_remaining_ms = parse_int(raw.get("phaseRemainingMs"))

        current = raw.get("currentTopicId")
        meeting.current_topic_id = str(current) if current and str(current) in known else None
        return meeting

    def restore(self, document: dict[str, Any], store: MeetingStore, timer: PhaseTimer) -> list[Meeting]:
        restored: list[Meeting] = []
        for meeting_id, raw in (document or {}).items():
            if not isinstance(raw, dict):
                logger.warning("skipping malformed meeting entry %r", meeting_id)
                continue
            try:
                meeting = self.restore_meeting(meeting_id, raw, store)
            except (TypeError, ValueError, KeyError, AttributeError):
                logger.exception("skipping meeting %r: could not restore", meeting_id)
                continue
            if not meeting.admin_token:
                logger.warning("skipping meeting %r: missing admin token", meeting_id)
                continue
            store.put(meeting)
            timer.reconcile(meeting)
            restored.append(meeting)
        logger.info("restored %d meeting(s) from %s", len(restored), self.state_file)
        return restored

    def load_into(self, store: MeetingStore, timer: PhaseTimer) -> list[Meeting]:
        return self.restore(self.load(), store, timer)
