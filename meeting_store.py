from __future__ import annotations

import hmac
import logging
import math
import re
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from schemas import ClientView, Column, Durations, Phase, Totals, TopicView, VoteConfig
from settings import (
    MAX_DURATION_MIN,
    MAX_VOTE_LIMIT,
    MIN_DURATION_MIN,
    MIN_VOTE_LIMIT,
    TOPIC_TITLE_MAX,
    Settings,
)
from vote_ledger import VoteLedger

logger = logging.getLogger(__name__)

MEETING_ID_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZ"
MEETING_ID_LENGTH = 6
MEETING_ID_MIN = 4
MEETING_ID_MAX = 12
TOPIC_ID_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
TOPIC_ID_LENGTH = 10
ADMIN_TOKEN_BYTES = 18
RANDOM_ID_ATTEMPTS = 16

Clock = Callable[[], int]


def now_ms() -> int:
    return int(time.time() * 1000)


def _random_id(alphabet: str, length: int) -> str:
    return "".join(secrets.choice(alphabet) for _ in range(length))


def new_topic_id() -> str:
    return _random_id(TOPIC_ID_ALPHABET, TOPIC_ID_LENGTH)


def new_participant_id() -> str:
    return _random_id(TOPIC_ID_ALPHABET, TOPIC_ID_LENGTH)


def new_admin_token() -> str:
    return secrets.token_urlsafe(ADMIN_TOKEN_BYTES)


def normalize_meeting_id(raw: Any) -> str:
    return re.sub(r"[^A-Z0-9]", "", str(raw or "").upper())


def parse_int(value: Any) -> int | None:
    """Best-effort integer parse: ``"7"``, ``7.9`` and ``"7 min"`` all give 7."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    m = re.match(r"\s*([+-]?\d+)", str(value))
    return int(m.group(1)) if m else None


def clamp(value: int, low: int, high: int) -> int:
    return max(low, min(high, value))


class MeetingStoreError(ValueError):
    """Caller-visible rejection of a meeting lifecycle request."""


class InvalidMeetingCodeError(MeetingStoreError):
    def __init__(self, code: str = ""):
        super().__init__(f"Code must be {MEETING_ID_MIN}-{MEETING_ID_MAX} letters/numbers")
        self.code = code


class MeetingCodeTakenError(MeetingStoreError):
    def __init__(self, code: str):
        super().__init__("Meeting code already exists")
        self.code = code


@dataclass
class Topic:
    id: str
    title: str
    author_id: str = ""
    votes: int = 0
    voters: dict[str, int] = field(default_factory=dict)
    column: Column = Column.TODO
    created_at: int = 0


@dataclass
class Meeting:
    id: str
    admin_token: str
    durations: dict[str, int]
    max_votes_per_participant: int
    topics: list[Topic] = field(default_factory=list)
    participants: set[str] = field(default_factory=set)
    ledger: VoteLedger = field(default_factory=VoteLedger)
    phase: Optional[Phase] = None
    phase_ends_at: Optional[int] = None
    phase_paused: bool = False
    phase_remaining_ms: Optional[int] = None
    current_topic_id: Optional[str] = None
    created_at: int = 0

    def find_topic(self, topic_id: Any) -> Topic | None:
        if not topic_id:
            return None
        for topic in self.topics:
            if topic.id == topic_id:
                return topic
        return None

    @property
    def is_running(self) -> bool:
        return self.phase is not None and not self.phase_paused

    @property
    def is_paused(self) -> bool:
        return self.phase is not None and self.phase_paused


class MeetingStore:
    def __init__(self, settings: Settings | None = None, clock: Clock = now_ms):
        self.settings = settings or Settings()
        self.clock = clock
        self._meetings: dict[str, Meeting] = {}

    def __len__(self) -> int:
        return len(self._meetings)

    def __contains__(self, meeting_id: object) -> bool:
        return normalize_meeting_id(meeting_id) in self._meetings

    def all(self) -> list[Meeting]:
        return list(self._meetings.values())

    def get(self, meeting_id: Any) -> Meeting | None:
        return self._meetings.get(str(meeting_id or "").upper())

    def put(self, meeting: Meeting) -> None:
        self._meetings[meeting.id] = meeting

    def new_meeting(self, meeting_id: str, admin_token: str) -> Meeting:
        return Meeting(
            id=meeting_id,
            admin_token=admin_token,
            durations=self.settings.default_durations(),
            max_votes_per_participant=self.settings.default_max_votes,
            created_at=self.clock(),
        )

    def create(self, requested_id: Any = None) -> tuple[Meeting, str]:
        if requested_id is not None:
            meeting_id = normalize_meeting_id(requested_id)
            if not meeting_id or len(meeting_id) < MEETING_ID_MIN or len(meeting_id) > MEETING_ID_MAX:
                raise InvalidMeetingCodeError(meeting_id)
            if meeting_id in self._meetings:
                raise MeetingCodeTakenError(meeting_id)
        else:
            meeting_id = _random_id(MEETING_ID_ALPHABET, MEETING_ID_LENGTH)
            for _ in range(RANDOM_ID_ATTEMPTS):
                if meeting_id not in self._meetings:
                    break
                meeting_id = _random_id(MEETING_ID_ALPHABET, MEETING_ID_LENGTH)
            else:
                raise MeetingCodeTakenError(meeting_id)
        admin_token = new_admin_token()
        meeting = self.new_meeting(meeting_id, admin_token)
        self._meetings[meeting_id] = meeting
        logger.info("meeting %s created", meeting_id)
        return meeting, admin_token

    @staticmethod
    def is_admin(meeting: Meeting, admin_token: Any) -> bool:
        if not admin_token or not isinstance(admin_token, str):
            return False
        return hmac.compare_digest(admin_token.encode("utf-8"), meeting.admin_token.encode("utf-8"))

    def vote_limit(self, meeting: Meeting) -> int:
        return meeting.max_votes_per_participant or self.settings.default_max_votes

    def add_topic(self, meeting: Meeting, title: Any, author_id: Any) -> Topic | None:
        if not title or not author_id:
            return None
        if meeting.phase is not None and meeting.phase != Phase.CREATE:
            return None
        topic_id = new_topic_id()
        while meeting.find_topic(topic_id) is not None:
            topic_id = new_topic_id()
        topic = Topic(
            id=topic_id,
            title=str(title)[:TOPIC_TITLE_MAX],
            author_id=str(author_id),
            created_at=self.clock(),
        )
        meeting.topics.append(topic)
        return topic

    def move_topic(self, meeting: Meeting, topic_id: Any, column: Any, admin_token: Any) -> bool:
        if not self.is_admin(meeting, admin_token):
            return False
        try:
            target = Column(column)
        except ValueError:
            return False
        topic = meeting.find_topic(topic_id)
        if topic is None:
            return False
        topic.column = target
        if target == Column.DOING:
            meeting.current_topic_id = topic.id
        elif meeting.current_topic_id == topic.id:
            meeting.current_topic_id = None
        return True

    def delete_topic(self, meeting: Meeting, topic_id: Any, admin_token: Any) -> bool:
        if not self.is_admin(meeting, admin_token):
            return False
        topic = meeting.find_topic(topic_id)
        if topic is None:
            return False
        meeting.topics = [t for t in meeting.topics if t.id != topic.id]
        meeting.ledger.purge_topic(topic.id)
        if meeting.current_topic_id == topic.id:
            meeting.current_topic_id = None
        return True

    def cast_vote(self, meeting: Meeting, participant_id: Any, topic_id: Any) -> bool:
        if meeting.phase != Phase.VOTING or not participant_id:
            return False
        topic = meeting.find_topic(topic_id)
        if topic is None:
            return False
        pid = str(participant_id)
        if not meeting.ledger.cast_vote(pid, topic.id, self.vote_limit(meeting)):
            return False
        topic.votes += 1
        topic.voters[pid] = topic.voters.get(pid, 0) + 1
        return True

    def retract_vote(self, meeting: Meeting, participant_id: Any, topic_id: Any) -> bool:
        if not participant_id:
            return False
        topic = meeting.find_topic(topic_id)
        if topic is None:
            return False
        pid = str(participant_id)
        if not meeting.ledger.retract_vote(pid, topic.id):
            return False
        topic.votes = max(0, topic.votes - 1)
        remaining = topic.voters.get(pid, 0) - 1
        if remaining > 0:
            topic.voters[pid] = remaining
        else:
            topic.voters.pop(pid, None)
        return True

    def set_durations(
        self,
        meeting: Meeting,
        admin_token: Any,
        create: Any = None,
        voting: Any = None,
        discuss: Any = None,
    ) -> bool:
        if not self.is_admin(meeting, admin_token):
            return False
        for key, raw in ((Phase.CREATE.value, create), (Phase.VOTING.value, voting), (Phase.DISCUSS.value, discuss)):
            if raw is None:
                continue
            n = parse_int(raw)
            if n is not None:
                meeting.durations[key] = clamp(n, MIN_DURATION_MIN, MAX_DURATION_MIN)
        return True

    def set_vote_limit(self, meeting: Meeting, admin_token: Any, max_votes: Any) -> bool:
        if not self.is_admin(meeting, admin_token):
            return False
        n = parse_int(max_votes)
        if n is None:
            return False
        meeting.max_votes_per_participant = clamp(n, MIN_VOTE_LIMIT, MAX_VOTE_LIMIT)
        return True

    def snapshot(self, meeting: Meeting) -> ClientView:
        return ClientView(
            id=meeting.id,
            topics=[
                TopicView(id=t.id, title=t.title, votes=t.votes, column=t.column, created_at=t.created_at)
                for t in meeting.topics
            ],
            totals=Totals(participants=len(meeting.participants), votes_cast=meeting.ledger.total_votes_cast()),
            config=VoteConfig(max_votes_per_participant=self.vote_limit(meeting)),
            phase=meeting.phase,
            phase_ends_at=meeting.phase_ends_at,
            phase_paused=meeting.phase_paused,
            phase_remaining_ms=meeting.phase_remaining_ms,
            now=self.clock(),
            durations=Durations(**meeting.durations),
            current_topic_id=meeting.current_topic_id,
        )
