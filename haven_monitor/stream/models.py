import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

MEDIA_IMAGE = "image"
MEDIA_VIDEO = "video"


class MalformedRecord(ValueError):
    """Raised when an inbound payload does not decode into a Record."""


@dataclass(frozen=True)
class Record:
    """A relay event. Identity is `id`."""
    id: str
    author_key: str
    created_at: int
    kind: int
    tags: Tuple[Tuple[str, ...], ...]
    content: str
    sig: str = ""

    @property
    def created_at_date(self) -> datetime:
        return datetime.fromtimestamp(self.created_at, tz=timezone.utc)

    def first_tag(self, name: str) -> Optional[Tuple[str, ...]]:
        for tag in self.tags:
            if len(tag) >= 2 and tag[0] == name:
                return tag
        return None

    @classmethod
    def from_payload(cls, payload: Any) -> "Record":
        """
        Decodes the third element of an EVENT message.

        :param payload: The decoded JSON object.
        :raises MalformedRecord: If a required field is missing or has the wrong type.
        """
        if not isinstance(payload, dict):
            raise MalformedRecord("event payload is not an object")
        try:
            record_id = payload["id"]
            author_key = payload["pubkey"]
            created_at = payload["created_at"]
            kind = payload["kind"]
            raw_tags = payload.get("tags", [])
            content = payload.get("content", "")
        except KeyError as e:
            raise MalformedRecord(f"missing field {e}") from e

        if not isinstance(record_id, str) or not record_id:
            raise MalformedRecord("id must be a non-empty string")
        if not isinstance(author_key, str) or not isinstance(content, str):
            raise MalformedRecord("pubkey and content must be strings")
        if isinstance(created_at, bool) or not isinstance(created_at, int):
            raise MalformedRecord("created_at must be an integer")
        if isinstance(kind, bool) or not isinstance(kind, int):
            raise MalformedRecord("kind must be an integer")
        if not isinstance(raw_tags, list) or not all(
            isinstance(tag, list) and all(isinstance(v, str) for v in tag) for tag in raw_tags
        ):
            raise MalformedRecord("tags must be a list of string lists")

        sig = payload.get("sig", "")
        return cls(
            id=record_id,
            author_key=author_key,
            created_at=created_at,
            kind=kind,
            tags=tuple(tuple(tag) for tag in raw_tags),
            content=content,
            sig=sig if isinstance(sig, str) else "",
        )


@dataclass(frozen=True)
class MediaReference:
    url: str
    kind: str
    added_at: datetime
    id: str = field(default_factory=lambda: uuid.uuid4().hex)


@dataclass
class Subscription:
    """One endpoint connection owned by the multiplexer."""
    endpoint_url: str
    subscription_id: Optional[str] = None
    connection: Any = None
    connected: bool = False
    messages_received: int = 0


@dataclass(frozen=True)
class ChangeBatch:
    """
    What a listener receives on each throttled publication.

    `new_records`/`new_media` hold what arrived since the previous batch;
    `records` is the ordered view and `media` is deduplicated by url.
    """
    new_records: Tuple[Record, ...]
    new_media: Tuple[MediaReference, ...]
    records: Tuple[Record, ...]
    media: Tuple[MediaReference, ...]


def dedupe_media(items: List[MediaReference]) -> Tuple[MediaReference, ...]:
    """Keeps the first occurrence of every url, preserving order."""
    seen: Dict[str, None] = {}
    unique: List[MediaReference] = []
    for item in items:
        if item.url in seen:
            continue
        seen[item.url] = None
        unique.append(item)
    return tuple(unique)
