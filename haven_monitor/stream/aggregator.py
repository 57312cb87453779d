import re
import json
import logging
from collections import OrderedDict
from typing import Callable, List, Optional, Tuple

from haven_monitor.local.config import effective_settings as config
from haven_monitor.stream.models import (
    MEDIA_IMAGE, MEDIA_VIDEO, ChangeBatch, MalformedRecord, MediaReference, Record, dedupe_media,
)
from haven_monitor.stream.throttle import Throttle

log = logging.getLogger(__name__)

MEDIA_URL_PATTERN = re.compile(
    r"(https?://\S+?\.(?:jpg|jpeg|png|gif|webp|mp4|mov|webm)(?:\?\S+)?)"
    r"|(https?://\S+?/blossom/[a-f0-9]{64})",
    re.IGNORECASE,
)
_VIDEO_EXTENSIONS = (".mp4", ".mov", ".webm")


def media_kind(url: str, mime_type: Optional[str] = None) -> str:
    """Classifies a url as video or image, preferring an explicit mime type."""
    if mime_type:
        return MEDIA_VIDEO if mime_type.lower().startswith("video/") else MEDIA_IMAGE
    path = url.split("?", 1)[0].lower()
    return MEDIA_VIDEO if path.endswith(_VIDEO_EXTENSIONS) else MEDIA_IMAGE


def extract_media_urls(content: str) -> List[str]:
    """Returns image/video urls embedded in free text, in order of appearance."""
    return [match.group(0) for match in MEDIA_URL_PATTERN.finditer(content)]


class SeenIds:
    """
    Identities already processed.

    With `limit` 0 nothing is ever forgotten. A positive limit evicts the
    oldest ids first.
    """

    def __init__(self, limit: int = 0) -> None:
        self.limit = limit
        self._ids: "OrderedDict[str, None]" = OrderedDict()

    def add(self, record_id: str) -> bool:
        """Returns False if the id was already present."""
        if record_id in self._ids:
            return False
        self._ids[record_id] = None
        if self.limit > 0 and len(self._ids) > self.limit:
            self._ids.popitem(last=False)
        return True

    def __contains__(self, record_id: str) -> bool:
        return record_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


class EventAggregator:
    """
    Deduplicates inbound records and keeps the bounded, ordered view.

    `on_message` must be called from a single consumer on the event loop; the
    multiplexer guarantees that. Listeners are notified through a throttle,
    never once per record.
    """

    def __init__(
        self,
        listener: Optional[Callable[[ChangeBatch], None]] = None,
        *,
        retention: Optional[int] = None,
        resort_every: Optional[int] = None,
        throttle_interval: Optional[float] = None,
        seen_limit: Optional[int] = None,
        note_kind: int = config.NOTE_KIND,
        file_metadata_kind: int = config.FILE_METADATA_KIND,
    ) -> None:
        self.listeners: List[Callable[[ChangeBatch], None]] = [listener] if listener else []
        self.retention = config.RECORD_RETENTION if retention is None else retention
        self.resort_every = config.RESORT_EVERY if resort_every is None else resort_every
        self.note_kind = note_kind
        self.file_metadata_kind = file_metadata_kind

        self.records: List[Record] = []
        self.media: List[MediaReference] = []
        self.seen = SeenIds(config.SEEN_IDS_LIMIT if seen_limit is None else seen_limit)
        self._new_records: List[Record] = []
        self._new_media: List[MediaReference] = []
        self._throttle = Throttle(
            config.NOTIFY_THROTTLE_SECONDS if throttle_interval is None else throttle_interval,
            self._publish,
        )

    def add_listener(self, listener: Callable[[ChangeBatch], None]) -> None:
        self.listeners.append(listener)

    #* --- Ingestion ---
    def on_message(self, raw: str) -> Optional[Record]:
        """
        Handles one raw message from any connection.

        Only `["EVENT", <subscription id>, <record>]` is consumed; everything
        else, including malformed JSON, is dropped.

        :return: The record if it was new, else None.
        """
        try:
            message = json.loads(raw)
        except (TypeError, ValueError):
            log.debug("Dropping message that is not valid JSON.")
            return None
        if not isinstance(message, list) or len(message) < 3 or message[0] != "EVENT":
            return None

        try:
            record = Record.from_payload(message[2])
        except MalformedRecord as e:
            log.debug(f"Dropping malformed event: {e}")
            return None

        if not self.seen.add(record.id):
            return None
        self._ingest(record)
        return record

    def _extract_media(self, record: Record) -> List[MediaReference]:
        added_at = record.created_at_date
        if record.kind == self.file_metadata_kind:
            url_tag = record.first_tag("url")
            if url_tag is None:
                return []
            mime_tag = record.first_tag("m")
            mime = mime_tag[1] if mime_tag else None
            return [MediaReference(url=url_tag[1], kind=media_kind(url_tag[1], mime), added_at=added_at)]
        return [
            MediaReference(url=url, kind=media_kind(url), added_at=added_at)
            for url in extract_media_urls(record.content)
        ]

    def _ingest(self, record: Record) -> None:
        items = self._extract_media(record)

        if record.kind == self.note_kind:
            self.records.append(record)
            self._new_records.append(record)
        if items:
            self.media.extend(items)
            self._new_media.extend(items)

        if (self.resort_every and len(self.records) % self.resort_every == 0) or items:
            self._resort()

        self._throttle.trigger()

    def _resort(self) -> None:
        self.records.sort(key=lambda r: r.created_at, reverse=True)
        if len(self.records) > self.retention:
            del self.records[self.retention:]
        # Media shares the record bound, newest first
        self.media.sort(key=lambda m: m.added_at, reverse=True)
        if len(self.media) > self.retention:
            del self.media[self.retention:]

    #* --- Publication ---
    def snapshot(self) -> Tuple[Tuple[Record, ...], Tuple[MediaReference, ...]]:
        """The current ordered records and url-deduplicated media."""
        return tuple(self.records), dedupe_media(self.media)

    def _publish(self) -> None:
        records, media = self.snapshot()
        batch = ChangeBatch(
            new_records=tuple(self._new_records),
            new_media=tuple(self._new_media),
            records=records,
            media=media,
        )
        self._new_records.clear()
        self._new_media.clear()
        for listener in list(self.listeners):
            try:
                listener(batch)
            except Exception as e:
                log.error(f"Aggregate listener failed: {e}", exc_info=True)

    def close(self) -> None:
        self._throttle.close()
