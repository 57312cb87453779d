"""
Classification of the worker's free-form output.

The worker's log format is not versioned, so every heuristic that reads it
lives here. `classify` turns one line into zero or more `Signal` values; the
supervisor only ever consumes signals and never inspects text itself.
Unknown lines produce no signals.
"""
import re
import string
from dataclasses import dataclass
from typing import List, Optional, Union

LEVEL_INFO = "INFO"
LEVEL_WARN = "WARN"
LEVEL_ERROR = "ERROR"

_DIGIT_RUN = re.compile(r"\d+")
_MAX_COUNT_DIGITS = 10  # longer runs are hashes or identifiers

_SINGLE_EVENT_MARKERS = (
    "new note", "new reaction", "new zap", "new encrypted message",
    "new gift-wrapped", "new repost",
)
_CONNECT_MARKERS = ("accepted connection", "new connection", "WS connect")
_DISCONNECT_MARKERS = ("connection closed", "WS disconnect", "disconnected")
_LOCK_MARKERS = ("Cannot acquire directory lock", "Another process is using this Badger database")
_WOT_MARKERS = ("wot", "pubkeys", "analysed", "network size")


#* --- Signals ---
@dataclass(frozen=True)
class BootPhase:
    description: str


@dataclass(frozen=True)
class InboxReady:
    """The worker is serving its inbox subscription; booting is over."""


@dataclass(frozen=True)
class ImportConnected:
    pass


@dataclass(frozen=True)
class ImportProgressHint:
    date_label: str


@dataclass(frozen=True)
class ImportRangeFound:
    from_label: Optional[str]


@dataclass(frozen=True)
class ImportTaggedStarted:
    pass


@dataclass(frozen=True)
class ImportTaggedDone:
    count: Optional[int]


@dataclass(frozen=True)
class ImportComplete:
    pass


@dataclass(frozen=True)
class ImportNoneFound:
    date_label: Optional[str]
    for_label: Optional[str] = None


@dataclass(frozen=True)
class EventCountDelta:
    n: int


@dataclass(frozen=True)
class ConnectionDelta:
    delta: int


@dataclass(frozen=True)
class LockDetected:
    pass


Signal = Union[
    BootPhase, InboxReady, ImportConnected, ImportProgressHint, ImportRangeFound,
    ImportTaggedStarted, ImportTaggedDone, ImportComplete, ImportNoneFound,
    EventCountDelta, ConnectionDelta, LockDetected,
]


#* --- Helpers ---
def classify_level(line: str) -> str:
    """ERROR wins over WARN; anything else is INFO."""
    if "ERROR" in line:
        return LEVEL_ERROR
    if "WARN" in line:
        return LEVEL_WARN
    return LEVEL_INFO


def last_count(line: str) -> Optional[str]:
    """
    Returns the last run of digits in the line if it is short enough to be a count.

    :param line: The text to search.
    :return: The digits as a string, or None when absent or too long.
    """
    runs = _DIGIT_RUN.findall(line)
    if not runs or len(runs[-1]) >= _MAX_COUNT_DIGITS:
        return None
    return runs[-1]


def _after_last(line: str, marker: str) -> Optional[str]:
    idx = line.rfind(marker)
    if idx < 0:
        return None
    return line[idx + len(marker):]


def _after_last_ci(line: str, marker: str) -> Optional[str]:
    idx = line.lower().rfind(marker)
    if idx < 0:
        return None
    return line[idx + len(marker):]


def _between(line: str, start: str, end: str) -> Optional[str]:
    begin = line.find(start)
    if begin < 0:
        return None
    begin += len(start)
    stop = line.find(end, begin)
    if stop < 0:
        return None
    return line[begin:stop]


def _int_after_token(line: str, token: str) -> Optional[int]:
    words = line.split(" ")
    if token not in words:
        return None
    idx = words.index(token)
    if idx + 1 < len(words) and words[idx + 1].isdigit():
        return int(words[idx + 1])
    return None


def _first_int_token(line: str) -> Optional[int]:
    for word in line.split(" "):
        if word.isdigit():
            return int(word)
    return None


def _trim(text: str) -> str:
    return text.strip().strip(string.punctuation).strip()


#* --- Rule groups ---
def _boot_signals(line: str) -> List[Signal]:
    lower = line.lower()

    if "subscribing to" in lower:
        topic = _after_last_ci(line, "subscribing to ")
        if topic is None:
            return []
        return [BootPhase(f"Subscribing to {_trim(topic)}...")]
    if "starting" in lower:
        service = _after_last_ci(line, "starting ")
        if not service or not _trim(service):
            return [BootPhase("Starting system...")]
        return [BootPhase(f"Starting {_trim(service)}...")]
    if "loading" in lower:
        return [BootPhase("Loading databases...")]
    if "listening on" in lower:
        return [BootPhase("Establishing listener...")]
    if any(marker in lower for marker in _WOT_MARKERS):
        count = last_count(line)
        if count is None:
            return []
        if "analysed" in lower:
            return [BootPhase(f"Analysing {count} pubkeys...")]
        if "network size" in lower:
            return [BootPhase(f"Network: {count} profiles...")]
        if "minimum followers" in lower:
            return [BootPhase(f"WoT: {count} trusted keys...")]
        return [BootPhase(f"WoT: Loading {count} keys...")]
    return []


def _import_signals(line: str) -> List[Signal]:
    if "connected successfully" in line:
        return [ImportConnected()]

    if "Imported" in line and "notes" in line:
        signals: List[Signal] = []
        date_part = _after_last(line, "to ")
        if date_part is not None:
            signals.append(ImportProgressHint(date_part[:10]))
        signals.append(ImportRangeFound(_between(line, "from ", " to")))
        return signals

    if "importing inbox notes" in line or "Importing inbox notes" in line:
        return [ImportTaggedStarted()]

    if "imported" in line and "tagged notes" in line:
        return [ImportTaggedDone(_first_int_token(line))]

    if "Import complete" in line or "import complete" in line:
        return [ImportComplete()]

    if "No notes found" in line:
        date_part = _after_last(line, "to ")
        if date_part is None:
            return [ImportNoneFound(None)]
        for_part = _after_last(line, "for ")
        return [ImportNoneFound(date_part[:10], for_part[:10] if for_part is not None else None)]

    return []


def _count_signals(line: str) -> List[Signal]:
    n: Optional[int] = None
    if "Imported" in line and "notes" in line:
        n = _int_after_token(line, "Imported")
    elif "imported" in line and "tagged notes" in line:
        n = _int_after_token(line, "imported")
    elif any(marker in line for marker in _SINGLE_EVENT_MARKERS):
        n = 1
    if n:
        return [EventCountDelta(n)]
    return []


def _connection_signals(line: str) -> List[Signal]:
    if any(marker in line for marker in _CONNECT_MARKERS):
        return [ConnectionDelta(1)]
    if any(marker in line for marker in _DISCONNECT_MARKERS):
        return [ConnectionDelta(-1)]
    return []


def classify(line: str, importing: bool = False, booting: bool = False) -> List[Signal]:
    """
    Maps one line of worker output to the signals it carries.

    Structural markers are matched case-sensitively; boot phase keywords are
    matched case-insensitively.

    :param line: A single line of output, without its newline.
    :param importing: Whether the supervisor is running a one-shot import.
    :param booting: Whether the supervisor is still waiting for the worker to be ready.
    :return: The signals in the order they should be applied.
    """
    signals: List[Signal] = []
    if importing:
        signals.extend(_import_signals(line))
    signals.extend(_count_signals(line))
    if booting:
        signals.extend(_boot_signals(line))
    if "subscribing to inbox" in line or "Subscribing to inbox" in line:
        signals.append(InboxReady())
    signals.extend(_connection_signals(line))
    if any(marker in line for marker in _LOCK_MARKERS):
        signals.append(LockDetected())
    return signals
