from __future__ import annotations
import base64
import binascii
import json
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional

from newsfeed.core.errors import InvalidInput


@dataclass(frozen=True)
class FeedCursor:
    """Where the next page starts, and which interaction-log snapshot it ranks against."""
    offset: int
    snapshot: datetime


def encode_cursor(c: FeedCursor) -> str:
    raw = json.dumps({"o": c.offset, "t": c.snapshot.astimezone(timezone.utc).isoformat()},
                     separators=(",", ":"))
    return base64.urlsafe_b64encode(raw.encode("utf-8")).decode("ascii").rstrip("=")


def decode_cursor(token: str, max_offset: Optional[int] = None) -> FeedCursor:
    try:
        padded = token + "=" * (-len(token) % 4)
        data = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
        offset = data["o"]
        snapshot = datetime.fromisoformat(data["t"])
    except (binascii.Error, ValueError, KeyError, TypeError, UnicodeError, OverflowError) as e:
        raise InvalidInput("malformed cursor", stage="cursor") from e
    # 1e400 之类的浮点、布尔都不是合法 offset
    if type(offset) is not int or offset < 0:
        raise InvalidInput("malformed cursor", stage="cursor")
    if max_offset is not None and offset > max_offset:
        raise InvalidInput(f"cursor offset beyond {max_offset}", stage="cursor")
    if snapshot.tzinfo is None:
        snapshot = snapshot.replace(tzinfo=timezone.utc)
    return FeedCursor(offset=offset, snapshot=snapshot)
