"""Resumable pagination cursor (traversal stack).

A cursor is an immutable stack of frames. The top frame names the sub-query
currently being paged; an empty stack means the traversal is complete. Every
transition returns a new ``Cursor`` so a caller's token is never mutated by a
failed or cancelled call.

Wire format:
    ""                               -> empty cursor (start / terminal)
    {"v":1,"frames":[{...}, ...]}    -> frames listed bottom first

Decoding fails closed: malformed text raises ``CursorDecodeError`` rather than
restarting the traversal from the first page.
"""
from __future__ import annotations
import json
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from ..resources import (
    RESOURCE_TYPE_CATALOG_ITEM,
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_ROLE,
    RESOURCE_TYPE_USER,
)
from .exceptions import CursorDecodeError

CURSOR_VERSION = 1

KNOWN_RESOURCE_TYPES = frozenset({
    RESOURCE_TYPE_USER,
    RESOURCE_TYPE_GROUP,
    RESOURCE_TYPE_ROLE,
    RESOURCE_TYPE_CATALOG_ITEM,
})

_FRAME_KEYS = {"type", "id", "offset"}


@dataclass(frozen=True)
class Frame:
    """Position within one resource type's result set."""
    resource_type: str
    resource_id: Optional[str] = None
    offset: int = 0

    def to_dict(self) -> dict:
        return {"type": self.resource_type, "id": self.resource_id, "offset": self.offset}

    @classmethod
    def from_dict(cls, raw: object) -> "Frame":
        if not isinstance(raw, dict) or set(raw) != _FRAME_KEYS:
            raise CursorDecodeError("Cursor frame has an unexpected shape")

        resource_type = raw["type"]
        resource_id = raw["id"]
        offset = raw["offset"]

        if not isinstance(resource_type, str) or resource_type not in KNOWN_RESOURCE_TYPES:
            raise CursorDecodeError(f"Unknown resource type in cursor: {resource_type!r}")
        if resource_id is not None and (not isinstance(resource_id, str) or not resource_id):
            raise CursorDecodeError("Cursor frame id must be a non-empty string or null")
        # bool is an int subclass; reject it explicitly
        if not isinstance(offset, int) or isinstance(offset, bool) or offset < 0:
            raise CursorDecodeError(f"Invalid offset in cursor: {offset!r}")

        return cls(resource_type, resource_id, offset)


@dataclass(frozen=True)
class Cursor:
    """Immutable stack of frames; index -1 is the top."""
    frames: Tuple[Frame, ...] = ()

    @classmethod
    def of(cls, *frames: Frame) -> "Cursor":
        return cls(tuple(frames))

    @property
    def is_empty(self) -> bool:
        return not self.frames

    def top(self) -> Optional[Frame]:
        return self.frames[-1] if self.frames else None

    def push(self, frame: Frame) -> "Cursor":
        return Cursor(self.frames + (frame,))

    def pop(self) -> "Cursor":
        if not self.frames:
            raise IndexError("pop from empty cursor")
        return Cursor(self.frames[:-1])

    def advance(self, offset: int) -> "Cursor":
        """Return a cursor whose top frame points at ``offset``."""
        top = self.top()
        if top is None:
            raise IndexError("advance on empty cursor")
        return Cursor(self.frames[:-1] + (replace(top, offset=offset),))

    def encode(self) -> str:
        if not self.frames:
            return ""
        payload = {"v": CURSOR_VERSION, "frames": [f.to_dict() for f in self.frames]}
        return json.dumps(payload, separators=(",", ":"), sort_keys=True)

    @classmethod
    def decode(cls, text: Optional[str]) -> "Cursor":
        """Parse a cursor token.

        Args:
            text: Token previously returned by ``encode``; empty or None starts fresh

        Returns:
            Decoded cursor

        Raises:
            CursorDecodeError: If the token is malformed
        """
        if text is None or text == "":
            return cls()
        if not isinstance(text, str):
            raise CursorDecodeError("Cursor token must be a string")

        try:
            payload = json.loads(text)
        except ValueError as exc:
            raise CursorDecodeError(f"Cursor token is not valid JSON: {exc}") from exc

        if not isinstance(payload, dict) or set(payload) != {"v", "frames"}:
            raise CursorDecodeError("Cursor token has an unexpected shape")
        # bool and float compare equal to 1; only the exact int is accepted
        if type(payload["v"]) is not int or payload["v"] != CURSOR_VERSION:
            raise CursorDecodeError(f"Unsupported cursor version: {payload['v']!r}")

        frames = payload["frames"]
        if not isinstance(frames, list) or not frames:
            # an exhausted traversal always encodes to ""
            raise CursorDecodeError("Cursor token has no frames")

        return cls(tuple(Frame.from_dict(f) for f in frames))


def seed(text: Optional[str], resource_type: str, resource_id: Optional[str] = None) -> Cursor:
    """Decode ``text`` and, for a fresh traversal, push the entry frame."""
    cursor = Cursor.decode(text)
    if cursor.is_empty:
        cursor = cursor.push(Frame(resource_type, resource_id))
    return cursor


def after_page(cursor: Cursor, returned: int, is_last: bool) -> Cursor:
    """Pop the top frame once its result set is exhausted, else move past the page."""
    if is_last:
        return cursor.pop()
    return cursor.advance(cursor.top().offset + returned)


def flat_cursor(text: Optional[str], resource_type: str, resource_id: Optional[str] = None) -> Cursor:
    """Decode a single-frame listing cursor for one resource type.

    Raises:
        CursorDecodeError: If the token belongs to a different listing
    """
    cursor = seed(text, resource_type, resource_id)
    frame = cursor.top()
    if len(cursor.frames) != 1 or frame.resource_type != resource_type or frame.resource_id != resource_id:
        raise CursorDecodeError(f"Cursor does not belong to this {resource_type} listing")
    return cursor
