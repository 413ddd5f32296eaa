"""Encrypted cursor pagination."""

from .cursor import CursorCodec, CursorContents, CursorError

__all__ = ["CursorCodec", "CursorContents", "CursorError"]
