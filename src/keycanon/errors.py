# -*- coding: utf-8 -*-
#
# Copyright (C) 2021-2022 by The Linux Foundation
# SPDX-License-Identifier: MIT-0
#
from typing import Optional, List


class Error(Exception):
    """Base exception for keycanon errors.

    Args:
        message: Error description.
        errors: Optional list of detailed error messages.
    """

    errors: Optional[List[str]]

    def __init__(self, message: str, errors: Optional[List[str]] = None):
        super().__init__(message)
        self.errors = errors

    def __str__(self) -> str:
        s = super().__str__()
        if self.errors:
            s = '%s: (%s)' % (s, ', '.join(self.errors))
        return s


class FramingError(Error):
    """Raised when the packet stream framing is invalid or truncated.

    Args:
        message: Error description.
        offset: Byte offset of the offending packet header.
    """

    offset: int

    def __init__(self, message: str, offset: int = 0, errors: Optional[List[str]] = None):
        super().__init__(message, errors=errors)
        self.offset = offset


class UnsupportedFeatureError(FramingError):
    """Raised for framing that is valid but deliberately not supported.

    Partial (streamed) body lengths end up here. When the partial chunks could
    be walked, ``resume_offset`` points right past the packet so a caller may
    continue reading the remainder of the stream.
    """

    resume_offset: Optional[int]

    def __init__(self, message: str, offset: int = 0, resume_offset: Optional[int] = None):
        super().__init__(message, offset=offset)
        self.resume_offset = resume_offset


class ParseError(Error):
    """Raised when a packet body cannot be parsed."""


class CryptoError(Error):
    """Raised when a signature cannot be checked with the available primitives."""


class StructuralError(Error):
    """Raised when a keyring is structurally inconsistent."""


class StoreError(Error):
    """Raised by keyring stores when loading or saving fails."""


class ConfigurationError(Error):
    """Raised when configuration is invalid or missing."""
