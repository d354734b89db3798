"""Exceptions raised by the aligned buffers.

Every failure is a violated precondition reported before any state changes. Each
exception also derives from the closest builtin so callers may catch ``ValueError``,
``KeyError`` or ``IndexError`` without importing this module.
"""

from __future__ import annotations


class RingBufferError(Exception):
  """Base class for all buffer errors."""


class InvalidArgumentError(RingBufferError, ValueError):
  """A size, shape or configuration argument is out of its valid range."""


class MissingFieldError(RingBufferError, KeyError):
  """An appended batch omits a declared field."""


class SizeMismatchError(RingBufferError, ValueError):
  """Arrays in one batch disagree on element count, or do not fit a field shape."""


class UnknownFieldError(RingBufferError, KeyError):
  """A field name was not declared at construction."""


class DuplicateOutputNameError(RingBufferError, ValueError):
  """Two read requests in one call target the same output name."""


class InsufficientDataError(RingBufferError, ValueError):
  """More samples were requested than the buffer holds."""


class IndexOutOfRangeError(RingBufferError, IndexError):
  """A logical or physical index lies outside the valid range."""
