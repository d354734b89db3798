"""Buffers that store several typed series in lockstep."""

from lockstep.buffers.aligned_ring_buffer import AlignedRingBuffer, AlignedRingBufferCfg
from lockstep.buffers.errors import (
  DuplicateOutputNameError,
  IndexOutOfRangeError,
  InsufficientDataError,
  InvalidArgumentError,
  MissingFieldError,
  RingBufferError,
  SizeMismatchError,
  UnknownFieldError,
)
from lockstep.buffers.fetch_request import FetchRequest
from lockstep.buffers.field_spec import ElementType, FieldSpec
from lockstep.buffers.typed_series import TypedSeries

__all__ = [
  "AlignedRingBuffer",
  "AlignedRingBufferCfg",
  "DuplicateOutputNameError",
  "ElementType",
  "FetchRequest",
  "FieldSpec",
  "IndexOutOfRangeError",
  "InsufficientDataError",
  "InvalidArgumentError",
  "MissingFieldError",
  "RingBufferError",
  "SizeMismatchError",
  "TypedSeries",
  "UnknownFieldError",
]
