"""Read requests understood by :class:`AlignedRingBuffer`."""

from __future__ import annotations

from collections.abc import Iterable
from typing import NamedTuple

from lockstep.buffers.errors import DuplicateOutputNameError, InvalidArgumentError


class FetchRequest(NamedTuple):
  """Fetch ``field`` shifted by ``offset`` logical slots into ``output_name``.

  An offset of +1 next to an offset of 0 on the same field yields (state, next
  state) pairs from a single draw.
  """

  field: str
  offset: int = 0
  output_name: str | None = None

  @property
  def key(self) -> str:
    """Output name, defaulting to the field name."""
    return self.field if self.output_name is None else self.output_name


RequestLike = FetchRequest | tuple | str


def normalize_requests(requests: Iterable[RequestLike]) -> tuple[FetchRequest, ...]:
  """Coerce plain tuples and field names into :class:`FetchRequest` objects.

  Raises:
    DuplicateOutputNameError: If two requests share an output name.
  """
  result: list[FetchRequest] = []
  seen: set[str] = set()
  for request in requests:
    if isinstance(request, FetchRequest):
      req = request
    elif isinstance(request, str):
      req = FetchRequest(request)
    elif isinstance(request, tuple) and 1 <= len(request) <= 3:
      req = FetchRequest(*request)
    else:
      raise InvalidArgumentError(
        f"Expected a FetchRequest, a (field, offset, output_name) tuple or a field "
        f"name, got {request!r}"
      )
    if req.key in seen:
      raise DuplicateOutputNameError(f"Output name '{req.key}' requested twice")
    seen.add(req.key)
    result.append(FetchRequest(req.field, int(req.offset), req.key))
  return tuple(result)
