"""Multi-field ring buffer that keeps several typed series aligned slot by slot."""

from __future__ import annotations

import warnings
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import torch

from lockstep.buffers.errors import (
  IndexOutOfRangeError,
  InsufficientDataError,
  InvalidArgumentError,
  MissingFieldError,
  SizeMismatchError,
  UnknownFieldError,
)
from lockstep.buffers.fetch_request import (
  FetchRequest,
  RequestLike,
  normalize_requests,
)
from lockstep.buffers.field_spec import ElementType, FieldSpec
from lockstep.buffers.typed_series import TypedSeries

_DEFAULT_INITIAL_CAPACITY = 8


@dataclass(kw_only=True)
class AlignedRingBufferCfg:
  """Configuration for an :class:`AlignedRingBuffer`."""

  fields: tuple[FieldSpec, ...]
  """Fields stored by the buffer. Names must be unique."""

  max_count: int = 0
  """Maximum number of slots. Once full, appends overwrite the oldest slots.
  0 means unbounded: capacity grows instead of discarding data."""

  initial_capacity: int = _DEFAULT_INITIAL_CAPACITY
  """Slots allocated up front in unbounded mode. Ignored when bounded."""

  device: str = "cpu"
  """Device used for storage."""

  seed: int | None = None
  """Seed for the buffer's random generator. If None, torch's global RNG is used."""

  def build(self) -> AlignedRingBuffer:
    generator = None
    if self.seed is not None:
      generator = torch.Generator(device="cpu")
      generator.manual_seed(self.seed)
    return AlignedRingBuffer(
      self.max_count,
      self.fields,
      device=self.device,
      initial_capacity=self.initial_capacity,
      generator=generator,
    )


class AlignedRingBuffer:
  """Ring buffer storing several named series in lockstep.

  Slot ``i`` holds one element of every field, e.g. the observation, action and
  reward of timestep ``i``. All fields share one write cursor and one occupied
  count, and are always grown and wrapped together.

  Addressing:
    Reads use logical indices in ``[0, len(buffer))``, ordered oldest to newest.
    A request offset shifts the logical index modulo the occupied count, so
    ``("obs", 1, "next_obs")`` reads the following slot and wraps from the newest
    slot back to the oldest.

  Modes:
    * Bounded (``max_count > 0``): storage for ``max_count`` slots is allocated up
      front. Once full, each append overwrites the oldest slots.
    * Unbounded (``max_count == 0``): storage starts at ``initial_capacity`` slots
      and grows, doubling or jumping straight to the needed size for large
      batches, so append stays amortized O(1).

  The buffer is not synchronized. A single owner must serialize appends and reads.

  Examples:
    >>> buf = AlignedRingBuffer(
    ...   max_count=1000,
    ...   fields=[FieldSpec("obs", "float32", (4,)), FieldSpec("reward", "float32")],
    ... )
    >>> buf.append({"obs": torch.zeros(16, 4), "reward": torch.ones(16)})
    >>> batch = buf.random_sample(8, [("obs", 0, "obs"), ("obs", 1, "next_obs")])
    >>> batch["next_obs"].shape
    torch.Size([8, 4])
  """

  def __init__(
    self,
    max_count: int,
    fields: Iterable[FieldSpec],
    device: str = "cpu",
    initial_capacity: int = _DEFAULT_INITIAL_CAPACITY,
    generator: torch.Generator | None = None,
  ) -> None:
    """Initialize the buffer.

    Args:
      max_count: Maximum number of slots, or 0 for an unbounded buffer.
      fields: Declarations of the stored fields. Names must be unique.
      device: The device used for storage.
      initial_capacity: Slots allocated up front in unbounded mode.
      generator: Optional RNG used by the sampling methods.
    """
    if max_count < 0:
      raise InvalidArgumentError(f"max_count must be >= 0, got {max_count}")
    if initial_capacity < 1:
      raise InvalidArgumentError(
        f"initial_capacity must be >= 1, got {initial_capacity}"
      )
    specs = tuple(fields)
    if not specs:
      raise InvalidArgumentError("At least one field is required")

    capacity = max_count if max_count > 0 else initial_capacity
    self._fields: dict[str, TypedSeries] = {}
    for spec in specs:
      if spec.name in self._fields:
        raise InvalidArgumentError(f"Duplicate field name: '{spec.name}'")
      self._fields[spec.name] = TypedSeries(spec, capacity, device=device)

    self._max_count = max_count
    self._device = device
    self._cursor = 0
    self._count = 0
    self.generator = generator

  # Properties.

  @property
  def max_count(self) -> int:
    return self._max_count

  @property
  def is_bounded(self) -> bool:
    return self._max_count > 0

  @property
  def device(self) -> str:
    return self._device

  @property
  def capacity(self) -> int:
    """Allocated slots, identical for every field."""
    return next(iter(self._fields.values())).capacity

  @property
  def occupied_count(self) -> int:
    """Number of logically valid slots."""
    return self._count

  @property
  def write_cursor(self) -> int:
    """Physical slot the next append starts writing at, in [0, capacity)."""
    return self._cursor % self.capacity

  @property
  def field_names(self) -> tuple[str, ...]:
    return tuple(self._fields)

  @property
  def field_specs(self) -> dict[str, FieldSpec]:
    return {name: series.spec for name, series in self._fields.items()}

  def __len__(self) -> int:
    return self._count

  def __contains__(self, name: object) -> bool:
    return name in self._fields

  def __repr__(self) -> str:
    fields = ", ".join(
      f"{name}:{s.spec.element_type.value}{list(s.spec.shape)}"
      for name, s in self._fields.items()
    )
    return (
      f"AlignedRingBuffer(count={self._count}, capacity={self.capacity}, "
      f"max_count={self._max_count}, fields=[{fields}])"
    )

  def element_type(self, name: str) -> ElementType:
    return self._series(name).spec.element_type

  def dtype(self, name: str) -> torch.dtype:
    """Torch dtype of a field."""
    return self._series(name).spec.dtype

  # Mutation.

  def append(self, batch: Mapping[str, Any]) -> None:
    """Append ``n`` slots, one element per field.

    Args:
      batch: Mapping from every declared field name to an array of shape
        (n, *field_shape). Tensors, numpy arrays and nested sequences are accepted
        and copied into the buffer.

    Raises:
      MissingFieldError: If a declared field is absent from ``batch``.
      UnknownFieldError: If ``batch`` contains an undeclared field.
      SizeMismatchError: If the fields disagree on ``n`` or do not fit their shape.
    """
    unknown = [name for name in batch if name not in self._fields]
    if unknown:
      raise UnknownFieldError(
        f"Fields not declared in buffer: {unknown}. Declared: {list(self._fields)}"
      )
    missing = [name for name in self._fields if name not in batch]
    if missing:
      raise MissingFieldError(f"Batch is missing fields: {missing}")

    # Convert and validate everything before touching any state.
    data: dict[str, torch.Tensor] = {}
    num = -1
    for name, series in self._fields.items():
      values = series.coerce(batch[name])
      if num < 0:
        num = values.shape[0]
      elif values.shape[0] != num:
        raise SizeMismatchError(
          f"Field '{name}' has {values.shape[0]} elements, expected {num} like "
          f"'{next(iter(self._fields))}'"
        )
      data[name] = values
    if num == 0:
      return

    if self.is_bounded and num > self._max_count:
      warnings.warn(
        f"Appending {num} elements to a buffer bounded at {self._max_count}; only "
        f"the most recent {self._max_count} are kept.",
        stacklevel=2,
      )
      data = {name: values[num - self._max_count :] for name, values in data.items()}
      num = self._max_count

    if self.is_bounded:
      space_left = self.capacity - self._cursor
    else:
      self._reserve(self._count + num)
      space_left = num
    append_size = min(space_left, num)
    wrap_size = num - append_size

    for name, series in self._fields.items():
      values = data[name]
      series.write(self._cursor, values[:append_size])
      if wrap_size > 0:
        series.write(0, values[append_size:])

    if self.is_bounded:
      self._count = min(self._max_count, self._count + num)
      cursor = wrap_size if wrap_size > 0 else self._cursor + append_size
      self._cursor = cursor % self.capacity
    else:
      self._count += num
      self._cursor += append_size

  def extend(self, other: AlignedRingBuffer) -> None:
    """Append the full logical content of ``other``, oldest slot first.

    Raises:
      InvalidArgumentError: If ``other`` does not declare the same fields.
    """
    theirs = other.field_specs
    ours = self.field_specs
    if set(theirs) != set(ours) or any(
      not ours[name].compatible_with(spec) for name, spec in theirs.items()
    ):
      raise InvalidArgumentError(
        f"Cannot extend {self!r} with {other!r}: field declarations differ"
      )
    if len(other) == 0:
      return
    self.append(other.fetch_range(0, len(other), other.field_names))

  def clear(self) -> None:
    """Forget all slots. Allocated storage is kept."""
    self._cursor = 0
    self._count = 0

  # Reads.

  def random_sample(
    self, count: int, requests: Iterable[RequestLike]
  ) -> dict[str, torch.Tensor]:
    """Sample ``count`` slots uniformly with replacement.

    Each draw picks one logical base index shared by all requests, so rows stay
    aligned across fields.

    Returns:
      Mapping from output name to a tensor of shape (count, *field_shape).

    Raises:
      InsufficientDataError: If ``count`` exceeds the occupied count.
    """
    reqs = self._resolve(requests)
    if count < 0:
      raise InvalidArgumentError(f"count must be >= 0, got {count}")
    if count > self._count:
      raise InsufficientDataError(
        f"Requested {count} samples but the buffer holds {self._count}"
      )
    if count == 0:
      return self._gather(torch.empty(0, dtype=torch.long), reqs)
    base = torch.randint(
      0,
      self._count,
      (count,),
      dtype=torch.long,
      device=self._rng_device(),
      generator=self.generator,
    )
    return self._gather(base, reqs)

  def fetch_at(
    self, index: int, requests: Iterable[RequestLike]
  ) -> dict[str, torch.Tensor]:
    """Fetch the slot at logical ``index``.

    Returns:
      Mapping from output name to a tensor of shape (1, *field_shape).
    """
    reqs = self._resolve(requests)
    if not 0 <= index < self._count:
      raise IndexOutOfRangeError(
        f"Index {index} out of range for buffer holding {self._count} slots"
      )
    return self._gather(torch.tensor([index], dtype=torch.long), reqs)

  def fetch_range(
    self, index: int, length: int, requests: Iterable[RequestLike]
  ) -> dict[str, torch.Tensor]:
    """Fetch ``length`` consecutive logical slots starting at ``index``.

    A ``length`` of 0 or less returns tensors with a leading dimension of 0.

    Returns:
      Mapping from output name to a tensor of shape (length, *field_shape).
    """
    reqs = self._resolve(requests)
    if length <= 0:
      return self._gather(torch.empty(0, dtype=torch.long), reqs)
    if index < 0 or index + length > self._count:
      raise IndexOutOfRangeError(
        f"Range [{index}, {index + length}) out of range for buffer holding "
        f"{self._count} slots"
      )
    return self._gather(torch.arange(index, index + length, dtype=torch.long), reqs)

  def sample_batches_reordered(
    self,
    batch_size: int,
    requests: Iterable[RequestLike],
    max_batches: int = 0,
  ) -> dict[str, torch.Tensor]:
    """Shuffle the buffer into as many whole batches as fit, without replacement.

    Only the first ``(len(buffer) // batch_size) * batch_size`` logical slots take
    part; each of them appears exactly once. The caller slices the result into
    batches of ``batch_size`` rows.

    Args:
      batch_size: Rows per batch.
      requests: Fields to fetch.
      max_batches: If > 0, return at most this many batches.

    Returns:
      Mapping from output name to a tensor of shape (num_batches * batch_size,
      *field_shape).
    """
    if batch_size < 1:
      raise InvalidArgumentError(f"batch_size must be >= 1, got {batch_size}")
    reqs = self._resolve(requests)
    usable = (self._count // batch_size) * batch_size
    perm = torch.randperm(
      usable, dtype=torch.long, device=self._rng_device(), generator=self.generator
    )
    if max_batches > 0:
      perm = perm[: max_batches * batch_size]
    return self._gather(perm, reqs)

  # Snapshots.

  def state_dict(self) -> dict[str, Any]:
    """Snapshot of the buffer contents, with storage copied to the CPU."""
    return {
      "max_count": self._max_count,
      "write_cursor": self._cursor,
      "occupied_count": self._count,
      "fields": {
        name: {
          "element_type": series.spec.element_type.value,
          "shape": list(series.spec.shape),
        }
        for name, series in self._fields.items()
      },
      "storage": {
        name: series.storage().cpu() for name, series in self._fields.items()
      },
    }

  def load_state_dict(self, state: Mapping[str, Any]) -> None:
    """Restore contents saved by :meth:`state_dict`.

    Raises:
      InvalidArgumentError: If the snapshot was taken from a buffer with different
        fields or a different ``max_count``, or is internally inconsistent.
    """
    if state["max_count"] != self._max_count:
      raise InvalidArgumentError(
        f"Snapshot max_count {state['max_count']} != buffer max_count "
        f"{self._max_count}"
      )
    fields = state["fields"]
    if set(fields) != set(self._fields):
      raise InvalidArgumentError(
        f"Snapshot fields {sorted(fields)} != buffer fields {sorted(self._fields)}"
      )
    for name, info in fields.items():
      spec = FieldSpec(name, info["element_type"], tuple(info["shape"]))
      if not self._fields[name].spec.compatible_with(spec):
        raise InvalidArgumentError(
          f"Snapshot field {spec} does not match {self._fields[name].spec}"
        )

    storage: Mapping[str, torch.Tensor] = state["storage"]
    if set(storage) != set(self._fields):
      raise InvalidArgumentError(
        f"Snapshot storage fields {sorted(storage)} != buffer fields "
        f"{sorted(self._fields)}"
      )
    for name, series in self._fields.items():
      stored_shape = tuple(storage[name].shape)
      if stored_shape[1:] != series.spec.shape:
        raise InvalidArgumentError(
          f"Snapshot storage for '{name}' has shape {stored_shape}, expected "
          f"(capacity, *{series.spec.shape})"
        )
    capacities = {int(tensor.shape[0]) for tensor in storage.values()}
    if len(capacities) != 1:
      raise InvalidArgumentError(
        f"Snapshot fields have differing capacities: {capacities}"
      )
    capacity = capacities.pop()
    cursor = int(state["write_cursor"])
    count = int(state["occupied_count"])
    if self.is_bounded and capacity != self._max_count:
      raise InvalidArgumentError(
        f"Snapshot capacity {capacity} != max_count {self._max_count}"
      )
    if capacity < 1:
      raise InvalidArgumentError("Snapshot storage has no slots")
    if not 0 <= count <= capacity:
      raise InvalidArgumentError(f"Snapshot count {count} exceeds capacity {capacity}")
    valid_cursor = 0 <= cursor < capacity if self.is_bounded else cursor == count
    if not valid_cursor:
      raise InvalidArgumentError(f"Snapshot write cursor {cursor} is inconsistent")

    for name, series in self._fields.items():
      series.load_storage(storage[name])
    self._cursor = cursor
    self._count = count

  def save(self, path: str | Path) -> None:
    torch.save(self.state_dict(), Path(path))

  @classmethod
  def load(
    cls,
    path: str | Path,
    device: str = "cpu",
    generator: torch.Generator | None = None,
  ) -> AlignedRingBuffer:
    """Create a buffer from a snapshot written by :meth:`save`."""
    state = torch.load(Path(path), map_location="cpu", weights_only=True)
    fields = [
      FieldSpec(name, info["element_type"], tuple(info["shape"]))
      for name, info in state["fields"].items()
    ]
    buffer = cls(state["max_count"], fields, device=device, generator=generator)
    buffer.load_state_dict(state)
    return buffer

  # Private methods.

  def _series(self, name: str) -> TypedSeries:
    try:
      return self._fields[name]
    except KeyError:
      raise UnknownFieldError(
        f"Unknown field '{name}'. Declared: {list(self._fields)}"
      ) from None

  def _resolve(
    self, requests: Iterable[RequestLike]
  ) -> list[tuple[FetchRequest, TypedSeries]]:
    return [(req, self._series(req.field)) for req in normalize_requests(requests)]

  def _reserve(self, needed: int) -> None:
    """Grow every field in lockstep so that ``needed`` slots fit."""
    capacity = self.capacity
    if needed <= capacity:
      return
    if needed > 2 * capacity:
      additional = needed - capacity
    else:
      additional = capacity
    for series in self._fields.values():
      series.grow(additional)

  def _physical(self, logical: torch.Tensor) -> torch.Tensor:
    """Map logical indices (any integers) to physical slots."""
    capacity = self.capacity
    start = (self._cursor - self._count) % capacity
    # torch.remainder takes the sign of the divisor, so negative offsets wrap.
    return torch.remainder(start + torch.remainder(logical, self._count), capacity)

  def _gather(
    self,
    base: torch.Tensor,
    reqs: Sequence[tuple[FetchRequest, TypedSeries]],
  ) -> dict[str, torch.Tensor]:
    result: dict[str, torch.Tensor] = {}
    for req, series in reqs:
      if base.numel() == 0:
        spec = series.spec
        result[req.key] = torch.empty(
          (0, *spec.shape), dtype=spec.dtype, device=self._device
        )
        continue
      result[req.key] = series.read(self._physical(base + req.offset))
    return result

  def _rng_device(self) -> torch.device | str:
    return self.generator.device if self.generator is not None else "cpu"
