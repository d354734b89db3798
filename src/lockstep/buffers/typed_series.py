"""Growable tensor store for a single field."""

from __future__ import annotations

from typing import Any

import torch

from lockstep.buffers.errors import (
  IndexOutOfRangeError,
  InvalidArgumentError,
  SizeMismatchError,
)
from lockstep.buffers.field_spec import FieldSpec


class TypedSeries:
  """Contiguous store of fixed-shape elements of one element type.

  Stores elements in a tensor with shape (capacity, *spec.shape). Slot is the
  outermost dimension, so one element is a contiguous block of ``spec.unit_size``
  scalars. The series knows nothing about its siblings or about which slots are
  occupied; callers pass physical slot indices already validated against capacity.
  """

  def __init__(
    self, spec: FieldSpec, initial_capacity: int = 8, device: str = "cpu"
  ) -> None:
    """Initialize the series.

    Args:
      spec: Declaration of the field stored in this series.
      initial_capacity: Number of slots to allocate up front.
      device: The device used for storage.
    """
    if initial_capacity < 1:
      raise InvalidArgumentError(
        f"Field '{spec.name}': initial capacity must be >= 1, got {initial_capacity}"
      )
    if any(dim < 1 for dim in spec.shape):
      raise InvalidArgumentError(
        f"Field '{spec.name}': shape dimensions must be >= 1, got {spec.shape}"
      )

    self._spec = spec
    self._device = device
    self._data = torch.zeros(
      (initial_capacity, *spec.shape), dtype=spec.dtype, device=device
    )

  @property
  def spec(self) -> FieldSpec:
    return self._spec

  @property
  def device(self) -> str:
    return self._device

  @property
  def capacity(self) -> int:
    """Number of allocated slots, occupied or not."""
    return self._data.shape[0]

  def grow(self, additional_slots: int) -> None:
    """Reallocate with ``additional_slots`` more slots, keeping existing contents.

    Existing elements land in the low slots of the new store. The old store is
    released; tensors previously returned by :meth:`read` are copies and stay valid.
    """
    if additional_slots < 1:
      raise InvalidArgumentError(
        f"Field '{self._spec.name}': additional slots must be >= 1, "
        f"got {additional_slots}"
      )
    data = torch.zeros(
      (self.capacity + additional_slots, *self._spec.shape),
      dtype=self._data.dtype,
      device=self._device,
    )
    data[: self.capacity] = self._data
    self._data = data

  def coerce(self, values: Any) -> torch.Tensor:
    """Convert caller data to a (n, *shape) tensor on this series' dtype and device.

    Accepts tensors, numpy arrays and nested sequences. Flat input is split into
    whole elements. Otherwise the leading dimension is the element count and the
    trailing dimensions must hold exactly one element each.

    Raises:
      SizeMismatchError: If the data cannot be split into whole elements.
    """
    spec = self._spec
    data = torch.as_tensor(values, device=self._device)
    if data.dtype != spec.dtype:
      data = data.to(spec.dtype)
    if data.ndim >= 1 and tuple(data.shape[1:]) == spec.shape:
      return data
    if data.ndim <= 1:
      if data.numel() % spec.unit_size != 0:
        raise SizeMismatchError(
          f"Field '{spec.name}': data of shape {tuple(data.shape)} is not a whole "
          f"number of elements of shape {spec.shape}"
        )
      return data.reshape(-1, *spec.shape)
    # Leading dimension counts elements, so only the trailing ones may be reshaped.
    if data.shape[0] * spec.unit_size != data.numel():
      raise SizeMismatchError(
        f"Field '{spec.name}': data of shape {tuple(data.shape)} does not hold "
        f"{data.shape[0]} elements of shape {spec.shape}"
      )
    return data.reshape(data.shape[0], *spec.shape)

  def write(self, start: int, data: torch.Tensor) -> None:
    """Copy ``data`` into physical slots [start, start + len(data))."""
    stop = start + data.shape[0]
    if start < 0 or stop > self.capacity:
      raise IndexOutOfRangeError(
        f"Field '{self._spec.name}': slots [{start}, {stop}) exceed capacity "
        f"{self.capacity}"
      )
    self._data[start:stop] = data

  def read(self, slots: torch.Tensor) -> torch.Tensor:
    """Gather the elements at the given physical slots into a new tensor.

    Args:
      slots: 1-D integer tensor of physical slot indices.

    Returns:
      Tensor of shape (len(slots), *shape).
    """
    slots = slots.to(device=self._device, dtype=torch.long)
    return torch.index_select(self._data, 0, slots)

  def storage(self) -> torch.Tensor:
    """Copy of the whole store, occupied or not."""
    return self._data.clone()

  def load_storage(self, data: torch.Tensor) -> None:
    """Replace the store with a copy of ``data``."""
    if tuple(data.shape[1:]) != self._spec.shape or data.shape[0] < 1:
      raise InvalidArgumentError(
        f"Field '{self._spec.name}': stored shape {tuple(data.shape)} does not "
        f"match element shape {self._spec.shape}"
      )
    self._data = data.to(device=self._device, dtype=self._spec.dtype).clone()

  def __repr__(self) -> str:
    return (
      f"TypedSeries(name={self._spec.name!r}, "
      f"element_type={self._spec.element_type.value}, "
      f"shape={self._spec.shape}, capacity={self.capacity})"
    )
