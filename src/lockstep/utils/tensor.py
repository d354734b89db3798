"""Tensor helpers for preparing appended batches."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import torch

from lockstep.buffers.errors import InvalidArgumentError, SizeMismatchError


def stack_elements(
  elements: Sequence[Any],
  dtype: torch.dtype | None = None,
  device: str | None = None,
) -> torch.Tensor:
  """Stack equally-shaped per-step arrays into one (len(elements), ...) tensor.

  Useful for collecting one observation per environment step and appending the
  whole episode to a buffer at once.

  Args:
    elements: Tensors, numpy arrays or nested sequences, all of the same shape.
    dtype: Optional dtype of the result. Defaults to the dtype of the first element.
    device: Optional device of the result. Defaults to the first element's device.

  Returns:
    Tensor whose first dimension indexes ``elements``.

  Raises:
    InvalidArgumentError: If ``elements`` is empty.
    SizeMismatchError: If the elements do not all have the same shape.
  """
  if len(elements) == 0:
    raise InvalidArgumentError("Cannot stack an empty sequence of elements")

  tensors = [torch.as_tensor(e) for e in elements]
  first = tensors[0]
  for i, t in enumerate(tensors[1:], start=1):
    if t.shape != first.shape:
      raise SizeMismatchError(
        f"Element {i} has shape {tuple(t.shape)}, expected {tuple(first.shape)}"
      )

  dtype = first.dtype if dtype is None else dtype
  device = first.device if device is None else device
  return torch.stack([t.to(device=device, dtype=dtype) for t in tensors])
