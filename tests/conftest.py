"""Shared test fixtures and utilities."""

import os

import pytest
import torch

from lockstep.buffers import AlignedRingBuffer, FieldSpec


def get_test_device() -> str:
  """Get device for testing, preferring CUDA if available.

  Can be overridden with FORCE_CPU=1 environment variable to test
  CPU-only behavior on GPU machines.
  """
  if os.environ.get("FORCE_CPU") == "1":
    return "cpu"
  return "cuda" if torch.cuda.is_available() else "cpu"


def make_gen(seed: int) -> torch.Generator:
  """Create a seeded CPU generator for reproducible sampling."""
  gen = torch.Generator(device="cpu")
  gen.manual_seed(seed)
  return gen


def scalar_buffer(
  values, max_count: int = 0, device: str = "cpu", name: str = "a"
) -> AlignedRingBuffer:
  """Create a buffer with one float32 field of shape (1,) holding ``values``."""
  buffer = AlignedRingBuffer(
    max_count, [FieldSpec(name, "float32", (1,))], device=device
  )
  buffer.append({name: torch.tensor(values, dtype=torch.float32)})
  return buffer


@pytest.fixture
def device() -> str:
  """Test device fixture."""
  return get_test_device()


@pytest.fixture
def transition_fields() -> list[FieldSpec]:
  """Typical RL transition layout."""
  return [
    FieldSpec("obs", "float32", (3,)),
    FieldSpec("action", "int64", ()),
    FieldSpec("reward", "float64", (1,)),
    FieldSpec("done", "bool", ()),
  ]
