"""Tests for AlignedRingBuffer reads: random samples, fetches and reordered batches."""

import pytest
import torch
from conftest import make_gen, scalar_buffer

from lockstep.buffers import (
  AlignedRingBuffer,
  DuplicateOutputNameError,
  FetchRequest,
  FieldSpec,
  IndexOutOfRangeError,
  InsufficientDataError,
  InvalidArgumentError,
  UnknownFieldError,
)


@pytest.fixture
def paired_buffer(device) -> AlignedRingBuffer:
  """Two fields with b[i] == a[i] + 10 for i in 0..9."""
  buffer = AlignedRingBuffer(
    0,
    [FieldSpec("a", "int64", (1,)), FieldSpec("b", "int64", (1,))],
    device=device,
    generator=make_gen(0),
  )
  buffer.append({"a": torch.arange(10), "b": torch.arange(10, 20)})
  return buffer


##
# Random sampling.
##


def test_random_sample_keeps_fields_aligned(paired_buffer):
  """One draw reads the same slot from every field."""
  out = paired_buffer.random_sample(5, [("a", 0, "A"), ("b", 0, "B")])

  assert out["A"].shape == (5, 1)
  assert out["B"].shape == (5, 1)
  assert torch.equal(out["B"], out["A"] + 10)


def test_random_sample_with_offsets_stays_aligned(paired_buffer):
  """Offsets shift relative to the shared draw."""
  out = paired_buffer.random_sample(
    50, [("a", 0, "a"), ("a", 1, "next_a"), ("b", -1, "prev_b")]
  )
  a = out["a"].flatten()
  assert torch.equal(out["next_a"].flatten(), (a + 1) % 10)
  assert torch.equal(out["prev_b"].flatten(), (a - 1) % 10 + 10)


def test_random_sample_can_draw_whole_buffer(paired_buffer):
  """Drawing as many rows as occupied slots is allowed."""
  out = paired_buffer.random_sample(10, ["a"])
  assert out["a"].shape == (10, 1)
  assert bool(((out["a"] >= 0) & (out["a"] < 10)).all())


def test_random_sample_is_reproducible_with_seeded_generator():
  """Equal seeds give equal samples."""
  a = scalar_buffer(list(range(50)))
  b = scalar_buffer(list(range(50)))
  a.generator = make_gen(42)
  b.generator = make_gen(42)

  assert torch.equal(a.random_sample(20, ["a"])["a"], b.random_sample(20, ["a"])["a"])


def test_random_sample_more_than_occupied_raises(paired_buffer):
  """Requesting more rows than slots fails."""
  with pytest.raises(InsufficientDataError):
    paired_buffer.random_sample(11, ["a"])


def test_random_sample_zero_returns_empty(paired_buffer):
  """A zero-row sample returns empty tensors."""
  out = paired_buffer.random_sample(0, ["a"])
  assert out["a"].shape == (0, 1)
  assert out["a"].dtype == torch.int64


def test_random_sample_after_wraparound_only_sees_live_data():
  """Evicted values are never sampled."""
  buffer = AlignedRingBuffer(4, [FieldSpec("a", "int64", ())], generator=make_gen(1))
  for start in range(0, 10, 2):
    buffer.append({"a": torch.arange(start, start + 2)})
  out = buffer.random_sample(100, ["a"])
  assert set(out["a"].tolist()) <= {6, 7, 8, 9}


def test_unknown_field_raises(paired_buffer):
  """Requests for undeclared fields fail."""
  with pytest.raises(UnknownFieldError):
    paired_buffer.random_sample(1, [("c", 0, "c")])


def test_duplicate_output_name_raises(paired_buffer):
  """Two requests may not share an output name."""
  with pytest.raises(DuplicateOutputNameError):
    paired_buffer.random_sample(1, [("a", 0, "x"), ("b", 0, "x")])
  with pytest.raises(DuplicateOutputNameError):
    paired_buffer.fetch_at(0, ["a", ("a", 1)])


def test_malformed_request_raises(paired_buffer):
  """Requests with too many parts are rejected."""
  with pytest.raises(InvalidArgumentError):
    paired_buffer.fetch_at(0, [("a", 0, "x", "extra")])


##
# Indexed fetches.
##


def test_fetch_at_offset_wraps_to_oldest():
  """An offset past the newest slot wraps to the oldest."""
  buffer = scalar_buffer([10.0, 20.0, 30.0, 40.0])
  assert len(buffer) == 4

  out = buffer.fetch_at(3, [("a", 1, "next")])

  assert out["next"].shape == (1, 1)
  assert out["next"].item() == 10.0


def test_fetch_at_negative_offset_wraps_to_newest():
  """A negative offset from the oldest slot wraps to the newest."""
  buffer = scalar_buffer([10.0, 20.0, 30.0, 40.0])
  out = buffer.fetch_at(0, [FetchRequest("a", -1, "prev")])
  assert out["prev"].item() == 40.0


def test_fetch_at_large_offset():
  """Offsets larger than the count wrap modulo the count."""
  buffer = scalar_buffer([10.0, 20.0, 30.0, 40.0])
  out = buffer.fetch_at(1, [("a", 9, "far")])
  assert out["far"].item() == 30.0


def test_fetch_at_out_of_range_raises():
  """Indices outside the occupied range fail."""
  buffer = scalar_buffer([1.0, 2.0])
  with pytest.raises(IndexOutOfRangeError):
    buffer.fetch_at(2, ["a"])
  with pytest.raises(IndexOutOfRangeError):
    buffer.fetch_at(-1, ["a"])


def test_fetch_at_empty_buffer_raises():
  """Fetching from an empty buffer fails."""
  buffer = AlignedRingBuffer(0, [FieldSpec("a")])
  with pytest.raises(IndexOutOfRangeError):
    buffer.fetch_at(0, ["a"])


def test_fetch_range_with_offset_after_wraparound():
  """Ranges read oldest first after wraparound."""
  buffer = scalar_buffer([1.0, 2.0, 3.0], max_count=3)
  buffer.append({"a": [4.0, 5.0]})

  out = buffer.fetch_range(0, 3, [("a", 0, "now"), ("a", 1, "next")])

  assert out["now"].flatten().tolist() == [3.0, 4.0, 5.0]
  assert out["next"].flatten().tolist() == [4.0, 5.0, 3.0]


def test_fetch_range_out_of_range_raises():
  """Ranges past the occupied count fail."""
  buffer = scalar_buffer([1.0, 2.0, 3.0])
  with pytest.raises(IndexOutOfRangeError):
    buffer.fetch_range(1, 3, ["a"])
  with pytest.raises(IndexOutOfRangeError):
    buffer.fetch_range(-1, 2, ["a"])


@pytest.mark.parametrize("length", [0, -3])
def test_fetch_range_non_positive_length_returns_empty(length):
  """Non-positive lengths return empty tensors."""
  buffer = scalar_buffer([1.0, 2.0, 3.0])
  out = buffer.fetch_range(1, length, [("a", 0, "x")])
  assert out["x"].shape == (0, 1)


def test_fetch_results_do_not_alias_storage():
  """Modifying a result leaves the buffer unchanged."""
  buffer = scalar_buffer([1.0, 2.0, 3.0])
  out = buffer.fetch_range(0, 3, ["a"])
  out["a"].zero_()
  assert buffer.fetch_range(0, 3, ["a"])["a"].flatten().tolist() == [1.0, 2.0, 3.0]


def test_fetch_multi_dimensional_elements(device):
  """Multi-dimensional elements are fetched whole."""
  buffer = AlignedRingBuffer(0, [FieldSpec("img", "uint8", (2, 2))], device=device)
  data = torch.arange(12, dtype=torch.uint8).reshape(3, 2, 2)
  buffer.append({"img": data})

  out = buffer.fetch_range(1, 2, ["img"])

  assert out["img"].shape == (2, 2, 2)
  assert torch.equal(out["img"].cpu(), data[1:])


##
# Reordered batches.
##


def test_reordered_batches_are_a_permutation_without_remainder():
  """An epoch visits each whole-batch slot exactly once."""
  buffer = AlignedRingBuffer(0, [FieldSpec("a", "int64", ())], generator=make_gen(7))
  buffer.append({"a": torch.arange(10)})

  out = buffer.sample_batches_reordered(3, [("a", 0, "a")])

  assert out["a"].shape == (9,)
  assert sorted(out["a"].tolist()) == list(range(9))


def test_reordered_batches_max_batches_truncates():
  """max_batches limits the number of rows."""
  buffer = AlignedRingBuffer(0, [FieldSpec("a", "int64", ())], generator=make_gen(7))
  buffer.append({"a": torch.arange(20)})

  out = buffer.sample_batches_reordered(4, ["a"], max_batches=2)

  values = out["a"].tolist()
  assert len(values) == 8
  assert len(set(values)) == 8
  assert all(0 <= v < 20 for v in values)


def test_reordered_batches_keep_fields_aligned(paired_buffer):
  """Reordered rows stay aligned across fields and offsets."""
  out = paired_buffer.sample_batches_reordered(
    5, [("a", 0, "a"), ("b", 0, "b"), ("a", 1, "next_a")]
  )
  assert torch.equal(out["b"], out["a"] + 10)
  assert torch.equal(out["next_a"], (out["a"] + 1) % 10)


def test_reordered_batches_smaller_than_batch_size_is_empty():
  """Fewer slots than one batch yields no rows."""
  buffer = scalar_buffer([1.0, 2.0])
  out = buffer.sample_batches_reordered(3, ["a"])
  assert out["a"].shape == (0, 1)


def test_reordered_batches_invalid_batch_size_raises():
  """batch_size must be positive."""
  buffer = scalar_buffer([1.0, 2.0])
  with pytest.raises(InvalidArgumentError, match="batch_size"):
    buffer.sample_batches_reordered(0, ["a"])


def test_reordered_batches_after_wraparound():
  """Reordered epochs only see live slots after wraparound."""
  buffer = AlignedRingBuffer(6, [FieldSpec("a", "int64", ())], generator=make_gen(3))
  buffer.append({"a": torch.arange(4)})
  buffer.append({"a": torch.arange(4, 9)})

  out = buffer.sample_batches_reordered(2, ["a"])

  assert sorted(out["a"].tolist()) == [3, 4, 5, 6, 7, 8]
