"""Script to summarize a saved buffer snapshot."""

from pathlib import Path

import tyro
from prettytable import PrettyTable

from lockstep.buffers import AlignedRingBuffer


def inspect_buffer(path: Path, preview: int = 0) -> AlignedRingBuffer:
  """Print the fields and occupancy of a buffer saved with `AlignedRingBuffer.save`.

  Args:
    path: Snapshot file.
    preview: Number of newest slots to print for every field.
  """
  if not path.exists():
    raise FileNotFoundError(f"Snapshot file not found: {path}")
  buffer = AlignedRingBuffer.load(path)

  table = PrettyTable(["#", "Field", "Type", "Shape", "Scalars/slot"])
  table.title = f"Buffer snapshot: {path.name}"
  table.align["Field"] = "l"
  for idx, (name, spec) in enumerate(buffer.field_specs.items()):
    table.add_row(
      [idx + 1, name, spec.element_type.value, tuple(spec.shape), spec.unit_size]
    )
  print(table)

  mode = f"bounded at {buffer.max_count}" if buffer.is_bounded else "unbounded"
  print(f"Slots: {len(buffer)} / {buffer.capacity} allocated ({mode})")
  print(f"Write cursor: {buffer.write_cursor}")

  count = min(preview, len(buffer))
  if count > 0:
    rows = buffer.fetch_range(len(buffer) - count, count, buffer.field_names)
    for name, values in rows.items():
      print(f"\n[{name}] newest {count}:")
      print(values)
  return buffer


def main():
  return tyro.cli(inspect_buffer)


if __name__ == "__main__":
  main()
