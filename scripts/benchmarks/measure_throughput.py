"""Measure buffer throughput for regression tracking.

This script measures append and sampling throughput of the aligned ring buffer for
a typical transition layout (observation, action, reward, done) in both bounded and
unbounded mode.

Usage:
  uv run python scripts/benchmarks/measure_throughput.py
  uv run python scripts/benchmarks/measure_throughput.py --max-count 100000 --obs-dim 256
"""

from __future__ import annotations

import json
import subprocess
import time
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

import torch
import tyro

from lockstep.buffers import AlignedRingBuffer, FieldSpec


@dataclass
class BenchmarkResult:
  """Results from a single benchmark run."""

  mode: str
  max_count: int
  append_batch: int
  sample_batch: int
  append_fps: float
  sample_fps: float
  reordered_fps: float

  def __str__(self) -> str:
    return (
      f"{self.mode}:\n"
      f"  Append FPS:    {self.append_fps:,.0f}\n"
      f"  Sample FPS:    {self.sample_fps:,.0f}\n"
      f"  Reordered FPS: {self.reordered_fps:,.0f}"
    )

  def to_dict(self) -> dict:
    return asdict(self)


@dataclass
class ThroughputConfig:
  """Configuration for throughput benchmarking."""

  max_count: int = 50_000
  """Capacity of the bounded buffer, and number of slots filled in unbounded mode."""

  obs_dim: int = 64
  """Observation size per slot."""

  action_dim: int = 12
  """Action size per slot."""

  append_batch: int = 64
  """Slots appended per call."""

  sample_batch: int = 256
  """Rows drawn per sampling call."""

  num_samples: int = 200
  """Number of sampling calls to measure."""

  device: str = "cpu"
  """Device to run on."""

  modes: list[str] = field(default_factory=lambda: ["bounded", "unbounded"])
  """Buffer modes to benchmark."""

  output_dir: Path | None = None
  """Output directory for JSON results. If None, results are only printed."""


def make_fields(cfg: ThroughputConfig) -> list[FieldSpec]:
  return [
    FieldSpec("obs", "float32", (cfg.obs_dim,)),
    FieldSpec("action", "float32", (cfg.action_dim,)),
    FieldSpec("reward", "float32", ()),
    FieldSpec("done", "bool", ()),
  ]


def _synchronize(device: str) -> None:
  if device.startswith("cuda"):
    torch.cuda.synchronize()


def measure_append_fps(buffer: AlignedRingBuffer, cfg: ThroughputConfig) -> float:
  """Measure slots appended per second until ``cfg.max_count`` slots were written."""
  batch = {
    "obs": torch.randn(cfg.append_batch, cfg.obs_dim, device=cfg.device),
    "action": torch.randn(cfg.append_batch, cfg.action_dim, device=cfg.device),
    "reward": torch.randn(cfg.append_batch, device=cfg.device),
    "done": torch.zeros(cfg.append_batch, dtype=torch.bool, device=cfg.device),
  }
  num_calls = max(1, cfg.max_count // cfg.append_batch)

  _synchronize(cfg.device)
  start = time.perf_counter()

  for _ in range(num_calls):
    buffer.append(batch)

  _synchronize(cfg.device)
  elapsed = time.perf_counter() - start

  return (num_calls * cfg.append_batch) / elapsed


def measure_sample_fps(buffer: AlignedRingBuffer, cfg: ThroughputConfig) -> float:
  """Measure rows per second drawn by random_sample with a next-state offset."""
  requests = [("obs", 0, "obs"), ("obs", 1, "next_obs"), "action", "reward", "done"]

  _synchronize(cfg.device)
  start = time.perf_counter()

  for _ in range(cfg.num_samples):
    buffer.random_sample(cfg.sample_batch, requests)

  _synchronize(cfg.device)
  elapsed = time.perf_counter() - start

  return (cfg.num_samples * cfg.sample_batch) / elapsed


def measure_reordered_fps(buffer: AlignedRingBuffer, cfg: ThroughputConfig) -> float:
  """Measure rows per second produced by one full reordered epoch."""
  _synchronize(cfg.device)
  start = time.perf_counter()

  result = buffer.sample_batches_reordered(cfg.sample_batch, ["obs", "action"])

  _synchronize(cfg.device)
  elapsed = time.perf_counter() - start

  return result["obs"].shape[0] / elapsed


def benchmark_mode(mode: str, cfg: ThroughputConfig) -> BenchmarkResult:
  """Benchmark a single buffer mode."""
  print(f"\nBenchmarking {mode}...")

  if mode == "bounded":
    max_count = cfg.max_count
  elif mode == "unbounded":
    max_count = 0
  else:
    raise ValueError(f"Unknown mode: {mode}. Expected 'bounded' or 'unbounded'.")

  buffer = AlignedRingBuffer(max_count, make_fields(cfg), device=cfg.device)

  append_fps = measure_append_fps(buffer, cfg)
  sample_fps = measure_sample_fps(buffer, cfg)
  reordered_fps = measure_reordered_fps(buffer, cfg)

  return BenchmarkResult(
    mode=mode,
    max_count=cfg.max_count,
    append_batch=cfg.append_batch,
    sample_batch=cfg.sample_batch,
    append_fps=append_fps,
    sample_fps=sample_fps,
    reordered_fps=reordered_fps,
  )


def get_git_commit() -> str:
  """Get current git commit SHA."""
  try:
    result = subprocess.run(
      ["git", "rev-parse", "HEAD"],
      capture_output=True,
      text=True,
      check=True,
    )
    return result.stdout.strip()[:7]
  except (subprocess.CalledProcessError, FileNotFoundError):
    return "unknown"


def save_results(results: list[BenchmarkResult], output_dir: Path) -> None:
  """Save benchmark results to JSON, appending to existing data."""
  output_dir.mkdir(parents=True, exist_ok=True)
  data_file = output_dir / "throughput_data.json"

  # Load existing data.
  existing: list[dict] = []
  if data_file.exists():
    with open(data_file) as f:
      existing = json.load(f)

  run_entry = {
    "created_at": datetime.now(timezone.utc).isoformat(),
    "commit": get_git_commit(),
    "results": [r.to_dict() for r in results],
  }

  existing.append(run_entry)

  with open(data_file, "w") as f:
    json.dump(existing, f, indent=2)

  print(f"\nResults saved to {data_file}")


def main(cfg: ThroughputConfig) -> list[BenchmarkResult]:
  """Run throughput benchmarks on all configured modes."""
  print("Throughput Benchmark")
  print(f"  Slots: {cfg.max_count}")
  print(f"  Append batch: {cfg.append_batch}, sample batch: {cfg.sample_batch}")
  print(f"  Device: {cfg.device}")

  results = []
  for mode in cfg.modes:
    result = benchmark_mode(mode, cfg)
    results.append(result)
    print(result)

  print("\n" + "=" * 60)
  print("Summary:")
  print("=" * 60)
  print(f"{'Mode':<12} {'Append FPS':>14} {'Sample FPS':>14} {'Reordered FPS':>16}")
  print("-" * 60)
  for r in results:
    print(
      f"{r.mode:<12} {r.append_fps:>14,.0f} {r.sample_fps:>14,.0f} "
      f"{r.reordered_fps:>16,.0f}"
    )

  if cfg.output_dir:
    save_results(results, cfg.output_dir)

  return results


if __name__ == "__main__":
  cfg = tyro.cli(ThroughputConfig)
  main(cfg)
