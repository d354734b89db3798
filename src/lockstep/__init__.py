"""Multi-field ring buffers for reinforcement-learning trajectories."""

from lockstep.buffers import (
  AlignedRingBuffer as AlignedRingBuffer,
)
from lockstep.buffers import (
  AlignedRingBufferCfg as AlignedRingBufferCfg,
)
from lockstep.buffers import ElementType as ElementType
from lockstep.buffers import FetchRequest as FetchRequest
from lockstep.buffers import FieldSpec as FieldSpec
from lockstep.utils.tensor import stack_elements as stack_elements

__version__ = "0.1.0"
