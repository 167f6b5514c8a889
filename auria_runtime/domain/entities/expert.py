"""
Expert definitions: which shards make up an expert and how their bytes
are laid out in the expert's weight tensor.
"""

import math
from dataclasses import dataclass, field
from typing import Sequence, Tuple

from ...common.errors import InvalidTensorError
from ...common.types import ExpertId, ShardId
from .tensor import Tensor, TensorDType


@dataclass(frozen=True)
class TensorLayout:
    """
    Placement of an expert tensor inside the concatenated shard bytes.

    ``offset`` is a byte offset into the concatenation of the expert's
    shard payloads (in shard order). ``stride`` is the byte distance
    between the starts of consecutive rows, a row being one run of the
    last dimension; 0 means rows are packed back to back.
    """

    offset: int
    stride: int
    shape: Tuple[int, ...]

    def __post_init__(self):
        """Validate layout parameters."""
        if not isinstance(self.shape, tuple):
            object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))
        if self.offset < 0:
            raise ValueError(f"offset must be non-negative, got {self.offset}")
        if self.stride < 0:
            raise ValueError(f"stride must be non-negative, got {self.stride}")
        if any(d < 0 for d in self.shape):
            raise ValueError(f"shape dimensions must be non-negative, got {self.shape}")

    @classmethod
    def contiguous(cls, shape: Sequence[int]) -> "TensorLayout":
        return cls(offset=0, stride=0, shape=tuple(shape))

    def assemble(self, payloads: Sequence[bytes], dtype: TensorDType) -> Tensor:
        """
        Gather the expert tensor out of its shard payloads.

        Raises:
            InvalidTensorError: If the layout reaches outside the shard bytes
        """
        buffer = b"".join(payloads)
        tensor_bytes = dtype.nbytes(math.prod(self.shape))
        row_len = self.shape[-1] if self.shape else 1
        row_bytes = dtype.nbytes(row_len)

        if self.stride in (0, row_bytes) or tensor_bytes == 0:
            end = self.offset + tensor_bytes
            if end > len(buffer):
                raise InvalidTensorError(
                    f"Layout needs bytes [{self.offset}, {end}) but shards hold {len(buffer)}"
                )
            data = buffer[self.offset:end]
        else:
            if self.stride < row_bytes:
                raise InvalidTensorError(
                    f"stride {self.stride} is shorter than a row ({row_bytes} bytes)"
                )
            if dtype is TensorDType.INT4 and row_len % 2:
                raise InvalidTensorError("Strided INT4 layouts need an even last dimension")
            rows = math.prod(self.shape[:-1])
            last_end = self.offset + (rows - 1) * self.stride + row_bytes
            if last_end > len(buffer):
                raise InvalidTensorError(
                    f"Layout needs bytes up to {last_end} but shards hold {len(buffer)}"
                )
            data = b"".join(
                buffer[start:start + row_bytes]
                for start in range(self.offset, self.offset + rows * self.stride, self.stride)
            )

        tensor = Tensor(data=data, shape=self.shape, dtype=dtype)
        tensor.validate()
        return tensor


@dataclass(frozen=True)
class Expert:
    """
    A routable unit of the model.

    Shards are referenced by id only; the owning ShardStore resolves them.
    """

    expert_id: ExpertId
    shards: Tuple[ShardId, ...]
    tensor_layout: TensorLayout
    dtype: TensorDType = TensorDType.FP16
    name: str = field(default="", compare=False)

    def __post_init__(self):
        """Validate expert definition."""
        if not isinstance(self.shards, tuple):
            object.__setattr__(self, "shards", tuple(self.shards))
        if not self.shards:
            raise ValueError(f"Expert {self.expert_id} must reference at least one shard")

    @property
    def nbytes(self) -> int:
        """Size of the assembled tensor."""
        return self.dtype.nbytes(math.prod(self.tensor_layout.shape))

    def __repr__(self) -> str:
        label = self.name or self.expert_id.hex()[:12]
        return f"Expert({label}, {len(self.shards)} shards, {self.tensor_layout.shape})"


# Name used for expert definitions exchanged with other nodes.
ExpertDefinition = Expert
