"""
Raw tensor payloads as they travel between the shard store, the tier
manager and the compute engine.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import torch

from ...common.errors import InvalidTensorError


class TensorDType(Enum):
    """Element encodings a shard payload may use."""

    FP16 = "fp16"
    FP8 = "fp8"
    INT8 = "int8"
    INT4 = "int4"  # two elements packed per byte

    @property
    def bits(self) -> int:
        return {
            TensorDType.FP16: 16,
            TensorDType.FP8: 8,
            TensorDType.INT8: 8,
            TensorDType.INT4: 4,
        }[self]

    def nbytes(self, numel: int) -> int:
        """Byte size of ``numel`` elements, INT4 rounded up to whole bytes."""
        return (numel * self.bits + 7) // 8


# Torch element types used when a payload is viewed as a torch.Tensor.
# INT4 has no native torch type and is exposed as packed uint8.
_TORCH_DTYPES = {
    TensorDType.FP16: torch.float16,
    TensorDType.FP8: torch.float8_e4m3fn,
    TensorDType.INT8: torch.int8,
    TensorDType.INT4: torch.uint8,
}


@dataclass(frozen=True)
class Tensor:
    """
    Byte payload plus shape and dtype.

    Construction does not validate: an inconsistent tensor can exist in
    memory but is rejected wherever it crosses a storage boundary.
    """

    data: bytes
    shape: Tuple[int, ...]
    dtype: TensorDType

    def __post_init__(self):
        if isinstance(self.data, (bytearray, memoryview)):
            object.__setattr__(self, "data", bytes(self.data))
        if not isinstance(self.shape, tuple):
            object.__setattr__(self, "shape", tuple(int(d) for d in self.shape))

    @property
    def numel(self) -> int:
        return math.prod(self.shape)

    @property
    def expected_nbytes(self) -> int:
        return self.dtype.nbytes(self.numel)

    @property
    def nbytes(self) -> int:
        return len(self.data)

    def is_consistent(self) -> bool:
        return all(d >= 0 for d in self.shape) and self.nbytes == self.expected_nbytes

    def validate(self) -> None:
        """
        Raises:
            InvalidTensorError: If the payload length disagrees with shape x dtype
        """
        if any(d < 0 for d in self.shape):
            raise InvalidTensorError(f"Negative dimension in shape {self.shape}")
        if self.nbytes != self.expected_nbytes:
            raise InvalidTensorError(
                f"Tensor payload is {self.nbytes} bytes but shape {self.shape} "
                f"as {self.dtype.name} requires {self.expected_nbytes}"
            )

    def to_torch(self, device: Optional[torch.device] = None) -> torch.Tensor:
        """
        View the payload as a torch tensor.

        INT4 payloads come back packed, as a flat uint8 tensor of ``nbytes``.
        """
        self.validate()
        torch_dtype = _TORCH_DTYPES[self.dtype]
        shape = (self.nbytes,) if self.dtype is TensorDType.INT4 else self.shape

        if self.nbytes == 0:
            result = torch.empty(shape, dtype=torch_dtype)
        else:
            raw = torch.frombuffer(bytearray(self.data), dtype=torch.uint8)
            result = raw.view(torch_dtype).reshape(shape)

        if device is not None:
            result = result.to(device)
        return result

    @classmethod
    def from_torch(cls, tensor: torch.Tensor) -> "Tensor":
        """
        Capture a torch tensor's bytes.

        float16, float8_e4m3fn and int8 map directly; other floating types
        are cast to float16.
        """
        if tensor.dtype == torch.float16:
            dtype = TensorDType.FP16
        elif tensor.dtype == torch.float8_e4m3fn:
            dtype = TensorDType.FP8
        elif tensor.dtype == torch.int8:
            dtype = TensorDType.INT8
        elif tensor.is_floating_point():
            tensor = tensor.to(torch.float16)
            dtype = TensorDType.FP16
        else:
            raise InvalidTensorError(f"Unsupported torch dtype: {tensor.dtype}")

        flat = tensor.detach().to("cpu").contiguous().reshape(-1)
        data = flat.view(torch.uint8).numpy().tobytes()
        return cls(data=data, shape=tuple(tensor.shape), dtype=dtype)

    def to_dict(self) -> dict:
        """Header fields without the payload."""
        return {"shape": list(self.shape), "dtype": self.dtype.value}

    @classmethod
    def from_dict(cls, header: dict, data: bytes) -> "Tensor":
        """Inverse of ``to_dict`` given the payload."""
        return cls(
            data=data,
            shape=tuple(int(d) for d in header["shape"]),
            dtype=TensorDType(header["dtype"]),
        )

    def __repr__(self) -> str:
        return f"Tensor(shape={self.shape}, dtype={self.dtype.name}, {self.nbytes}B)"
