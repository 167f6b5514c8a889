"""
Unit tests for tensor payloads and expert layouts.
"""

import pytest
import torch

from auria_runtime.common.errors import InvalidTensorError
from auria_runtime.domain.entities import Tensor, TensorDType, TensorLayout


class TestTensorDType:
    """Test dtype byte accounting."""

    def test_nbytes(self):
        assert TensorDType.FP16.nbytes(10) == 20
        assert TensorDType.FP8.nbytes(10) == 10
        assert TensorDType.INT8.nbytes(10) == 10
        assert TensorDType.INT4.nbytes(10) == 5
        assert TensorDType.INT4.nbytes(11) == 6


class TestTensor:
    """Test Tensor validation and torch interop."""

    def test_consistent_tensor(self):
        tensor = Tensor(data=b"\x00" * 12, shape=(2, 3), dtype=TensorDType.FP16)
        assert tensor.numel == 6
        assert tensor.expected_nbytes == 12
        assert tensor.is_consistent()
        tensor.validate()

    def test_mismatched_length_rejected(self):
        """Test that byte length must equal shape x dtype."""
        tensor = Tensor(data=b"\x00" * 11, shape=(2, 3), dtype=TensorDType.FP16)
        assert not tensor.is_consistent()
        with pytest.raises(InvalidTensorError, match="requires 12"):
            tensor.validate()

    def test_bytearray_normalized(self):
        tensor = Tensor(data=bytearray(b"\x01\x02"), shape=[2], dtype=TensorDType.INT8)
        assert isinstance(tensor.data, bytes)
        assert tensor.shape == (2,)

    def test_from_torch_and_back(self):
        """Test capturing a float16 torch tensor and viewing it again."""
        source = torch.arange(6, dtype=torch.float16).reshape(2, 3)
        tensor = Tensor.from_torch(source)
        assert tensor.dtype is TensorDType.FP16
        assert tensor.shape == (2, 3)
        assert torch.equal(tensor.to_torch(), source)

    def test_from_torch_casts_other_floats(self):
        tensor = Tensor.from_torch(torch.ones(4, dtype=torch.float32))
        assert tensor.dtype is TensorDType.FP16
        assert tensor.nbytes == 8

    def test_from_torch_rejects_integers_other_than_int8(self):
        with pytest.raises(InvalidTensorError):
            Tensor.from_torch(torch.ones(4, dtype=torch.int64))

    def test_int4_is_packed_uint8(self):
        tensor = Tensor(data=b"\x12\x34\x56", shape=(2, 3), dtype=TensorDType.INT4)
        viewed = tensor.to_torch()
        assert viewed.dtype == torch.uint8
        assert viewed.shape == (3,)

    def test_empty_tensor(self):
        tensor = Tensor(data=b"", shape=(0, 4), dtype=TensorDType.FP16)
        assert tensor.to_torch().shape == (0, 4)

    def test_header_round_trip(self):
        tensor = Tensor(data=b"\x00" * 4, shape=(4,), dtype=TensorDType.FP8)
        assert Tensor.from_dict(tensor.to_dict(), tensor.data) == tensor


class TestTensorLayout:
    """Test assembling expert tensors from shard bytes."""

    def test_contiguous_across_shards(self):
        """Test that shard payloads are concatenated in order."""
        layout = TensorLayout.contiguous((2, 2))
        tensor = layout.assemble([b"abcd", b"efgh"], TensorDType.FP16)
        assert tensor.data == b"abcdefgh"
        assert tensor.shape == (2, 2)

    def test_offset(self):
        layout = TensorLayout(offset=2, stride=0, shape=(4,))
        tensor = layout.assemble([b"xxabcd"], TensorDType.INT8)
        assert tensor.data == b"abcd"

    def test_strided_rows(self):
        """Test gathering rows separated by padding."""
        layout = TensorLayout(offset=0, stride=4, shape=(3, 2))
        tensor = layout.assemble([b"ab__cd__ef"], TensorDType.INT8)
        assert tensor.data == b"abcdef"

    def test_stride_equal_to_row_is_contiguous(self):
        layout = TensorLayout(offset=0, stride=2, shape=(2, 2))
        assert layout.assemble([b"abcd"], TensorDType.INT8).data == b"abcd"

    def test_out_of_range_rejected(self):
        layout = TensorLayout.contiguous((4, 4))
        with pytest.raises(InvalidTensorError):
            layout.assemble([b"\x00" * 8], TensorDType.INT8)

    def test_short_stride_rejected(self):
        layout = TensorLayout(offset=0, stride=1, shape=(2, 2))
        with pytest.raises(InvalidTensorError):
            layout.assemble([b"\x00" * 8], TensorDType.INT8)

    def test_strided_int4_needs_even_rows(self):
        layout = TensorLayout(offset=0, stride=4, shape=(2, 3))
        with pytest.raises(InvalidTensorError):
            layout.assemble([b"\x00" * 8], TensorDType.INT4)

    def test_layout_validation(self):
        with pytest.raises(ValueError):
            TensorLayout(offset=-1, stride=0, shape=(1,))
        with pytest.raises(ValueError):
            TensorLayout(offset=0, stride=0, shape=(-1,))
