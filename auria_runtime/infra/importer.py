"""
Checkpoint import.

Splits the tensors of a safetensors checkpoint into row-aligned,
content-addressed shards, stores them, and returns the Expert definitions
that reassemble them. Each checkpoint tensor becomes one expert whose id
is derived from the tensor name.
"""

import logging
import math
import time
from pathlib import Path
from typing import Callable, List, Optional, Union

import torch
from safetensors.torch import load_file
from tqdm import tqdm

from ..common.types import ExpertId, Hash, PublicKey, ShardId
from ..domain.entities.expert import Expert, TensorLayout
from ..domain.entities.shard import Shard
from ..domain.entities.tensor import Tensor, TensorDType
from ..domain.interfaces.shard_store import IShardStore

logger = logging.getLogger(__name__)

DEFAULT_SHARD_BYTES = 64 * 1024 * 1024


class ShardImporter:
    """Expert checkpoint to shard store importer."""

    def __init__(
        self,
        store: IShardStore,
        owner: PublicKey,
        shard_bytes: int = DEFAULT_SHARD_BYTES,
        license_hash: Optional[Hash] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize importer.

        Args:
            store: Destination shard store
            owner: Public key recorded as the owner of every shard
            shard_bytes: Upper bound on shard payload size (a single row may exceed it)
            license_hash: License reference recorded in shard metadata
            clock: Source of shard creation times
        """
        if shard_bytes < 1:
            raise ValueError(f"shard_bytes must be positive, got {shard_bytes}")
        self.store = store
        self.owner = owner
        self.shard_bytes = shard_bytes
        self.license_hash = license_hash
        self._clock = clock

    def import_tensor(self, name: str, tensor: Union[torch.Tensor, Tensor]) -> Expert:
        """
        Shard one tensor into the store.

        Args:
            name: Checkpoint name of the tensor, e.g. ``block.0.mlp.expert_3``
            tensor: Weights to import

        Returns:
            Expert definition with a contiguous layout over its shards
        """
        if isinstance(tensor, torch.Tensor):
            tensor = Tensor.from_torch(tensor)
        tensor.validate()

        expert_id = ExpertId.from_name(name)
        created_at = int(self._clock())
        shard_ids: List[ShardId] = []
        for piece in self._split(tensor):
            shard = Shard.create(
                expert_id,
                piece,
                owner=self.owner,
                license_hash=self.license_hash,
                created_at=created_at,
            )
            if self.store.exists(shard.shard_id):
                logger.debug("Shard %s already stored, skipping", shard.shard_id)
            else:
                self.store.put(shard)
            shard_ids.append(shard.shard_id)

        logger.info("Imported %s as %d shards (%d bytes)", name, len(shard_ids), tensor.nbytes)
        return Expert(
            expert_id=expert_id,
            shards=tuple(shard_ids),
            tensor_layout=TensorLayout.contiguous(tensor.shape),
            dtype=tensor.dtype,
            name=name,
        )

    def import_file(
        self,
        path: Union[str, Path],
        progress: bool = False,
        include: Optional[Callable[[str], bool]] = None,
    ) -> List[Expert]:
        """
        Import every tensor of a safetensors checkpoint.

        Args:
            path: Checkpoint file
            progress: Show a progress bar
            include: Optional filter on tensor names

        Returns:
            Expert definitions in tensor-name order
        """
        tensors = load_file(str(path), device="cpu")
        names = sorted(name for name in tensors if include is None or include(name))

        experts = []
        for name in tqdm(names, desc="Importing experts", disable=not progress):
            experts.append(self.import_tensor(name, tensors[name]))

        logger.info("Imported %d experts from %s", len(experts), path)
        return experts

    def _split(self, tensor: Tensor) -> List[Tensor]:
        """Cut along the leading dimensions into runs of whole rows."""
        if len(tensor.shape) < 2:
            return [tensor]

        row_len = tensor.shape[-1]
        rows = math.prod(tensor.shape[:-1])
        row_bytes = tensor.dtype.nbytes(row_len)
        if rows == 0 or row_bytes == 0:
            return [tensor]
        if tensor.dtype is TensorDType.INT4 and row_len % 2:
            # packed nibbles straddle row boundaries
            return [tensor]

        rows_per_shard = max(1, self.shard_bytes // row_bytes)
        pieces = []
        for start in range(0, rows, rows_per_shard):
            count = min(rows_per_shard, rows - start)
            data = tensor.data[start * row_bytes : (start + count) * row_bytes]
            pieces.append(Tensor(data=data, shape=(count, row_len), dtype=tensor.dtype))
        return pieces
