"""
On-disk shard store backed by safetensors files.

Each shard version is stored as an individual safetensors file so a
single version can be read without touching any other:

    <root>/<shard_id hex>/v00000001.safetensors

The payload is a flat uint8 tensor named ``data``; everything else about
the shard lives in the safetensors header metadata.
"""

import json
import logging
import os
import re
import tempfile
from pathlib import Path
from typing import List, Optional, Union

import torch
from safetensors import SafetensorError, safe_open
from safetensors.torch import save

from ...common.errors import ShardNotFound, StorageError
from ...common.types import ExpertId, Hash, PublicKey, ShardId
from ...domain.entities.shard import Shard, ShardMetadata
from ...domain.entities.tensor import Tensor
from ...domain.interfaces.shard_store import IShardStore

logger = logging.getLogger(__name__)

_VERSION_FILE = re.compile(r"^v(\d{8})\.safetensors$")
FORMAT_VERSION = "1"


class SafetensorsShardStore(IShardStore):
    """
    Durable shard store.

    Writes go to a temporary file in the shard directory, are flushed and
    fsynced, then atomically renamed into place before ``put`` returns.
    Reads open only the requested version file, so readers of different
    shards never contend.
    """

    def __init__(self, root: Union[str, Path]):
        super().__init__()
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _shard_dir(self, shard_id: ShardId) -> Path:
        return self.root / shard_id.hex()

    def _version_path(self, shard_id: ShardId, version: int) -> Path:
        return self._shard_dir(shard_id) / f"v{version:08d}.safetensors"

    def exists(self, shard_id: ShardId) -> bool:
        return bool(self.versions(shard_id))

    def versions(self, shard_id: ShardId) -> List[int]:
        shard_dir = self._shard_dir(shard_id)
        if not shard_dir.is_dir():
            return []
        found = []
        for entry in shard_dir.iterdir():
            match = _VERSION_FILE.match(entry.name)
            if match:
                found.append(int(match.group(1)))
        return sorted(found)

    def _write_version(self, shard: Shard) -> None:
        payload = shard.tensor.data
        if payload:
            data = torch.frombuffer(bytearray(payload), dtype=torch.uint8)
        else:
            data = torch.empty(0, dtype=torch.uint8)

        metadata = {
            "format_version": FORMAT_VERSION,
            "shard_id": shard.shard_id.hex(),
            "expert_id": shard.expert_id.hex(),
            "dtype": shard.tensor.dtype.value,
            "shape": json.dumps(list(shard.tensor.shape)),
            "owner": shard.metadata.owner.hex(),
            "license_hash": shard.metadata.license_hash.hex() if shard.metadata.license_hash else "",
            "created_at": str(shard.metadata.created_at),
            "version": str(shard.version),
            "content_hash": shard.content_hash().hex(),
        }
        blob = save({"data": data}, metadata=metadata)

        shard_dir = self._shard_dir(shard.shard_id)
        target = self._version_path(shard.shard_id, shard.version)
        try:
            shard_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=shard_dir, prefix=".tmp-", suffix=".safetensors")
            try:
                with os.fdopen(fd, "wb") as f:
                    f.write(blob)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_name, target)
            except BaseException:
                if os.path.exists(tmp_name):
                    os.unlink(tmp_name)
                raise
            _fsync_dir(shard_dir)
        except OSError as e:
            raise StorageError(f"Failed to persist shard {shard.shard_id} v{shard.version}: {e}") from e

        logger.debug("Stored shard %s v%d (%d bytes)", shard.shard_id, shard.version, len(payload))

    def _read_version(self, shard_id: ShardId, version: Optional[int]) -> Shard:
        resolved = self._latest(shard_id, version)
        path = self._version_path(shard_id, resolved)
        try:
            with safe_open(str(path), framework="pt") as f:
                metadata = f.metadata() or {}
                data = f.get_tensor("data")
        except FileNotFoundError as e:
            raise ShardNotFound(shard_id, version) from e
        except (OSError, SafetensorError) as e:
            raise StorageError(f"Failed to read shard {shard_id} v{resolved}: {e}") from e

        shard = self._decode(shard_id, metadata, data.numpy().tobytes())
        if shard.content_hash().hex() != metadata.get("content_hash"):
            raise StorageError(f"Content hash mismatch for shard {shard_id} v{resolved}")
        return shard

    @staticmethod
    def _decode(shard_id: ShardId, metadata: dict, payload: bytes) -> Shard:
        try:
            license_hash = metadata.get("license_hash") or ""
            tensor = Tensor.from_dict(
                {"shape": json.loads(metadata["shape"]), "dtype": metadata["dtype"]}, payload
            )
            return Shard(
                shard_id=ShardId.from_hex(metadata["shard_id"]),
                expert_id=ExpertId.from_hex(metadata["expert_id"]),
                tensor=tensor,
                metadata=ShardMetadata(
                    owner=PublicKey.from_hex(metadata["owner"]),
                    license_hash=Hash.from_hex(license_hash) if license_hash else None,
                    created_at=int(metadata["created_at"]),
                    version=int(metadata["version"]),
                ),
            )
        except (KeyError, ValueError) as e:
            raise StorageError(f"Corrupt metadata for shard {shard_id}: {e}") from e


def _fsync_dir(path: Path) -> None:
    """Make a rename durable. Not supported on every platform."""
    if os.name != "posix":
        return
    fd = os.open(path, os.O_RDONLY)
    try:
        os.fsync(fd)
    finally:
        os.close(fd)
