"""
Tiered expert cache manager.

This module keeps materialized experts in the fastest storage tier their
capacity allows, demotes least-recently-used entries one tier down when
room is needed, and reconstructs experts from the shard store on a miss.
"""

import itertools
import json
import logging
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import torch
from safetensors import SafetensorError, safe_open
from safetensors.torch import save_file
from tqdm import tqdm

from ...common.errors import InsufficientHardware, InvalidTensorError, StorageError
from ...common.types import ExpertId, StorageTier, Tier
from ...config import TORCH_RAM_DEVICE, TORCH_VRAM_DEVICE
from ...config.runtime_config import StorageTierConfig
from ..entities.cache import ExpertCacheEntry, StorageStats
from ..entities.expert import Expert
from ..entities.tensor import Tensor
from ..interfaces.shard_store import IShardStore
from ..routing.topology import ModelTopology, TopologyHolder
from .memory_tier import TierTables

logger = logging.getLogger(__name__)


class TierManager:
    """
    Owner of every ExpertCacheEntry.

    Placement rules:
    - A new entry goes to the fastest tier with free room. If no tier has
      room it is admitted to the fastest tier large enough to hold it,
      evicting least-recently-used entries, each demoted one tier down.
    - A hit is promoted toward VRAM only into free room.
    - NETWORK entries hold no payload; the bytes are re-fetched from the
      shard store. Without a NETWORK tier, evicting out of the slowest
      tier is refused with InsufficientHardware.

    An entry only serves requests whose topology snapshot defines the
    expert the same way it was assembled; a redefined expert is a miss.

    Concurrent misses on one expert share a single load. Loads and spill
    I/O run without the table lock held.
    """

    def __init__(
        self,
        store: IShardStore,
        topology: Union[TopologyHolder, ModelTopology],
        tier_configs: Iterable[StorageTierConfig],
        clock: Callable[[], float] = time.monotonic,
        min_tier: Tier = Tier.NANO,
        min_working_set_bytes: int = 0,
    ):
        """
        Initialize tier manager.

        Args:
            store: Shard store experts are reconstructed from
            topology: Topology holder (or fixed snapshot) resolving expert ids
            tier_configs: Capacity per configured tier
            clock: Source of last-used timestamps
            min_tier: Hardware tier reported when capacity is insufficient
            min_working_set_bytes: Minimum total capacity across payload tiers

        Raises:
            InsufficientHardware: If configured capacity is below the minimum working set
        """
        if isinstance(topology, ModelTopology):
            topology = TopologyHolder(topology)
        self._store = store
        self._topology = topology
        self._clock = clock
        self._min_tier = min_tier

        self._configs: Dict[StorageTier, StorageTierConfig] = {
            c.tier: c for c in sorted(tier_configs, key=lambda c: c.tier.value)
        }
        if not self._configs:
            raise InsufficientHardware(min_tier, "no storage tiers configured")
        self._tiers: List[StorageTier] = list(self._configs)
        self._payload_tiers = [t for t in self._tiers if t.holds_payload]

        capacity = sum(self._configs[t].max_size_bytes for t in self._payload_tiers)
        if capacity < min_working_set_bytes:
            raise InsufficientHardware(
                min_tier,
                f"tier capacity {capacity}B below minimum working set {min_working_set_bytes}B",
            )

        disk = self._configs.get(StorageTier.DISK)
        self._spill_dir: Optional[Path] = disk.path if disk is not None else None
        if self._spill_dir is not None:
            self._spill_dir.mkdir(parents=True, exist_ok=True)

        self._tables = TierTables(self._tiers)
        self._lock = threading.RLock()
        self._inflight: Dict[Expert, Future] = {}
        self._sequence = itertools.count(1)

        # Statistics tracking
        self._stats = {
            "hits": 0,
            "misses": 0,
            "loads": 0,
            "evictions": 0,
            "promotions": 0,
        }

    @property
    def tiers(self) -> List[StorageTier]:
        return list(self._tiers)

    def set_topology(self, topology: Union[TopologyHolder, ModelTopology]) -> None:
        if isinstance(topology, ModelTopology):
            topology = TopologyHolder(topology)
        self._topology = topology

    def get_or_load(self, expert_id: ExpertId, expert: Optional[Expert] = None) -> Tensor:
        """
        Return an expert's tensor, loading it if it is not held in memory.

        Args:
            expert_id: Expert to materialize
            expert: Definition from the caller's topology snapshot (looked
                up in the current topology if None)

        Returns:
            Fully materialized tensor, assembled from ``expert``'s shards

        Raises:
            ExpertNotFound: If the expert is not in the topology
            ShardNotFound: If a shard of the expert is missing from the store
            StorageError: If the payload cannot be read or assembled
            InsufficientHardware: If no tier can take the expert
        """
        if expert is None:
            expert = self._topology.current.get(expert_id)
        elif expert.expert_id != expert_id:
            raise ValueError(f"Definition of {expert.expert_id} passed for expert {expert_id}")

        with self._lock:
            entry = self._tables.get_entry(expert_id)
            if entry is not None and entry.expert != expert:
                entry = None
            if entry is not None and entry.tensor is not None:
                self._stats["hits"] += 1
                self._touch(entry)
                self._promote(entry)
                return entry.tensor

            future = self._inflight.get(expert)
            leader = future is None
            if leader:
                future = Future()
                self._inflight[expert] = future
                if entry is not None and entry.tier is StorageTier.DISK:
                    self._stats["hits"] += 1
                else:
                    self._stats["misses"] += 1
                spill_path = entry.spill_path if entry is not None else None

        if not leader:
            return future.result()
        return self._lead_load(expert, future, spill_path)

    def get_batch(self, expert_ids: Sequence[ExpertId]) -> List[Tensor]:
        """Materialize several experts, in order."""
        return [self.get_or_load(expert_id) for expert_id in expert_ids]

    def materialize(
        self,
        expert_id: ExpertId,
        device: Optional[torch.device] = None,
        expert: Optional[Expert] = None,
    ) -> torch.Tensor:
        """
        Return an expert as a torch tensor.

        The device defaults to the accelerator for VRAM-resident experts
        and to host memory otherwise.
        """
        tensor = self.get_or_load(expert_id, expert)
        if device is None:
            tier = self.tier_of(expert_id)
            device = TORCH_VRAM_DEVICE if tier is StorageTier.VRAM else TORCH_RAM_DEVICE
        return tensor.to_torch(device)

    def warmup(self, expert_ids: Sequence[ExpertId], progress: bool = False) -> int:
        """
        Pre-load experts before serving.

        Returns:
            Number of experts loaded
        """
        loaded = 0
        for expert_id in tqdm(expert_ids, desc="Warming experts", disable=not progress):
            self.get_or_load(expert_id)
            loaded += 1
        logger.info("Warmed %d experts", loaded)
        return loaded

    def tier_of(self, expert_id: ExpertId) -> Optional[StorageTier]:
        with self._lock:
            return self._tables.get_tier(expert_id)

    def evict(self, expert_id: ExpertId) -> bool:
        """
        Drop an expert from every tier.

        Returns:
            True if an entry was dropped
        """
        with self._lock:
            entry = self._tables.remove(expert_id)
        if entry is None:
            return False
        if entry.spill_path is not None:
            self._discard_files([entry.spill_path])
        return True

    def clear(self) -> None:
        """Drop every entry from every tier."""
        with self._lock:
            dropped = self._tables.clear()
        self._discard_files([e.spill_path for e in dropped if e.spill_path is not None])

    def stats(self) -> StorageStats:
        """Snapshot of tier occupancy and counters."""
        with self._lock:
            summary = self._tables.get_tier_summary()
            counters = dict(self._stats)
        return StorageStats(**summary, **counters)

    def _lead_load(
        self, expert: Expert, future: Future, spill_path: Optional[Path]
    ) -> Tensor:
        try:
            tensor = self._fetch(expert, spill_path)
            with self._lock:
                spills, stale = self._admit(expert, tensor)
                del self._inflight[expert]
        except BaseException as e:
            with self._lock:
                self._inflight.pop(expert, None)
            future.set_exception(e)
            raise

        future.set_result(tensor)
        self._discard_files(stale)
        self._write_spills(spills)
        return tensor

    def _fetch(self, expert: Expert, spill_path: Optional[Path]) -> Tensor:
        if spill_path is not None:
            try:
                return self._read_spill(spill_path)
            except StorageError as e:
                logger.warning(
                    "Spilled copy of expert %s unreadable, reconstructing from shard store: %s",
                    expert.expert_id,
                    e,
                )
        return self._reconstruct(expert)

    def _reconstruct(self, expert: Expert) -> Tensor:
        expert_id = expert.expert_id
        shards = [self._store.get(shard_id) for shard_id in expert.shards]
        for shard in shards:
            if shard.tensor.dtype is not expert.dtype:
                raise InvalidTensorError(
                    f"Shard {shard.shard_id} is {shard.tensor.dtype.name}, "
                    f"expert {expert_id} expects {expert.dtype.name}"
                )
        tensor = expert.tensor_layout.assemble(
            [shard.tensor.data for shard in shards], expert.dtype
        )
        with self._lock:
            self._stats["loads"] += 1
        logger.info(
            "Reconstructed expert %s from %d shards (%d bytes)",
            expert_id,
            len(shards),
            tensor.nbytes,
        )
        return tensor

    def _touch(self, entry: ExpertCacheEntry) -> None:
        entry.last_used_timestamp = self._clock()
        entry.sequence = next(self._sequence)

    def _capacity(self, tier: StorageTier) -> int:
        return self._configs[tier].max_size_bytes

    def _has_room(self, tier: StorageTier, nbytes: int) -> bool:
        return self._tables.used_bytes(tier) + nbytes <= self._capacity(tier)

    def _slower_tier(self, tier: StorageTier) -> Optional[StorageTier]:
        slower = tier.slower()
        while slower is not None and slower not in self._configs:
            slower = slower.slower()
        return slower

    def _promote(self, entry: ExpertCacheEntry) -> None:
        for tier in self._payload_tiers:
            if tier.value >= entry.tier.value:
                return
            if self._has_room(tier, entry.nbytes):
                logger.debug("Promoting expert %s %s -> %s", entry.expert_id, entry.tier.name, tier.name)
                self._tables.move_between_tiers(entry, tier)
                self._stats["promotions"] += 1
                return

    def _admit(
        self, expert: Expert, tensor: Tensor
    ) -> Tuple[List[ExpertCacheEntry], List[Path]]:
        """
        Publish a freshly loaded tensor. Caller holds the lock.

        Returns:
            Entries whose payload should be spilled to disk, and spill files
            that no longer back any entry
        """
        expert_id = expert.expert_id
        stale: List[Path] = []
        previous = self._tables.remove(expert_id)
        try:
            target, moves = self._place(tensor.nbytes)
        except InsufficientHardware:
            if previous is not None:
                self._tables.add_to_tier(previous.tier, previous)
            raise
        if previous is not None and previous.spill_path is not None:
            stale.append(previous.spill_path)

        spills: List[ExpertCacheEntry] = []
        for victim, destination in moves:
            self._demote(victim, destination, spills, stale)

        entry = ExpertCacheEntry(
            expert_id=expert_id,
            tensor=tensor if target.holds_payload else None,
            last_used_timestamp=self._clock(),
            tier=target,
            nbytes=tensor.nbytes,
            sequence=next(self._sequence),
            expert=expert,
        )
        self._tables.add_to_tier(target, entry)
        if target is StorageTier.DISK and self._spill_dir is not None:
            spills.append(entry)
        logger.debug("Placed expert %s in %s", expert_id, target.name)
        return spills, stale

    def _place(self, nbytes: int) -> Tuple[StorageTier, List[Tuple[ExpertCacheEntry, StorageTier]]]:
        target = next((t for t in self._payload_tiers if self._has_room(t, nbytes)), None)
        if target is not None:
            return target, []
        target = next((t for t in self._payload_tiers if self._capacity(t) >= nbytes), None)
        if target is None:
            if StorageTier.NETWORK not in self._configs:
                raise InsufficientHardware(self._min_tier, f"expert of {nbytes}B exceeds every tier")
            return StorageTier.NETWORK, []
        return target, self._plan_evictions(target, nbytes)

    def _plan_evictions(
        self, tier: StorageTier, nbytes: int
    ) -> List[Tuple[ExpertCacheEntry, StorageTier]]:
        """
        Work out the demotions that make room for ``nbytes`` in ``tier``.

        Nothing is changed here; the plan is only applied if every step of
        the cascade is possible.

        Raises:
            InsufficientHardware: If room cannot be made without losing data
        """
        used = {t: self._tables.used_bytes(t) for t in self._payload_tiers}
        members = {t: self._tables.get_entries_in_tier(t) for t in self._payload_tiers}
        moves: List[Tuple[ExpertCacheEntry, StorageTier]] = []

        def make_room(current: StorageTier, need: int) -> None:
            while used[current] + need > self._capacity(current):
                if not members[current]:
                    raise InsufficientHardware(
                        self._min_tier, f"{current.name} cannot hold {need}B"
                    )
                victim = members[current].pop(0)
                used[current] -= victim.nbytes

                destination = self._slower_tier(current)
                while (
                    destination is not None
                    and destination.holds_payload
                    and self._capacity(destination) < victim.nbytes
                ):
                    destination = self._slower_tier(destination)
                if destination is None:
                    raise InsufficientHardware(
                        self._min_tier,
                        f"no slower tier to demote into from {current.name}",
                    )
                if destination.holds_payload:
                    make_room(destination, victim.nbytes)
                    used[destination] += victim.nbytes
                    members[destination].append(victim)
                    members[destination].sort(key=lambda e: e.lru_key)
                moves.append((victim, destination))

        make_room(tier, nbytes)
        return moves

    def _demote(
        self,
        entry: ExpertCacheEntry,
        destination: StorageTier,
        spills: List[ExpertCacheEntry],
        stale: List[Path],
    ) -> None:
        logger.info(
            "Evicting expert %s %s -> %s", entry.expert_id, entry.tier.name, destination.name
        )
        self._tables.move_between_tiers(entry, destination)
        self._stats["evictions"] += 1
        if destination is StorageTier.NETWORK:
            entry.tensor = None
            if entry.spill_path is not None:
                stale.append(entry.spill_path)
                entry.spill_path = None
        elif destination is StorageTier.DISK and self._spill_dir is not None:
            spills.append(entry)

    def _spill_path(self, expert_id: ExpertId) -> Path:
        return self._spill_dir / f"{expert_id.hex()}.safetensors"

    def _write_spills(self, entries: List[ExpertCacheEntry]) -> None:
        for entry in entries:
            tensor = entry.tensor
            if tensor is None:
                continue
            path = self._spill_path(entry.expert_id)
            try:
                _write_tensor_file(path, tensor)
            except OSError as e:
                logger.warning("Could not spill expert %s to %s: %s", entry.expert_id, path, e)
                continue

            with self._lock:
                current = self._tables.get_entry(entry.expert_id)
                if current is entry and entry.tier is StorageTier.DISK:
                    entry.spill_path = path
                    entry.tensor = None
                    logger.debug("Spilled expert %s to %s", entry.expert_id, path)
                    continue
            self._discard_files([path])

    def _read_spill(self, path: Path) -> Tensor:
        try:
            with safe_open(str(path), framework="pt") as f:
                metadata = f.metadata() or {}
                data = f.get_tensor("data")
            tensor = Tensor.from_dict(
                {"shape": json.loads(metadata["shape"]), "dtype": metadata["dtype"]},
                data.numpy().tobytes(),
            )
            tensor.validate()
        except (OSError, SafetensorError, KeyError, ValueError) as e:
            raise StorageError(f"Failed to read spill file {path}: {e}") from e
        return tensor

    def _discard_files(self, paths: Iterable[Path]) -> None:
        for path in paths:
            try:
                path.unlink(missing_ok=True)
            except OSError as e:
                logger.warning("Could not remove stale spill file %s: %s", path, e)


def _write_tensor_file(path: Path, tensor: Tensor) -> None:
    if tensor.data:
        data = torch.frombuffer(bytearray(tensor.data), dtype=torch.uint8)
    else:
        data = torch.empty(0, dtype=torch.uint8)
    save_file(
        {"data": data},
        str(path),
        metadata={"dtype": tensor.dtype.value, "shape": json.dumps(list(tensor.shape))},
    )
