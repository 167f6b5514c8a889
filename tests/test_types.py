"""
Unit tests for identifiers, tiers and the error taxonomy.
"""

import pytest

from auria_runtime import __version__
from auria_runtime.common import (
    AuriaError,
    ConfigError,
    ExpertId,
    Hash,
    LicenseInvalid,
    PublicKey,
    RequestId,
    SerializationError,
    ShardId,
    Signature,
    StorageTier,
    Tier,
)


class TestIdentifiers:
    """Test fixed-width identifier behaviour."""

    def test_hex_round_trip(self):
        """Test that the lowercase hex form decodes back to the same id."""
        shard_id = ShardId(bytes(range(32)))
        text = shard_id.hex()
        assert text == text.lower()
        assert len(text) == 64
        assert ShardId.from_hex(text) == shard_id
        assert str(shard_id) == text

    def test_uppercase_hex_rejected(self):
        """Test that any encoding other than lowercase hex is a violation."""
        text = ShardId(b"\xab" * 32).hex().upper()
        with pytest.raises(SerializationError, match="lowercase"):
            ShardId.from_hex(text)

    def test_wrong_width_rejected(self):
        """Test width checks on bytes and hex."""
        with pytest.raises(SerializationError):
            ShardId(b"\x00" * 31)
        with pytest.raises(SerializationError):
            ShardId.from_hex("00" * 33)
        with pytest.raises(SerializationError):
            Signature(b"\x00" * 32)
        with pytest.raises(SerializationError):
            RequestId.from_hex("zz" * 16)

    def test_serialization_error_is_value_error(self):
        """Test that encoding violations can be caught as ValueError."""
        with pytest.raises(ValueError):
            PublicKey(b"short")

    def test_id_types_do_not_compare_equal(self):
        """Test that a ShardId never equals an ExpertId with the same bytes."""
        raw = b"\x07" * 32
        assert ShardId(raw) != ExpertId(raw)
        assert ShardId(raw) == ShardId(bytearray(raw))
        assert hash(ShardId(raw)) == hash(ShardId(raw))

    def test_expert_id_from_name_is_stable(self):
        """Test that named experts get deterministic ids."""
        a = ExpertId.from_name("block.0.mlp.expert_3")
        b = ExpertId.from_name("block.0.mlp.expert_3")
        c = ExpertId.from_name("block.0.mlp.expert_4")
        assert a == b
        assert a != c

    def test_hash_and_request_id(self):
        """Test hashing helper and random request ids."""
        assert Hash.of(b"abc") == Hash.of(b"abc")
        assert Hash.of(b"abc") != Hash.of(b"abd")
        assert RequestId.generate() != RequestId.generate()
        assert len(RequestId.generate().hex()) == 32


class TestTiers:
    """Test tier enums."""

    def test_storage_tier_order(self):
        """Test that tiers are ordered by access cost."""
        assert StorageTier.VRAM.slower() is StorageTier.RAM
        assert StorageTier.RAM.slower() is StorageTier.DISK
        assert StorageTier.DISK.slower() is StorageTier.NETWORK
        assert StorageTier.NETWORK.slower() is None

    def test_network_holds_no_payload(self):
        assert not StorageTier.NETWORK.holds_payload
        assert all(t.holds_payload for t in (StorageTier.VRAM, StorageTier.RAM, StorageTier.DISK))

    def test_hardware_tier_rank(self):
        assert Tier.NANO.rank < Tier.STANDARD.rank < Tier.PRO.rank < Tier.MAX.rank
        assert str(Tier.PRO) == "Pro"


class TestErrors:
    """Test the error taxonomy."""

    def test_license_invalid_message_is_uniform(self):
        """Test that the message does not reveal which check failed."""
        shard_id = ShardId(b"\x02" * 32)
        assert str(LicenseInvalid(shard_id)) == f"License invalid or expired for shard: {shard_id}"

    def test_common_base(self):
        assert issubclass(ConfigError, AuriaError)
        assert issubclass(ConfigError, ValueError)

    def test_package_version(self):
        assert __version__ == "1.0.0"
