import pytest

from scannode.models import (
    AgentConfig,
    decode_hex_uint64,
    encode_hex_uint64,
)


def test_encode_pinned_value():
    assert encode_hex_uint64(255) == "0xff"


def test_decode_zero():
    assert decode_hex_uint64("0x0") == 0


def test_decode_max_uint64():
    assert decode_hex_uint64("0xffffffffffffffff") == 2**64 - 1


@pytest.mark.parametrize("value", [0, 1, 123123, 2**32, 2**64 - 1])
def test_hex_round_trip(value):
    assert decode_hex_uint64(encode_hex_uint64(value)) == value


def test_decode_accepts_upper_case_digits():
    assert decode_hex_uint64("0xFF") == decode_hex_uint64("0xff")


@pytest.mark.parametrize(
    "value",
    ["", "123123", "0x", "0x01", "0x" + "1" * 17, "0xzz", "0x1_0", "0x 1"],
)
def test_decode_rejects_bad_input(value):
    with pytest.raises(ValueError):
        decode_hex_uint64(value)


@pytest.mark.parametrize("value", [-1, 2**64])
def test_encode_rejects_out_of_range(value):
    with pytest.raises(ValueError):
        encode_hex_uint64(value)


def test_image_hash_is_digest_part():
    cfg = AgentConfig(id="0xabc", image="reg.example/img@sha256:deadbeef")
    assert cfg.image_hash == "deadbeef"


def test_image_hash_empty_without_digest():
    assert AgentConfig(id="0xabc", image="reg.example/img").image_hash == ""


def test_container_name_depends_on_id_and_image():
    a = AgentConfig(id="0x1111", image="r/x@sha256:aaaa")
    same = AgentConfig(id="0x1111", image="r/x@sha256:aaaa")
    other_image = AgentConfig(id="0x1111", image="r/x@sha256:bbbb")
    other_id = AgentConfig(id="0x2222", image="r/x@sha256:aaaa")
    assert a.container_name == same.container_name
    assert a.container_name != other_image.container_name
    assert a.container_name != other_id.container_name


def test_to_agent_info_copies_identity():
    cfg = AgentConfig(id="0xabc", image="r/x@sha256:beef", manifest="Qm")
    info = cfg.to_agent_info()
    assert (info.id, info.image, info.image_hash, info.manifest) == (
        cfg.id,
        cfg.image,
        cfg.image_hash,
        cfg.manifest,
    )