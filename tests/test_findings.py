import base64
import struct

import pytest

from scannode.findings import (
    ADDRESS_BLOOM_FILTER_FP_RATE,
    MAX_ADDRESSES_LENGTH,
    BloomFilter,
    murmur3_128,
    truncate_finding,
)
from scannode.models import Finding, decode_hex_uint64


def _addresses(count):
    return [f"0x{i:040x}" for i in reversed(range(count))]


def test_murmur3_empty_input_is_zero():
    assert murmur3_128(b"") == (0, 0)


def test_murmur3_known_vector():
    assert murmur3_128(b"hello") == (0xCBD8A7B341BD9B02, 0x5B1E906A48AE1D19)


def test_murmur3_is_deterministic_and_seed_sensitive():
    data = b"some longer data that spans more than one block"
    assert murmur3_128(data) == murmur3_128(data)
    assert murmur3_128(data, 1) != murmur3_128(data, 0)


@pytest.mark.parametrize("n", [1, 10, 60, 500])
def test_estimates_are_sane(n):
    bloom = BloomFilter.with_estimates(n, ADDRESS_BLOOM_FILTER_FP_RATE)
    assert bloom.m >= n
    assert bloom.k >= 1


def test_added_items_are_found():
    bloom = BloomFilter.with_estimates(20, ADDRESS_BLOOM_FILTER_FP_RATE)
    items = [a.encode() for a in _addresses(20)]
    for item in items:
        bloom.add(item)
    assert all(bloom.test(item) for item in items)


def test_empty_filter_finds_nothing():
    bloom = BloomFilter.with_estimates(10, ADDRESS_BLOOM_FILTER_FP_RATE)
    assert not bloom.test(b"anything")


def test_to_bytes_layout():
    bloom = BloomFilter.with_estimates(5, ADDRESS_BLOOM_FILTER_FP_RATE)
    bloom.add(b"x")
    raw = bloom.to_bytes()
    m, k, length = struct.unpack(">QQQ", raw[:24])
    assert (m, k, length) == (bloom.m, bloom.k, bloom.m)
    assert len(raw) == 24 + 8 * ((bloom.m + 63) // 64)


def test_truncate_long_finding():
    finding = Finding(addresses=_addresses(60))
    result, truncated = truncate_finding(finding)
    assert truncated is True
    assert len(finding.addresses) == MAX_ADDRESSES_LENGTH
    assert finding.addresses == sorted(_addresses(60))[:MAX_ADDRESSES_LENGTH]
    assert result["item_count"] == 60

    expected = BloomFilter.with_estimates(60, ADDRESS_BLOOM_FILTER_FP_RATE)
    for address in sorted(_addresses(60)):
        expected.add(address.encode())
    assert decode_hex_uint64(result["k"]) == expected.k
    assert decode_hex_uint64(result["m"]) == expected.m
    assert base64.b64decode(result["bitset"]) == expected.to_bytes()


def test_short_finding_is_sorted_not_truncated():
    finding = Finding(addresses=_addresses(3))
    result, truncated = truncate_finding(finding)
    assert truncated is False
    assert finding.addresses == sorted(_addresses(3))
    assert result["item_count"] == 3