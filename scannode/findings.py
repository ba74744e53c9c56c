"""Address bloom filters attached to alerts, and truncation of large findings."""

from __future__ import annotations

import base64
import math
import struct
from typing import Any

from .models import Finding, encode_hex_uint64

MAX_ADDRESSES_LENGTH = 50
ADDRESS_BLOOM_FILTER_FP_RATE = 1e-3

_MASK64 = (1 << 64) - 1
_C1 = 0x87C37B91114253D5
_C2 = 0x4CF5AD432745937F


def _rotl64(x: int, r: int) -> int:
    return ((x << r) | (x >> (64 - r))) & _MASK64


def _fmix64(k: int) -> int:
    k ^= k >> 33
    k = (k * 0xFF51AFD7ED558CCD) & _MASK64
    k ^= k >> 33
    k = (k * 0xC4CEB9FE1A85EC53) & _MASK64
    k ^= k >> 33
    return k


def murmur3_128(data: bytes, seed: int = 0) -> tuple[int, int]:
    """MurmurHash3 x64 128-bit hash of the data; returns the two 64-bit halves."""
    h1 = h2 = seed & 0xFFFFFFFF
    length = len(data)
    n_blocks = length // 16

    for k1, k2 in struct.iter_unpack("<QQ", data[: n_blocks * 16]):
        k1 = (k1 * _C1) & _MASK64
        k1 = _rotl64(k1, 31)
        k1 = (k1 * _C2) & _MASK64
        h1 ^= k1
        h1 = _rotl64(h1, 27)
        h1 = (h1 + h2) & _MASK64
        h1 = (h1 * 5 + 0x52DCE729) & _MASK64

        k2 = (k2 * _C2) & _MASK64
        k2 = _rotl64(k2, 33)
        k2 = (k2 * _C1) & _MASK64
        h2 ^= k2
        h2 = _rotl64(h2, 31)
        h2 = (h2 + h1) & _MASK64
        h2 = (h2 * 5 + 0x38495AB5) & _MASK64

    tail = data[n_blocks * 16 :]
    if len(tail) > 8:
        k2 = int.from_bytes(tail[8:], "little")
        k2 = (k2 * _C2) & _MASK64
        k2 = _rotl64(k2, 33)
        k2 = (k2 * _C1) & _MASK64
        h2 ^= k2
    if tail:
        k1 = int.from_bytes(tail[:8], "little")
        k1 = (k1 * _C1) & _MASK64
        k1 = _rotl64(k1, 31)
        k1 = (k1 * _C2) & _MASK64
        h1 ^= k1

    h1 ^= length
    h2 ^= length
    h1 = (h1 + h2) & _MASK64
    h2 = (h2 + h1) & _MASK64
    h1 = _fmix64(h1)
    h2 = _fmix64(h2)
    h1 = (h1 + h2) & _MASK64
    h2 = (h2 + h1) & _MASK64
    return h1, h2


def _base_hashes(data: bytes) -> tuple[int, int, int, int]:
    v1, v2 = murmur3_128(data)
    v3, v4 = murmur3_128(data + b"\x01")
    return v1, v2, v3, v4


class BloomFilter:
    """A bloom filter of m bits probed by k hash locations."""

    def __init__(self, m: int, k: int) -> None:
        self.m = max(1, m)
        self.k = max(1, k)
        self._length = m
        self._words = [0] * ((m + 63) // 64)

    @classmethod
    def with_estimates(cls, n: int, fp_rate: float) -> BloomFilter:
        """Size a filter for n items at the given false positive rate."""
        m = math.ceil(-1 * n * math.log(fp_rate) / math.log(2) ** 2)
        k = math.ceil(math.log(2) * m / n) if n else 1
        return cls(m, k)

    def _locations(self, data: bytes):
        h = _base_hashes(data)
        for i in range(self.k):
            loc = (h[i % 2] + i * h[2 + (((i + i % 2) % 4) // 2)]) & _MASK64
            yield loc % self.m

    def _set_bit(self, i: int) -> None:
        if i >= self._length:
            self._length = i + 1
            needed = (self._length + 63) // 64
            self._words.extend([0] * (needed - len(self._words)))
        self._words[i >> 6] |= 1 << (i & 63)

    def _get_bit(self, i: int) -> bool:
        if i >= self._length:
            return False
        return bool(self._words[i >> 6] >> (i & 63) & 1)

    def add(self, data: bytes) -> BloomFilter:
        for loc in self._locations(data):
            self._set_bit(loc)
        return self

    def test(self, data: bytes) -> bool:
        """Tell whether the data may have been added."""
        return all(self._get_bit(loc) for loc in self._locations(data))

    def to_bytes(self) -> bytes:
        """Serialize as big-endian m, k, bit length and 64-bit words."""
        header = struct.pack(">QQQ", self.m, self.k, self._length)
        return header + b"".join(struct.pack(">Q", word) for word in self._words)


def truncate_finding(finding: Finding) -> tuple[dict[str, Any], bool]:
    """Sort the finding's addresses, build their bloom filter and cut the list if too long.

    Returns the filter description and whether the addresses were truncated.
    """
    finding.addresses.sort()
    address_count = len(finding.addresses)

    bloom = BloomFilter.with_estimates(address_count, ADDRESS_BLOOM_FILTER_FP_RATE)
    for address in finding.addresses:
        bloom.add(address.encode("utf-8"))
    raw = bloom.to_bytes()

    truncated = False
    if address_count > MAX_ADDRESSES_LENGTH:
        finding.addresses = finding.addresses[:MAX_ADDRESSES_LENGTH]
        truncated = True

    return {
        "k": encode_hex_uint64(bloom.k),
        "m": encode_hex_uint64(bloom.m),
        "bitset": base64.b64encode(raw).decode("ascii"),
        "item_count": address_count,
    }, truncated