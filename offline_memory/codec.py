"""Vector codec: half-precision quantization, blob encoding, cosine similarity.

Embedding vectors dominate the on-disk size of the store, so they can be
persisted as IEEE-754 binary16 ("half") instead of binary32.  The conversion
is done bit by bit on plain integers:

* float32 layout: 1 sign bit, 8 exponent bits (bias 127), 23 mantissa bits
* float16 layout: 1 sign bit, 5 exponent bits (bias 15), 10 mantissa bits

Quantization rounds to nearest, ties to even, which keeps the relative error
of normal-range values at or below 2**-11 and matches numpy's ``float16``.
"""

from __future__ import annotations

import math
from typing import Sequence, Union

import numpy as np

VectorLike = Union[Sequence[float], np.ndarray]

ENCODINGS = ("float32", "float16")

HALF_CANONICAL_NAN = 0x7E00
HALF_INF = 0x7C00
FLOAT_CANONICAL_NAN = 0x7FC00000
FLOAT_INF = 0x7F800000


class DimensionMismatch(ValueError):
    """Raised when two vectors of different length are compared."""


# ---------------------------------------------------------------------------
# Scalar bit conversions
# ---------------------------------------------------------------------------

def float_to_half_bits(bits: int) -> int:
    """Convert float32 bits to float16 bits (round to nearest even)."""
    sign = (bits >> 16) & 0x8000
    exponent = (bits >> 23) & 0xFF
    mantissa = bits & 0x7FFFFF

    if exponent == 0xFF:
        if mantissa:
            return HALF_CANONICAL_NAN
        return sign | HALF_INF

    half_exp = exponent - 127 + 15

    if half_exp >= 0x1F:
        return sign | HALF_INF

    if half_exp <= 0:
        # Below 2**-25 even rounding cannot reach the smallest subnormal.
        if half_exp < -10:
            return sign
        mantissa |= 0x800000
        shift = 14 - half_exp
        half_mant = mantissa >> shift
        remainder = mantissa & ((1 << shift) - 1)
        halfway = 1 << (shift - 1)
        if remainder > halfway or (remainder == halfway and half_mant & 1):
            half_mant += 1
        # A carry into bit 10 yields the smallest normal, which is the right encoding.
        return sign | half_mant

    half = (half_exp << 10) | (mantissa >> 13)
    remainder = mantissa & 0x1FFF
    if remainder > 0x1000 or (remainder == 0x1000 and half & 1):
        # May carry into the exponent, up to infinity.
        half += 1
    return sign | half


def half_to_float_bits(bits: int) -> int:
    """Convert float16 bits to float32 bits (exact)."""
    sign = (bits & 0x8000) << 16
    exponent = (bits >> 10) & 0x1F
    mantissa = bits & 0x3FF

    if exponent == 0x1F:
        if mantissa:
            return FLOAT_CANONICAL_NAN
        return sign | FLOAT_INF

    if exponent == 0:
        if mantissa == 0:
            return sign
        # Subnormal: shift the leading one up to the implicit bit position.
        shift = 11 - mantissa.bit_length()
        mantissa = (mantissa << shift) & 0x3FF
        exponent = 1 - shift

    return sign | ((exponent + 127 - 15) << 23) | (mantissa << 13)


# ---------------------------------------------------------------------------
# Vector helpers
# ---------------------------------------------------------------------------

def quantize(vector: VectorLike) -> np.ndarray:
    """Quantize a float32 vector to an array of float16 bit patterns (uint16)."""
    raw = np.ascontiguousarray(vector, dtype=np.float32).view(np.uint32)
    return np.array([float_to_half_bits(int(b)) for b in raw], dtype=np.uint16)


def dequantize(halfs: Union[Sequence[int], np.ndarray]) -> np.ndarray:
    """Expand float16 bit patterns back to a float32 vector."""
    raw = np.asarray(halfs, dtype=np.uint16)
    return np.array([half_to_float_bits(int(h)) for h in raw], dtype=np.uint32).view(np.float32)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either vector has zero norm."""
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape:
        raise DimensionMismatch(f"cosine_similarity: length mismatch {va.size} vs {vb.size}")
    denom = math.sqrt(float(np.dot(va, va))) * math.sqrt(float(np.dot(vb, vb)))
    if denom == 0.0:
        return 0.0
    sim = float(np.dot(va, vb)) / denom
    return max(-1.0, min(1.0, sim))


def encode_vector(vector: VectorLike, encoding: str = "float32") -> bytes:
    """Serialize a vector to a little-endian blob."""
    if encoding == "float32":
        return np.ascontiguousarray(vector, dtype="<f4").tobytes()
    if encoding == "float16":
        return quantize(vector).astype("<u2").tobytes()
    raise ValueError(f"encode_vector: unknown encoding {encoding!r}")


def decode_vector(blob: bytes, dims: int, encoding: str = "float32") -> np.ndarray:
    """Deserialize a blob written by :func:`encode_vector`."""
    if encoding == "float32":
        vec = np.frombuffer(blob, dtype="<f4").astype(np.float32)
    elif encoding == "float16":
        vec = dequantize(np.frombuffer(blob, dtype="<u2"))
    else:
        raise ValueError(f"decode_vector: unknown encoding {encoding!r}")
    if vec.size != dims:
        raise DimensionMismatch(f"decode_vector: blob holds {vec.size} values, expected {dims}")
    return vec
