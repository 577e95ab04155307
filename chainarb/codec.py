# chainarb/codec.py
"""
Fixed-point encoding for results published on-chain.

Layout: three big-endian uint256 words (96 bytes). Words one and two are
scaled by 10**decimals; word three (time horizon in hours or a unix
timestamp) is a plain integer. The scale is not carried in the payload, so
both ends must agree on it; only 6 and 18 are accepted.
"""
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP, localcontext
from typing import Tuple

from .errors import EncodingError
from .models import Prediction, PriceObservation

SUPPORTED_DECIMALS = (6, 18)
WORD_BYTES = 32
UINT256_MAX = 2 ** 256 - 1


def _check_decimals(decimals: int):
    if decimals not in SUPPORTED_DECIMALS:
        raise EncodingError(f"decimals must be one of {SUPPORTED_DECIMALS}, got {decimals!r}")


def to_fixed(value: float, decimals: int) -> int:
    _check_decimals(decimals)
    try:
        with localcontext() as ctx:
            ctx.prec = 96
            scaled = (Decimal(str(value)) * (Decimal(10) ** decimals)).quantize(Decimal(1), rounding=ROUND_HALF_UP)
    except InvalidOperation:
        raise EncodingError(f"cannot encode {value!r}") from None
    if not scaled.is_finite():
        raise EncodingError(f"cannot encode {value!r}")
    return _check_word(int(scaled))


def from_fixed(raw: int, decimals: int) -> float:
    _check_decimals(decimals)
    with localcontext() as ctx:
        ctx.prec = 96
        return float(Decimal(raw) / (Decimal(10) ** decimals))


def _check_word(value: int) -> int:
    if value < 0:
        raise EncodingError(f"unsigned field cannot hold {value}")
    if value > UINT256_MAX:
        raise EncodingError("value overflows uint256")
    return value


def encode_triplet(first: float, second: float, third: int, decimals: int) -> bytes:
    words = (to_fixed(first, decimals), to_fixed(second, decimals), _check_word(int(third)))
    return b"".join(w.to_bytes(WORD_BYTES, "big") for w in words)


def decode_triplet(data: bytes, decimals: int) -> Tuple[float, float, int]:
    _check_decimals(decimals)
    if len(data) != 3 * WORD_BYTES:
        raise EncodingError(f"expected {3 * WORD_BYTES} bytes, got {len(data)}")
    words = [int.from_bytes(data[i:i + WORD_BYTES], "big") for i in range(0, len(data), WORD_BYTES)]
    return from_fixed(words[0], decimals), from_fixed(words[1], decimals), words[2]


def encode_prediction(prediction: Prediction, decimals: int) -> bytes:
    """(predicted price, confidence, horizon hours)"""
    return encode_triplet(prediction.predicted_price, prediction.confidence,
                          int(round(prediction.time_horizon_hours)), decimals)


def encode_observation(obs: PriceObservation, decimals: int) -> bytes:
    """(price, 24h volume, unix timestamp)"""
    return encode_triplet(obs.price, obs.volume, int(obs.timestamp), decimals)


def to_hex(data: bytes) -> str:
    return "0x" + data.hex()


def from_hex(text: str) -> bytes:
    body = text[2:] if text.startswith("0x") else text
    try:
        return bytes.fromhex(body)
    except ValueError as e:
        raise EncodingError(f"invalid hex payload: {e}") from e
