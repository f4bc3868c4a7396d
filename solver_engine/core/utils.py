"""
Utility helpers.
"""

from __future__ import annotations

import time
from decimal import Decimal

GWEI = 10**9


def now_ms() -> int:
    return int(time.time() * 1000)


def now_s() -> int:
    return int(time.time())


def gwei_to_wei(gwei: float) -> int:
    return int(Decimal(str(gwei)) * GWEI)


def wei_to_gwei(wei: int) -> float:
    return wei / GWEI


def hex_bytes(data: bytes) -> str:
    return "0x" + data.hex()


def bytes_from_hex(value: str) -> bytes:
    if value.startswith("0x"):
        value = value[2:]
    return bytes.fromhex(value)
