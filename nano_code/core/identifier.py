"""
标识符与时钟 - 单调递增, 字典序即创建序
"""
import secrets
import string
import time

_ALPHABET = string.digits + string.ascii_uppercase + string.ascii_lowercase
_RANDOM_LEN = 8

_last_ms = 0.0
_counter = 0


def now_ms() -> float:
    """严格递增的毫秒时间戳"""
    global _last_ms
    current = time.time() * 1000
    if current <= _last_ms:
        current = _last_ms + 0.001
    _last_ms = current
    return current


def ascending(prefix: str = "") -> str:
    """生成按创建顺序递增的ID"""
    global _counter
    _counter = (_counter + 1) % 0x100000
    stamp = f"{int(time.time() * 1000):012x}{_counter:05x}"
    rand = "".join(secrets.choice(_ALPHABET) for _ in range(_RANDOM_LEN))
    return f"{prefix}_{stamp}{rand}" if prefix else f"{stamp}{rand}"
