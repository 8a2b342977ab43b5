import json
import sys
import time
from typing import Any

from hexbytes import HexBytes


def log(msg: str) -> None:
    ts = time.strftime("%Y-%m-%d %H:%M:%S", time.gmtime())
    sys.stderr.write(f"[{ts} UTC] {msg}\n")
    sys.stderr.flush()


def _json_default(obj: Any) -> Any:
    if isinstance(obj, (HexBytes, bytes, bytearray)):
        return "0x" + bytes(obj).hex()
    if isinstance(obj, set):
        return list(obj)
    return str(obj)


def json_dumps(obj: Any) -> str:
    return json.dumps(obj, default=_json_default, ensure_ascii=True)


def load_json(path: str) -> Any:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def parse_int(value: Any) -> int:
    if isinstance(value, bool):
        raise TypeError("boolean is not a valid integer value")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        if value.startswith("0x"):
            return int(value, 16)
        return int(value)
    return int(value)


def now_ts() -> int:
    return int(time.time())
