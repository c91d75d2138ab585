from typing import Optional

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def topic_address(addr: str) -> str:
    return "0x" + ("0" * 24) + normalize_address(addr)[2:]


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def decode_topic_address(topic: str) -> str:
    topic = topic.lower()
    if topic.startswith("0x"):
        topic = topic[2:]
    if len(topic) != 64 or int(topic[:24] or "0", 16) != 0:
        raise ValueError(f"topic is not an address: 0x{topic}")
    return normalize_address("0x" + topic[-40:])


def is_sentinel(addr: str) -> bool:
    return addr == ZERO_ADDRESS


def split_words(data: str) -> list:
    """Split an ABI-encoded hex payload into 32-byte words as ints."""
    if data.startswith("0x"):
        data = data[2:]
    if len(data) % 64 != 0:
        raise ValueError(f"data length {len(data)} is not a multiple of 32 bytes")
    return [int(data[i : i + 64], 16) for i in range(0, len(data), 64)]


def block_windows(from_block: int, to_block: int, width: int):
    width = max(1, int(width))
    current = from_block
    while current <= to_block:
        end = min(to_block, current + width - 1)
        yield current, end
        current = end + 1
