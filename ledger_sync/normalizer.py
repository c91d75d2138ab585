import logging
from typing import Any, Dict, List, Optional, Tuple

from .errors import DecodeError
from .models import KIND_TRANSFER, KIND_TRANSFER_BATCH, KIND_TRANSFER_SINGLE, TransferEvent
from .utils import decode_topic_address, normalize_address, parse_hex_int, split_words

logger = logging.getLogger(__name__)

# keccak256("Transfer(address,address,uint256)")
TRANSFER_TOPIC = "0xddf252ad1be2c89b69c2b068fc378daa952ba7f163c4a11628f55a4df523b3ef"
# keccak256("TransferSingle(address,address,address,uint256,uint256)")
TRANSFER_SINGLE_TOPIC = "0xc3d58168c5ae7397731d063d5bbf3d657854427343f4c083240f7aacaa2d0f62"
# keccak256("TransferBatch(address,address,address,uint256[],uint256[])")
TRANSFER_BATCH_TOPIC = "0x4a39dc06d4c0dbc64b70af90fd698a233a518aa5d07e595d983b8c0526c8f7fb"

STANDARD_TOPICS = {
    "erc721": (TRANSFER_TOPIC,),
    "erc1155": (TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC),
    "auto": (TRANSFER_TOPIC, TRANSFER_SINGLE_TOPIC, TRANSFER_BATCH_TOPIC),
}


def topics_for_standard(standard: str) -> List[Any]:
    """eth_getLogs topic filter: topic0 must be one of the standard's event ids."""
    try:
        topic0 = STANDARD_TOPICS[standard]
    except KeyError:
        raise ValueError(f"unknown token standard: {standard}") from None
    return [list(topic0)]


def _read_dynamic_array(words: List[int], offset_bytes: int, what: str) -> List[int]:
    if offset_bytes % 32 != 0:
        raise ValueError(f"{what} offset {offset_bytes} is not word aligned")
    start = offset_bytes // 32
    if start >= len(words):
        raise ValueError(f"{what} offset {offset_bytes} is out of range")
    length = words[start]
    if start + 1 + length > len(words):
        raise ValueError(f"{what} length {length} overruns data")
    return words[start + 1 : start + 1 + length]


def _decode_batch_arrays(data: str) -> Tuple[List[int], List[int]]:
    words = split_words(data)
    if len(words) < 2:
        raise ValueError("TransferBatch data is too short")
    ids = _read_dynamic_array(words, words[0], "ids")
    values = _read_dynamic_array(words, words[1], "values")
    return ids, values


def normalize(
    log: Dict[str, Any],
    block_timestamp: int,
    timestamp_estimated: bool = False,
) -> List[TransferEvent]:
    """Turn one raw transfer log into event rows.

    ERC-721 ``Transfer`` and ERC-1155 ``TransferSingle`` yield one row. A
    ``TransferBatch`` yields one row per array position with ``sub_index``
    equal to that position. Anything that cannot be decoded raises
    ``DecodeError`` with the tx hash and log index of the log.
    """
    tx_hash = str(log.get("transactionHash") or "").lower()
    try:
        log_index = parse_hex_int(log.get("logIndex"))
    except (TypeError, ValueError):
        raise DecodeError("invalid logIndex", tx_hash) from None

    def fail(reason: str) -> DecodeError:
        return DecodeError(reason, tx_hash, log_index)

    if not tx_hash:
        raise fail("missing transactionHash")
    topics = [str(t).lower() for t in (log.get("topics") or [])]
    if not topics:
        raise fail("log has no topics")
    try:
        contract = normalize_address(str(log.get("address") or ""))
        block_number = parse_hex_int(log.get("blockNumber"))
    except (TypeError, ValueError) as e:
        raise fail(f"invalid log envelope: {e}") from None

    topic0 = topics[0]
    data = str(log.get("data") or "0x")
    base = dict(
        contract_address=contract,
        tx_hash=tx_hash,
        log_index=log_index,
        block_number=block_number,
        block_timestamp=int(block_timestamp),
        timestamp_estimated=bool(timestamp_estimated),
    )

    try:
        if topic0 == TRANSFER_TOPIC:
            # ERC-20 Transfer shares topic0 but carries the amount in data (3 topics)
            if len(topics) != 4:
                raise fail(f"Transfer log has {len(topics)} topics, expected 4")
            from_addr = decode_topic_address(topics[1])
            return [
                TransferEvent(
                    sub_index=0,
                    event_kind=KIND_TRANSFER,
                    operator=from_addr,
                    from_address=from_addr,
                    to_address=decode_topic_address(topics[2]),
                    asset_id=str(int(topics[3], 16)),
                    quantity="1",
                    **base,
                )
            ]

        if topic0 == TRANSFER_SINGLE_TOPIC:
            if len(topics) != 4:
                raise fail(f"TransferSingle log has {len(topics)} topics, expected 4")
            words = split_words(data)
            if len(words) != 2:
                raise fail(f"TransferSingle data has {len(words)} words, expected 2")
            return [
                TransferEvent(
                    sub_index=0,
                    event_kind=KIND_TRANSFER_SINGLE,
                    operator=decode_topic_address(topics[1]),
                    from_address=decode_topic_address(topics[2]),
                    to_address=decode_topic_address(topics[3]),
                    asset_id=str(words[0]),
                    quantity=str(words[1]),
                    **base,
                )
            ]

        if topic0 == TRANSFER_BATCH_TOPIC:
            if len(topics) != 4:
                raise fail(f"TransferBatch log has {len(topics)} topics, expected 4")
            operator = decode_topic_address(topics[1])
            from_addr = decode_topic_address(topics[2])
            to_addr = decode_topic_address(topics[3])
            ids, values = _decode_batch_arrays(data)
            if len(ids) != len(values):
                raise fail(f"TransferBatch ids/values length mismatch: {len(ids)} != {len(values)}")
            return [
                TransferEvent(
                    sub_index=i,
                    event_kind=KIND_TRANSFER_BATCH,
                    operator=operator,
                    from_address=from_addr,
                    to_address=to_addr,
                    asset_id=str(asset_id),
                    quantity=str(value),
                    **base,
                )
                for i, (asset_id, value) in enumerate(zip(ids, values))
            ]
    except ValueError as e:
        raise fail(str(e)) from None

    raise fail(f"unknown topic0 {topic0}")


def normalize_many(
    logs: List[Dict[str, Any]],
    timestamps: Dict[int, int],
    estimated: Optional[set] = None,
) -> Tuple[List[TransferEvent], List[DecodeError]]:
    """Normalize ``logs`` in order, collecting decode errors instead of raising."""
    estimated = estimated or set()
    events: List[TransferEvent] = []
    errors: List[DecodeError] = []
    for log in logs:
        try:
            block_number = parse_hex_int(log.get("blockNumber"))
        except (TypeError, ValueError):
            block_number = -1
        try:
            events.extend(
                normalize(log, timestamps.get(block_number, 0), block_number in estimated)
            )
        except DecodeError as e:
            logger.warning("skipping undecodable log: %s", e)
            errors.append(e)
    return events, errors
