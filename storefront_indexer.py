import argparse
import asyncio
import contextlib
import json
import logging
import os
import signal
import threading
import time
from collections import deque
from dataclasses import dataclass
from pathlib import Path
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Deque,
    Dict,
    List,
    Mapping,
    Optional,
    Sequence,
    Tuple,
)

import aiohttp
from eth_abi import decode as abi_decode
from eth_abi.exceptions import DecodingError
from eth_utils import encode_hex, keccak, to_checksum_address

logger = logging.getLogger(__name__)

ITEM_PURCHASED_SIGNATURE = "ItemPurchased(string,uint256)"
DEFAULT_WINDOW_BLOCKS = 500_000
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


class IndexerError(Exception):
    pass


class ConfigError(IndexerError, ValueError):
    pass


class RPCError(IndexerError):
    pass


class DecodeError(IndexerError):
    pass


class TransactionNotFound(IndexerError):
    pass


class SubscriptionError(IndexerError):
    pass


def normalize_address(addr: str) -> str:
    if not isinstance(addr, str):
        raise ValueError(f"address must be a string, got: {type(addr)}")
    addr = addr.strip().lower()
    if not addr.startswith("0x") or len(addr) != 42:
        raise ValueError(f"invalid address format: {addr}")
    int(addr[2:], 16)
    return addr


def parse_hex_int(value: Optional[str]) -> int:
    if value is None:
        return 0
    if isinstance(value, int):
        return value
    return int(value, 16)


def hex_to_bytes(value: str) -> bytes:
    value = value or "0x"
    if value.startswith(("0x", "0X")):
        value = value[2:]
    return bytes.fromhex(value)


def event_topic(signature: str) -> str:
    return encode_hex(keccak(text=signature))


ITEM_PURCHASED_TOPIC0 = event_topic(ITEM_PURCHASED_SIGNATURE)


@dataclass(frozen=True)
class EventParam:
    name: str
    type: str
    indexed: bool = False


ITEM_PURCHASED_PARAMS: Tuple[EventParam, ...] = (
    EventParam("item", "string"),
    EventParam("quantity", "uint256"),
)


@dataclass(frozen=True)
class RawLog:
    block_number: int
    transaction_hash: str
    log_index: int
    topics: Tuple[str, ...]
    data: str
    address: str = ""
    removed: bool = False

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "RawLog":
        return cls(
            block_number=parse_hex_int(raw.get("blockNumber")),
            transaction_hash=str(raw["transactionHash"]).lower(),
            log_index=parse_hex_int(raw.get("logIndex")),
            topics=tuple(str(t).lower() for t in raw.get("topics") or []),
            data=str(raw.get("data") or "0x"),
            address=str(raw.get("address") or "").lower(),
            removed=bool(raw.get("removed", False)),
        )

    @property
    def sort_key(self) -> Tuple[int, int]:
        return (self.block_number, self.log_index)


@dataclass(frozen=True)
class PurchaseEvent:
    item: str
    quantity: int


@dataclass(frozen=True)
class TransactionMeta:
    sender: str
    value: int
    transaction_hash: str

    @classmethod
    def from_rpc(cls, raw: Mapping[str, Any]) -> "TransactionMeta":
        return cls(
            sender=to_checksum_address(raw["from"]),
            value=parse_hex_int(raw.get("value")),
            transaction_hash=str(raw["hash"]).lower(),
        )


@dataclass(frozen=True)
class PurchaseReceipt:
    transaction_id: str
    item: str
    quantity: int
    total: int
    sender: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "transactionId": self.transaction_id,
            "item": self.item,
            "quantity": self.quantity,
            "total": self.total,
            "from": self.sender,
        }


@dataclass
class AppConfig:
    storefront_address: str
    ws_rpc_url: str
    http_rpc_url: str
    backfill_window_blocks: int = DEFAULT_WINDOW_BLOCKS
    max_rpc_retries: int = 5
    rpc_timeout_sec: int = 12
    rescan_blocks: int = 100
    rescan_interval_sec: int = 60
    value_unit: str = "wei"
    log_level: str = "info"

    @property
    def log_filter(self) -> Dict[str, Any]:
        return {"address": self.storefront_address, "topics": [ITEM_PURCHASED_TOPIC0]}


def http_url_from_ws(url: str) -> str:
    if url.startswith("wss://"):
        return "https://" + url[len("wss://"):]
    if url.startswith("ws://"):
        return "http://" + url[len("ws://"):]
    return url


def load_config(path: Optional[str], env: Optional[Mapping[str, str]] = None) -> AppConfig:
    env = os.environ if env is None else env
    raw: Dict[str, Any] = {}
    if path and Path(path).exists():
        with open(path, "r", encoding="utf-8") as f:
            raw = json.load(f)
        if not isinstance(raw, dict):
            raise ConfigError(f"config file {path} must contain a JSON object")

    def setting(key: str, default: Any = None) -> Any:
        value = raw.get(key)
        if value is None or value == "":
            value = env.get(key)
        if value is None or value == "":
            return default
        return value

    address = setting("STOREFRONT_ADDRESS")
    if not address:
        raise ConfigError(
            "No STOREFRONT_ADDRESS configured. Set it in the config file or the environment"
        )
    ws_rpc_url = setting("WEB3_URI")
    if not ws_rpc_url:
        raise ConfigError("No WEB3_URI configured. Set it in the config file or the environment")
    ws_rpc_url = str(ws_rpc_url).strip()
    if not ws_rpc_url.startswith(("ws://", "wss://")):
        raise ConfigError(f"WEB3_URI must be a websocket endpoint, got: {ws_rpc_url}")

    try:
        storefront_address = normalize_address(str(address))
    except ValueError as e:
        raise ConfigError(f"STOREFRONT_ADDRESS is invalid: {e}") from e

    try:
        cfg = AppConfig(
            storefront_address=storefront_address,
            ws_rpc_url=ws_rpc_url,
            http_rpc_url=str(setting("HTTP_RPC_URL", http_url_from_ws(ws_rpc_url))).strip(),
            backfill_window_blocks=int(setting("BACKFILL_WINDOW_BLOCKS", DEFAULT_WINDOW_BLOCKS)),
            max_rpc_retries=int(setting("MAX_RPC_RETRIES", 5)),
            rpc_timeout_sec=int(setting("RPC_TIMEOUT_SEC", 12)),
            rescan_blocks=int(setting("RESCAN_BLOCKS", 100)),
            rescan_interval_sec=int(setting("RESCAN_INTERVAL_SEC", 60)),
            value_unit=str(setting("VALUE_UNIT", "wei")),
            log_level=str(setting("LOG_LEVEL", "info")).lower(),
        )
    except (TypeError, ValueError) as e:
        raise ConfigError(f"invalid numeric setting: {e}") from e

    if cfg.backfill_window_blocks <= 0:
        raise ConfigError("BACKFILL_WINDOW_BLOCKS must be >= 1")
    if cfg.max_rpc_retries <= 0:
        raise ConfigError("MAX_RPC_RETRIES must be >= 1")
    if cfg.rescan_blocks < 0:
        raise ConfigError("RESCAN_BLOCKS must be >= 0")
    if cfg.rescan_interval_sec <= 0:
        raise ConfigError("RESCAN_INTERVAL_SEC must be >= 1")
    return cfg


class ChainClient:
    def __init__(
        self,
        http_url: str,
        ws_url: str,
        max_retries: int = 5,
        timeout_sec: int = 12,
        initial_backoff: float = 0.5,
    ):
        self.url = http_url
        self.ws_url = ws_url
        self.max_retries = max_retries
        self.initial_backoff = initial_backoff
        self.timeout = aiohttp.ClientTimeout(total=timeout_sec)
        self.ws_timeout = aiohttp.ClientTimeout(total=None)
        self._session: Optional[aiohttp.ClientSession] = None
        self._id = 1

    async def __aenter__(self) -> "ChainClient":
        self._session = aiohttp.ClientSession(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._session:
            await self._session.close()

    def _next_id(self) -> int:
        request_id = self._id
        self._id += 1
        return request_id

    async def call(self, method: str, params: List[Any]) -> Any:
        if not self._session:
            raise RuntimeError("RPC session is not initialized")
        payload = {"jsonrpc": "2.0", "id": self._next_id(), "method": method, "params": params}

        backoff = self.initial_backoff
        for attempt in range(1, self.max_retries + 1):
            try:
                async with self._session.post(self.url, json=payload) as resp:
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as e:
                        raise RPCError(
                            f"{method} returned HTTP {resp.status} with a non-JSON body"
                        ) from e
                if not isinstance(data, dict):
                    raise RPCError(f"{method} returned a malformed reply: {data!r:.200}")
                if "error" in data:
                    raise RPCError(f"RPC error from {method}: {data['error']}")
                return data.get("result")
            except (aiohttp.ClientError, asyncio.TimeoutError, RPCError) as e:
                if attempt >= self.max_retries:
                    raise
                logger.debug("%s failed (attempt %d/%d): %s", method, attempt, self.max_retries, e)
                await asyncio.sleep(backoff)
                backoff *= 2

    async def get_latest_block_number(self) -> int:
        result = await self.call("eth_blockNumber", [])
        return int(result, 16)

    async def logs_in_range(
        self, log_filter: Mapping[str, Any], from_block: int, to_block: int
    ) -> List[RawLog]:
        # half-open [from_block, to_block); eth_getLogs bounds are inclusive
        if to_block <= from_block:
            return []
        f = dict(log_filter)
        f["fromBlock"] = hex(from_block)
        f["toBlock"] = hex(to_block - 1)
        result = await self.call("eth_getLogs", [f])
        logs = [RawLog.from_rpc(x) for x in result or []]
        logs.sort(key=lambda x: x.sort_key)
        return logs

    async def get_transaction(self, tx_hash: str) -> TransactionMeta:
        result = await self.call("eth_getTransactionByHash", [tx_hash])
        if not result:
            raise TransactionNotFound(f"transaction {tx_hash} not found")
        return TransactionMeta.from_rpc(result)

    async def subscribe(self, log_filter: Mapping[str, Any]) -> AsyncIterator[RawLog]:
        request_id = self._next_id()
        async with aiohttp.ClientSession(timeout=self.ws_timeout) as session:
            async with session.ws_connect(self.ws_url, heartbeat=20) as ws:
                await ws.send_json(
                    {
                        "jsonrpc": "2.0",
                        "id": request_id,
                        "method": "eth_subscribe",
                        "params": ["logs", dict(log_filter)],
                    }
                )
                subscription_id: Optional[str] = None
                while True:
                    msg = await ws.receive()
                    if msg.type in {
                        aiohttp.WSMsgType.CLOSE,
                        aiohttp.WSMsgType.CLOSED,
                        aiohttp.WSMsgType.CLOSING,
                        aiohttp.WSMsgType.ERROR,
                    }:
                        raise SubscriptionError(
                            f"websocket closed ({msg.type.name}): {ws.exception() or msg.extra}"
                        )
                    if msg.type != aiohttp.WSMsgType.TEXT:
                        continue
                    try:
                        data = msg.json(loads=json.loads)
                    except ValueError as e:
                        raise SubscriptionError(f"invalid JSON frame: {msg.data!r:.200}") from e
                    if not isinstance(data, dict):
                        continue
                    if data.get("id") == request_id:
                        if "error" in data:
                            raise SubscriptionError(f"eth_subscribe rejected: {data['error']}")
                        subscription_id = data.get("result")
                        logger.info("Subscribed to logs (subscription %s)", subscription_id)
                        continue
                    params = data.get("params") or {}
                    if subscription_id is None or params.get("subscription") != subscription_id:
                        continue
                    result = params.get("result")
                    if result:
                        yield RawLog.from_rpc(result)


def decode_log(
    raw_log: RawLog, signature_topic: str, params: Sequence[EventParam]
) -> Dict[str, Any]:
    if not raw_log.topics:
        raise DecodeError(f"log {raw_log.transaction_hash}:{raw_log.log_index} has no topics")
    if raw_log.topics[0].lower() != signature_topic.lower():
        raise DecodeError(
            f"log {raw_log.transaction_hash}:{raw_log.log_index} topic {raw_log.topics[0]} "
            f"does not match {signature_topic}"
        )
    indexed = [p for p in params if p.indexed]
    if len(raw_log.topics) - 1 != len(indexed):
        raise DecodeError(
            f"log {raw_log.transaction_hash}:{raw_log.log_index} has "
            f"{len(raw_log.topics) - 1} indexed topics, expected {len(indexed)}"
        )
    non_indexed = [p for p in params if not p.indexed]

    try:
        data_values = abi_decode([p.type for p in non_indexed], hex_to_bytes(raw_log.data))
        topic_values: Dict[str, Any] = {}
        for param, topic in zip(indexed, raw_log.topics[1:]):
            if param.type in {"string", "bytes"} or param.type.endswith("]"):
                # dynamic indexed values are only available as their hash
                topic_values[param.name] = topic
            else:
                topic_values[param.name] = abi_decode([param.type], hex_to_bytes(topic))[0]
    except (DecodingError, ValueError, TypeError) as e:
        raise DecodeError(
            f"log {raw_log.transaction_hash}:{raw_log.log_index} data does not match "
            f"({', '.join(p.type for p in params)}): {e}"
        ) from e

    decoded: Dict[str, Any] = {}
    data_iter = iter(data_values)
    for param in params:
        decoded[param.name] = topic_values[param.name] if param.indexed else next(data_iter)
    return decoded


def decode_purchase(raw_log: RawLog) -> PurchaseEvent:
    fields = decode_log(raw_log, ITEM_PURCHASED_TOPIC0, ITEM_PURCHASED_PARAMS)
    return PurchaseEvent(item=fields["item"], quantity=int(fields["quantity"]))


class Ledger:
    def __init__(self) -> None:
        self._receipts: Dict[str, PurchaseReceipt] = {}
        self._lock = threading.Lock()

    def upsert(self, receipt: PurchaseReceipt) -> bool:
        """Insert or replace the receipt for its transaction id.

        Returns True when the ledger changed, False for an identical re-delivery.
        """
        key = receipt.transaction_id.lower()
        with self._lock:
            existing = self._receipts.get(key)
            if existing == receipt:
                return False
            self._receipts[key] = receipt
        if existing is not None:
            logger.warning(
                "Receipt for %s changed on re-delivery: %s -> %s",
                key,
                existing.as_dict(),
                receipt.as_dict(),
            )
        return True

    def get(self, transaction_id: str) -> Optional[PurchaseReceipt]:
        with self._lock:
            return self._receipts.get(transaction_id.lower())

    def snapshot(self) -> Dict[str, PurchaseReceipt]:
        with self._lock:
            return dict(self._receipts)

    def __contains__(self, transaction_id: object) -> bool:
        if not isinstance(transaction_id, str):
            return False
        with self._lock:
            return transaction_id.lower() in self._receipts

    def __len__(self) -> int:
        with self._lock:
            return len(self._receipts)


class EventProcessor:
    def __init__(
        self,
        client: Any,
        ledger: Ledger,
        value_unit: str = "wei",
        max_dead_letters: int = 1000,
    ):
        self.client = client
        self.ledger = ledger
        self.value_unit = value_unit
        self.dead_letters: Deque[Dict[str, Any]] = deque(maxlen=max_dead_letters)
        self.stats: Dict[str, int] = {
            "received": 0,
            "processed": 0,
            "duplicates": 0,
            "decode_errors": 0,
            "missing_transactions": 0,
            "dead_letters": 0,
        }

    async def process(self, event: PurchaseEvent, source_log: RawLog) -> PurchaseReceipt:
        tx = await self.client.get_transaction(source_log.transaction_hash)
        receipt = PurchaseReceipt(
            transaction_id=tx.transaction_hash,
            item=event.item,
            quantity=event.quantity,
            total=tx.value,
            sender=tx.sender,
        )
        changed = self.ledger.upsert(receipt)
        self.stats["processed"] += 1
        if not changed:
            self.stats["duplicates"] += 1
            logger.debug("Already recorded %s", receipt.transaction_id)
            return receipt
        logger.info(
            '[%s] %d of "%s" were purchased by %s for %d %s',
            receipt.transaction_id,
            receipt.quantity,
            receipt.item,
            receipt.sender,
            receipt.total,
            self.value_unit,
        )
        return receipt

    async def handle_log(self, raw_log: RawLog) -> Optional[PurchaseReceipt]:
        self.stats["received"] += 1
        try:
            event = decode_purchase(raw_log)
            return await self.process(event, raw_log)
        except DecodeError as e:
            self.stats["decode_errors"] += 1
            self._dead_letter(raw_log, f"decode_failed: {e}")
        except TransactionNotFound as e:
            self.stats["missing_transactions"] += 1
            self._dead_letter(raw_log, f"transaction_not_found: {e}")
        except (RPCError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            self.stats["missing_transactions"] += 1
            self._dead_letter(raw_log, f"transaction_lookup_failed: {type(e).__name__}: {e}")
        return None

    def _dead_letter(self, raw_log: RawLog, reason: str) -> None:
        logger.error(
            "Dropping log %s:%d at block %d: %s",
            raw_log.transaction_hash,
            raw_log.log_index,
            raw_log.block_number,
            reason,
        )
        self.dead_letters.append(
            {
                "tx_hash": raw_log.transaction_hash,
                "log_index": raw_log.log_index,
                "block_number": raw_log.block_number,
                "reason": reason,
                "at": int(time.time()),
            }
        )
        self.stats["dead_letters"] += 1


LogHandler = Callable[[RawLog], Awaitable[Any]]


def scan_windows(start: int, end: int, window: int) -> List[Tuple[int, int]]:
    if window <= 0:
        raise ValueError("window must be >= 1")
    windows: List[Tuple[int, int]] = []
    cursor = start
    while cursor < end:
        windows.append((cursor, min(cursor + window, end)))
        cursor += window
    return windows


class BackfillScanner:
    def __init__(
        self,
        client: Any,
        log_filter: Mapping[str, Any],
        handler: LogHandler,
        window_blocks: int = DEFAULT_WINDOW_BLOCKS,
    ):
        if window_blocks <= 0:
            raise ValueError("window_blocks must be >= 1")
        self.client = client
        self.log_filter = dict(log_filter)
        self.handler = handler
        self.window_blocks = window_blocks
        self.cursor = 0
        self.windows_scanned = 0
        self.logs_seen = 0

    async def scan(self, start: int, end: int) -> int:
        count = 0
        self.cursor = start
        for from_block, to_block in scan_windows(start, end, self.window_blocks):
            logs = await self.client.logs_in_range(self.log_filter, from_block, to_block)
            logger.debug("Window [%d, %d) returned %d logs", from_block, to_block, len(logs))
            for raw_log in logs:
                await self.handler(raw_log)
            count += len(logs)
            self.cursor = to_block
            self.windows_scanned += 1
        self.logs_seen += count
        return count

    async def run(self) -> int:
        height = await self.client.get_latest_block_number()
        logger.info("Backfilling blocks [0, %d) in windows of %d", height, self.window_blocks)
        count = await self.scan(0, height)
        logger.info("Backfill complete: %d logs over %d windows", count, self.windows_scanned)
        return count


class LiveSubscriber:
    def __init__(
        self,
        client: Any,
        log_filter: Mapping[str, Any],
        handler: LogHandler,
        stop_event: Optional[asyncio.Event] = None,
        on_resubscribe: Optional[Callable[[], Any]] = None,
        initial_backoff: float = 1.0,
        max_backoff: float = 30.0,
    ):
        self.client = client
        self.log_filter = dict(log_filter)
        self.handler = handler
        self.stop_event = stop_event or asyncio.Event()
        self.on_resubscribe = on_resubscribe
        self.initial_backoff = initial_backoff
        self.max_backoff = max_backoff
        self.stats: Dict[str, int] = {"sessions": 0, "delivered": 0, "removed": 0, "failures": 0}

    async def run_once(self) -> int:
        delivered = 0
        self.stats["sessions"] += 1
        async for raw_log in self.client.subscribe(self.log_filter):
            if raw_log.removed:
                self.stats["removed"] += 1
                logger.debug("Skipping removed log %s:%d", raw_log.transaction_hash, raw_log.log_index)
                continue
            await self.handler(raw_log)
            delivered += 1
            self.stats["delivered"] += 1
        return delivered

    async def run(self) -> None:
        backoff = self.initial_backoff
        first = True
        while not self.stop_event.is_set():
            if not first and self.on_resubscribe is not None:
                self.on_resubscribe()
            first = False
            try:
                delivered = await self.run_once()
                logger.warning("Log subscription ended after %d logs; resubscribing", delivered)
                if delivered:
                    backoff = self.initial_backoff
            except (SubscriptionError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
                self.stats["failures"] += 1
                logger.warning("Log subscription failed: %s; resubscribing in %.1fs", e, backoff)
            if self.stop_event.is_set():
                break
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.stop_event.wait(), timeout=backoff)
            backoff = min(self.max_backoff, backoff * 2)


class Reconciler:
    def __init__(
        self,
        client: Any,
        scanner: BackfillScanner,
        rescan_blocks: int,
        interval_sec: float,
        stop_event: Optional[asyncio.Event] = None,
    ):
        self.client = client
        self.scanner = scanner
        self.rescan_blocks = rescan_blocks
        self.interval_sec = interval_sec
        self.stop_event = stop_event or asyncio.Event()
        self.wakeup = asyncio.Event()
        self.passes = 0

    def request(self) -> None:
        self.wakeup.set()

    def rescan_range(self, latest: int) -> Tuple[int, int]:
        end = latest + 1
        return max(0, end - self.rescan_blocks), end

    async def rescan_once(self) -> int:
        latest = await self.client.get_latest_block_number()
        start, end = self.rescan_range(latest)
        count = await self.scanner.scan(start, end)
        self.passes += 1
        logger.debug("Rescanned blocks [%d, %d): %d logs", start, end, count)
        return count

    async def run(self) -> None:
        if self.rescan_blocks <= 0:
            return
        while not self.stop_event.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self.wakeup.wait(), timeout=self.interval_sec)
            self.wakeup.clear()
            if self.stop_event.is_set():
                break
            try:
                await self.rescan_once()
            except (IndexerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("Rescan of recent blocks failed: %s", e)


class PurchaseIndexer:
    def __init__(self, cfg: AppConfig, client: Optional[Any] = None):
        self.cfg = cfg
        self.ledger = Ledger()
        self.owns_client = client is None
        self.client = client or ChainClient(
            cfg.http_rpc_url,
            cfg.ws_rpc_url,
            max_retries=cfg.max_rpc_retries,
            timeout_sec=cfg.rpc_timeout_sec,
        )
        self.stop_event = asyncio.Event()
        self.processor = EventProcessor(self.client, self.ledger, value_unit=cfg.value_unit)
        log_filter = cfg.log_filter
        self.backfill = BackfillScanner(
            self.client, log_filter, self.processor.handle_log, cfg.backfill_window_blocks
        )
        self.reconciler = Reconciler(
            self.client,
            BackfillScanner(
                self.client, log_filter, self.processor.handle_log, cfg.backfill_window_blocks
            ),
            cfg.rescan_blocks,
            cfg.rescan_interval_sec,
            stop_event=self.stop_event,
        )
        self.live = LiveSubscriber(
            self.client,
            log_filter,
            self.processor.handle_log,
            stop_event=self.stop_event,
            on_resubscribe=self.reconciler.request,
        )
        self.tasks: List[asyncio.Task] = []

    async def __aenter__(self) -> "PurchaseIndexer":
        if self.owns_client:
            await self.client.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if not self.stop_event.is_set():
            await self.shutdown()
        if self.owns_client:
            await self.client.__aexit__(exc_type, exc, tb)

    async def backfill_task(self) -> None:
        try:
            await self.backfill.run()
        except (IndexerError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error("Backfill stopped at block %d: %s", self.backfill.cursor, e)

    def build_stats(self) -> Dict[str, Any]:
        return {
            **self.processor.stats,
            "ledger_size": len(self.ledger),
            "backfill_cursor": self.backfill.cursor,
            "live_sessions": self.live.stats["sessions"],
            "rescan_passes": self.reconciler.passes,
        }

    async def run(self) -> None:
        height = await self.client.get_latest_block_number()
        logger.info(
            "Connected to %s, current block is %d; indexing %s",
            self.cfg.ws_rpc_url,
            height,
            self.cfg.storefront_address,
        )
        self.tasks.append(asyncio.create_task(self.live.run()))
        self.tasks.append(asyncio.create_task(self.backfill_task()))
        self.tasks.append(asyncio.create_task(self.reconciler.run()))
        await self.stop_event.wait()

    async def shutdown(self) -> None:
        self.stop_event.set()
        for t in self.tasks:
            t.cancel()
        for t in self.tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await t
        logger.info("Stopped: %s", self.build_stats())


async def main_async(cfg: AppConfig) -> None:
    async with PurchaseIndexer(cfg) as indexer:
        loop = asyncio.get_running_loop()
        stop_event = asyncio.Event()

        def _on_stop() -> None:
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_stop)

        run_task = asyncio.create_task(indexer.run())
        wait_task = asyncio.create_task(stop_event.wait())

        done, pending = await asyncio.wait(
            {run_task, wait_task},
            return_when=asyncio.FIRST_COMPLETED,
        )
        for p in pending:
            p.cancel()
        for d in done:
            if d is run_task and d.exception():
                raise d.exception()
        await indexer.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Index storefront ItemPurchased events into an in-memory purchase ledger"
    )
    parser.add_argument(
        "--config",
        default="./config.json",
        help="config file path (default: ./config.json); missing keys fall back to the environment",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        help="override LOG_LEVEL (debug, info, warning, error)",
    )
    args = parser.parse_args()

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        raise SystemExit(str(e)) from e
    if args.log_level:
        cfg.log_level = args.log_level.lower()
    logging.basicConfig(
        level=getattr(logging, cfg.log_level.upper(), logging.INFO),
        format=LOG_FORMAT,
    )

    try:
        asyncio.run(main_async(cfg))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
