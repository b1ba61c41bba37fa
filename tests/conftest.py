import asyncio
import json
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from eth_abi import encode as abi_encode
from eth_utils import to_checksum_address

from storefront_indexer import (
    ITEM_PURCHASED_TOPIC0,
    AppConfig,
    RawLog,
    TransactionMeta,
    TransactionNotFound,
)

STOREFRONT = "0x" + "5f" * 20
BUYER_A = "0x" + "ab" * 20
BUYER_B = "0x" + "cd" * 20


def tx_hash(n: int) -> str:
    return "0x" + f"{n:064x}"


def purchase_log(
    n: int,
    item: str = "sneakers",
    quantity: int = 1,
    block_number: int = 1,
    log_index: int = 0,
    topic: str = ITEM_PURCHASED_TOPIC0,
    removed: bool = False,
) -> RawLog:
    data = abi_encode(["string", "uint256"], [item, quantity])
    return RawLog(
        block_number=block_number,
        transaction_hash=tx_hash(n),
        log_index=log_index,
        topics=(topic,),
        data="0x" + data.hex(),
        address=STOREFRONT,
        removed=removed,
    )


def tx_meta(n: int, sender: str = BUYER_A, value: int = 100) -> TransactionMeta:
    return TransactionMeta(
        sender=to_checksum_address(sender),
        value=value,
        transaction_hash=tx_hash(n),
    )


class FakeChain:
    def __init__(
        self,
        height: int = 0,
        logs: Iterable[RawLog] = (),
        transactions: Iterable[TransactionMeta] = (),
        sessions: Optional[List[Sequence[Any]]] = None,
    ):
        self.height = height
        self.logs = sorted(logs, key=lambda x: x.sort_key)
        self.transactions: Dict[str, TransactionMeta] = {
            t.transaction_hash: t for t in transactions
        }
        self.sessions = list(sessions or [])
        self.range_calls: List[tuple] = []
        self.subscribe_calls: List[Dict[str, Any]] = []
        self.transaction_calls: List[str] = []

    async def get_latest_block_number(self) -> int:
        return self.height

    async def logs_in_range(
        self, log_filter: Mapping[str, Any], from_block: int, to_block: int
    ) -> List[RawLog]:
        self.range_calls.append((from_block, to_block))
        await asyncio.sleep(0)
        return [x for x in self.logs if from_block <= x.block_number < to_block]

    async def get_transaction(self, h: str) -> TransactionMeta:
        self.transaction_calls.append(h)
        await asyncio.sleep(0)
        if h not in self.transactions:
            raise TransactionNotFound(f"transaction {h} not found")
        return self.transactions[h]

    async def subscribe(self, log_filter: Mapping[str, Any]):
        self.subscribe_calls.append(dict(log_filter))
        session = self.sessions.pop(0) if self.sessions else []
        for item in session:
            if isinstance(item, Exception):
                raise item
            await asyncio.sleep(0)
            yield item


def rpc_log_payload(raw_log: RawLog) -> Dict[str, Any]:
    return {
        "address": raw_log.address,
        "blockNumber": hex(raw_log.block_number),
        "logIndex": hex(raw_log.log_index),
        "transactionHash": raw_log.transaction_hash,
        "topics": list(raw_log.topics),
        "data": raw_log.data,
        "removed": raw_log.removed,
    }


class NodeStub:
    """Local node serving scripted JSON-RPC replies and websocket subscription frames.

    The last reply repeats. Each entry of `connections` builds the frames for one websocket
    connection from the eth_subscribe request id; the server closes after the last frame.
    """

    def __init__(
        self,
        replies: Sequence[tuple] = (),
        connections: Sequence[Callable[[int], List[Any]]] = (),
    ):
        self.replies = list(replies)
        self.connections = list(connections)
        self.requests: List[Dict[str, Any]] = []
        self.subscribe_requests: List[Dict[str, Any]] = []
        app = web.Application()
        app.router.add_post("/", self.handle_rpc)
        app.router.add_get("/ws", self.handle_ws)
        self.server = TestServer(app)

    async def __aenter__(self) -> "NodeStub":
        await self.server.start_server()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.server.close()

    @property
    def http_url(self) -> str:
        return str(self.server.make_url("/"))

    @property
    def ws_url(self) -> str:
        return str(self.server.make_url("/ws")).replace("http://", "ws://", 1)

    async def handle_rpc(self, request: web.Request) -> web.Response:
        self.requests.append(await request.json())
        status, content_type, body = self.replies[min(len(self.requests), len(self.replies)) - 1]
        return web.Response(status=status, content_type=content_type, text=body)

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse()
        await ws.prepare(request)
        msg = await ws.receive()
        subscribe = msg.json()
        self.subscribe_requests.append(subscribe)
        script = self.connections.pop(0) if self.connections else (lambda request_id: [])
        for frame in script(subscribe["id"]):
            if isinstance(frame, str):
                await ws.send_str(frame)
            else:
                await ws.send_json(frame)
        await ws.close()
        return ws


def json_reply(result: Any = None, error: Any = None, status: int = 200) -> tuple:
    body: Dict[str, Any] = {"jsonrpc": "2.0", "id": 1}
    if error is not None:
        body["error"] = error
    else:
        body["result"] = result
    return status, "application/json", json.dumps(body)


BAD_GATEWAY = (502, "text/html", "<html><body><h1>502 Bad Gateway</h1></body></html>")


def subscribed(subscription_id: str, *notifications: Any) -> Callable[[int], List[Any]]:
    def frames(request_id: int) -> List[Any]:
        return [{"jsonrpc": "2.0", "id": request_id, "result": subscription_id}, *notifications]

    return frames


def notification(subscription_id: str, raw_log: RawLog) -> Dict[str, Any]:
    return {
        "jsonrpc": "2.0",
        "method": "eth_subscription",
        "params": {"subscription": subscription_id, "result": rpc_log_payload(raw_log)},
    }


@pytest.fixture
def app_config() -> AppConfig:
    return AppConfig(
        storefront_address=STOREFRONT,
        ws_rpc_url="ws://localhost:8545",
        http_rpc_url="http://localhost:8545",
        backfill_window_blocks=10,
        rescan_blocks=5,
        rescan_interval_sec=60,
    )
