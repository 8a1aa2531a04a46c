import itertools
import json
import pathlib
import time

import pytest
import requests
from dotenv import load_dotenv
from web3 import Web3
from web3.providers.base import BaseProvider

from app.sources.volume_pipeline.config.settings import Settings
from app.utils.constants import ETHERSCAN_V2_API_URL, TRANSFER_TOPIC
from app.utils.log_utils import address_to_topic

# Automatically load .env from project root
load_dotenv(dotenv_path=pathlib.Path(__file__).parent.parent.parent / ".env")


def make_response(status: int = 200, body=None, headers: dict | None = None, url: str = "https://test.invalid") -> requests.Response:
    response = requests.Response()
    response.status_code = status
    response._content = json.dumps(body if body is not None else {}).encode()
    response.headers.update(headers or {})
    response.url = url
    response.reason = "OK" if status < 400 else "Error"
    return response


class FakeSession:
    """Stands in for requests.Session; `handler(method, url, params, payload)` decides each reply."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []

    def request(self, method, url, params=None, json=None, timeout=None, **kwargs):
        self.calls.append({"method": method, "url": url, "params": dict(params or {}), "json": json})
        outcome = self.handler(method, url, dict(params or {}), json)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, requests.Response):
            return outcome
        return make_response(200, outcome, url=url)


class SyntheticChain:
    """Monotonic block timestamps (first_ts + spacing * n) and a fixed set of Transfer logs."""

    def __init__(self, first_ts: int = 1_000, spacing: int = 2, length: int = 1_000):
        self.first_ts = first_ts
        self.spacing = spacing
        self.length = length
        self.logs = []
        self.methods = []

    @property
    def latest(self) -> int:
        return self.length - 1

    def timestamp(self, number: int) -> int:
        return self.first_ts + self.spacing * number

    def add_transfer(self, tx_hash: str, log_index: int, block: int, sender: str, recipient: str, raw_value: int, token: str):
        self.logs.append({
            "address": token.lower(),
            "transactionHash": "0x" + tx_hash.removeprefix("0x").rjust(64, "0"),
            "logIndex": hex(log_index),
            "blockNumber": hex(block),
            "topics": [TRANSFER_TOPIC, address_to_topic(sender), address_to_topic(recipient)],
            "data": "0x" + raw_value.to_bytes(32, "big").hex(),
        })

    def _get_logs(self, flt: dict):
        lo, hi = int(flt["fromBlock"], 16), int(flt["toBlock"], 16)
        topics = flt["topics"]
        addresses = flt["address"] if isinstance(flt["address"], (list, tuple)) else [flt["address"]]
        matched = []
        for entry in self.logs:
            if entry["address"] not in {a.lower() for a in addresses}:
                continue
            if not lo <= int(entry["blockNumber"], 16) <= hi:
                continue
            if all(t is None or entry["topics"][i] == t for i, t in enumerate(topics)):
                matched.append(dict(entry))
        return matched

    def handle(self, method, url, params, payload):
        rpc_method = payload["method"]
        self.methods.append(rpc_method)
        if rpc_method == "eth_blockNumber":
            result = hex(self.latest)
        elif rpc_method == "eth_getBlockByNumber":
            number = int(payload["params"][0], 16)
            result = None if number > self.latest else {"number": hex(number), "timestamp": hex(self.timestamp(number))}
        elif rpc_method == "eth_getLogs":
            result = self._get_logs(payload["params"][0])
        else:
            return {"jsonrpc": "2.0", "id": payload["id"], "error": {"code": -32601, "message": "method not found"}}
        return {"jsonrpc": "2.0", "id": payload["id"], "result": result}


class FakeProvider(BaseProvider):
    """web3 provider whose replies come from `handler(method, url, params, payload)` instead of the network."""

    _ids = itertools.count(1)

    def __init__(self, url, handler, calls):
        super().__init__()
        self.url = url
        self.handler = handler
        self.calls = calls

    def make_request(self, method, params):
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": list(params)}
        self.calls.append({"url": self.url, "method": method, "params": payload["params"]})
        outcome = self.handler("POST", self.url, {}, payload)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    def is_connected(self, show_traceback=False):
        return True


class FakeWeb3Factory:
    """`RpcClient` web3_factory handing out one cached Web3 per URL over FakeProvider."""

    def __init__(self, handler):
        self.handler = handler
        self.calls = []
        self.clients = {}

    def __call__(self, url):
        if url not in self.clients:
            self.clients[url] = Web3(FakeProvider(url, self.handler, self.calls))
        return self.clients[url]


@pytest.fixture
def sleeps(monkeypatch):
    """Backoff waits (backoff sleeps through time.sleep), recorded instead of slept."""
    recorded = []
    monkeypatch.setattr(time, "sleep", recorded.append)
    return recorded


@pytest.fixture
def settings(tmp_path):
    return Settings(
        data_dir=tmp_path,
        etherscan_api_key="test-key",
        chain_api_keys={"ethereum": "test-key", "polygon": "", "base": ""},
        chain_api_base_urls={"ethereum": "", "polygon": "", "base": ""},
        rpc_urls={
            "ethereum": (),
            "polygon": ("https://polygon-rpc.test",),
            "base": ("https://base-rpc.test", "https://mainnet.base.org"),
        },
        max_jitter=0,
        api_base_delay_ms=1,
        api_max_delay_ms=10,
    )


def write_json(path: pathlib.Path, data) -> None:
    path.write_text(json.dumps(data), encoding="utf-8")


def read_json_file(path: pathlib.Path):
    return json.loads(path.read_text(encoding="utf-8"))


class FakeExplorer:
    """Etherscan-style getblocknobytime/tokentx replies keyed by chainid."""

    def __init__(self):
        self.blocks = {}
        self.transfers = {}
        self.errors = {}

    def add_transfer(self, chainid: str, block: int, value: int, sender: str, recipient: str, decimals: str = "6"):
        self.transfers.setdefault(chainid, []).append({
            "hash": f"0x{block:064x}",
            "blockNumber": str(block),
            "from": sender,
            "to": recipient,
            "value": str(value),
            "tokenDecimal": decimals,
        })

    def handle(self, method, url, params, payload):
        chainid = params.get("chainid")
        if chainid in self.errors:
            return self.errors[chainid]
        if params["action"] == "getblocknobytime":
            return {"status": "1", "message": "OK", "result": str(self.blocks[(chainid, int(params["timestamp"]))])}
        start, end = int(params["startblock"]), int(params["endblock"])
        rows = [r for r in self.transfers.get(chainid, []) if start <= int(r["blockNumber"]) <= end]
        if not rows:
            return {"status": "0", "message": "No transactions found", "result": []}
        return {"status": "1", "message": "OK", "result": rows}


def route(explorer: FakeExplorer):
    """Send unified-explorer requests to `explorer`; anything else is a 404."""
    def handler(method, url, params, payload):
        if url == ETHERSCAN_V2_API_URL:
            return explorer.handle(method, url, params, payload)
        return make_response(404, {}, url=url)
    return handler
