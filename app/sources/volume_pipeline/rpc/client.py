import logging
from typing import Callable, Dict, Sequence, TypeVar

import requests
from web3 import Web3
from web3.providers.rpc import HTTPProvider

from app.sources.volume_pipeline.config.settings import Settings
from app.sources.volume_pipeline.errors import ErrorCode, VolumeError, classify_rpc_error
from app.utils.retry import RetryPolicy

logger = logging.getLogger(__name__)

T = TypeVar("T")

_web3_clients: Dict[str, Web3] = {}


def get_web3_client(rpc_url: str, timeout: float = 30) -> Web3:
    """Returns a cached or newly created Web3 client for a given RPC URL."""
    if rpc_url not in _web3_clients:
        logger.info(f"Connecting to RPC: {rpc_url}")
        # retries live in RpcClient.call, not in the provider
        provider = HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}, exception_retry_configuration=None)
        _web3_clients[rpc_url] = Web3(provider)
    return _web3_clients[rpc_url]


def is_transient_rpc_error(exc: Exception) -> bool:
    """Network failures and rate-limit / timeout replies are worth another attempt on the same URL."""
    return isinstance(exc, requests.RequestException) or classify_rpc_error(str(exc)) is ErrorCode.TRANSIENT


class RpcClient:
    """One Web3 client per configured URL, tried in order until one answers."""

    def __init__(
        self,
        settings: Settings,
        policy: RetryPolicy,
        web3_factory: Callable[[str], Web3] | None = None,
    ) -> None:
        self.settings = settings
        self.policy = policy
        self.web3_factory = web3_factory or (lambda url: get_web3_client(url, settings.request_timeout))

    def urls_for(self, chain: str) -> Sequence[str]:
        return self.settings.rpc_urls_for(chain)

    def has_urls(self, chain: str) -> bool:
        return bool(self.urls_for(chain))

    def call(self, chain: str, label: str, fn: Callable[[Web3], T]) -> T:
        """
        Run `fn(w3)` against each RPC URL of `chain` in order. Transient
        failures are retried on the same URL first; the last URL's error is
        raised as a VolumeError when every URL fails.
        """
        urls = self.urls_for(chain)
        if not urls:
            raise VolumeError(
                f"No RPC URL configured for chain={chain}",
                code=ErrorCode.GENERIC,
                tag="rpc-missing-url",
            )

        last_error: Exception | None = None
        last_url = None
        for url in urls:
            w3 = self.web3_factory(url)

            @self.policy.on_exception(
                Exception,
                target=f"rpc {label} {chain}",
                giveup=lambda exc: not is_transient_rpc_error(exc),
            )
            def attempt():
                self.policy.metrics.record_call()
                return fn(w3)

            try:
                return attempt()
            except Exception as exc:
                logger.warning(f"[rpc] {label} failed at {url}: {exc}")
                last_error, last_url = exc, url

        if isinstance(last_error, VolumeError):
            raise last_error
        raise VolumeError(
            f"RPC {label} failed on chain={chain} (last url {last_url}): {last_error}",
            code=classify_rpc_error(str(last_error)),
        ) from last_error
