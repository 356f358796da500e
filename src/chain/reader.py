"""Chain Reader: read-only facade over a remote EVM node.

Provides the four operations the indexer consumes:
    - current chain height
    - historical log query by address / topic / block range
    - push subscription to new logs of a contract
    - read-only contract calls (used to fetch a new DAO's module addresses)

Transport is web3.py over HTTP. The underlying requests session retries
throttled / failing HTTP responses (urllib3 Retry), and every RPC call is
additionally retried at the call site with exponential backoff. Exhausted
retries surface as ChainReadError; the checkpoint is never advanced past a
failed read.

Subscriptions are node-side log filters (eth_newFilter) drained by one
background thread per subscription (eth_getFilterChanges). A filter that the
node forgets (restart, expiry) is reinstalled transparently.

Example:
    >>> reader = Web3ChainReader("http://localhost:8545")
    >>> reader.current_height()
    1234
"""

import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry
from web3 import Web3
from web3.exceptions import Web3Exception

from src.chain.decoder import RawEvent
from src.shared.config import Config
from src.shared.exceptions import ChainReadError
from src.shared.utils import setup_logger

LogCallback = Callable[[RawEvent], None]


class Subscription(ABC):
    """Handle returned by BaseChainReader.subscribe()."""

    @abstractmethod
    def unsubscribe(self) -> None:
        """Stop delivery and release node-side resources."""
        ...


class BaseChainReader(ABC):
    """Base class for chain readers.

    Subclasses must implement current_height(), query_events(), subscribe()
    and call(). health_check() defaults to asking for the current height.
    """

    @abstractmethod
    def current_height(self) -> int:
        """Return the latest block number."""
        ...

    @abstractmethod
    def query_events(
        self,
        address: str,
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[RawEvent]:
        """Return logs of `address` whose topic0 is in `topics`, ordered by
        (block_number, log_index), for the closed range [from_block, to_block]."""
        ...

    @abstractmethod
    def subscribe(self, address: str, topics: Sequence[str], callback: LogCallback) -> Subscription:
        """Deliver new logs of `address` matching `topics` to `callback`."""
        ...

    @abstractmethod
    def call(self, address: str, function_abi: dict, args: Sequence[Any] = ()) -> Any:
        """Run a read-only contract call and return its decoded result."""
        ...

    def health_check(self) -> bool:
        try:
            self.current_height()
            return True
        except ChainReadError:
            return False


class LogFilterSubscription(Subscription):
    """Polls a node-side log filter from a daemon thread."""

    def __init__(
        self,
        reader: "Web3ChainReader",
        address: str,
        topics: Sequence[str],
        callback: LogCallback,
        poll_interval: float,
    ) -> None:
        self._reader = reader
        self.address = address
        self.topics = list(topics)
        self._callback = callback
        self._poll_interval = poll_interval
        self._stop = threading.Event()
        self._filter = None
        self._thread = threading.Thread(
            target=self._run, name=f"log-filter-{address[:10]}", daemon=True
        )

    def start(self) -> "LogFilterSubscription":
        self._filter = self._reader._install_filter(self.address, self.topics)
        self._thread.start()
        return self

    def unsubscribe(self) -> None:
        self._stop.set()
        if self._thread.is_alive() and self._thread is not threading.current_thread():
            self._thread.join(timeout=self._poll_interval * 2)
        if self._filter is not None:
            self._reader._uninstall_filter(self._filter)
            self._filter = None

    def _run(self) -> None:
        logger = self._reader.logger
        while not self._stop.wait(self._poll_interval):
            try:
                if self._filter is None:
                    self._filter = self._reader._install_filter(self.address, self.topics)
                entries = self._filter.get_new_entries()
            except (requests.exceptions.RequestException, Web3Exception, ValueError, ChainReadError) as exc:
                logger.warning("Log filter for %s failed (%s); reinstalling", self.address, exc)
                self._filter = None
                continue

            for log in entries:
                try:
                    self._callback(RawEvent.from_log(log))
                except Exception:
                    logger.exception("Subscriber callback failed for %s", self.address)


class Web3ChainReader(BaseChainReader):
    """Chain reader backed by web3.py over JSON-RPC/HTTP."""

    def __init__(
        self,
        rpc_url: str | None = None,
        timeout: int | None = None,
        max_retries: int | None = None,
        retry_backoff: float | None = None,
        filter_poll_interval: float | None = None,
        log_file: Path | None = None,
    ) -> None:
        """Initialize the reader.

        Args:
            rpc_url: JSON-RPC endpoint (defaults to Config.RPC_URL).
            timeout: Per-request timeout in seconds.
            max_retries: Call-site retry attempts for a failing RPC.
            retry_backoff: Base of the exponential backoff between attempts.
            filter_poll_interval: Seconds between eth_getFilterChanges polls.
            log_file: Optional path for file-based logging.

        Raises:
            ValueError: If no endpoint is configured.
        """
        self.rpc_url = rpc_url or Config.RPC_URL
        if not self.rpc_url:
            raise ValueError("RPC endpoint is required. Set RPC_URL in .env or pass rpc_url.")

        self.timeout = timeout or Config.REQUEST_TIMEOUT
        self.max_retries = max_retries if max_retries is not None else Config.MAX_RETRIES
        self.retry_backoff = retry_backoff if retry_backoff is not None else Config.RETRY_BACKOFF
        self.filter_poll_interval = filter_poll_interval or Config.FILTER_POLL_INTERVAL
        self.logger = setup_logger(self.__class__.__name__, log_file)

        self._session = self._create_session()
        self._w3 = Web3(
            Web3.HTTPProvider(
                self.rpc_url,
                request_kwargs={"timeout": self.timeout},
                session=self._session,
            )
        )
        self.logger.info("Web3ChainReader initialized, rpc_url=%s", self.rpc_url)

    # ------------------------------------------------------------------
    # BaseChainReader interface
    # ------------------------------------------------------------------

    def current_height(self) -> int:
        return int(self._with_retry("eth_blockNumber", lambda: self._w3.eth.block_number))

    def query_events(
        self,
        address: str,
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> list[RawEvent]:
        if from_block > to_block:
            return []
        params = {
            "address": address,
            "fromBlock": from_block,
            "toBlock": to_block,
            "topics": [list(topics)],
        }
        logs = self._with_retry(
            f"eth_getLogs {address} [{from_block}, {to_block}]",
            lambda: self._w3.eth.get_logs(params),
        )
        events = [RawEvent.from_log(log) for log in logs]
        events.sort(key=lambda e: e.position)
        self.logger.debug("Received %d logs for %s [%d, %d]", len(events), address, from_block, to_block)
        return events

    def subscribe(self, address: str, topics: Sequence[str], callback: LogCallback) -> Subscription:
        subscription = LogFilterSubscription(
            self, address, topics, callback, poll_interval=self.filter_poll_interval
        )
        return subscription.start()

    def call(self, address: str, function_abi: dict, args: Sequence[Any] = ()) -> Any:
        """Call a view function.

        Returns:
            A dict keyed by output name when the function has several named
            outputs, otherwise the raw decoded value.
        """
        contract = self._w3.eth.contract(address=Web3.to_checksum_address(address), abi=[function_abi])
        function = contract.get_function_by_name(function_abi["name"])(*args)
        result = self._with_retry(f"eth_call {function_abi['name']} @ {address}", function.call)

        names = [o.get("name") for o in function_abi.get("outputs", [])]
        if len(names) > 1 and all(names):
            return dict(zip(names, result))
        return result

    def health_check(self) -> bool:
        """Check the endpoint answers JSON-RPC requests."""
        try:
            return bool(self._w3.is_connected())
        except (requests.exceptions.RequestException, Web3Exception):
            return False

    # ------------------------------------------------------------------
    # Private: transport
    # ------------------------------------------------------------------

    def _create_session(self) -> requests.Session:
        session = requests.Session()
        retry = Retry(
            total=self.max_retries,
            backoff_factor=self.retry_backoff,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["POST"],
        )
        adapter = HTTPAdapter(max_retries=retry)
        session.mount("https://", adapter)
        session.mount("http://", adapter)
        return session

    def _with_retry(self, description: str, operation: Callable[[], Any]) -> Any:
        """Run `operation`, retrying transient failures with exponential backoff.

        Raises:
            ChainReadError: If every attempt failed.
        """
        attempts = self.max_retries + 1
        for attempt in range(attempts):
            try:
                return operation()
            except (requests.exceptions.RequestException, Web3Exception, ValueError, OSError) as exc:
                if attempt == attempts - 1:
                    raise ChainReadError(f"{description} failed after {attempts} attempts: {exc}") from exc
                wait_time = self.retry_backoff**attempt
                self.logger.warning(
                    "Attempt %d for %s failed: %s. Retrying in %.2f seconds...",
                    attempt + 1,
                    description,
                    exc,
                    wait_time,
                )
                time.sleep(wait_time)

    def _install_filter(self, address: str, topics: Sequence[str]):
        params = {"address": address, "topics": [list(topics)]}
        return self._with_retry(f"eth_newFilter {address}", lambda: self._w3.eth.filter(params))

    def _uninstall_filter(self, log_filter) -> None:
        try:
            self._w3.eth.uninstall_filter(log_filter.filter_id)
        except (requests.exceptions.RequestException, Web3Exception, ValueError) as exc:
            self.logger.debug("Could not uninstall filter %s: %s", log_filter.filter_id, exc)
