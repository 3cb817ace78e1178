"""
Redis Sentinel HA Module

Keeps a client pointed at the current Redis master of a Sentinel-monitored
cluster:
- Ordered Sentinel address list with promote/demote failover heuristics
- One cached connection pool per Sentinel
- ``+switch-master`` watch sessions with race-free shutdown
- A self-healing master pool that rebinds when the master moves

"""

import logging
import asyncio
import random
import threading
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import wraps
from typing import (
    Any,
    AsyncIterator,
    Awaitable,
    Callable,
    Dict,
    Iterable,
    Iterator,
    List,
    Optional,
    Tuple,
)
import redis.asyncio as redis
from redis.sentinel import MasterNotFoundError
from redis.exceptions import (
    ConnectionError,
    TimeoutError,
    BusyLoadingError,
    ReadOnlyError,
    RedisError,
    ResponseError,
)

SWITCH_MASTER_CHANNEL = "+switch-master"

RETRYABLE_EXCEPTIONS = (
    ConnectionError,
    TimeoutError,
    ReadOnlyError,
    BusyLoadingError,
)

# Errors that mark a single Sentinel as failed during a failover query
SENTINEL_ERRORS = (RedisError, OSError)


def format_address(host: str, port: int) -> str:
    """Format a (host, port) pair as a ``host:port`` address string."""
    return f"{host}:{port}"


def parse_address(addr: str) -> Tuple[str, int]:
    """
    Split a ``host:port`` address string into a (host, port) tuple.

    Bracketed IPv6 hosts (``[::1]:26379``) are returned without brackets.

    Raises:
        ValueError: If the address has no port or the port is not numeric.
    """
    host, sep, port = addr.rpartition(":")
    if not sep or not host:
        raise ValueError(f"Invalid address (expected host:port): {addr!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    return host, int(port)


def backoff_delay(
    base_delay: float,
    attempt: int,
    max_delay: Optional[float] = None
) -> float:
    """
    Exponential backoff with up to 10% jitter.

    ``base_delay * 2**attempt``, capped at ``max_delay`` when given. Shared by
    the retry decorators and the master monitor's resubscribe loop.
    """
    backoff = base_delay * (2 ** attempt)
    if max_delay is not None:
        backoff = min(backoff, max_delay)
    return backoff + random.uniform(0, 0.1 * backoff)


def _decode(value: Any) -> Any:
    return value.decode("utf-8") if isinstance(value, bytes) else value


def _descriptor_to_dict(descriptor: Any) -> Dict[str, Any]:
    """Normalize a Sentinel descriptor (RESP2 flat list or RESP3 map)."""
    if isinstance(descriptor, dict):
        return {_decode(k): _decode(v) for k, v in descriptor.items()}
    if isinstance(descriptor, (list, tuple)):
        return {
            _decode(k): _decode(v)
            for k, v in zip(descriptor[::2], descriptor[1::2])
        }
    raise ResponseError(f"Unexpected Sentinel descriptor: {descriptor!r}")


def _descriptor_address(descriptor: Any) -> str:
    info = _descriptor_to_dict(descriptor)
    ip = info.get("ip")
    port = info.get("port")
    if not ip or not port:
        raise ResponseError(f"Sentinel descriptor without ip/port: {info!r}")
    return format_address(ip, port)


def _role_from_reply(reply: Any) -> Optional[str]:
    if isinstance(reply, (list, tuple)) and reply:
        return _decode(reply[0])
    return None


def parse_switch_master(data: Any, master_name: str) -> Optional[str]:
    """
    Parse a ``+switch-master`` payload into the new master address.

    The payload is ``<name> <old-ip> <old-port> <new-ip> <new-port>``.

    Returns:
        ``"new-ip:new-port"`` if the payload is well formed and names
        ``master_name``, otherwise None.
    """
    data = _decode(data)
    if not isinstance(data, str):
        return None
    parts = data.split(" ")
    if len(parts) != 5 or parts[0] != master_name:
        return None
    return f"{parts[3]}:{parts[4]}"


class NoSentinelsAvailable(ConnectionError):
    """
    Raised when every known Sentinel failed to answer (or none is configured).

    Attributes:
        last_error: The last error returned by a Sentinel, or None if the
            address list was empty.
    """

    def __init__(self, last_error: Optional[BaseException] = None):
        self.last_error = last_error
        if last_error is not None:
            message = f"no sentinels available; last error: {last_error}"
        else:
            message = "no sentinels available"
        super().__init__(message)


@dataclass
class SentinelTopology:
    """
    Snapshot of the HA cluster as seen by one Sentinel.

    Attributes:
        master_name: Name of the monitored master
        master_address: ``host:port`` of the current master
        replica_addresses: ``host:port`` of each known replica
        sentinel_addresses: ``host:port`` of the other Sentinels
        sentinel_count: Number of Sentinels monitoring the master
        is_healthy: Whether the master is flagged up by the Sentinel
        quorum: Required number of Sentinels for failover consensus
    """
    master_name: str
    master_address: Optional[str] = None
    replica_addresses: List[str] = field(default_factory=list)
    sentinel_addresses: List[str] = field(default_factory=list)
    sentinel_count: int = 0
    is_healthy: bool = False
    quorum: int = 2


@dataclass
class SentinelConfig:
    """
    Configuration for Sentinel discovery and the master pool.

    Attributes:
        sentinel_hosts: List of (host, port) tuples for Sentinel nodes
        master_name: Name of the master monitored by the Sentinels
        password: Optional password for data nodes
        db: Redis database number selected on every master connection
        ssl: Whether to use SSL/TLS (Sentinels and data nodes)
        max_connections: Maximum connections in the master pool
        socket_timeout: Timeout for master socket operations
        socket_connect_timeout: Timeout for establishing master connections
        health_check_interval: Interval for connection health checks
        sentinel_socket_timeout: Timeout for Sentinel query replies
        sentinel_socket_connect_timeout: Timeout for connecting to a Sentinel
        sentinel_password: Optional password for Sentinel nodes themselves
        sentinel_max_connections: Connections per Sentinel pool
        sentinel_pool_timeout: Seconds to wait for a free Sentinel connection
        client_name: CLIENT SETNAME value (Sentinels get a ``_sentinel`` suffix)
        retry_attempts: Number of retry attempts for operations
        retry_base_delay: Base delay for exponential backoff
        resubscribe_base_delay: Base delay before resubscribing after a failure
        resubscribe_max_delay: Upper bound for the resubscribe delay
        watch_poll_timeout: Seconds a watcher waits per receive before polling again
        watch_close_timeout: Optional bound on joining a watcher's receiver task
        check_master_role: Verify ROLE is master on every new master connection
        discover_sentinels: Merge peer Sentinels into the address list on startup
    """
    sentinel_hosts: List[Tuple[str, int]] = field(default_factory=list)
    master_name: str = "mymaster"
    password: Optional[str] = None
    db: int = 0
    ssl: bool = False
    max_connections: int = 50
    socket_timeout: float = 5.0
    socket_connect_timeout: float = 2.0
    health_check_interval: int = 30
    # Sentinel discovery protocol timeouts (intentionally short)
    sentinel_socket_timeout: float = 1.0
    sentinel_socket_connect_timeout: float = 1.0
    sentinel_password: Optional[str] = None
    sentinel_max_connections: int = 10
    sentinel_pool_timeout: float = 5.0
    client_name: str = "ha_sentinel"
    retry_attempts: int = 3
    retry_base_delay: float = 0.1
    resubscribe_base_delay: float = 0.1
    resubscribe_max_delay: float = 5.0
    watch_poll_timeout: float = 1.0
    watch_close_timeout: Optional[float] = None
    check_master_role: bool = True
    discover_sentinels: bool = False

    @property
    def sentinel_addrs(self) -> List[str]:
        """Sentinel seed addresses as ``host:port`` strings."""
        return [format_address(host, port) for host, port in self.sentinel_hosts]


# =============================================================================
# Endpoint Registry
# =============================================================================

class EndpointRegistry:
    """
    Ordered list of Sentinel addresses, most recently successful first.

    From the Sentinel client guidelines: the first Sentinel replying to a
    request is put at the start of the list so the next attempt reaches it
    first. Sentinels that fail are moved to the end but never removed.
    """

    def __init__(self, addrs: Iterable[str] = ()):
        self._lock = threading.Lock()
        self._addrs: List[str] = []
        for addr in addrs:
            if addr not in self._addrs:
                self._addrs.append(addr)

    def promote(self, addr: str) -> None:
        with self._lock:
            if self._addrs and self._addrs[0] == addr:
                return
            self._addrs = [addr] + [a for a in self._addrs if a != addr]

    def demote(self, addr: str) -> None:
        with self._lock:
            if self._addrs and self._addrs[-1] == addr:
                return
            self._addrs = [a for a in self._addrs if a != addr] + [addr]

    def add(self, addrs: Iterable[str]) -> List[str]:
        """
        Append every address not already known.

        Returns:
            The addresses that were actually added, in order.
        """
        added = []
        with self._lock:
            for addr in addrs:
                if addr not in self._addrs:
                    self._addrs.append(addr)
                    added.append(addr)
        return added

    def snapshot(self) -> Tuple[str, ...]:
        with self._lock:
            return tuple(self._addrs)

    def __len__(self) -> int:
        with self._lock:
            return len(self._addrs)

    def __contains__(self, addr: object) -> bool:
        with self._lock:
            return addr in self._addrs

    def __iter__(self) -> Iterator[str]:
        return iter(self.snapshot())

    def __repr__(self) -> str:
        return f"EndpointRegistry({list(self.snapshot())!r})"


# =============================================================================
# Connection Pool Cache
# =============================================================================

class ConnectionPoolCache:
    """
    Lazily created pooled clients, one per Sentinel address.

    All callers that talk to the same Sentinel share its pool. A pool is
    evicted (closed and dropped) when its Sentinel fails and recreated on
    next use.
    """

    def __init__(
        self,
        pool_factory: Callable[[str], redis.Redis],
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            pool_factory: Builds a pooled client for a ``host:port`` address.
            logger: Custom logger instance. Creates one if not provided.
        """
        self.pool_factory = pool_factory
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._pools: Dict[str, redis.Redis] = {}
        self._lock = asyncio.Lock()

    async def pool_for(self, addr: str) -> redis.Redis:
        """Return the cached pool for ``addr``, creating it if absent."""
        pool = self._pools.get(addr)
        if pool is not None:
            return pool

        async with self._lock:
            # Double-checked locking
            pool = self._pools.get(addr)
            if pool is None:
                pool = self.pool_factory(addr)
                self._pools[addr] = pool
            return pool

    async def evict(self, addr: str) -> None:
        """Close and forget the pool for ``addr``, if any."""
        async with self._lock:
            pool = self._pools.pop(addr, None)
        if pool is not None:
            await self._close_pool(addr, pool)
            self.logger.debug(f"Sentinel pool evicted: {addr}")

    async def close_all(self) -> None:
        async with self._lock:
            pools = list(self._pools.items())
            self._pools.clear()
        for addr, pool in pools:
            await self._close_pool(addr, pool)

    async def _close_pool(self, addr: str, pool: redis.Redis) -> None:
        try:
            await pool.aclose()
        except SENTINEL_ERRORS as e:
            # The Sentinel is usually unreachable at this point
            self.logger.debug(
                f"Error closing Sentinel pool {addr}: {type(e).__name__}: {e}"
            )

    def __contains__(self, addr: object) -> bool:
        return addr in self._pools

    def __len__(self) -> int:
        return len(self._pools)


# =============================================================================
# Master-Switch Watcher
# =============================================================================

class WatchState(Enum):
    """
    Lifecycle of a master-switch watch session.

    ``SUBSCRIBING -> ACTIVE -> CLOSING -> CLOSED``, or ``ACTIVE -> FAILED``
    when the subscription stream reports a transport error.
    """
    SUBSCRIBING = "subscribing"
    ACTIVE = "active"
    CLOSING = "closing"
    CLOSED = "closed"
    FAILED = "failed"


_END_OF_STREAM = object()


class MasterSwitchWatcher:
    """
    One subscription lifetime on the ``+switch-master`` channel.

    A single receiver task reads the subscription and emits the new master
    address for every notification about ``master_name``. The address stream
    ends when the session is closed or the connection fails; it is always
    ended by the receiver task, exactly once.

    ``close()`` unsubscribes, waits for the receiver task to exit and only
    then releases the connection, so the closer and the receiver never use
    the connection at the same time::

        watcher = await sentinel.master_switch()
        async for addr in watcher.watch():
            print("master moved to", addr)
        await watcher.close()
    """

    def __init__(
        self,
        pubsub: Any,
        master_name: str,
        poll_timeout: float = 1.0,
        close_timeout: Optional[float] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            pubsub: A PubSub already subscribed to ``+switch-master``.
            master_name: Only notifications for this master are emitted.
            poll_timeout: Seconds each receive waits before polling again.
            close_timeout: Optional bound on waiting for the receiver on close;
                the receiver task is cancelled when it is exceeded.
            logger: Custom logger instance. Creates one if not provided.
        """
        self.master_name = master_name
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self._pubsub = pubsub
        self._poll_timeout = poll_timeout
        self._close_timeout = close_timeout
        self._queue: asyncio.Queue = asyncio.Queue()
        self._task: Optional[asyncio.Task] = None
        self._closed = False
        self._close_lock = asyncio.Lock()
        self._state = WatchState.ACTIVE

    @property
    def state(self) -> WatchState:
        return self._state

    @property
    def closed(self) -> bool:
        return self._closed

    def watch(self) -> AsyncIterator[str]:
        """
        Start the receiver task and return the stream of new master addresses.

        Raises:
            RuntimeError: If the session is already being watched or closed.
        """
        if self._closed:
            raise RuntimeError("Watch session is closed")
        if self._task is not None:
            raise RuntimeError("Watch session already has a consumer")

        self._task = asyncio.create_task(self._receive())
        return self._addresses()

    async def _addresses(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _END_OF_STREAM:
                return
            yield item

    async def _receive(self) -> None:
        try:
            while True:
                try:
                    message = await self._pubsub.get_message(
                        timeout=self._poll_timeout
                    )
                except SENTINEL_ERRORS as e:
                    self.logger.error(
                        f"Master switch channel receive error: {type(e).__name__}: {e}"
                    )
                    self._state = WatchState.FAILED
                    return

                if message is None:
                    continue

                kind = _decode(message.get("type"))
                if kind == "message":
                    addr = parse_switch_master(message.get("data"), self.master_name)
                    if addr is None:
                        self.logger.debug(
                            f"Ignoring switch-master message: {message.get('data')!r}"
                        )
                        continue
                    self._queue.put_nowait(addr)
                elif kind == "unsubscribe":
                    channel = _decode(message.get("channel"))
                    if channel == SWITCH_MASTER_CHANNEL and message.get("data") == 0:
                        self.logger.debug("Unsubscribed from switch-master")
                        if self._state is WatchState.ACTIVE:
                            self._state = WatchState.CLOSING
                        return
        finally:
            self._queue.put_nowait(_END_OF_STREAM)

    async def close(self) -> None:
        """
        Stop the session and release its connection. Safe to call repeatedly.

        Blocks until the receiver task has exited. Without ``close_timeout``
        this can wait for as long as the connection neither confirms the
        unsubscribe nor fails.
        """
        if self._closed:
            return

        async with self._close_lock:
            if self._closed:
                return
            self._closed = True

            if self._state is WatchState.ACTIVE:
                self._state = WatchState.CLOSING
                try:
                    await self._pubsub.unsubscribe(SWITCH_MASTER_CHANNEL)
                except SENTINEL_ERRORS as e:
                    # The receiver sees the same broken connection and exits
                    self.logger.debug(
                        f"Unsubscribe from switch-master failed: {type(e).__name__}: {e}"
                    )

            if self._task is not None:
                await self._join_receiver()
            else:
                self._queue.put_nowait(_END_OF_STREAM)

            await self._pubsub.aclose()
            if self._state is not WatchState.FAILED:
                self._state = WatchState.CLOSED

    async def _join_receiver(self) -> None:
        if self._close_timeout is None:
            await self._task
            return

        done, _ = await asyncio.wait({self._task}, timeout=self._close_timeout)
        if not done:
            self.logger.warning(
                f"Watch receiver did not exit within {self._close_timeout}s, cancelling"
            )
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)

    async def __aenter__(self) -> "MasterSwitchWatcher":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


# =============================================================================
# Sentinel Client (failover query executor)
# =============================================================================

class SentinelClient:
    """
    Talks to a quorum of Sentinels, one reachable Sentinel at a time.

    Every query runs through ``run_until_success()``: Sentinels are tried in
    registry order, the first one that answers is promoted to the front and
    the ones that fail are evicted from the pool cache and demoted.

    Example::

        sentinel = SentinelClient(SentinelConfig(
            sentinel_hosts=[("sentinel1", 26379), ("sentinel2", 26379)],
            master_name="mymaster",
        ))
        await sentinel.discover()
        master = await sentinel.master_addr()   # "10.0.0.1:6379"
        await sentinel.close()
    """

    def __init__(
        self,
        config: Optional[SentinelConfig] = None,
        pool_factory: Optional[Callable[[str], redis.Redis]] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Args:
            config: Sentinel configuration. Uses defaults if not provided.
            pool_factory: Builds the pooled client for one Sentinel address.
                Defaults to ``_create_sentinel_client``.
            logger: Custom logger instance. Creates one if not provided.
        """
        self.config = config or SentinelConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.master_name = self.config.master_name
        self.registry = EndpointRegistry(self.config.sentinel_addrs)
        self.pools = ConnectionPoolCache(
            pool_factory or self._create_sentinel_client,
            logger=self.logger,
        )

    def _create_sentinel_client(self, addr: str) -> redis.Redis:
        """
        Create a pooled client for one Sentinel.

        The pool blocks when all its connections are busy instead of failing,
        so concurrent queries against one Sentinel queue up. Internal command
        retries are disabled; failover between Sentinels is the retry.
        """
        host, port = parse_address(addr)
        connection_kwargs: Dict[str, Any] = {}
        if self.config.sentinel_password is not None:
            connection_kwargs["password"] = self.config.sentinel_password
        if self.config.ssl:
            connection_kwargs["connection_class"] = redis.SSLConnection

        pool = redis.BlockingConnectionPool(
            host=host,
            port=port,
            max_connections=self.config.sentinel_max_connections,
            timeout=self.config.sentinel_pool_timeout,
            decode_responses=True,
            socket_timeout=self.config.sentinel_socket_timeout,
            socket_connect_timeout=self.config.sentinel_socket_connect_timeout,
            retry_on_timeout=False,
            health_check_interval=self.config.health_check_interval,
            client_name=f"{self.config.client_name}_sentinel",
            **connection_kwargs,
        )

        self.logger.info(
            f"Sentinel pool created: {addr} "
            f"(max_connections={self.config.sentinel_max_connections})"
        )

        return redis.Redis.from_pool(pool)

    async def run_until_success(
        self,
        query: Callable[[redis.Redis], Awaitable[Any]]
    ) -> Any:
        """
        Run ``query`` against Sentinels in registry order until one succeeds.

        Args:
            query: Coroutine function receiving the pooled client of one
                Sentinel. Raising a RedisError or OSError marks that Sentinel
                as failed.

        Returns:
            The result of the first successful query.

        Raises:
            NoSentinelsAvailable: Every Sentinel failed, or none is known.
        """
        last_error: Optional[BaseException] = None

        for addr in self.registry.snapshot():
            try:
                client = await self.pools.pool_for(addr)
                result = await query(client)
            except SENTINEL_ERRORS as e:
                last_error = e
                self.logger.warning(
                    f"Sentinel {addr} failed: {type(e).__name__}: {e}"
                )
                await self.pools.evict(addr)
                self.registry.demote(addr)
                continue

            self.registry.promote(addr)
            return result

        error = NoSentinelsAvailable(last_error)
        self.logger.error(f"Sentinel query failed: {error}")
        raise error

    async def master_addr(self) -> str:
        """Return the ``host:port`` of the current master."""
        async def query(client: redis.Redis) -> str:
            reply = await client.execute_command(
                "SENTINEL", "get-master-addr-by-name", self.master_name
            )
            if not reply:
                raise MasterNotFoundError(f"No master found for {self.master_name!r}")
            host, port = reply[0], reply[1]
            return format_address(_decode(host), _decode(port))

        return await self.run_until_success(query)

    async def replica_addrs(self) -> List[str]:
        """Return the ``host:port`` of every replica of the master."""
        async def query(client: redis.Redis) -> List[str]:
            reply = await client.execute_command(
                "SENTINEL", "slaves", self.master_name
            )
            return [_descriptor_address(d) for d in reply or []]

        return await self.run_until_success(query)

    async def sentinel_addrs(self) -> List[str]:
        """Return the ``host:port`` of the Sentinels the answering one knows."""
        async def query(client: redis.Redis) -> List[str]:
            reply = await client.execute_command(
                "SENTINEL", "sentinels", self.master_name
            )
            return [_descriptor_address(d) for d in reply or []]

        return await self.run_until_success(query)

    async def discover(self) -> List[str]:
        """
        Update the list of known Sentinels.

        From the Sentinel client guidelines: obtain the other Sentinels for
        this master with ``SENTINEL sentinels <master-name>`` and add every
        address not already known at the end of the list.

        Returns:
            Addresses that were newly added.
        """
        added = self.registry.add(await self.sentinel_addrs())
        if added:
            self.logger.info(f"Discovered Sentinels: {added}")
        return added

    async def get_topology(self) -> SentinelTopology:
        """
        Get a snapshot of the current HA topology from one Sentinel.

        ``SENTINEL master``, ``SENTINEL slaves`` and ``SENTINEL sentinels``
        are batched in a single pipeline round-trip.
        """
        async def query(client: redis.Redis) -> SentinelTopology:
            pipe = client.pipeline(transaction=False)
            pipe.execute_command("SENTINEL", "master", self.master_name)
            pipe.execute_command("SENTINEL", "slaves", self.master_name)
            pipe.execute_command("SENTINEL", "sentinels", self.master_name)
            master_info, replicas_info, sentinels_info = await pipe.execute()

            info = _descriptor_to_dict(master_info)
            master_address = None
            if info.get("ip") and info.get("port"):
                master_address = format_address(info["ip"], info["port"])

            flags_str = info.get("flags", "")
            flags = flags_str.split(",") if isinstance(flags_str, str) else []
            sentinel_addresses = [_descriptor_address(d) for d in sentinels_info or []]

            return SentinelTopology(
                master_name=self.master_name,
                master_address=master_address,
                replica_addresses=[_descriptor_address(d) for d in replicas_info or []],
                sentinel_addresses=sentinel_addresses,
                sentinel_count=int(
                    info.get("num-other-sentinels", len(sentinel_addresses))
                ) + 1,
                is_healthy=(
                    "master" in flags and
                    "s_down" not in flags and
                    "o_down" not in flags
                ),
                quorum=int(info.get("quorum", 2)),
            )

        return await self.run_until_success(query)

    async def master_switch(self) -> MasterSwitchWatcher:
        """
        Subscribe to ``+switch-master`` on the first Sentinel that accepts.

        Returns:
            An active watch session. Call ``watch()`` to receive addresses
            and ``close()`` when done.

        Raises:
            NoSentinelsAvailable: No Sentinel accepted the subscription.
        """
        async def subscribe(client: redis.Redis) -> Any:
            pubsub = client.pubsub()
            try:
                await pubsub.subscribe(SWITCH_MASTER_CHANNEL)
            except BaseException:
                await pubsub.aclose()
                raise
            return pubsub

        pubsub = await self.run_until_success(subscribe)
        self.logger.info(f"Subscribed to {SWITCH_MASTER_CHANNEL} for {self.master_name}")
        return MasterSwitchWatcher(
            pubsub,
            self.master_name,
            poll_timeout=self.config.watch_poll_timeout,
            close_timeout=self.config.watch_close_timeout,
            logger=self.logger,
        )

    async def close(self) -> None:
        """Close every cached Sentinel pool."""
        await self.pools.close_all()
        self.logger.info("Sentinel connections closed")

    async def __aenter__(self) -> "SentinelClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()


async def check_role(client: redis.Redis, expected_role: str) -> bool:
    """
    Check whether the instance behind ``client`` reports ``expected_role``.

    Uses the ROLE command. Any error while querying counts as a mismatch.
    """
    try:
        reply = await client.execute_command("ROLE")
    except SENTINEL_ERRORS:
        return False
    return _role_from_reply(reply) == expected_role


# =============================================================================
# Self-Healing Master Pool
# =============================================================================

class _MasterBoundMixin:
    """
    Connection that dials whatever the master pool reports at connect time.

    AUTH, SELECT and CLIENT SETNAME run through redis-py's normal handshake.
    With ``verify_role`` the new connection must also report ROLE master.
    """

    def __init__(
        self,
        *,
        address_source: Callable[[], Optional[str]],
        verify_role: bool = False,
        **kwargs
    ):
        self.address_source = address_source
        self.verify_role = verify_role
        super().__init__(**kwargs)

    async def _connect(self) -> None:
        # Every (re)connect dials the latest known master
        addr = self.address_source()
        if addr is None:
            raise ConnectionError("Master address is not known yet")
        self.host, self.port = parse_address(addr)
        await super()._connect()

    # Post-handshake hooks: on_connect_check_health() on redis-py 6 (also
    # reached by the implicit reconnect in send_packed_command()),
    # on_connect() on redis-py 5.

    async def on_connect_check_health(self, check_health: bool = True) -> None:
        await super().on_connect_check_health(check_health=check_health)
        await self._verify_role()

    async def on_connect(self) -> None:
        await super().on_connect()
        if not hasattr(super(), "on_connect_check_health"):
            await self._verify_role()

    async def _verify_role(self) -> None:
        if not self.verify_role:
            return
        await self.send_command("ROLE", check_health=False)
        role = _role_from_reply(await self.read_response())
        if role != "master":
            await self.disconnect()
            raise ConnectionError(
                f"{self.host}:{self.port} reports role {role!r}, expected 'master'"
            )


class MasterBoundConnection(_MasterBoundMixin, redis.Connection):
    pass


class MasterBoundSSLConnection(_MasterBoundMixin, redis.SSLConnection):
    pass


class SentinelPool:
    """
    A connection pool that follows the current Redis master.

    The pool resolves the master through Sentinel on ``initialize()`` and
    then keeps a background monitor task subscribed to ``+switch-master``.
    Every announced switch updates ``current_master()``; new connections
    always dial the latest address. If the subscription drops, the monitor
    resubscribes (possibly through another Sentinel) with bounded backoff
    and re-resolves the master to catch switches it missed.

    Recommended usage (async context manager)::

        config = SentinelConfig(
            sentinel_hosts=[("sentinel1", 26379), ("sentinel2", 26379)],
            master_name="mymaster",
        )
        async with SentinelPool(config) as pool:
            async with pool.acquire() as conn:
                await conn.set("key", "value")
            print(pool.current_master())

    Without a context manager, ``await pool.initialize()`` before use and
    ``await pool.close()`` when done.
    """

    def __init__(
        self,
        config: Optional[SentinelConfig] = None,
        sentinel: Optional[SentinelClient] = None,
        logger: Optional[logging.Logger] = None
    ):
        """
        Initialize the pool. No I/O happens until ``initialize()``.

        Args:
            config: Sentinel configuration. Uses defaults if not provided.
            sentinel: Sentinel client to use. Created from config if not provided.
            logger: Custom logger instance. Creates one if not provided.
        """
        self.config = config or SentinelConfig()
        self.logger = logger or logging.getLogger(self.__class__.__name__)
        self.sentinel = sentinel or SentinelClient(self.config, logger=self.logger)

        self._pool: Optional[redis.ConnectionPool] = None
        self._client: Optional[redis.Redis] = None
        self._watcher: Optional[MasterSwitchWatcher] = None
        self._monitor_task: Optional[asyncio.Task] = None
        self._current_master: Optional[str] = None
        # Bumped on every +switch-master notification
        self._switch_generation = 0
        self._closed = False
        self._initialized = False
        self._state_lock = threading.Lock()
        self._init_lock = asyncio.Lock()
        self._stopping = asyncio.Event()

    def _create_pool(self) -> redis.ConnectionPool:
        """
        Create the master connection pool.

        Note: Internal command retries are disabled to avoid multiplicative
        retry behavior when combined with ``with_retry``.
        """
        connection_class = (
            MasterBoundSSLConnection if self.config.ssl else MasterBoundConnection
        )
        pool = redis.ConnectionPool(
            connection_class=connection_class,
            address_source=self.current_master,
            verify_role=self.config.check_master_role,
            password=self.config.password,
            db=self.config.db,
            decode_responses=True,
            max_connections=self.config.max_connections,
            socket_timeout=self.config.socket_timeout,
            socket_connect_timeout=self.config.socket_connect_timeout,
            retry_on_timeout=False,
            health_check_interval=self.config.health_check_interval,
            client_name=self.config.client_name,
        )

        self.logger.info(
            f"Master pool created for {self.config.master_name} "
            f"(max_connections={self.config.max_connections})"
        )

        return pool

    async def initialize(self) -> None:
        """
        Resolve the master, create the pool and start the monitor task.

        Safe to call concurrently; initialization happens once. Called
        automatically by the async context manager.

        Raises:
            NoSentinelsAvailable: The initial master lookup failed. Nothing
                is started in that case.
        """
        if self._initialized:
            return

        async with self._init_lock:
            if self._initialized:
                return

            if self.config.discover_sentinels:
                try:
                    await self.sentinel.discover()
                except NoSentinelsAvailable as e:
                    self.logger.warning(f"Sentinel discovery failed: {e}")

            master = await self.sentinel.master_addr()

            with self._state_lock:
                self._current_master = master
                self._closed = False
            self._stopping.clear()
            self._pool = self._create_pool()
            self._monitor_task = asyncio.create_task(self._monitor_master())
            self._initialized = True
            self.logger.info(
                f"Connected to Sentinel master {self.config.master_name} at {master}"
            )

    def current_master(self) -> Optional[str]:
        """Last known ``host:port`` of the master."""
        with self._state_lock:
            return self._current_master

    @property
    def closed(self) -> bool:
        with self._state_lock:
            return self._closed

    def get_client(self) -> redis.Redis:
        """
        Return a shared Redis client over the master pool.

        Raises:
            RuntimeError: If ``initialize()`` has not completed.
        """
        if self._client is not None:
            return self._client
        if self._pool is None:
            raise RuntimeError("SentinelPool is not initialized; call initialize() first")
        self._client = redis.Redis(connection_pool=self._pool)
        return self._client

    @asynccontextmanager
    async def acquire(self) -> AsyncIterator[redis.Redis]:
        """
        Check out one connection to the current master.

        Yields a Redis client pinned to a single pooled connection, which
        goes back to the pool when the block exits.
        """
        if self._pool is None:
            raise RuntimeError("SentinelPool is not initialized; call initialize() first")

        client = redis.Redis(connection_pool=self._pool, single_connection_client=True)
        try:
            await client.initialize()
            yield client
        finally:
            await client.aclose()

    async def _set_master(
        self,
        addr: str,
        generation: Optional[int] = None,
        announced: bool = False
    ) -> None:
        """
        Apply a new master address.

        Args:
            addr: The new ``host:port``.
            generation: Switch generation read before the lookup that produced
                ``addr``. The write is dropped if a switch was announced since.
            announced: ``addr`` comes from a ``+switch-master`` notification.
        """
        with self._state_lock:
            if generation is not None and generation != self._switch_generation:
                self.logger.debug(
                    f"Dropping stale master {addr}, a switch was announced meanwhile"
                )
                return
            if announced:
                self._switch_generation += 1
            previous = self._current_master
            if addr == previous:
                return
            self._current_master = addr

        self.logger.info(
            f"Master {self.config.master_name} switched: {previous} -> {addr}"
        )
        # Idle connections still point at the old master
        if self._pool is not None:
            await self._pool.disconnect(inuse_connections=False)

    async def refresh_master(self) -> Optional[str]:
        """
        Re-resolve the master through Sentinel and apply it.

        A switch announced while the lookup is in flight wins over the
        lookup's answer.

        Returns:
            The current master address. On failure the previous one is kept.
        """
        with self._state_lock:
            generation = self._switch_generation
        try:
            addr = await self.sentinel.master_addr()
        except NoSentinelsAvailable as e:
            self.logger.warning(f"Master refresh failed, keeping {self.current_master()}: {e}")
            return self.current_master()
        await self._set_master(addr, generation=generation)
        return self.current_master()

    def _resubscribe_delay(self, attempt: int) -> float:
        return backoff_delay(
            self.config.resubscribe_base_delay,
            attempt,
            self.config.resubscribe_max_delay,
        )

    async def _sleep_unless_stopped(self, delay: float) -> None:
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def _monitor_master(self) -> None:
        attempt = 0
        while not self.closed:
            try:
                watcher = await self.sentinel.master_switch()
            except NoSentinelsAvailable as e:
                delay = self._resubscribe_delay(attempt)
                attempt += 1
                self.logger.error(
                    f"Subscribe to master switch failed, retrying in {delay:.2f}s: {e}"
                )
                await self._sleep_unless_stopped(delay)
                continue

            attempt = 0
            # Switches announced while unsubscribed are not replayed
            await self.refresh_master()

            with self._state_lock:
                closed = self._closed
                if not closed:
                    self._watcher = watcher
            if closed:
                await watcher.close()
                break

            # No await between publishing the watcher and starting it
            addresses = watcher.watch()
            async for addr in addresses:
                await self._set_master(addr, announced=True)

            # Close in case the stream ended on an error
            await watcher.close()
            with self._state_lock:
                if self._watcher is watcher:
                    self._watcher = None

            if watcher.state is WatchState.FAILED and not self.closed:
                delay = self._resubscribe_delay(attempt)
                attempt += 1
                self.logger.warning(
                    f"Master switch subscription lost, resubscribing in {delay:.2f}s"
                )
                await self._sleep_unless_stopped(delay)

        self.logger.debug("Master monitor stopped")

    async def health_check(self) -> bool:
        """
        Perform a health check on the current master.

        Returns:
            True if the master is responding, False otherwise (including
            before ``initialize()``)
        """
        if self._client is None and self._pool is None:
            self.logger.warning("Master health check skipped: pool not initialized")
            return False

        try:
            client = self.get_client()
            result = await client.ping()
            return result is True
        except (ConnectionError, TimeoutError, BusyLoadingError) as e:
            self.logger.error(f"Master health check failed: {type(e).__name__}: {e}")
            return False
        except RedisError as e:
            self.logger.error(f"Redis error during health check: {e}")
            return False

    async def close(self) -> None:
        """
        Stop monitoring and release every connection.

        Closes the active watch session, waits for the monitor task, then
        closes the master pool and all Sentinel pools. Safe to call twice.
        """
        async with self._init_lock:
            with self._state_lock:
                self._closed = True
                watcher = self._watcher
                self._watcher = None
            self._stopping.set()

            if watcher is not None:
                await watcher.close()

            if self._monitor_task is not None:
                await self._monitor_task
                self._monitor_task = None

            if self._client is not None:
                await self._client.aclose()
                self._client = None

            if self._pool is not None:
                await self._pool.disconnect()
                self._pool = None

            await self.sentinel.close()
            self._initialized = False
            self.logger.info("Master pool closed")

    async def __aenter__(self) -> "SentinelPool":
        """Async context manager entry, initializes the pool."""
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        """Async context manager exit with cleanup."""
        await self.close()

    def with_retry(
        self,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None
    ) -> Callable:
        """
        Decorator for adding retry logic to operations on the master.

        On failover-indicating errors (``ReadOnlyError``, ``ConnectionError``)
        the master is re-resolved through Sentinel before the next attempt,
        covering the window before the switch announcement arrives.

        Args:
            max_retries: Maximum number of retry attempts (defaults to config)
            base_delay: Base delay in seconds (defaults to config)

        Example:
            @pool.with_retry(max_retries=3)
            async def critical_operation():
                async with pool.acquire() as conn:
                    await conn.set("key", "value")
        """
        retries = max_retries if max_retries is not None else self.config.retry_attempts
        delay = base_delay if base_delay is not None else self.config.retry_base_delay

        def decorator(func: Callable) -> Callable:
            @wraps(func)
            async def wrapper(*args, **kwargs) -> Any:
                last_error = None

                for attempt in range(retries + 1):
                    try:
                        return await func(*args, **kwargs)
                    except RETRYABLE_EXCEPTIONS as e:
                        last_error = e
                        if attempt >= retries:
                            self.logger.error(
                                f"Master operation failed after {retries + 1} attempts: {e}"
                            )
                            break

                        if isinstance(e, (ReadOnlyError, ConnectionError)):
                            self.logger.warning(
                                f"Failover-related error (attempt {attempt + 1}/{retries + 1}): "
                                f"{type(e).__name__}: {e}, refreshing master"
                            )
                            await self.refresh_master()

                        sleep_time = backoff_delay(delay, attempt)
                        self.logger.warning(
                            f"Master operation failed (attempt {attempt + 1}/{retries + 1}), "
                            f"retrying in {sleep_time:.2f}s: {e}"
                        )
                        await asyncio.sleep(sleep_time)

                raise last_error

            return wrapper
        return decorator


def with_sentinel_retry(
    max_retries: int = 3,
    base_delay: float = 0.1,
    max_delay: Optional[float] = None,
    logger: Optional[logging.Logger] = None
) -> Callable:
    """
    Standalone retry decorator for Sentinel lookups.

    Retries ``RETRYABLE_EXCEPTIONS`` with ``backoff_delay()``. When the whole
    quorum was unreachable (``NoSentinelsAvailable``) the log names the last
    Sentinel error, since the aggregate alone does not say what went wrong.
    It has no pool to refresh; use ``SentinelPool.with_retry()`` for
    operations on the master.

    Example:
        @with_sentinel_retry(max_retries=5, max_delay=2.0)
        async def lookup():
            return await sentinel.master_addr()
    """
    logger = logger or logging.getLogger("SentinelRetry")

    def describe(error: BaseException) -> str:
        if isinstance(error, NoSentinelsAvailable) and error.last_error is not None:
            cause = error.last_error
            return f"no sentinels available (last: {type(cause).__name__}: {cause})"
        return f"{type(error).__name__}: {error}"

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        async def wrapper(*args, **kwargs) -> Any:
            last_error = None

            for attempt in range(max_retries + 1):
                try:
                    return await func(*args, **kwargs)
                except RETRYABLE_EXCEPTIONS as e:
                    last_error = e
                    if attempt >= max_retries:
                        logger.error(
                            f"Sentinel lookup {func.__name__} failed after "
                            f"{max_retries + 1} attempts: {describe(e)}"
                        )
                        break

                    delay = backoff_delay(base_delay, attempt, max_delay)
                    logger.warning(
                        f"Sentinel lookup {func.__name__} failed "
                        f"(attempt {attempt + 1}/{max_retries + 1}), "
                        f"retrying in {delay:.2f}s: {describe(e)}"
                    )
                    await asyncio.sleep(delay)

            raise last_error

        return wrapper
    return decorator
