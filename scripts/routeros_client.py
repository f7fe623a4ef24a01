#!/usr/bin/env python3
"""
RouterOS API Connection Manager

Async client for talking to MikroTik routers over the RouterOS binary API
(TCP, default port 8728). Used by the command proxy, the sync engine and
the active-session terminator.

Features:
- One authenticated session per router, created lazily on first use
- Post-6.43 plaintext login with fallback to the legacy MD5 challenge
- Tag-based reply routing (background reader task per session)
- Per-router FIFO queue: at most one in-flight command per router
- Single transparent reconnect on NetworkError, then the error surfaces
- Timeouts invalidate the session, no retry
- Streaming commands (monitor-traffic, listen) as cancellable async iterators
- Explicit registry lifecycle: register -> lazy connect -> shutdown

Usage:
    manager = ConnectionManager()
    manager.register(RouterDescriptor("r1", "192.168.88.1", username="api", password="secret"))

    reply = await manager.call("r1", CommandRequest.build("r1", "/system/resource/print"))
    print(reply.records[0]["uptime"])

    async with await manager.listen("r1", ["/interface/monitor-traffic", "=interface=ether1"]) as stream:
        async for sample in stream:
            print(sample["rx-bits-per-second"])
            break

    await manager.shutdown()
"""

import asyncio
import contextlib
import hashlib
import itertools
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from router_errors import (
    AuthError,
    CommandError,
    NetworkError,
    ProtocolError,
    RouterError,
    RouterTimeoutError,
    UnknownRouterError,
)
from routeros_codec import (
    REPLY_DONE,
    REPLY_EMPTY,
    REPLY_FATAL,
    REPLY_RE,
    REPLY_TRAP,
    Sentence,
    SentenceParser,
    build_words,
    encode_sentence,
)

DEFAULT_API_PORT = 8728

# Default timeouts
DEFAULT_TIMEOUT = 10.0  # seconds
DEFAULT_IDLE_TIMEOUT = 300.0  # seconds, 0 disables

READ_CHUNK_SIZE = 64 * 1024

# !trap category sent for a command interrupted by /cancel
TRAP_CATEGORY_INTERRUPTED = "2"

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RouterDescriptor:
    """Connection parameters of one router"""
    router_id: str
    host: str
    port: int = DEFAULT_API_PORT
    username: str = "admin"
    password: str = field(default="", repr=False)
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], router_id: Optional[str] = None) -> "RouterDescriptor":
        """Build a descriptor from config/dashboard field names.

        Accepts both the gateway names (host, user) and the dashboard's
        server record names (ip, username).
        """
        host = data.get("host") or data.get("ip") or data.get("address")
        if not host:
            raise ValueError("Router descriptor requires a host")
        port = int(data.get("port") or DEFAULT_API_PORT)
        rid = router_id or data.get("id") or data.get("serverId") or data.get("router_id")
        timeout = data.get("timeout")
        return cls(
            router_id=str(rid) if rid else f"{host}:{port}",
            host=str(host),
            port=port,
            username=str(data.get("username") or data.get("user") or "admin"),
            password=str(data.get("password") or ""),
            timeout=float(timeout) if timeout else DEFAULT_TIMEOUT,
        )

    @property
    def endpoint(self) -> Tuple[str, int, str, str]:
        """What a session is bound to; timeout is not part of it"""
        return (self.host, self.port, self.username, self.password)

    def to_public_dict(self) -> Dict[str, Any]:
        """Descriptor without credentials"""
        return {
            "id": self.router_id,
            "host": self.host,
            "port": self.port,
            "username": self.username,
            "timeout": self.timeout,
        }


@dataclass(frozen=True)
class CommandRequest:
    """One command addressed to a router"""
    router_id: str
    words: Tuple[str, ...]

    @classmethod
    def build(
        cls,
        router_id: str,
        command_path: str,
        args: Optional[Mapping[str, str]] = None,
        queries: Optional[Sequence[str]] = None,
    ) -> "CommandRequest":
        return cls(router_id, tuple(build_words(command_path, args, queries)))

    @property
    def command_path(self) -> str:
        return self.words[0]


@dataclass
class CommandReply:
    """Records of one command plus its terminal status"""
    records: List[Dict[str, str]] = field(default_factory=list)
    status: str = "done"  # done | trap | fatal
    message: Optional[str] = None
    category: Optional[str] = None
    done_attributes: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.status == "done"

    @property
    def ret(self) -> Optional[str]:
        """Value returned on !done (e.g. the .id of an added item)"""
        return self.done_attributes.get("ret")

    def raise_for_status(self, router_id: Optional[str] = None, command: Optional[str] = None) -> None:
        if self.status == "trap":
            raise CommandError(
                self.message or "Command failed",
                router_id=router_id,
                category=self.category,
                command=command,
            )
        if self.status == "fatal":
            raise NetworkError(f"Router closed the session: {self.message or 'fatal'}", router_id)


def legacy_login_response(password: str, challenge: str) -> str:
    """Response to a pre-6.43 login challenge: "00" + md5(0x00 + password + challenge)"""
    try:
        challenge_bytes = bytes.fromhex(challenge)
    except ValueError:
        raise ProtocolError(f"Invalid login challenge: {challenge!r}") from None
    digest = hashlib.md5()
    digest.update(b"\x00")
    digest.update(password.encode("utf-8"))
    digest.update(challenge_bytes)
    return "00" + digest.hexdigest()


class RouterSession:
    """One authenticated duplex connection to a router.

    A background reader task parses incoming sentences and routes them to
    the queue registered for their tag. Any transport failure fails every
    waiting queue and marks the session closed.
    """

    def __init__(
        self,
        descriptor: RouterDescriptor,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
    ):
        self.descriptor = descriptor
        self.authenticated = False
        self.created_at = time.time()
        self.last_activity = time.monotonic()
        self._reader = reader
        self._writer = writer
        self._tags = itertools.count(1)
        self._waiters: Dict[str, asyncio.Queue] = {}
        self._reader_task: Optional[asyncio.Task] = None
        self._error: Optional[RouterError] = None
        self._shutdown = False

    @property
    def router_id(self) -> str:
        return self.descriptor.router_id

    @property
    def is_open(self) -> bool:
        return self._error is None and not self._writer.is_closing()

    @property
    def is_shut_down(self) -> bool:
        return self._shutdown

    @property
    def idle_seconds(self) -> float:
        return time.monotonic() - self.last_activity

    def start(self) -> None:
        self._reader_task = asyncio.get_running_loop().create_task(self._read_loop())

    async def _read_loop(self) -> None:
        parser = SentenceParser()
        try:
            while True:
                data = await self._reader.read(READ_CHUNK_SIZE)
                if not data:
                    parser.close()
                    raise NetworkError("Connection closed by router", self.router_id)
                self.last_activity = time.monotonic()
                for words in parser.feed(data):
                    self._dispatch(Sentence.from_words(words))
        except asyncio.CancelledError:
            self._fail(NetworkError("Session closed", self.router_id))
            raise
        except RouterError as e:
            if e.router_id is None:
                e.router_id = self.router_id
            self._fail(e)
        except OSError as e:
            self._fail(NetworkError(f"Read failed: {e}", self.router_id))
        except Exception as e:
            logger.exception(f"[{self.router_id}] Unexpected error in reader")
            self._fail(ProtocolError(f"Reader failed: {e}", self.router_id))

    def _dispatch(self, sentence: Sentence) -> None:
        if sentence.tag is None:
            if sentence.reply_type == REPLY_FATAL:
                self._fail(NetworkError(
                    f"Router closed the session: {sentence.message or 'fatal'}", self.router_id
                ))
            else:
                logger.warning(f"[{self.router_id}] Dropping untagged {sentence.reply_type} sentence")
            return

        queue = self._waiters.get(sentence.tag)
        if queue is None:
            # Late replies of a cancelled or timed-out command
            logger.debug(f"[{self.router_id}] No waiter for tag {sentence.tag}, dropping {sentence.reply_type}")
            return
        queue.put_nowait(sentence)

    def _fail(self, error: RouterError) -> None:
        if self._error is not None:
            return
        self._error = error
        for queue in self._waiters.values():
            queue.put_nowait(error)
        if not self._writer.is_closing():
            self._writer.close()

    def abort(self, reason: str) -> None:
        """Invalidate the session without awaiting (sync callers)"""
        self._fail(NetworkError(reason, self.router_id))
        if self._reader_task is not None and not self._reader_task.done():
            self._reader_task.cancel()

    def open_tag(self) -> Tuple[str, asyncio.Queue]:
        """Allocate a unique tag and the queue its replies are routed to"""
        if self._error is not None:
            raise self._error
        tag = str(next(self._tags))
        queue: asyncio.Queue = asyncio.Queue()
        self._waiters[tag] = queue
        return tag, queue

    def release_tag(self, tag: str) -> None:
        self._waiters.pop(tag, None)

    async def write_sentence(self, words: Sequence[str]) -> None:
        if self._error is not None:
            raise self._error
        try:
            self._writer.write(encode_sentence(words))
            await self._writer.drain()
        except OSError as e:
            error = NetworkError(f"Write failed: {e}", self.router_id)
            self._fail(error)
            raise error from e
        self.last_activity = time.monotonic()

    @staticmethod
    async def next_sentence(queue: asyncio.Queue) -> Sentence:
        item = await queue.get()
        if isinstance(item, RouterError):
            raise item
        return item

    async def _collect(self, queue: asyncio.Queue) -> CommandReply:
        records: List[Dict[str, str]] = []
        trap: Optional[Sentence] = None
        while True:
            sentence = await self.next_sentence(queue)
            if sentence.reply_type == REPLY_RE:
                records.append(dict(sentence.attributes))
            elif sentence.reply_type == REPLY_TRAP:
                # !done follows a !trap; keep the first trap
                if trap is None:
                    trap = sentence
            elif sentence.reply_type == REPLY_DONE:
                if trap is not None:
                    return CommandReply(
                        records=records,
                        status="trap",
                        message=trap.message,
                        category=trap.attributes.get("category"),
                        done_attributes=dict(sentence.attributes),
                    )
                return CommandReply(records=records, done_attributes=dict(sentence.attributes))
            elif sentence.reply_type == REPLY_FATAL:
                return CommandReply(records=records, status="fatal", message=sentence.message)
            elif sentence.reply_type == REPLY_EMPTY:
                continue

    async def request(self, words: Sequence[str], timeout: Optional[float]) -> CommandReply:
        """Send one tagged sentence and wait for its terminal reply"""
        tag, queue = self.open_tag()
        try:
            await self.write_sentence([*words, f".tag={tag}"])
            return await asyncio.wait_for(self._collect(queue), timeout)
        except RouterError:
            raise
        except asyncio.TimeoutError:
            error = RouterTimeoutError(f"Request timeout after {timeout}s: {words[0]}", self.router_id)
            self._fail(error)
            raise error from None
        finally:
            self.release_tag(tag)

    async def shutdown(self) -> None:
        """Close the socket and stop the reader; idempotent"""
        if self._shutdown:
            return
        self._shutdown = True
        self._fail(NetworkError("Session closed", self.router_id))
        if self._reader_task is not None:
            self._reader_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._reader_task
        try:
            self._writer.close()
            await self._writer.wait_closed()
        except (OSError, RuntimeError):
            pass  # Ignore errors during close


class ReplyStream:
    """Records of a streaming command (no single terminal !done).

    Iterate with ``async for``; ``cancel()`` sends /cancel for the tag and
    releases it. Used as an async context manager it cancels on exit.
    """

    def __init__(
        self,
        manager: "ConnectionManager",
        session: RouterSession,
        tag: str,
        queue: asyncio.Queue,
        command: str,
        timeout: Optional[float] = None,
    ):
        self._manager = manager
        self._session = session
        self._queue = queue
        self.tag = tag
        self.command = command
        self.timeout = timeout
        self._cancelled = False
        self._finished = False
        self._trap: Optional[Sentence] = None

    @property
    def router_id(self) -> str:
        return self._session.router_id

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> "ReplyStream":
        return self

    async def __anext__(self) -> Dict[str, str]:
        while not self._finished:
            try:
                sentence = await asyncio.wait_for(
                    RouterSession.next_sentence(self._queue), self.timeout
                )
            except RouterError:
                self._finish()
                raise
            except asyncio.TimeoutError:
                self._finish()
                error = RouterTimeoutError(
                    f"No data from {self.command} after {self.timeout}s", self.router_id
                )
                await self._manager.invalidate(self.router_id, self._session)
                raise error from None

            if sentence.reply_type == REPLY_RE:
                return dict(sentence.attributes)
            if sentence.reply_type == REPLY_TRAP:
                if self._trap is None:
                    self._trap = sentence
                continue
            if sentence.reply_type == REPLY_DONE:
                self._finish()
                trap = self._trap
                if trap is not None and not (
                    self._cancelled or trap.attributes.get("category") == TRAP_CATEGORY_INTERRUPTED
                ):
                    raise CommandError(
                        trap.message or "Command failed",
                        router_id=self.router_id,
                        category=trap.attributes.get("category"),
                        command=self.command,
                    )
                break
            if sentence.reply_type == REPLY_FATAL:
                self._finish()
                raise NetworkError(f"Router closed the session: {sentence.message}", self.router_id)
        raise StopAsyncIteration

    def _finish(self) -> None:
        if not self._finished:
            self._finished = True
            self._session.release_tag(self.tag)

    async def cancel(self) -> None:
        """Stop the command on the router and release the tag"""
        if self._finished or self._cancelled:
            self._finish()
            return
        self._cancelled = True
        try:
            await self._manager.cancel_tag(self._session, self.tag)
        finally:
            self._finish()

    async def __aenter__(self) -> "ReplyStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.cancel()


@dataclass
class _RouterSlot:
    descriptor: RouterDescriptor
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    session: Optional[RouterSession] = None


class ConnectionManager:
    """
    Registry of routers and their sessions.

    Every router gets its own FIFO lock: commands for one router are sent
    strictly one at a time in arrival order, while different routers never
    wait on each other.

    Note: coroutine-safe, not thread-safe. Use it from a single event loop.
    """

    def __init__(self, idle_timeout: float = DEFAULT_IDLE_TIMEOUT):
        self.idle_timeout = idle_timeout
        self._slots: Dict[str, _RouterSlot] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    def register(self, descriptor: RouterDescriptor) -> bool:
        """Add or update a router.

        Returns:
            True if the registry changed. A changed address or credentials
            retire the current session on its next use, after the in-flight
            command (if any) has finished on it.
        """
        slot = self._slots.get(descriptor.router_id)
        if slot is None:
            self._slots[descriptor.router_id] = _RouterSlot(descriptor)
            logger.info(f"Registered router {descriptor.router_id} ({descriptor.host}:{descriptor.port})")
            return True
        if slot.descriptor == descriptor:
            return False

        if slot.descriptor.endpoint != descriptor.endpoint:
            logger.info(f"Updated router {descriptor.router_id} ({descriptor.host}:{descriptor.port})")
        slot.descriptor = descriptor
        return True

    def unregister(self, router_id: str) -> bool:
        slot = self._slots.pop(router_id, None)
        if slot is None:
            return False
        if slot.session is not None:
            slot.session.abort("Router unregistered")
        logger.info(f"Unregistered router {router_id}")
        return True

    def get_descriptor(self, router_id: str) -> RouterDescriptor:
        return self._slot(router_id).descriptor

    def descriptors(self) -> List[RouterDescriptor]:
        return [slot.descriptor for slot in self._slots.values()]

    def __contains__(self, router_id: str) -> bool:
        return router_id in self._slots

    def _slot(self, router_id: str) -> _RouterSlot:
        slot = self._slots.get(router_id)
        if slot is None:
            raise UnknownRouterError(router_id)
        return slot

    # =========================================================================
    # Session primitives
    # =========================================================================

    async def connect(self, descriptor: RouterDescriptor, timeout: Optional[float] = None) -> RouterSession:
        """Open a TCP connection and log in.

        Raises:
            NetworkError: connect failed
            RouterTimeoutError: connect or handshake exceeded the timeout
            AuthError: credentials rejected
        """
        timeout = timeout or descriptor.timeout
        rid = descriptor.router_id
        try:
            reader, writer = await asyncio.wait_for(
                asyncio.open_connection(descriptor.host, descriptor.port),
                timeout=timeout,
            )
        except asyncio.TimeoutError:
            raise RouterTimeoutError(f"Connection timeout after {timeout}s", rid) from None
        except OSError as e:
            raise NetworkError(f"Connection to {descriptor.host}:{descriptor.port} failed: {e}", rid) from e

        session = RouterSession(descriptor, reader, writer)
        session.start()
        try:
            await self._login(session, timeout)
        except BaseException:
            await self.close(session, logout=False)
            raise

        logger.debug(f"[{rid}] Connected to {descriptor.host}:{descriptor.port} as {descriptor.username}")
        return session

    async def _login(self, session: RouterSession, timeout: float) -> None:
        d = session.descriptor
        try:
            reply = await session.request(
                ["/login", f"=name={d.username}", f"=password={d.password}"], timeout
            )
            challenge = reply.done_attributes.get("ret") if reply.ok else None
            if challenge:
                # RouterOS < 6.43 answers with a challenge instead of logging in
                reply = await session.request(
                    ["/login", f"=name={d.username}", f"=response={legacy_login_response(d.password, challenge)}"],
                    timeout,
                )
        except RouterTimeoutError:
            raise RouterTimeoutError(f"Login handshake timeout after {timeout}s", d.router_id) from None

        if reply.status == "trap":
            raise AuthError(f"Login rejected: {reply.message or 'invalid credentials'}", d.router_id)
        if reply.status == "fatal":
            raise NetworkError(f"Router closed the session during login: {reply.message}", d.router_id)
        session.authenticated = True

    async def send(
        self,
        session: RouterSession,
        request: CommandRequest,
        timeout: Optional[float] = None,
    ) -> CommandReply:
        """Send a request on a session and return its reply.

        Raises:
            CommandError: the router answered !trap
            NetworkError / RouterTimeoutError / ProtocolError: transport failure
        """
        timeout = timeout or session.descriptor.timeout
        reply = await session.request(request.words, timeout)
        reply.raise_for_status(session.router_id, request.command_path)
        return reply

    async def close(self, session: RouterSession, logout: bool = True) -> None:
        """Best-effort logout, then socket close; idempotent"""
        if session.is_shut_down:
            return
        if logout and session.is_open and session.authenticated:
            try:
                await session.write_sentence(["/quit"])
            except RouterError:
                pass  # Router may already be gone
        await session.shutdown()
        logger.debug(f"[{session.router_id}] Session closed")

    async def invalidate(self, router_id: str, session: RouterSession) -> None:
        """Drop a broken session so the next call reconnects"""
        slot = self._slots.get(router_id)
        if slot is not None and slot.session is session:
            slot.session = None
        await self.close(session, logout=False)

    async def _ensure_session(self, slot: _RouterSlot, timeout: Optional[float]) -> RouterSession:
        session = slot.session
        if session is not None:
            moved = session.descriptor.endpoint != slot.descriptor.endpoint
            idle = bool(self.idle_timeout) and session.idle_seconds > self.idle_timeout
            if session.is_open and not moved and not idle:
                return session
            if session.is_open:
                reason = "descriptor changed" if moved else f"idle for {session.idle_seconds:.0f}s"
                logger.debug(f"[{session.router_id}] Session {reason}, reconnecting")
            slot.session = None
            await self.close(session, logout=session.is_open)

        slot.session = await self.connect(slot.descriptor, timeout)
        return slot.session

    # =========================================================================
    # Queued calls
    # =========================================================================

    async def call(
        self,
        router_id: str,
        request: CommandRequest,
        timeout: Optional[float] = None,
    ) -> CommandReply:
        """Run one command on a router behind its FIFO queue.

        A NetworkError on send invalidates the session and the command is
        retried once on a fresh session; a second consecutive failure is
        raised. Timeouts and protocol errors invalidate without retry.
        """
        slot = self._slot(router_id)
        async with slot.lock:
            timeout = timeout or slot.descriptor.timeout
            retried = False
            while True:
                session = await self._ensure_session(slot, timeout)
                try:
                    return await self.send(session, request, timeout)
                except NetworkError as e:
                    await self.invalidate(router_id, session)
                    # Unregistered meanwhile: nowhere to resend to
                    if retried or self._slots.get(router_id) is not slot:
                        raise
                    retried = True
                    logger.warning(f"[{router_id}] {e.message}; reconnecting once")
                except (RouterTimeoutError, ProtocolError) as e:
                    logger.warning(f"[{router_id}] {e.kind} error, session invalidated: {e.message}")
                    await self.invalidate(router_id, session)
                    raise

    async def listen(
        self,
        router_id: str,
        words: Sequence[str],
        timeout: Optional[float] = None,
    ) -> ReplyStream:
        """Start a streaming command and return its record stream.

        ``timeout`` bounds the wait for each record (None waits forever).
        """
        slot = self._slot(router_id)
        async with slot.lock:
            session = await self._ensure_session(slot, None)
            tag, queue = session.open_tag()
            try:
                await session.write_sentence([*words, f".tag={tag}"])
            except RouterError:
                session.release_tag(tag)
                await self.invalidate(router_id, session)
                raise
        return ReplyStream(self, session, tag, queue, words[0], timeout)

    async def cancel_tag(self, session: RouterSession, tag: str) -> None:
        slot = self._slots.get(session.router_id)
        if slot is None or not session.is_open:
            return
        async with slot.lock:
            if not session.is_open:
                return
            try:
                await self.send(session, CommandRequest(session.router_id, ("/cancel", f"=tag={tag}")))
            except CommandError as e:
                # Command already finished on the router
                logger.debug(f"[{session.router_id}] /cancel tag {tag}: {e.message}")

    async def ping(self, router_id: str, timeout: Optional[float] = None) -> bool:
        """Health check: True if the router answers a trivial command"""
        try:
            await self.call(router_id, CommandRequest.build(router_id, "/system/identity/print"), timeout)
            return True
        except RouterError as e:
            logger.warning(f"[{router_id}] Health check failed ({e.kind}): {e.message}")
            return False

    def status(self) -> List[Dict[str, Any]]:
        """Session state per router (no credentials)"""
        result = []
        for slot in self._slots.values():
            info = slot.descriptor.to_public_dict()
            session = slot.session
            info["connected"] = bool(session and session.is_open)
            info["authenticated"] = bool(session and session.authenticated)
            info["idle_seconds"] = round(session.idle_seconds, 1) if session else None
            info["queued"] = slot.lock.locked()
            result.append(info)
        return result

    async def shutdown(self) -> None:
        """Close every session; routers stay registered"""
        for slot in list(self._slots.values()):
            session, slot.session = slot.session, None
            if session is not None:
                await self.close(session)
        logger.info("All router sessions closed")
