"""
Pytest configuration and fixtures for router-gateway tests.

FakeRouter is a small RouterOS API server (own thread, own event loop)
speaking the real wire protocol through routeros_codec, so the client
side is exercised over actual TCP sockets.
"""

import asyncio
import hashlib
import itertools
import os
import socket
import sys
import tempfile
import threading
from pathlib import Path
from typing import Callable, Dict, Generator, List, Optional, Set

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from routeros_codec import SentenceParser, encode_sentence  # noqa: E402

FAKE_USERNAME = "admin"
FAKE_PASSWORD = "secret"
LEGACY_CHALLENGE = "9f1c2e4a6b8d0f13579bdf02468ace11"

DUPLICATE_MESSAGE = "failure: secret with the same name already exists"

# Menu -> rows
DEFAULT_TABLES = {
    "/ppp/secret": [],
    "/ppp/profile": [],
    "/ppp/active": [],
    "/ip/pool": [],
    "/interface": [],
    "/queue/simple": [],
}


def unused_port() -> int:
    """A local TCP port nobody listens on"""
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class FakeRouter:
    """In-process RouterOS API server for tests.

    Knobs:
        drop_next              close the connection instead of answering the next N commands
        hang_paths             commands that never get an answer
        reply_delay            seconds to wait before answering any command
        drop_stream_after      close the connection after N streamed records
        drop_print_after       close the connection after N !re rows of any table print
        truncate_print_after   after N !re rows of a print, send half a sentence and close
        trap_paths             path -> message answered with !trap
        fatal_paths            path -> message answered with !fatal, then close
        before_command         callable(words) run before a command is answered
        legacy_login           answer /login with a challenge (pre-6.43)
    """

    def __init__(self, username: str = FAKE_USERNAME, password: str = FAKE_PASSWORD, legacy_login: bool = False):
        self.username = username
        self.password = password
        self.legacy_login = legacy_login
        self.tables: Dict[str, List[Dict[str, str]]] = {k: [] for k in DEFAULT_TABLES}
        self.commands: List[List[str]] = []
        self.logins: List[List[str]] = []
        self.connections = 0
        self.drop_next = 0
        self.hang_paths: Set[str] = set()
        self.reply_delay = 0.0
        self.drop_stream_after: Optional[int] = None
        self.drop_print_after: Optional[int] = None
        self.truncate_print_after: Optional[int] = None
        self.trap_paths: Dict[str, str] = {}
        self.fatal_paths: Dict[str, str] = {}
        self.before_command: Optional[Callable[[List[str]], None]] = None
        self.port: Optional[int] = None
        self._ids = itertools.count(1)
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None

    # ============ test helpers ============

    def add_row(self, menu: str, **attrs) -> Dict[str, str]:
        row = {".id": f"*{next(self._ids):X}", **{k: str(v) for k, v in attrs.items()}}
        self.tables[menu].append(row)
        return row

    def command_paths(self) -> List[str]:
        return [words[0] for words in self.commands]

    # ============ lifecycle ============

    def start(self) -> None:
        ready = threading.Event()

        def run():
            self._loop = asyncio.new_event_loop()
            asyncio.set_event_loop(self._loop)
            server = self._loop.run_until_complete(
                asyncio.start_server(self._handle, "127.0.0.1", 0)
            )
            self.port = server.sockets[0].getsockname()[1]
            ready.set()
            self._loop.run_forever()
            server.close()
            tasks = asyncio.all_tasks(self._loop)
            for task in tasks:
                task.cancel()
            self._loop.run_until_complete(asyncio.gather(*tasks, return_exceptions=True))
            self._loop.close()

        self._thread = threading.Thread(target=run, daemon=True)
        self._thread.start()
        if not ready.wait(5):
            raise RuntimeError("FakeRouter did not start")

    def stop(self) -> None:
        if self._loop is not None:
            self._loop.call_soon_threadsafe(self._loop.stop)
        if self._thread is not None:
            self._thread.join(5)

    # ============ protocol ============

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connections += 1
        parser = SentenceParser()
        conn = {"authenticated": False, "streams": {}}
        try:
            while True:
                data = await reader.read(65536)
                if not data:
                    break
                for words in parser.feed(data):
                    if not await self._on_sentence(words, writer, conn):
                        return
        except (ConnectionError, asyncio.CancelledError):
            pass
        finally:
            for task in conn["streams"].values():
                task.cancel()
            writer.close()

    @staticmethod
    def _send(writer: asyncio.StreamWriter, *words: str) -> None:
        if not writer.is_closing():
            writer.write(encode_sentence(words))

    async def _on_sentence(self, words: List[str], writer: asyncio.StreamWriter, conn: dict) -> bool:
        path = words[0]
        attrs: Dict[str, str] = {}
        queries: List[str] = []
        tag = None
        for word in words[1:]:
            if word.startswith(".tag="):
                tag = word[len(".tag="):]
            elif word.startswith("="):
                key, _, value = word[1:].partition("=")
                attrs[key] = value
            elif word.startswith("?"):
                queries.append(word[1:])
        suffix = (f".tag={tag}",) if tag is not None else ()

        def reply(*reply_words: str) -> None:
            self._send(writer, *reply_words, *suffix)

        if path == "/login":
            self.logins.append(words)
            return self._login(attrs, conn, reply)
        if path == "/quit":
            return False

        self.commands.append([w for w in words if not w.startswith(".tag=")])
        if not conn["authenticated"]:
            reply("!trap", "=message=not logged in")
            reply("!done")
            return True
        if self.drop_next > 0:
            self.drop_next -= 1
            return False
        if path in self.hang_paths:
            return True
        if self.reply_delay:
            await asyncio.sleep(self.reply_delay)
        if self.before_command is not None:
            self.before_command(self.commands[-1])
        if path in self.fatal_paths:
            self._send(writer, "!fatal", self.fatal_paths[path])
            return False
        if path in self.trap_paths:
            reply("!trap", f"=message={self.trap_paths[path]}")
            reply("!done")
            return True

        if path == "/cancel":
            task = conn["streams"].pop(attrs.get("tag"), None)
            if task is None:
                reply("!trap", "=message=no such command")
                reply("!done")
                return True
            task.cancel()
            cancelled = (f".tag={attrs['tag']}",)
            self._send(writer, "!trap", "=category=2", "=message=interrupted", *cancelled)
            self._send(writer, "!done", *cancelled)
            reply("!done")
            return True

        if path == "/interface/monitor-traffic":
            if "once" in attrs:
                reply("!re", f"=name={attrs.get('interface', '')}", "=rx-bits-per-second=8000",
                      "=tx-bits-per-second=16000")
                reply("!done")
            else:
                conn["streams"][tag] = asyncio.ensure_future(self._stream_traffic(writer, attrs, suffix))
            return True

        if path == "/system/identity/print":
            reply("!re", "=name=FakeRouter")
            reply("!done")
            return True
        if path == "/system/resource/print":
            reply("!re", "=uptime=1d2h", "=version=7.14 (stable)", "=cpu-load=7",
                  "=free-memory=1000", "=total-memory=4000", "=board-name=RB5009")
            reply("!done")
            return True

        menu, _, action = path.rpartition("/")
        table = self.tables.get(menu)
        if table is None:
            reply("!trap", "=message=no such command prefix")
            reply("!done")
            return True
        return self._table_command(table, action, attrs, queries, reply, writer)

    def _login(self, attrs: Dict[str, str], conn: dict, reply) -> bool:
        if self.legacy_login and "response" not in attrs:
            reply("!done", f"=ret={LEGACY_CHALLENGE}")
            return True
        if self.legacy_login:
            digest = hashlib.md5(b"\x00" + self.password.encode() + bytes.fromhex(LEGACY_CHALLENGE))
            ok = attrs.get("response") == "00" + digest.hexdigest()
        else:
            ok = attrs.get("password") == self.password
        if attrs.get("name") != self.username or not ok:
            reply("!trap", "=message=invalid user name or password (6)")
            reply("!done")
            return True
        conn["authenticated"] = True
        reply("!done")
        return True

    def _table_command(self, table, action, attrs, queries, reply, writer) -> bool:
        def match(row):
            for query in queries:
                key, _, value = query.partition("=")
                if row.get(key) != value:
                    return False
            return True

        def find(ids):
            wanted = set(ids.split(","))
            return [r for r in table if r[".id"] in wanted or r.get("name") in wanted]

        if action == "print":
            sent = 0
            for row in table:
                if not match(row):
                    continue
                words = ("!re", *(f"={k}={v}" for k, v in row.items()))
                if sent == self.truncate_print_after:
                    # Last word cut short: no sentence terminator ever arrives
                    writer.write(encode_sentence(words)[:-4])
                    return False
                reply(*words)
                sent += 1
                if sent == self.drop_print_after:
                    return False
            reply("!done")
        elif action == "add":
            if any(r.get("name") == attrs.get("name") for r in table):
                reply("!trap", f"=message={DUPLICATE_MESSAGE}")
                reply("!done")
                return True
            row = {".id": f"*{next(self._ids):X}", **attrs}
            table.append(row)
            reply("!done", f"=ret={row['.id']}")
        elif action in ("set", "remove"):
            rows = find(attrs.get(".id", ""))
            if not rows:
                reply("!trap", "=message=no such item")
                reply("!done")
                return True
            for row in rows:
                if action == "set":
                    row.update({k: v for k, v in attrs.items() if k != ".id"})
                else:
                    table.remove(row)
            reply("!done")
        else:
            reply("!trap", "=message=no such command")
            reply("!done")
        return True

    async def _stream_traffic(self, writer, attrs, suffix) -> None:
        for n in itertools.count(1):
            if self.drop_stream_after is not None and n > self.drop_stream_after:
                writer.close()
                return
            self._send(writer, "!re", f"=name={attrs.get('interface', '')}",
                       f"=rx-bits-per-second={n * 1000}", "=tx-bits-per-second=0", *suffix)
            await asyncio.sleep(0.02)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def cache_db_path(temp_dir: Path) -> Path:
    """Path for a temporary cache database."""
    return temp_dir / "cache.db"


@pytest.fixture
def fake_router() -> Generator[FakeRouter, None, None]:
    """A running FakeRouter"""
    router = FakeRouter()
    router.start()
    yield router
    router.stop()


@pytest.fixture
def router_descriptor(fake_router):
    """Descriptor pointing at the fake router"""
    from routeros_client import RouterDescriptor

    return RouterDescriptor(
        router_id="r1",
        host="127.0.0.1",
        port=fake_router.port,
        username=FAKE_USERNAME,
        password=FAKE_PASSWORD,
        timeout=2.0,
    )


@pytest.fixture
def clean_env(monkeypatch):
    """Remove gateway environment variables"""
    for name in list(os.environ):
        if name.startswith(("ROUTER", "SYNC_", "RESYNC_", "WEB_", "LOG_")) or name == "DEBUG":
            monkeypatch.delenv(name, raising=False)
    return monkeypatch
