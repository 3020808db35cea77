"""
Knox Daemon — keeps live signer sessions in sync with the bunker file.

The bunker file is the only source of truth. A separate ``knox`` process
may rewrite it at any time (a new URI, a revocation, a redeemed
capability), so every change notification triggers a full reload under the
file lock followed by a diff against the tracked sessions:

- added secrets start a new session;
- removed secrets close their session;
- secrets present in both get their authorized pubkeys replaced.

Notifications are never trusted for *what* changed, only *that* something
may have changed. Removing or renaming the file is fatal.

States::

    STARTING → WATCHING ⇄ RECONCILING
                  ↓            ↓
                TERMINATED ←───┘
"""
import os
import enum
import asyncio
import inspect
import functools
import logging
from dataclasses import dataclass, field
from typing import Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .exceptions import (
    BunkerFileLost,
    BunkerNotFoundError,
    DecryptionError,
    DeserializationError,
    KnoxError,
)
from .signer import ConnectRequest, ConnectResponse, SessionFactory, SignerSession
from .state import KnoxAuthorization, KnoxKey, KnoxState
from .store import CredentialStore, read_state, short_secret

logger = logging.getLogger("knox.daemon")

FATAL_EVENTS = frozenset({"deleted", "moved"})


class DaemonState(enum.Enum):
    STARTING = "starting"
    WATCHING = "watching"
    RECONCILING = "reconciling"
    TERMINATED = "terminated"


@dataclass
class WatchEvent:
    kind: str  # "modified", "created", "deleted" or "moved"
    path: str


@dataclass
class ReconcileResult:
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    updated: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# File watching
# ---------------------------------------------------------------------------

class _EventForwarder(FileSystemEventHandler):
    """Forwards watchdog events for one file into an asyncio queue.

    Runs on the observer thread; the queue is only touched through
    ``loop.call_soon_threadsafe``.
    """

    def __init__(self, path: str, loop: asyncio.AbstractEventLoop, queue: asyncio.Queue):
        super().__init__()
        self._path = path
        self._loop = loop
        self._queue = queue

    def on_any_event(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        kind = event.event_type
        src = os.path.abspath(os.fsdecode(event.src_path))
        if kind == "moved":
            dest = os.path.abspath(os.fsdecode(event.dest_path))
            if src == self._path:
                kind = "moved"
            elif dest == self._path:
                # something was renamed onto the bunker file
                kind = "modified"
            else:
                return
        elif src != self._path:
            return
        elif kind == "closed":
            kind = "modified"
        elif kind not in ("modified", "created", "deleted"):
            return
        self._loop.call_soon_threadsafe(
            self._queue.put_nowait, WatchEvent(kind, self._path),
        )


class FileWatcher:
    """Async iterator of ``WatchEvent`` for a single file.

    Watches the parent directory with a watchdog observer. Bursts of
    ``modified`` events already queued are coalesced into one.
    """

    def __init__(self, path: os.PathLike | str):
        self.path = os.path.abspath(os.fspath(path))
        self._queue: asyncio.Queue[WatchEvent] = asyncio.Queue()
        self._observer: Optional[Observer] = None

    async def __aenter__(self) -> "FileWatcher":
        self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    def start(self) -> None:
        loop = asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(
            _EventForwarder(self.path, loop, self._queue),
            os.path.dirname(self.path),
            recursive=False,
        )
        self._observer.start()
        logger.debug("Watching %s", self.path)

    def close(self) -> None:
        if self._observer is not None:
            self._observer.stop()
            self._observer.join()
            self._observer = None

    def __aiter__(self) -> "FileWatcher":
        return self

    async def __anext__(self) -> WatchEvent:
        event = await self._queue.get()
        if event.kind in FATAL_EVENTS:
            return event
        while not self._queue.empty():
            pending = self._queue.get_nowait()
            if pending.kind in FATAL_EVENTS:
                return pending
        return event


# ---------------------------------------------------------------------------
# Reconciler
# ---------------------------------------------------------------------------

class SessionReconciler:
    """Runs one signer session per authorization of a bunker file.

    Sessions receive their own copies of the secrets they need, so the
    states loaded during reconciliation can be disposed right away.
    """

    def __init__(
        self,
        store: CredentialStore,
        session_factory: SessionFactory,
        watcher=None,
    ):
        self.store = store
        self._factory = session_factory
        self._watcher = watcher
        self._redeem_lock = asyncio.Lock()
        self.sessions: dict[str, SignerSession] = {}
        # serving tasks of sessions whose start() returned an awaitable
        self._tasks: dict[str, asyncio.Future] = {}
        self.status = DaemonState.STARTING

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def _start_session(self, authorization: KnoxAuthorization, key: KnoxKey) -> SignerSession:
        secret = authorization.secret
        key_name = key.name
        session: Optional[SignerSession] = None

        async def on_connect(request: ConnectRequest, event=None) -> ConnectResponse:
            return await self.handle_connect(secret, session, request)

        def on_request(request, event=None) -> None:
            logger.debug("request %s %s", key_name, getattr(request, "method", request))

        def on_response(response, event=None) -> None:
            logger.debug("response %s %s", key_name, getattr(response, "id", response))

        def on_error(error, event=None) -> None:
            logger.warning("error %s: %s", key_name, error)

        bunker_secret = authorization.bunker_sec.copy()
        user_secret = key.sec.copy()
        try:
            session = self._factory(
                relays=list(authorization.relays),
                bunker_secret=bunker_secret,
                user_secret=user_secret,
                authorized_pubkeys=set(authorization.pubkeys),
                on_connect=on_connect,
                on_request=on_request,
                on_response=on_response,
                on_error=on_error,
            )
        except BaseException:
            bunker_secret.dispose()
            user_secret.dispose()
            raise
        try:
            self._track(secret, session.start())
        except BaseException:
            session.close()
            raise
        self.sessions[secret] = session
        logger.info(
            "up %s %s %s",
            key_name, short_secret(secret), ", ".join(authorization.relays),
        )
        return session

    def _track(self, secret: str, started) -> None:
        if not inspect.isawaitable(started):
            return
        task = asyncio.ensure_future(started)
        task.add_done_callback(functools.partial(self._serving_done, secret))
        self._tasks[secret] = task

    def _serving_done(self, secret: str, task: asyncio.Future) -> None:
        if self._tasks.get(secret) is task:
            del self._tasks[secret]
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(
                "Session %s stopped serving: %s", short_secret(secret), error,
                exc_info=error,
            )

    def _close_session(self, secret: str, session: SignerSession) -> None:
        task = self._tasks.pop(secret, None)
        if task is not None and not task.done():
            task.cancel()
        try:
            session.close()
        except Exception:
            logger.exception("Error closing session %s", short_secret(secret))

    def _try_start(self, state: KnoxState, authorization: KnoxAuthorization) -> bool:
        key = state.get_key(authorization.key)
        if key is None:
            logger.error('Key "%s" not found', authorization.key)
            return False
        try:
            self._start_session(authorization, key)
        except Exception:
            logger.exception(
                "Failed to start session for key %r (%s)",
                authorization.key, short_secret(authorization.secret),
            )
            return False
        return True

    def start(self) -> None:
        """Start a session for every authorization of the open store."""
        state = self.store.state
        for authorization in state.authorizations:
            self._try_start(state, authorization)
        self.status = DaemonState.WATCHING
        logger.info("Bunker daemon watching %s (%d session(s))", self.store.path, len(self.sessions))

    def stop(self) -> None:
        """Close every tracked session."""
        while self.sessions:
            secret, session = self.sessions.popitem()
            self._close_session(secret, session)

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    def reconcile(self, state: KnoxState) -> ReconcileResult:
        """Bring the tracked sessions in line with ``state``."""
        result = ReconcileResult()
        tracked = set(self.sessions)
        current = {auth.secret for auth in state.authorizations}

        for authorization in state.authorizations:
            if authorization.secret in tracked:
                continue
            if self._try_start(state, authorization):
                result.added.append(authorization.secret)
            else:
                result.skipped.append(authorization.secret)

        for secret in tracked - current:
            self._close_session(secret, self.sessions.pop(secret))
            result.removed.append(secret)
            logger.info("down %s", short_secret(secret))

        for authorization in state.authorizations:
            if authorization.secret in tracked:
                self.sessions[authorization.secret].authorized_pubkeys = set(authorization.pubkeys)
                result.updated.append(authorization.secret)

        logger.info(
            "changed: %d added, %d removed", len(result.added), len(result.removed),
        )
        return result

    async def reload(self) -> Optional[ReconcileResult]:
        """Re-read the bunker file and reconcile against it.

        Returns None when the file could not be decrypted or decoded; the
        sessions are left as they were.

        Raises:
            BunkerFileLost: The file no longer exists.
        """
        loop = asyncio.get_running_loop()
        self.status = DaemonState.RECONCILING
        try:
            try:
                state = await loop.run_in_executor(
                    None, read_state, self.store.path, self.store.cipher,
                )
            except BunkerNotFoundError as err:
                raise BunkerFileLost(str(self.store.path)) from err
            except (DecryptionError, DeserializationError) as err:
                logger.error("Could not reload %s: %s", self.store.path, err)
                return None
            try:
                return self.reconcile(state)
            finally:
                state.dispose()
        finally:
            if self.status is DaemonState.RECONCILING:
                self.status = DaemonState.WATCHING

    async def run(self) -> None:
        """Start the sessions and reconcile on every file change.

        Runs until cancelled or until the file is removed or renamed.

        Raises:
            BunkerFileLost: The bunker file was removed or renamed.
        """
        self.start()
        watcher = self._watcher if self._watcher is not None else FileWatcher(self.store.path)
        try:
            async with watcher:
                async for event in watcher:
                    if event.kind in FATAL_EVENTS:
                        logger.critical("Bunker file removed or renamed. Exiting...")
                        raise BunkerFileLost(str(self.store.path))
                    await self.reload()
        finally:
            self.stop()
            self.status = DaemonState.TERMINATED

    # ------------------------------------------------------------------
    # NIP-46 connect
    # ------------------------------------------------------------------

    def _redeem(self, pubkey: str, secret: str) -> None:
        with self.store.transaction() as store:
            store.authorize(pubkey, secret)

    async def handle_connect(
        self,
        secret: str,
        session: SignerSession,
        request: ConnectRequest,
    ) -> ConnectResponse:
        """Redeem a capability presented in a ``connect`` request.

        Never raises: every failure becomes an error response.
        """
        if request.secret != secret:
            return ConnectResponse(request.id, "", "Invalid secret")
        loop = asyncio.get_running_loop()
        try:
            async with self._redeem_lock:
                await loop.run_in_executor(None, self._redeem, request.app_pubkey, secret)
        except KnoxError as err:
            logger.info("Rejected connect from %s: %s", request.app_pubkey, err)
            return ConnectResponse(request.id, "", str(err))
        except Exception:
            logger.exception("Error redeeming %s", short_secret(secret))
            return ConnectResponse(request.id, "", "Internal error")
        session.authorize(request.app_pubkey)
        return ConnectResponse(request.id, "ack")
