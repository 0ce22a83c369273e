"""
Probe sessions and the engine that supersedes them

A session runs one probe on a dedicated background thread with a private
asyncio loop. Cancellation is a one-shot signal that both wakes pending
awaits and is visible to synchronous checks.
"""

import asyncio
import functools
import itertools
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Iterator, Optional, Protocol

from .errors import ProbeCancelled, UnexpectedError
from .models import (
    Done, Error, ErrorKind, ProbeKind, ProbeRequest, ResultEvent,
    SessionState, StateChanged,
)


logger = logging.getLogger(__name__)

EventSink = Callable[[ResultEvent], None]


class Probe(Protocol):
    """Anything that can run inside a session"""

    async def run(self, session: "ProbeSession") -> SessionState:
        ...


class CancelToken:
    """
    Monotonic cancellation signal.

    ``cancel()`` may be called from any thread. Once bound to a loop, the
    token also sets an ``asyncio.Event`` on that loop so suspended awaits
    can race against it.
    """

    def __init__(self):
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    def bind(self, loop: asyncio.AbstractEventLoop) -> asyncio.Event:
        """Attach to the running loop. Must be called from inside that loop."""
        with self._lock:
            self._loop = loop
            self._event = asyncio.Event()
            if self._flag.is_set():
                self._event.set()
            return self._event

    def unbind(self):
        with self._lock:
            self._loop = None

    def cancel(self) -> bool:
        """Request cancellation. Returns False if it was already requested."""
        with self._lock:
            if self._flag.is_set():
                return False
            self._flag.set()
            loop, event = self._loop, self._event
            if loop is not None and event is not None and not loop.is_closed():
                try:
                    loop.call_soon_threadsafe(event.set)
                except RuntimeError:
                    # loop shut down between the check and the call
                    pass
        return True

    def raise_if_cancelled(self):
        if self._flag.is_set():
            raise ProbeCancelled("Operation cancelled")


def _drop_result(fut: "asyncio.Future[Any]",
                 discard: Optional[Callable[[Any], None]] = None):
    # Retrieve the outcome of an abandoned future so asyncio does not log it
    if fut.cancelled():
        return
    if fut.exception() is None and discard is not None:
        discard(fut.result())


class ProbeSession:
    """
    One run of a single probe from start to a terminal state.

    Events reach the sink on the session thread, in emission order. The
    final event is always ``Done``.
    """

    _ids = itertools.count(1)

    def __init__(self, kind: ProbeKind, probe: Probe, sink: Optional[EventSink] = None,
                 max_workers: int = 4):
        self.id = next(self._ids)
        self.kind = kind
        self.probe = probe
        self.token = CancelToken()
        self._sink = sink
        self._max_workers = max_workers
        self._state = SessionState.IDLE
        self._lock = threading.RLock()
        self._events: list[ResultEvent] = []
        self._closed = False
        self._thread: Optional[threading.Thread] = None
        self._finished = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._cancel_event: Optional[asyncio.Event] = None
        self._executor: Optional[ThreadPoolExecutor] = None

    def __repr__(self):
        return f"<ProbeSession #{self.id} {self.kind.value} {self._state.value}>"

    # -- state ----------------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def events(self) -> tuple[ResultEvent, ...]:
        """Snapshot of everything emitted so far"""
        return tuple(self._events)

    @property
    def done(self) -> bool:
        return self._finished.is_set()

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    def _transition(self, new_state: SessionState) -> bool:
        with self._lock:
            if self._state.is_terminal or self._state is new_state:
                return False
            if self._state is SessionState.CANCELLING and new_state is SessionState.RUNNING:
                return False
            self._state = new_state
            logger.debug("session #%d (%s) -> %s", self.id, self.kind.value, new_state.value)
            self.emit(StateChanged(new_state))
        return True

    # -- lifecycle ------------------------------------------------------

    def start(self) -> "ProbeSession":
        """Run the probe on a background thread and return immediately"""
        if self._thread is not None:
            raise RuntimeError(f"Session #{self.id} already started")
        self._thread = threading.Thread(
            target=self._thread_main,
            name=f"netlens-{self.kind.value}-{self.id}",
            daemon=True,
        )
        self._transition(SessionState.RUNNING)
        self._thread.start()
        return self

    def cancel(self) -> bool:
        """Cooperatively cancel. The probe observes it and emits its own Done."""
        # held so the probe cannot finish between the signal and CANCELLING
        with self._lock:
            if self._state.is_terminal:
                return False
            if not self.token.cancel():
                return False
            self._transition(SessionState.CANCELLING)
        logger.info("cancelling session #%d (%s)", self.id, self.kind.value)
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the session is terminal. Returns False on timeout."""
        return self._finished.wait(timeout)

    def _thread_main(self):
        try:
            asyncio.run(self._main())
        except Exception:
            logger.exception("session #%d crashed outside the probe", self.id)
            self._finish(SessionState.FAILED, "Internal error")
        finally:
            self._finished.set()

    async def _main(self):
        self._loop = asyncio.get_running_loop()
        self._cancel_event = self.token.bind(self._loop)
        self._executor = ThreadPoolExecutor(
            max_workers=self._max_workers,
            thread_name_prefix=f"netlens-io-{self.id}",
        )
        final_state = SessionState.FAILED
        message: Optional[str] = None
        try:
            final_state = await self.probe.run(self)
        except ProbeCancelled:
            final_state = SessionState.CANCELLED
            message = "Operation cancelled."
        except Exception as e:
            logger.exception("unhandled error in %s session #%d", self.kind.value, self.id)
            self.emit(Error(ErrorKind.UNEXPECTED, str(UnexpectedError(e))))
            final_state = SessionState.FAILED
        finally:
            self.token.unbind()
            self._executor.shutdown(wait=False, cancel_futures=True)

        if not self._state.is_terminal:
            self._finish(final_state, message)

    def _finish(self, state: SessionState, message: Optional[str] = None):
        with self._lock:
            if self._transition(state):
                self.emit(Done(state, message))
                self._closed = True

    def complete(self, message: Optional[str] = None) -> SessionState:
        """Mark the session completed and emit Done. For use by probes."""
        self._finish(SessionState.COMPLETED, message)
        return SessionState.COMPLETED

    def fail(self, message: Optional[str] = None) -> SessionState:
        self._finish(SessionState.FAILED, message)
        return SessionState.FAILED

    def mark_cancelled(self, message: Optional[str] = None) -> SessionState:
        self._finish(SessionState.CANCELLED, message)
        return SessionState.CANCELLED

    # -- events ---------------------------------------------------------

    def emit(self, event: ResultEvent):
        """Append an event to the stream and hand it to the sink"""
        with self._lock:
            if self._closed:
                logger.debug("session #%d dropped late event %r", self.id, event)
                return
            self._events.append(event)
            if self._sink is None:
                return
            try:
                self._sink(event)
            except Exception:
                logger.exception("event sink raised for %r", event)

    # -- suspension points ----------------------------------------------

    def raise_if_cancelled(self):
        self.token.raise_if_cancelled()

    async def race(self, aw: Awaitable[Any], timeout: Optional[float] = None,
                   discard: Optional[Callable[[Any], None]] = None) -> Any:
        """
        Await ``aw`` against its timeout and the cancel signal.

        If ``aw`` loses but still produces a result (it finished in the same
        loop step, or ignored its cancellation), that result is passed to
        ``discard`` so resources it holds can be released.

        Returns:
            The awaitable's result if it finishes first

        Raises:
            asyncio.TimeoutError: The timeout elapsed first
            ProbeCancelled: The session was cancelled first
        """
        if self.token.cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise ProbeCancelled("Operation cancelled")

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {task, waiter}, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            waiter.cancel()

        if task in done:
            return task.result()

        task.cancel()
        task.add_done_callback(functools.partial(_drop_result, discard=discard))
        if waiter in done or self.token.cancelled:
            raise ProbeCancelled("Operation cancelled")
        raise asyncio.TimeoutError()

    async def sleep(self, seconds: float):
        """Cancellable delay"""
        if seconds <= 0:
            self.raise_if_cancelled()
            return
        try:
            await self.race(self._cancel_event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        # the cancel event itself completed the race
        raise ProbeCancelled("Operation cancelled")

    async def run_blocking(self, func: Callable[..., Any], *args,
                           timeout: Optional[float] = None) -> Any:
        """Run a blocking call on the session executor, raced like ``race``"""
        future = self._loop.run_in_executor(self._executor, func, *args)
        return await self.race(future, timeout=timeout)


class QueueSink:
    """
    Sink that hands events to another thread through a queue.

    The consumer iterates until it sees ``Done``.
    """

    def __init__(self):
        self._queue: "queue.Queue[ResultEvent]" = queue.Queue()

    def __call__(self, event: ResultEvent):
        self._queue.put(event)

    def get(self, timeout: Optional[float] = None) -> ResultEvent:
        return self._queue.get(timeout=timeout)

    def __iter__(self) -> Iterator[ResultEvent]:
        while True:
            event = self._queue.get()
            yield event
            if isinstance(event, Done):
                return


def create_probe(request: ProbeRequest) -> Probe:
    """Build the probe that serves a request"""
    # Imported here: the probe modules import this one for ProbeSession
    from .resolver import DnsProbe
    from .probe import HttpProbe, PingProbe, PortScanProbe, TracerouteProbe

    factories = {
        ProbeKind.PING: PingProbe,
        ProbeKind.TRACEROUTE: TracerouteProbe,
        ProbeKind.PORT_SCAN: PortScanProbe,
        ProbeKind.DNS: DnsProbe,
        ProbeKind.HTTP: HttpProbe,
    }
    return factories[request.kind](request)


class ProbeEngine:
    """
    Starts sessions and enforces one active session per probe kind.

    Starting a new session of a kind cooperatively cancels the previous
    one; the old session still delivers its own terminal events.
    """

    def __init__(self, probe_factory: Callable[[ProbeRequest], Probe] = create_probe):
        self._probe_factory = probe_factory
        self._lock = threading.Lock()
        self._active: dict[ProbeKind, ProbeSession] = {}
        self._sessions: dict[int, ProbeSession] = {}

    def start(self, request: ProbeRequest, sink: Optional[EventSink] = None) -> ProbeSession:
        """Start a probe for ``request``, superseding any running session of the same kind"""
        probe = self._probe_factory(request)
        session = ProbeSession(request.kind, probe, sink)

        with self._lock:
            previous = self._active.get(request.kind)
            if previous is not None and not previous.done:
                logger.info("session #%d supersedes #%d", session.id, previous.id)
                previous.cancel()
            self._active[request.kind] = session
            self._sessions = {
                sid: s for sid, s in self._sessions.items() if not s.done
            }
            self._sessions[session.id] = session

        return session.start()

    def cancel(self, session_id: int) -> bool:
        with self._lock:
            session = self._sessions.get(session_id)
        if session is None:
            return False
        return session.cancel()

    def active(self, kind: ProbeKind) -> Optional[ProbeSession]:
        with self._lock:
            session = self._active.get(kind)
        if session is None or session.done:
            return None
        return session

    def shutdown(self, timeout: Optional[float] = None):
        """Cancel every running session and wait for them to finish"""
        with self._lock:
            sessions = list(self._sessions.values())
        for session in sessions:
            session.cancel()
        for session in sessions:
            session.wait(timeout)
