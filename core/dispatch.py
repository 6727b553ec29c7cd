"""Thread marshalling for tabpilot.

Two kinds of thread take part in every session:

* the **owner** thread, which holds the tab collection and every piece of
  state a UI would bind to; and
* the **engine** thread, on which the browser driver runs and from which
  engine callbacks arrive.

Both are asyncio event loops wrapped by :class:`LoopThread`.  Work that
belongs to a loop is always marshalled onto it, either fire-and-forget
(:meth:`LoopThread.post`) or blocking-with-result (:meth:`LoopThread.invoke`).
Coroutines are submitted with :meth:`LoopThread.submit` or awaited across
loops with :meth:`LoopThread.run`; cancelling the awaiting side cancels the
task on the target loop.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Awaitable, Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchError(RuntimeError):
    """Raised when a call cannot be marshalled onto its target loop."""


class LoopThread:
    """An asyncio event loop bound to one thread.

    The loop either runs on a daemon thread started by :meth:`start`, or
    is an already running loop adopted with :meth:`attach` (typically the
    main thread's loop, which then acts as the owner).
    """

    def __init__(self, name: str = "loop") -> None:
        self.name = name
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._thread: Optional[threading.Thread] = None
        self._thread_id: Optional[int] = None
        self._ready = threading.Event()
        self._start_lock = threading.Lock()
        self._attached = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @classmethod
    def attach(
        cls, loop: Optional[asyncio.AbstractEventLoop] = None,
        name: str = "owner",
    ) -> "LoopThread":
        """Adopt the running loop of the calling thread.

        Must be called from inside that loop (e.g. from ``asyncio.run``).
        """
        instance = cls(name)
        instance._loop = loop or asyncio.get_running_loop()
        instance._thread_id = threading.get_ident()
        instance._attached = True
        instance._ready.set()
        return instance

    def start(self) -> "LoopThread":
        """Start the loop on a daemon thread (idempotent)."""
        with self._start_lock:
            if self.running:
                return self
            if self._attached:
                raise DispatchError(f"{self.name}: attached loop is not running")
            self._ready.clear()
            self._thread = threading.Thread(
                target=self._run, name=self.name, daemon=True,
            )
            self._thread.start()
        self._ready.wait()
        logger.debug("[DISPATCH] %s loop started", self.name)
        return self

    def _run(self) -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        self._loop = loop
        self._thread_id = threading.get_ident()
        self._ready.set()
        try:
            loop.run_forever()
        finally:
            try:
                pending = asyncio.all_tasks(loop)
                for task in pending:
                    task.cancel()
                if pending:
                    loop.run_until_complete(
                        asyncio.gather(*pending, return_exceptions=True)
                    )
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                loop.close()
                self._thread_id = None

    def stop(self, timeout: float = 5.0) -> None:
        """Stop a loop started by :meth:`start` and join its thread."""
        loop = self._loop
        if self._attached or loop is None:
            return
        if not loop.is_closed():
            try:
                loop.call_soon_threadsafe(loop.stop)
            except RuntimeError:
                pass
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        logger.debug("[DISPATCH] %s loop stopped", self.name)

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._require_loop()

    @property
    def running(self) -> bool:
        loop = self._loop
        if loop is None or loop.is_closed():
            return False
        if self._attached:
            return loop.is_running()
        return self._thread is not None and self._thread.is_alive()

    def is_current(self) -> bool:
        """True when called from this loop's thread."""
        return (
            self._thread_id is not None
            and threading.get_ident() == self._thread_id
        )

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        loop = self._loop
        if loop is None or loop.is_closed():
            raise DispatchError(f"{self.name}: loop is not running")
        return loop

    # ------------------------------------------------------------------
    # Callables
    # ------------------------------------------------------------------

    def post(self, fn: Callable[..., Any], *args: Any) -> bool:
        """Queue ``fn(*args)`` on the loop without waiting.

        Exceptions raised by *fn* are logged on the target thread.

        Returns:
            ``False`` if the loop is gone and nothing was queued.
        """
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(
                "[DISPATCH] %s: dropped %s, loop not running",
                self.name, getattr(fn, "__name__", fn),
            )
            return False

        def _call() -> None:
            try:
                fn(*args)
            except Exception:
                logger.exception(
                    "[DISPATCH] %s: posted %s failed",
                    self.name, getattr(fn, "__name__", fn),
                )

        try:
            loop.call_soon_threadsafe(_call)
        except RuntimeError:
            return False
        return True

    def call_soon(
        self, fn: Callable[..., T], *args: Any,
    ) -> "concurrent.futures.Future[T]":
        """Queue ``fn(*args)`` and return a future for its result."""
        future: "concurrent.futures.Future[T]" = concurrent.futures.Future()
        if self.is_current():
            try:
                future.set_result(fn(*args))
            except Exception as exc:
                future.set_exception(exc)
            return future

        def _call() -> None:
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(fn(*args))
            except Exception as exc:
                future.set_exception(exc)

        try:
            self._require_loop().call_soon_threadsafe(_call)
        except RuntimeError as exc:
            raise DispatchError(f"{self.name}: loop is not running") from exc
        return future

    def invoke(
        self, fn: Callable[..., T], *args: Any,
        timeout: Optional[float] = None,
    ) -> T:
        """Run ``fn(*args)`` on the loop and block for the result.

        Runs inline when already on the loop's thread.
        """
        if self.is_current():
            return fn(*args)
        return self.call_soon(fn, *args).result(timeout)

    async def ainvoke(self, fn: Callable[..., T], *args: Any) -> T:
        """Awaitable form of :meth:`invoke` for callers on another loop."""
        if self.is_current():
            return fn(*args)
        return await asyncio.wrap_future(self.call_soon(fn, *args))

    # ------------------------------------------------------------------
    # Coroutines
    # ------------------------------------------------------------------

    def submit(self, coro: Awaitable[T]) -> "concurrent.futures.Future[T]":
        """Schedule *coro* on the loop from any thread."""
        try:
            return asyncio.run_coroutine_threadsafe(coro, self._require_loop())
        except (DispatchError, RuntimeError):
            # Close the coroutine so it is not reported as never awaited
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            raise

    async def run(self, coro: Awaitable[T]) -> T:
        """Await *coro* on this loop from a coroutine on any loop."""
        if self.is_current():
            return await coro
        return await asyncio.wrap_future(self.submit(coro))

    def run_sync(self, coro: Awaitable[T], timeout: Optional[float] = None) -> T:
        """Block the calling thread until *coro* finishes on the loop.

        Raises:
            DispatchError: When called from the loop's own thread.
        """
        if self.is_current():
            close = getattr(coro, "close", None)
            if close is not None:
                close()
            raise DispatchError(
                f"{self.name}: run_sync called from its own thread"
            )
        future = self.submit(coro)
        try:
            return future.result(timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise


class OwnerDispatcher(LoopThread):
    """The loop that owns tab state and delivers UI notifications."""

    def __init__(self, name: str = "owner") -> None:
        super().__init__(name)


class Event:
    """A multicast notification.

    Handlers run on *dispatcher* when one is given (emitting from another
    thread posts the delivery), otherwise on the emitting thread.  A
    failing handler is logged and does not stop the others.
    """

    def __init__(
        self, name: str, dispatcher: Optional[LoopThread] = None,
    ) -> None:
        self.name = name
        self._dispatcher = dispatcher
        self._handlers: list = []
        self._lock = threading.Lock()

    def subscribe(self, handler: Callable[..., Any]) -> Callable[..., Any]:
        with self._lock:
            self._handlers.append(handler)
        return handler

    def unsubscribe(self, handler: Callable[..., Any]) -> None:
        with self._lock:
            if handler in self._handlers:
                self._handlers.remove(handler)

    def __iadd__(self, handler: Callable[..., Any]) -> "Event":
        self.subscribe(handler)
        return self

    def __isub__(self, handler: Callable[..., Any]) -> "Event":
        self.unsubscribe(handler)
        return self

    def __len__(self) -> int:
        return len(self._handlers)

    def emit(self, *args: Any) -> None:
        dispatcher = self._dispatcher
        if dispatcher is not None and not dispatcher.is_current():
            dispatcher.post(self._deliver, *args)
            return
        self._deliver(*args)

    def _deliver(self, *args: Any) -> None:
        with self._lock:
            handlers = list(self._handlers)
        for handler in handlers:
            try:
                handler(*args)
            except Exception:
                logger.exception(
                    "[EVENT] %s handler %s failed",
                    self.name, getattr(handler, "__name__", handler),
                )
