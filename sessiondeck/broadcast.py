"""Live-update fan-out to subscribed viewers.

Producers publish onto a single ordered bus; a dispatcher thread copies each
envelope into every matching viewer's bounded queue. A viewer whose queue is
full, whose sink raises, or whose sink misses the delivery deadline is
dropped. Producers never wait on viewers.
"""

import itertools
import logging
import queue
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout

from sessiondeck.config import DELIVERY_TIMEOUT, VIEWER_QUEUE_SIZE
from sessiondeck.errors import DeliveryFailure
from sessiondeck.models import Envelope, EventType, utcnow

logger = logging.getLogger(__name__)

_STOP = object()
_viewer_ids = itertools.count(1)


class ViewerCursor:
    """Viewer-local dedup: accepts an envelope only if its seq is new for its entity."""

    def __init__(self):
        self._last: dict[str, int] = {}

    def accept(self, envelope: Envelope) -> bool:
        if envelope.seq <= self._last.get(envelope.entity, 0):
            return False
        self._last[envelope.entity] = envelope.seq
        return True

    def last_seq(self, entity: str) -> int:
        return self._last.get(entity, 0)


class Subscription:
    """One viewer's bounded outbound queue."""

    def __init__(self, viewer_id: str, session_id: str | None, maxsize: int):
        self.id = viewer_id
        self.session_id = session_id
        self.maxsize = maxsize
        self.cursor = ViewerCursor()
        self.close_reason: str | None = None
        self._items: deque[Envelope] = deque()
        self._cond = threading.Condition()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def matches(self, envelope: Envelope) -> bool:
        return self.session_id is None or envelope.session_id == self.session_id

    def offer(self, envelope: Envelope) -> bool:
        """Enqueue without blocking. False means the viewer has fallen behind."""
        with self._cond:
            if self._closed:
                return True
            if len(self._items) >= self.maxsize:
                return False
            self._items.append(envelope)
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> Envelope | None:
        """Next unseen envelope, or None on timeout or once closed."""
        with self._cond:
            while True:
                if not self._cond.wait_for(lambda: self._items or self._closed, timeout):
                    return None
                if self._closed:
                    return None
                envelope = self._items.popleft()
                if self.cursor.accept(envelope):
                    return envelope

    def __iter__(self):
        while True:
            envelope = self.get()
            if envelope is None:
                return
            yield envelope

    def close(self, reason: str = "unsubscribed"):
        with self._cond:
            if self._closed:
                return
            self._closed = True
            self.close_reason = reason
            self._items.clear()
            self._cond.notify_all()


class Broadcaster:
    def __init__(self, queue_size: int = VIEWER_QUEUE_SIZE, delivery_timeout: float = DELIVERY_TIMEOUT):
        self.queue_size = queue_size
        self.delivery_timeout = delivery_timeout
        self.dropped = 0
        self._bus: queue.Queue = queue.Queue()
        self._subs: dict[str, Subscription] = {}
        self._subs_lock = threading.Lock()
        self._seq_lock = threading.Lock()
        self._seqs: dict[str, int] = {}
        self._dispatcher = threading.Thread(
            target=self._run, daemon=True, name="broadcast-dispatcher"
        )
        self._dispatcher.start()

    # -- producers ---------------------------------------------------------

    def publish(self, event_type: EventType, session_id: str | None, data: dict) -> Envelope:
        """Stamp the next per-entity sequence number and enqueue. Never blocks."""
        entity = session_id or "_global"
        with self._seq_lock:
            seq = self._seqs.get(entity, 0) + 1
            self._seqs[entity] = seq
            envelope = Envelope(
                type=event_type,
                session_id=session_id,
                data=data,
                timestamp=utcnow(),
                seq=seq,
            )
            self._bus.put(envelope)
        return envelope

    def flush(self):
        """Block until every published envelope has been dispatched to viewer queues."""
        self._bus.join()

    # -- viewers -----------------------------------------------------------

    def subscribe(self, session_id: str | None = None, viewer_id: str | None = None) -> Subscription:
        sub = Subscription(
            viewer_id or f"viewer-{next(_viewer_ids)}", session_id, self.queue_size
        )
        with self._subs_lock:
            self._subs[sub.id] = sub
        logger.info("Viewer %s subscribed (session=%s)", sub.id, session_id or "*")
        return sub

    def attach(self, sink, session_id: str | None = None, viewer_id: str | None = None) -> Subscription:
        """Subscribe a push-style viewer: ``sink(envelope)`` is called per event.

        Each call must return within ``delivery_timeout``; a slow or raising
        sink is treated as a disconnect.
        """
        sub = self.subscribe(session_id=session_id, viewer_id=viewer_id)
        thread = threading.Thread(
            target=self._deliver, args=(sub, sink), daemon=True, name=f"deliver-{sub.id}"
        )
        thread.start()
        return sub

    def unsubscribe(self, sub: Subscription):
        with self._subs_lock:
            self._subs.pop(sub.id, None)
        sub.close()
        logger.info("Viewer %s unsubscribed", sub.id)

    @property
    def viewer_count(self) -> int:
        with self._subs_lock:
            return len(self._subs)

    def close(self):
        self._bus.put(_STOP)
        self._dispatcher.join(timeout=5)
        with self._subs_lock:
            subs = list(self._subs.values())
            self._subs.clear()
        for sub in subs:
            sub.close("broadcaster closed")

    # -- internals ---------------------------------------------------------

    def _drop(self, sub: Subscription, reason: str):
        with self._subs_lock:
            if self._subs.pop(sub.id, None) is None:
                return
            self.dropped += 1
        failure = DeliveryFailure(sub.id, reason)
        logger.warning("%s; dropping viewer", failure)
        sub.close(reason)

    def _run(self):
        while True:
            envelope = self._bus.get()
            try:
                if envelope is _STOP:
                    return
                with self._subs_lock:
                    targets = [s for s in self._subs.values() if s.matches(envelope)]
                for sub in targets:
                    if not sub.offer(envelope):
                        self._drop(sub, f"backlog exceeded {sub.maxsize} events")
                logger.debug(
                    "Dispatched %s seq=%d for %s to %d viewers",
                    envelope.type.value, envelope.seq, envelope.entity, len(targets),
                )
            except Exception:
                logger.exception("Dispatcher failed on envelope")
            finally:
                self._bus.task_done()

    def _deliver(self, sub: Subscription, sink):
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"sink-{sub.id}")
        try:
            for envelope in sub:
                future = executor.submit(sink, envelope)
                try:
                    future.result(timeout=self.delivery_timeout)
                except FuturesTimeout:
                    self._drop(sub, f"delivery exceeded {self.delivery_timeout}s")
                    return
                except Exception as e:
                    self._drop(sub, f"sink raised {type(e).__name__}: {e}")
                    return
        finally:
            executor.shutdown(wait=False, cancel_futures=True)
