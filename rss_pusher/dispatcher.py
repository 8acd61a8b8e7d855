"""
Delivery queue between the poller and the messaging transport.

The poller enqueues jobs without waiting; worker tasks drain the queue.
A poll cycle is complete once matching and formatting are done, whether
or not its deliveries have finished.
"""

import asyncio
import logging
from dataclasses import dataclass

from rss_pusher.mirror import PushInfoMirror
from rss_pusher.notifier import MessageTransport

logger = logging.getLogger(__name__)


@dataclass
class DeliveryJob:
    """
    A message for one Telegram chat.

    Attributes
    ----------
    chat_id : int
        Recipient.
    text : str
        HTML text, or the caption when ``photo_url`` is set.
    photo_url : str
        Optional image to send with the text as caption.
    html : bool
        Whether ``text`` is HTML.
    """

    chat_id: int
    text: str
    photo_url: str = ""
    html: bool = True


@dataclass
class MirrorJob:
    """A plain-text summary for the external push endpoint."""

    text: str


class DeliveryDispatcher:
    """
    Fire-and-forget delivery with a fixed pool of worker tasks.

    Failures are logged and dropped; nothing is retried.
    """

    def __init__(
        self,
        transport: MessageTransport,
        mirror: PushInfoMirror | None = None,
        workers: int = 4,
        disable_preview: bool = False,
    ):
        """
        Initialize the dispatcher.

        Parameters
        ----------
        transport : MessageTransport
            Backend used for DeliveryJob.
        mirror : PushInfoMirror | None
            Backend used for MirrorJob. MirrorJobs are dropped without one.
        workers : int
            Number of concurrent delivery tasks.
        disable_preview : bool
            Disable link previews on text messages.
        """
        self.transport = transport
        self.mirror = mirror
        self.workers = workers
        self.disable_preview = disable_preview
        self.delivered = 0
        self.failed = 0
        self._queue: asyncio.Queue[DeliveryJob | MirrorJob] = asyncio.Queue()
        self._tasks: list[asyncio.Task] = []

    @property
    def pending(self) -> int:
        """Jobs waiting in the queue."""
        return self._queue.qsize()

    def start(self) -> None:
        """Start the worker tasks."""
        if self._tasks:
            return
        for n in range(self.workers):
            self._tasks.append(asyncio.create_task(self._worker(n), name=f"delivery-{n}"))
        logger.debug("Started %d delivery worker(s)", self.workers)

    def submit(self, job: DeliveryJob | MirrorJob) -> None:
        """Enqueue a job. Never blocks."""
        self._queue.put_nowait(job)

    async def join(self) -> None:
        """Wait until every submitted job has been handled."""
        await self._queue.join()

    async def stop(self) -> None:
        """Cancel the workers. Jobs still queued are dropped."""
        for task in self._tasks:
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info(
            "Delivery stopped: %d delivered, %d failed", self.delivered, self.failed
        )
        if self.pending:
            logger.warning("Dropped %d undelivered job(s) on shutdown", self.pending)

    async def _worker(self, n: int) -> None:
        while True:
            job = await self._queue.get()
            try:
                if await self._deliver(job):
                    self.delivered += 1
                else:
                    self.failed += 1
            except asyncio.CancelledError:
                raise
            except Exception:
                self.failed += 1
                logger.exception("Delivery worker %d failed on %s", n, type(job).__name__)
            finally:
                self._queue.task_done()

    async def _deliver(self, job: DeliveryJob | MirrorJob) -> bool:
        if isinstance(job, MirrorJob):
            if self.mirror is None:
                return False
            return await self.mirror.push(job.text)

        if job.photo_url:
            return await self.transport.send_photo(job.chat_id, job.photo_url, job.text)

        return await self.transport.send_text(
            job.chat_id,
            job.text,
            html=job.html,
            disable_preview=self.disable_preview,
        )
