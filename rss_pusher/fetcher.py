"""
New-item detection for subscribed feeds.

Compares each fetched item against the feed's watermark and advances
the watermark once per fetch.
"""

import logging
from dataclasses import replace
from datetime import datetime, timezone

from rss_pusher.filters import Message
from rss_pusher.rss_parser import FeedParser
from rss_pusher.storage import EPOCH, Storage, StorageError, Subscription

logger = logging.getLogger(__name__)


class FeedFetcher:
    """
    Computes the slice of a feed that is new since the last fetch.

    An item is new when its effective time (published, else updated, else
    the fetch time) is strictly after the stored watermark.
    """

    def __init__(
        self,
        parser: FeedParser,
        storage: Storage,
        notify_on_first_fetch: bool = True,
    ):
        """
        Initialize the fetcher.

        Parameters
        ----------
        parser : FeedParser
            Shared HTTP feed parser.
        storage : Storage
            Watermark store.
        notify_on_first_fetch : bool
            If False, a feed without a stored watermark only has its
            watermark advanced and yields no messages.
        """
        self.parser = parser
        self.storage = storage
        self.notify_on_first_fetch = notify_on_first_fetch

    async def fetch_new(self, subscription: Subscription) -> list[Message]:
        """
        Fetch a feed and return its new messages.

        Parameters
        ----------
        subscription : Subscription
            The feed to fetch.

        Returns
        -------
        list[Message]
            New messages in feed order, each with its effective time set.

        Raises
        ------
        FeedFetchError
            If the feed cannot be fetched. The watermark is left unchanged.
        StorageError
            If the new watermark cannot be written.
        """
        items = await self.parser.fetch_messages(subscription.url, subscription.name)
        if not items:
            return []

        try:
            watermark, found = await self.storage.get_watermark(subscription.name)
            first_fetch = not found
        except StorageError as e:
            logger.error("Failed to read watermark for '%s': %s", subscription.name, e)
            # Reprocess the whole feed rather than skip it
            watermark, first_fetch = EPOCH, False

        now = datetime.now(timezone.utc)
        observed_max = EPOCH
        messages = []

        for item in items:
            effective = item.published or now
            if effective > observed_max:
                observed_max = effective
            if effective > watermark:
                messages.append(replace(item, published=effective))

        if observed_max > EPOCH:
            await self.storage.set_watermark(
                subscription.name,
                max(observed_max, watermark),
                items[0].title,
            )

        if first_fetch and not self.notify_on_first_fetch:
            logger.info(
                "First fetch of '%s': skipping %d existing entr%s",
                subscription.name,
                len(messages),
                "y" if len(messages) == 1 else "ies",
            )
            return []

        return messages
