"""
Main entry point for RSS Pusher.

Runs the poll loop that fetches subscribed feeds, matches new items
against user keywords and queues notifications, plus the management
commands for subscriptions and keywords.
"""

import argparse
import asyncio
import logging
import signal
import sys
import time
from pathlib import Path

import coloredlogs

from rss_pusher.config import AppConfig, load_config, redact_proxy_url
from rss_pusher.dispatcher import DeliveryDispatcher, DeliveryJob, MirrorJob
from rss_pusher.fetcher import FeedFetcher
from rss_pusher.filters import match_keywords, split_keyword_input
from rss_pusher.formatter import build_notification
from rss_pusher.mirror import PushInfoMirror
from rss_pusher.rss_parser import FeedFetchError, FeedParser
from rss_pusher.stats import PushStats
from rss_pusher.storage import Storage, StorageError, Subscription, SubscriptionError
from rss_pusher.telegram import TelegramNotifier

logger = logging.getLogger(__name__)


class RSSPusher:
    """
    Main RSS pusher application.

    Drives poll cycles on a timer. Each cycle fetches every subscription
    concurrently, matches new items against the subscribers' keywords
    and hands the resulting notifications to the delivery dispatcher.
    """

    def __init__(self, config_path: str | Path):
        """
        Initialize the RSS pusher.

        Parameters
        ----------
        config_path : str | Path
            Path to the YAML configuration file.
        """
        self.config: AppConfig = load_config(config_path)
        self.storage: Storage | None = None
        self.parser: FeedParser | None = None
        self.fetcher: FeedFetcher | None = None
        self.notifier: TelegramNotifier | None = None
        self.mirror: PushInfoMirror | None = None
        self.dispatcher: DeliveryDispatcher | None = None
        self.stats = PushStats()
        self.cycle_count = 0
        self._running = False
        self._tasks: list[asyncio.Task] = []
        self._cycle_task: asyncio.Task | None = None
        self._cycle_tasks: set[asyncio.Task] = set()

    async def start(self) -> None:
        """Start the RSS pusher."""
        logger.info("Starting RSS Pusher")
        defaults = self.config.defaults

        self.storage = Storage(self.config.storage.database_path)
        await self.storage.initialize()

        proxy_url = defaults.proxy
        if proxy_url:
            logger.info("Using proxy: %s", redact_proxy_url(proxy_url))

        self.parser = FeedParser(
            timeout=defaults.request_timeout,
            user_agent=defaults.user_agent,
            proxy_url=proxy_url,
        )
        self.fetcher = FeedFetcher(
            self.parser,
            self.storage,
            notify_on_first_fetch=defaults.notify_on_first_fetch,
        )
        self.notifier = TelegramNotifier(self.config.telegram, proxy_url=proxy_url)

        if defaults.push_info_url:
            self.mirror = PushInfoMirror(
                defaults.push_info_url,
                proxy_url=proxy_url,
                timeout=defaults.request_timeout,
            )

        if not await self.notifier.test_connection():
            logger.error("Failed to connect to Telegram, exiting")
            await self.stop()
            sys.exit(1)

        self.dispatcher = DeliveryDispatcher(
            self.notifier,
            mirror=self.mirror,
            workers=defaults.delivery_workers,
            disable_preview=self.config.telegram.disable_web_page_preview,
        )
        self.dispatcher.start()

        self._running = True
        self._tasks.append(asyncio.create_task(self._poll_loop()))
        logger.info("RSS Pusher started, checking feeds every %ds", defaults.check_interval)

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Poll loop cancelled")

    async def stop(self) -> None:
        """Stop the RSS pusher gracefully."""
        logger.info("Stopping RSS Pusher")
        self._running = False

        for task in [*self._tasks, *self._cycle_tasks]:
            task.cancel()
        pending = [*self._tasks, *self._cycle_tasks]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        self._tasks = []

        if self.dispatcher:
            await self.dispatcher.stop()
        if self.parser:
            await self.parser.close()
        if self.mirror:
            await self.mirror.close()
        if self.notifier:
            await self.notifier.close()
        if self.storage:
            await self.storage.close()

        logger.info("RSS Pusher stopped")

    async def _poll_loop(self) -> None:
        """Start a cycle now and then on every tick."""
        interval = self.config.defaults.check_interval

        while self._running:
            self._on_tick()
            await asyncio.sleep(interval)

    def _on_tick(self) -> asyncio.Task | None:
        """
        Start a cycle for the current tick.

        Returns
        -------
        asyncio.Task | None
            The new cycle, or None if the tick was skipped because the
            previous cycle is still running.
        """
        busy = self._cycle_task is not None and not self._cycle_task.done()
        if busy and not self.config.defaults.allow_overlapping_cycles:
            logger.warning("Previous cycle still running, skipping this tick")
            return None

        task = asyncio.create_task(self._guarded_cycle())
        self._cycle_tasks.add(task)
        task.add_done_callback(self._cycle_tasks.discard)
        self._cycle_task = task
        return task

    async def _guarded_cycle(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Poll cycle failed")

    async def run_cycle(self) -> int:
        """
        Run one poll cycle over every subscription.

        Returns once every subscription has been fetched and matched;
        queued deliveries may still be in flight.

        Returns
        -------
        int
            Number of notifications queued.
        """
        if not self.storage or not self.fetcher or not self.dispatcher:
            raise RuntimeError("Components not initialized")

        started = time.monotonic()
        self.stats.reset_if_needed()
        logger.info("Checking RSS subscriptions")

        subscriptions = await self.storage.get_subscriptions()
        if not subscriptions:
            logger.info("No subscriptions found")
            return 0

        user_keywords = await self.storage.get_all_keywords()

        limit = self.config.defaults.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None

        results = await asyncio.gather(
            *(self._guarded_subscription(sub, user_keywords, semaphore) for sub in subscriptions)
        )
        pushed = sum(results)

        logger.info(
            "Cycle finished in %.2fs: %d notification%s queued from %d subscription%s",
            time.monotonic() - started,
            pushed,
            "" if pushed == 1 else "s",
            len(subscriptions),
            "" if len(subscriptions) == 1 else "s",
        )
        if pushed:
            logger.info("Push statistics\n%s", self.stats.summary())
        self.cycle_count += 1
        return pushed

    async def _guarded_subscription(
        self,
        subscription: Subscription,
        user_keywords: dict[int, list[str]],
        semaphore: asyncio.Semaphore | None,
    ) -> int:
        """Process one subscription, containing any failure to it."""
        try:
            if semaphore is None:
                return await self.process_subscription(subscription, user_keywords)
            async with semaphore:
                return await self.process_subscription(subscription, user_keywords)
        except asyncio.CancelledError:
            raise
        except FeedFetchError as e:
            logger.warning("%s", e)
        except StorageError as e:
            logger.error("Storage error while processing '%s': %s", subscription.name, e)
        except Exception:
            logger.exception("Unexpected error while processing '%s'", subscription.name)
        return 0

    async def process_subscription(
        self,
        subscription: Subscription,
        user_keywords: dict[int, list[str]],
    ) -> int:
        """
        Fetch one subscription and queue notifications for its new items.

        Parameters
        ----------
        subscription : Subscription
            The feed to process.
        user_keywords : dict[int, list[str]]
            Keyword sets of all users, loaded once per cycle.

        Returns
        -------
        int
            Number of notifications queued.
        """
        if not self.fetcher or not self.dispatcher:
            raise RuntimeError("Components not initialized")

        log_level = logging.INFO if self.cycle_count == 0 else logging.DEBUG
        logger.log(log_level, "Processing subscription: %s (%s)", subscription.name, subscription.url)

        messages = await self.fetcher.fetch_new(subscription)
        if not messages:
            logger.debug("No new entries in '%s'", subscription.name)
            return 0

        admin_id = self.config.telegram.admin_id
        pushed = 0

        for message in messages:
            for user_id in subscription.users:
                keywords = user_keywords.get(user_id)
                if not keywords:
                    continue

                matched = match_keywords(message, keywords)
                if not matched:
                    continue

                logger.debug(
                    "Keywords [%s] matched for user %d: %s",
                    ", ".join(matched),
                    user_id,
                    message.title[:50],
                )
                notification = build_notification(subscription, message, matched)
                self.stats.record_push(subscription.name)
                self.dispatcher.submit(
                    DeliveryJob(user_id, notification.text, notification.photo_url)
                )
                pushed += 1

                if admin_id and user_id == admin_id:
                    self._mirror(notification.mirror_text)

        logger.info("Subscription '%s' done, %d notification%s queued",
                    subscription.name, pushed, "" if pushed == 1 else "s")
        return pushed

    def _mirror(self, text: str) -> None:
        """Queue the admin summary for the push endpoint and mirror chat."""
        if self.mirror is not None:
            self.dispatcher.submit(MirrorJob(text))

        mirror_chat_id = self.config.telegram.mirror_chat_id
        if mirror_chat_id:
            self.dispatcher.submit(DeliveryJob(mirror_chat_id, text, html=False))


async def subscribe(
    config: AppConfig, url: str, name: str, user_id: int, channel: bool = False
) -> bool:
    """
    Verify a feed and subscribe a user to it.

    Returns
    -------
    bool
        True if a new subscription was created.

    Raises
    ------
    SubscriptionError
        If the feed is invalid or the user is already subscribed.
    """
    async with FeedParser(
        timeout=config.defaults.request_timeout,
        user_agent=config.defaults.user_agent,
        proxy_url=config.defaults.proxy,
    ) as parser:
        valid, reason = await parser.verify_feed(url)
    if not valid:
        raise SubscriptionError(f"Feed verification failed: {reason}")

    async with Storage(config.storage.database_path) as storage:
        return await storage.add_subscription(url, name, user_id, channel)


async def _run_command(config: AppConfig, args: argparse.Namespace) -> int:
    """Execute a management command. Returns the process exit code."""
    if args.command == "subscribe":
        created = await subscribe(config, args.url, args.name, args.user, args.channel)
        print(f"Subscription '{args.name}' {'created' if created else 'joined'}")
        return 0

    async with Storage(config.storage.database_path) as storage:
        if args.command == "unsubscribe":
            deleted = await storage.remove_subscription_user(args.name, args.user)
            suffix = ", subscription deleted" if deleted else ""
            print(f"User {args.user} unsubscribed from '{args.name}'{suffix}")

        elif args.command == "subscriptions":
            if args.user is not None:
                subscriptions = await storage.get_subscriptions_for_user(args.user)
            else:
                subscriptions = await storage.get_subscriptions()
            for sub in subscriptions:
                mode = "channel" if sub.channel else "item"
                print(f"{sub.name}\t{sub.url}\t{mode}\t{','.join(map(str, sub.users))}")

        elif args.keyword_action == "add":
            added, keywords = await storage.add_keywords(args.user, split_keyword_input(args.rules))
            if not added:
                print("No new keywords, all already present")
                return 1
            print(f"Added {added} keyword(s), {len(keywords)} total")

        elif args.keyword_action == "remove":
            for rule in args.rules:
                if await storage.remove_keyword(args.user, rule):
                    print(f"Removed '{rule}'")
                else:
                    print(f"Keyword '{rule}' not found")

        else:
            for index, keyword in enumerate(await storage.get_keywords(args.user), start=1):
                print(f"{index}. {keyword}")

    return 0


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """
    Install colored console logging and the optional log file.

    Parameters
    ----------
    verbose : bool
        Log at DEBUG instead of INFO.
    log_file : str | None
        Optional file receiving an uncolored copy of the log.
    """
    level = logging.DEBUG if verbose else logging.INFO
    fmt = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    datefmt = "%Y-%m-%d %H:%M:%S"

    coloredlogs.install(level=level, fmt=fmt, datefmt=datefmt)

    if log_file:
        handler = logging.FileHandler(log_file, encoding="utf-8")
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(fmt, datefmt=datefmt))
        logging.getLogger().addHandler(handler)

    # Library chatter stays at WARNING even in verbose mode
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("telegram").setLevel(logging.WARNING)
    logging.getLogger("aiosqlite").setLevel(logging.WARNING)


def build_arg_parser() -> argparse.ArgumentParser:
    """Build the command line parser."""
    parser = argparse.ArgumentParser(
        description="RSS feed poller with keyword-matched Telegram pushes",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument(
        "-c",
        "--config",
        default="config.yaml",
        help="Path to configuration file",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Enable verbose logging",
    )
    parser.add_argument(
        "--log-file",
        default=None,
        help="Also write the log to this file",
    )

    commands = parser.add_subparsers(dest="command")
    commands.add_parser("run", help="Poll feeds and push notifications (default)")

    sub = commands.add_parser("subscribe", help="Subscribe a user to a feed")
    sub.add_argument("url", help="Feed URL")
    sub.add_argument("name", help="Unique subscription name")
    sub.add_argument("--user", type=int, required=True, help="Telegram user ID")
    sub.add_argument("--channel", action="store_true", help="Push as announcements with images")

    unsub = commands.add_parser("unsubscribe", help="Unsubscribe a user from a feed")
    unsub.add_argument("name", help="Subscription name")
    unsub.add_argument("--user", type=int, required=True, help="Telegram user ID")

    listing = commands.add_parser("subscriptions", help="List subscriptions")
    listing.add_argument("--user", type=int, default=None, help="Only this user's subscriptions")

    keywords = commands.add_parser("keywords", help="Manage a user's keyword rules")
    keywords.add_argument("keyword_action", choices=["add", "remove", "list"])
    keywords.add_argument("--user", type=int, required=True, help="Telegram user ID")
    keywords.add_argument("rules", nargs="*", help="Rules, comma-separated or one per argument")

    return parser


def main() -> None:
    """Main entry point."""
    args = build_arg_parser().parse_args()
    args.command = args.command or "run"

    setup_logging(args.verbose, args.log_file)

    config_path = Path(args.config)
    if not config_path.exists():
        logger.error("Configuration file not found: %s", config_path)
        sys.exit(1)

    if args.command != "run":
        config = load_config(config_path)
        try:
            code = asyncio.run(_run_command(config, args))
        except (SubscriptionError, StorageError) as e:
            logger.error("%s", e)
            code = 1
        sys.exit(code)

    pusher = RSSPusher(config_path)

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    def signal_handler():
        logger.info("Received shutdown signal")
        for task in pusher._tasks:
            task.cancel()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        loop.run_until_complete(pusher.start())
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        loop.run_until_complete(pusher.stop())
        loop.close()


if __name__ == "__main__":
    main()
