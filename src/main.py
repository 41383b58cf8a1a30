"""
Main entry point for the access relay.

Wires the watcher, reconciler and webhook server together around a single
notification channel plugin.
"""

import asyncio
import logging
import signal
from typing import Any, Dict, List, Optional

from access import AccessClient
from config import get_config
from db import DatabaseManager, MemoryPluginDataStore, PluginDataStore
from errors import UpstreamAuthError
from plugins.channels.base import NotificationChannel
from plugins.registry import get_registry, register_builtin_plugins
from reconciler import Reconciler, ReconcilerConfig
from watcher import Watcher, WatcherConfig
from webhook import WebhookServer, WebhookVerifier

logger = logging.getLogger(__name__)


class Application:
    """Main application that orchestrates the watcher, reconciler and webhook."""

    def __init__(self):
        self.config = get_config()
        self.store: Optional[PluginDataStore] = None
        self.authority: Optional[AccessClient] = None
        self.channel: Optional[NotificationChannel] = None
        self.watcher: Optional[Watcher] = None
        self.reconciler: Optional[Reconciler] = None
        self.webhook: Optional[WebhookServer] = None
        self.tasks: List[asyncio.Task] = []
        self.running = False

    async def initialize(self):
        """Initialize all components."""
        logger.info("Initializing access relay")

        # Register built-in plugins
        register_builtin_plugins()
        registry = get_registry()

        # Initialize plugin data store
        db_config = self.config.database
        if db_config.backend == "memory":
            logger.warning("Using in-memory plugin data; state is lost on restart")
            self.store = MemoryPluginDataStore()
        else:
            db = DatabaseManager(
                host=db_config.host,
                port=db_config.port,
                database=db_config.database,
                user=db_config.user,
                password=db_config.password,
                plugin=self.config.plugins.channel,
                min_pool_size=db_config.min_pool_size,
                max_pool_size=db_config.max_pool_size,
            )
            await db.connect()
            await db.initialize_schema()
            self.store = db
        logger.info("Plugin data store initialized")

        # Channel config comes from the plugin's own env loading, with
        # PLUGIN_CONFIGS overrides on top
        channel_name = self.config.plugins.channel
        channel_config: Dict[str, Any] = registry.get_channel_plugin_config(
            channel_name
        )
        channel_config.update(self.config.plugins.get_plugin_config(channel_name))
        self.channel = await registry.get_channel_plugin(channel_name, channel_config)

        upstream = self.config.upstream
        self.authority = AccessClient(
            base_url=upstream.url, token=upstream.token, timeout=upstream.timeout
        )
        self.watcher = Watcher(
            self.authority,
            config=WatcherConfig(
                backoff_base_delay=upstream.backoff_base_delay,
                backoff_max_delay=upstream.backoff_max_delay,
                backoff_jitter_factor=upstream.backoff_jitter_factor,
            ),
        )

        rec_config = self.config.reconciler
        self.reconciler = Reconciler(
            store=self.store,
            channel=self.channel,
            authority=self.authority,
            config=ReconcilerConfig(
                max_concurrent_reconciles=rec_config.max_concurrent_reconciles,
                retry_attempts=rec_config.retry_attempts,
                retry_base_delay=rec_config.retry_base_delay,
                drain_timeout=rec_config.drain_timeout,
            ),
        )

        hook_config = self.config.webhook
        verifier = WebhookVerifier(
            secret=hook_config.signing_secret,
            version=hook_config.signature_version,
            replay_window=hook_config.replay_window,
            timestamp_header=hook_config.timestamp_header,
            signature_header=hook_config.signature_header,
        )
        watcher = self.watcher
        self.webhook = WebhookServer(
            verifier=verifier,
            channel=self.channel,
            reconciler=self.reconciler,
            readiness=lambda: watcher.ready,
            host=hook_config.host,
            port=hook_config.port,
            callback_timeout=hook_config.callback_timeout,
        )

        logger.info(f"All components initialized, channel={channel_name}")

    async def start(self):
        """Start the application."""
        if not self.reconciler:
            await self.initialize()

        self.running = True
        logger.info("Starting access relay")

        self.tasks = [
            asyncio.create_task(self.reconciler.start(self.watcher.events())),
            asyncio.create_task(self.webhook.start()),
        ]

        try:
            await asyncio.gather(*self.tasks)
        except UpstreamAuthError as e:
            logger.critical(f"Upstream rejected our credentials: {e}")
            raise
        except asyncio.CancelledError:
            logger.info("Application tasks cancelled")

    async def stop(self):
        """Stop the application gracefully."""
        if not self.running:
            return
        logger.info("Stopping access relay")
        self.running = False

        if self.watcher:
            self.watcher.stop()

        if self.webhook:
            await self.webhook.stop()

        # Cancelling the reconciler drains in-flight events before returning
        for task in self.tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self.tasks, return_exceptions=True)

        if self.channel:
            await self.channel.close()

        if self.authority:
            await self.authority.close()

        if self.store:
            await self.store.close()

        logger.info("Access relay stopped")


async def main():
    """Main entry point."""
    config = get_config()
    logging.basicConfig(
        level=getattr(logging, config.webhook.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = Application()

    # Set up signal handlers for graceful shutdown
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(app.stop())

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
    finally:
        await app.stop()


def run():
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
