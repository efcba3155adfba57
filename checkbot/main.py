import asyncio
import logging
import threading

from telegram import Bot

from checkbot import config
from checkbot.bot.commands import CommandDispatcher
from checkbot.bot.poller import UpdatePoller
from checkbot.bot.transport import TelegramTransport
from checkbot.core.dispatch import DispatchPool
from checkbot.core.verifier import load_verifier
from checkbot.memory.jobs import JobRegistry
from checkbot.memory.sessions import SessionIndex
from checkbot.memory.store import Store
from checkbot.scheduler.sweeper import recover_interrupted, sweep_loop

log = logging.getLogger("checkbot")


def setup_logging(level):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)-7s [%(name)s] %(message)s",
    )
    # httpx logs every long-poll request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def serve(store, registry, sessions):
    async with Bot(config.TELEGRAM_TOKEN) as bot:
        transport = TelegramTransport(bot)
        dispatcher = CommandDispatcher(
            transport,
            registry,
            sessions,
            config.RESULTS_DIR,
            max_upload_bytes=config.MAX_UPLOAD_KB * 1024,
            cancel_on_replace=config.CANCEL_ON_REPLACE,
            allowed_users=config.ALLOWED_USERS,
        )
        poller = UpdatePoller(
            transport,
            dispatcher,
            timeout=config.POLL_TIMEOUT_SECONDS,
            backoff=config.POLL_BACKOFF_SECONDS,
            store=store if config.PERSIST_UPDATE_OFFSET else None,
        )
        await poller.run()


def main():
    setup_logging(config.LOG_LEVEL)
    if not config.TELEGRAM_TOKEN:
        log.error("Set TELEGRAM_BOT_TOKEN in .env")
        return
    if not config.VERIFIER:
        log.error("Set CHECKBOT_VERIFIER in .env (e.g. mypackage.verify:Verifier)")
        return

    verifier = load_verifier(config.VERIFIER)
    store = Store(config.STORE_DIR, lock_timeout=config.LOCK_TIMEOUT_SECONDS)
    registry = JobRegistry(store)
    sessions = SessionIndex(store)

    log.info("Starting number checker bot...")
    log.info(f"Data dir: {config.DATA_DIR}")
    log.info(f"Verifier: {config.VERIFIER} (x{config.VERIFIER_CONCURRENCY})")
    log.info(f"Allowed users: {config.ALLOWED_USERS or 'everyone'}")

    recover_interrupted(registry)

    stop = threading.Event()
    pool = DispatchPool(
        registry,
        verifier,
        config.RESULTS_DIR,
        max_active=config.MAX_ACTIVE_JOBS,
        concurrency=config.VERIFIER_CONCURRENCY,
        deadline_seconds=config.JOB_DEADLINE_SECONDS,
        poll_interval=config.DISPATCH_POLL_INTERVAL,
    )
    threading.Thread(target=pool.run, args=(stop,), name="dispatch-pool", daemon=True).start()
    threading.Thread(
        target=sweep_loop,
        args=(registry, config.JOB_DEADLINE_SECONDS, config.SWEEP_INTERVAL_SECONDS, stop),
        name="sweeper",
        daemon=True,
    ).start()

    try:
        asyncio.run(serve(store, registry, sessions))
    except KeyboardInterrupt:
        log.info("Stopping...")
    finally:
        stop.set()


if __name__ == "__main__":
    main()
