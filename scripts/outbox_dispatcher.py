import argparse
import signal
import sys
import time
from pathlib import Path

import structlog

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from bookflow.db import SessionLocal  # noqa: E402
from bookflow.observability import configure_logging  # noqa: E402
from bookflow.platform import dispatch_outbox_events, get_outbox_health, retry_outbox_events  # noqa: E402

log = structlog.get_logger("bookflow.outbox_dispatcher")


class Dispatcher:
    """Drains the booking outbox in batches and idles with backoff when it is empty."""

    def __init__(
        self,
        session_factory=SessionLocal,
        batch_size: int = 100,
        tenant_id: int | None = None,
        idle_seconds: float = 2.0,
        max_idle_seconds: float = 30.0,
    ):
        self.session_factory = session_factory
        self.batch_size = max(1, min(int(batch_size), 500))
        self.tenant_id = tenant_id
        self.idle_seconds = max(0.2, float(idle_seconds))
        self.max_idle_seconds = max(self.idle_seconds, float(max_idle_seconds))
        self.stopping = False

    def stop(self, *_args) -> None:
        if not self.stopping:
            log.info("outbox_dispatcher_stopping")
        self.stopping = True

    def requeue(self, include_dead_letter: bool = False) -> int:
        with self.session_factory() as db:
            result = retry_outbox_events(
                db, tenant_id=self.tenant_id, include_dead_letter=include_dead_letter, limit=1000
            )
        log.info("outbox_requeued", retried=result["retried"], include_dead_letter=include_dead_letter)
        return int(result["retried"])

    def health(self) -> dict:
        with self.session_factory() as db:
            return get_outbox_health(db, tenant_id=self.tenant_id)

    def drain(self) -> dict:
        """Dispatch batches until one comes back short or makes no progress."""
        totals = {"processed": 0, "published": 0, "failed": 0, "dead_lettered": 0}
        while not self.stopping:
            with self.session_factory() as db:
                result = dispatch_outbox_events(db, tenant_id=self.tenant_id, batch_size=self.batch_size)
            for name in totals:
                totals[name] += int(result.get(name, 0))
            # Failed rows come straight back in the next batch, so stop once nothing went out.
            if result["processed"] < self.batch_size or result["published"] == 0:
                break
        return totals

    def run_forever(self, sleep=time.sleep) -> None:
        delay = self.idle_seconds
        while not self.stopping:
            totals = self.drain()
            if totals["published"]:
                delay = self.idle_seconds
                continue
            if self.stopping:
                break
            sleep(delay)
            delay = min(delay * 2, self.max_idle_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Deliver pending outbox events (e-mail, event bus)"
    )
    parser.add_argument("--batch-size", type=int, default=100)
    parser.add_argument("--poll-seconds", type=float, default=2.0)
    parser.add_argument("--max-poll-seconds", type=float, default=30.0)
    parser.add_argument("--tenant-id", type=int, default=None)
    parser.add_argument("--requeue-failed", action="store_true", help="reset failed events before starting")
    parser.add_argument("--include-dead-letter", action="store_true", help="with --requeue-failed, revive dead letters too")
    parser.add_argument("--once", action="store_true", help="drain once and exit")
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging()
    dispatcher = Dispatcher(
        batch_size=args.batch_size,
        tenant_id=args.tenant_id,
        idle_seconds=args.poll_seconds,
        max_idle_seconds=args.max_poll_seconds,
    )
    signal.signal(signal.SIGTERM, dispatcher.stop)
    signal.signal(signal.SIGINT, dispatcher.stop)

    health = dispatcher.health()
    log.info(
        "outbox_dispatcher_started",
        batch_size=dispatcher.batch_size,
        tenant_id=args.tenant_id,
        once=args.once,
        pending=health["pending_count"],
        failed=health["failed_count"],
        dead_letter=health["dead_letter_count"],
    )
    if args.requeue_failed:
        dispatcher.requeue(include_dead_letter=args.include_dead_letter)

    if args.once:
        totals = dispatcher.drain()
        return 1 if totals["failed"] else 0
    dispatcher.run_forever()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
