"""Reconciliation and resend jobs, runnable in-process or from the command line.

Nothing here schedules itself. A host process submits the jobs to a
:class:`~handoff_hub.jobs.runner.JobRunner`, or cron (or any other external
scheduler) runs ``handoff-hub-jobs reconcile`` / ``handoff-hub-jobs resend``.
``handoff-hub-jobs init-db`` applies the schema migrations.
"""

from __future__ import annotations

import argparse
import json
import logging
import time
from datetime import timedelta
from threading import Event
from typing import Callable

from sqlalchemy.orm import Session, sessionmaker

from ..config import Settings, get_settings
from ..conversations import schemas as convo_schemas
from ..conversations.models import TransitionEvent
from ..core.db import get_session_factory
from ..delivery import schemas as delivery_schemas
from ..delivery.transport import MessageTransport
from ..models.schema import apply_migrations
from ..models.session import session_scope
from ..services import build_services

logger = logging.getLogger(__name__)


class MaintenanceJobs:
    """Batch jobs, each running in its own database session."""

    def __init__(
        self,
        session_factory: sessionmaker[Session] | None = None,
        settings: Settings | None = None,
        *,
        transport: MessageTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._transport = transport
        self._sleep = sleep

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    def _factory(self) -> sessionmaker[Session]:
        return self._session_factory or get_session_factory()

    def reconcile_messages(
        self,
        cancel_event: Event | None = None,
        *,
        batch_limit: int | None = None,
        after_id: int | None = None,
    ) -> convo_schemas.ReconciliationReport:
        with session_scope(self._factory()) as session:
            services = build_services(session, self.settings, transport=self._transport)
            return services.reconciliation.reconcile(
                batch_limit or self.settings.reconcile_batch_limit,
                after_id=after_id,
                cancel_event=cancel_event,
            )

    def resend_failed_notifications(
        self,
        cancel_event: Event | None = None,
        *,
        lookback_hours: int | None = None,
        limit: int | None = None,
    ) -> delivery_schemas.ResendSummary:
        with session_scope(self._factory()) as session:
            services = build_services(
                session, self.settings, transport=self._transport, sleep=self._sleep
            )
            return services.delivery.resend_failed(
                timedelta(hours=lookback_hours or self.settings.resend_lookback_hours),
                limit or self.settings.resend_batch_limit,
                cancel_event=cancel_event,
            )

    def apply_migrations(self) -> list[str]:
        """Bring the database schema up to date; returns the migrations applied."""

        return apply_migrations(self._factory().kw["bind"])

    def notify_transition(self, event: TransitionEvent) -> int:
        """Notify the sellers affected by ``event``; failures are left to the resend job."""

        with session_scope(self._factory()) as session:
            services = build_services(session, self.settings, transport=self._transport)
            return services.notifier.notify(event)


def main(argv: list[str] | None = None) -> None:
    """Run one maintenance job and print its report as JSON."""

    parser = argparse.ArgumentParser(description="Handoff hub maintenance jobs")
    commands = parser.add_subparsers(dest="command", required=True)

    reconcile = commands.add_parser(
        "reconcile", help="Copy agent-channel messages missing from the timeline"
    )
    reconcile.add_argument("--batch-limit", type=int, default=None)
    reconcile.add_argument("--after-id", type=int, default=None)
    reconcile.add_argument(
        "--until-done",
        action="store_true",
        help="Keep running batches until a batch comes back short",
    )

    resend = commands.add_parser(
        "resend", help="Re-send notifications the transport never acknowledged"
    )
    resend.add_argument("--lookback-hours", type=int, default=None)
    resend.add_argument("--limit", type=int, default=None)

    commands.add_parser("init-db", help="Create or upgrade the database schema")

    args = parser.parse_args(argv)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    jobs = MaintenanceJobs()
    if args.command == "init-db":
        print(json.dumps({"applied": jobs.apply_migrations()}))
    elif args.command == "reconcile":
        batch_limit = args.batch_limit or jobs.settings.reconcile_batch_limit
        after_id = args.after_id
        while True:
            report = jobs.reconcile_messages(batch_limit=batch_limit, after_id=after_id)
            print(report.model_dump_json())
            if not args.until_done or report.scanned < batch_limit:
                break
            after_id = report.last_entry_id
    else:
        summary = jobs.resend_failed_notifications(
            lookback_hours=args.lookback_hours, limit=args.limit
        )
        print(summary.model_dump_json())


__all__ = ["MaintenanceJobs", "main"]


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    main()
