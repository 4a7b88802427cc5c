from __future__ import annotations

from typing import Callable

from flask import current_app

from app.client.rebooked_client import RebookedClient
from app.services.commit_service import CommitCommand, CommitOutcome, commit_to_sale
from app.services.stores import OrderStore
from app.utils.events import log_event


class CommitTransport:
    name = "unknown"

    def is_available(self) -> bool:
        return True

    def commit(self, command: CommitCommand) -> CommitOutcome:
        raise NotImplementedError


class HttpCommitTransport(CommitTransport):
    """Primary path: the full commit endpoint, courier booking included."""

    name = "primary"

    def __init__(self, client: RebookedClient):
        self.client = client

    def is_available(self) -> bool:
        return self.client.health()

    def commit(self, command: CommitCommand) -> CommitOutcome:
        body = self.client.call("enhanced-commit-to-sale", command.to_payload())
        return CommitOutcome(
            order=body.get("order") or {},
            shipment=body.get("shipment"),
            via=self.name,
            warnings=list(body.get("warnings") or []),
        )


class DirectCommitTransport(CommitTransport):
    """Fallback path: same rules in-process, courier step skipped."""

    name = "fallback"

    def __init__(self, store: OrderStore | None = None):
        self.store = store

    def commit(self, command: CommitCommand) -> CommitOutcome:
        outcome = commit_to_sale(command, use_courier=False, store=self.store, via=self.name)
        if command.delivery_method == "locker" and "locker_shipment_not_created" not in outcome.warnings:
            outcome.warnings.append("locker_shipment_not_created")
        return outcome


class CommitCommandHandler:
    """Runs a commit through the primary transport, or the fallback when the
    single connectivity check says the primary is down."""

    def __init__(self, primary: CommitTransport, fallback: CommitTransport, probe: Callable[[], bool] | None = None):
        self.primary = primary
        self.fallback = fallback
        self.probe = probe or primary.is_available

    def select(self) -> CommitTransport:
        try:
            up = bool(self.probe())
        except Exception as e:
            current_app.logger.warning("commit_probe_failed err=%s", e)
            up = False
        return self.primary if up else self.fallback

    def handle(self, command: CommitCommand) -> CommitOutcome:
        command.validate()
        transport = self.select()
        if transport is self.fallback:
            current_app.logger.warning("commit_fallback_selected order_id=%s", command.order_id)
            log_event(
                "commit_fallback_used",
                actor_user_id=command.seller_id,
                subject_type="order",
                subject_id=command.order_id,
                severity="WARN",
            )
        return transport.commit(command)
