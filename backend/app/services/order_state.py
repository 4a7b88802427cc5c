from __future__ import annotations


class OrderStatus:
    PENDING_COMMIT = "pending_commit"
    COMMITTED = "committed"
    COURIER_SCHEDULED = "courier_scheduled"
    SHIPPED = "shipped"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"

    TERMINAL = frozenset({CANCELLED, REFUNDED})
    # seller has already committed; a second commit is rejected as ALREADY_COMMITTED
    POST_COMMIT = frozenset({COMMITTED, COURIER_SCHEDULED, SHIPPED, COMPLETED})
    # parcel still with the seller; buyer may cancel
    CANCELLABLE = frozenset({PENDING_COMMIT, COMMITTED, COURIER_SCHEDULED})

    ALLOWED = {
        PENDING_COMMIT: {COMMITTED, CANCELLED, REFUNDED},
        COMMITTED: {COURIER_SCHEDULED, SHIPPED, CANCELLED, REFUNDED},
        COURIER_SCHEDULED: {SHIPPED, CANCELLED, REFUNDED},
        SHIPPED: {COMPLETED, REFUNDED},
        COMPLETED: {REFUNDED},
        CANCELLED: set(),
        REFUNDED: set(),
    }

    ALL = frozenset(ALLOWED.keys())


def can_transition(current: str, target: str) -> bool:
    return target in OrderStatus.ALLOWED.get((current or "").strip().lower(), set())


def sources_for(target: str) -> tuple[str, ...]:
    """Every status from which `target` is reachable in one step."""
    return tuple(sorted(s for s, nxt in OrderStatus.ALLOWED.items() if target in nxt))


def is_terminal(status: str) -> bool:
    return (status or "").strip().lower() in OrderStatus.TERMINAL


class EscrowStatus:
    NONE = "NONE"
    HELD = "HELD"
    RELEASED = "RELEASED"
    REFUNDED = "REFUNDED"
    DISPUTED = "DISPUTED"

    ALLOWED = {
        NONE: {NONE, HELD, REFUNDED},
        HELD: {HELD, RELEASED, REFUNDED, DISPUTED},
        RELEASED: {RELEASED},
        REFUNDED: {REFUNDED},
        DISPUTED: {DISPUTED, HELD, REFUNDED},
    }


def can_escrow_transition(current: str, target: str) -> bool:
    cur = (current or EscrowStatus.NONE).strip().upper()
    return (target or "").strip().upper() in EscrowStatus.ALLOWED.get(cur, {cur})
