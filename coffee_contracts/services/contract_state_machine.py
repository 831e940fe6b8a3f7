"""Contract state machine: pure logic, no DB dependency.

Defines the contract lifecycle statuses, the actions each party can take,
the typed actors, the transition table and helpers for validation and
action discovery. Persistence lives in ``coffee_contracts.services.contract``.
"""

from enum import StrEnum


class ContractStatus(StrEnum):
    PENDING_SELLER = "pending_seller"
    PENDING_BUYER_PAYMENT = "pending_buyer_payment"
    PENDING_COMMISSION_CONFIRM = "pending_commission_confirm"
    AWAITING_SELLER_SIGN = "awaiting_seller_sign"
    AWAITING_BUYER_SIGN = "awaiting_buyer_sign"
    AWAITING_PLATFORM_SIGN = "awaiting_platform_sign"
    AWAITING_SELLER_PAYMENT = "awaiting_seller_payment"
    COMPLETED = "completed"
    SELLER_REJECTED = "seller_rejected"
    REFUND_PENDING = "refund_pending"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class ContractAction(StrEnum):
    APPROVE = "approve"
    REJECT = "reject"
    PAY_COMMISSION = "pay_commission"
    CONFIRM_COMMISSION = "confirm_commission"
    SIGN = "sign"
    CONFIRM_SELLER_PAYMENT = "confirm_seller_payment"
    REQUEST_REFUND = "request_refund"
    COMPLETE_REFUND = "complete_refund"
    DENY_REFUND = "deny_refund"
    EXPIRE = "expire"


class Actor(StrEnum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"
    SYSTEM = "system"


class PaymentMethod(StrEnum):
    BANK_TRANSFER = "bank_transfer"
    ONLINE_PAYMENT = "online_payment"


class ContractError(Exception):
    """Base class for contract lifecycle errors."""


class InvalidTransitionError(ContractError):
    """Raised when an action is not allowed from the current status or for this actor."""

    def __init__(self, current: str, action: str, actor: str | None = None, hint: str | None = None):
        self.current = current
        self.action = action
        self.actor = actor
        self.hint = hint
        msg = f"Invalid transition: {current} + {action}"
        if actor:
            msg += f" by {actor}"
        if hint:
            msg += f" ({hint})"
        super().__init__(msg)


class ContractValidationError(ContractError):
    """Raised when a required input is missing or malformed. Nothing was changed."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class ConcurrencyConflictError(ContractError):
    """Raised when the contract changed between read and write."""

    def __init__(self, contract_id: int, expected_version: int | None = None):
        self.contract_id = contract_id
        self.expected_version = expected_version
        super().__init__(
            f"Contract {contract_id} was modified concurrently; reload and retry"
        )


class DependencyFailureError(ContractError):
    """A post-transition handler failed. The transition itself stands."""

    def __init__(self, contract_id: int, handler: str, cause: BaseException):
        self.contract_id = contract_id
        self.handler = handler
        self.cause = cause
        super().__init__(f"Handler {handler!r} failed for contract {contract_id}: {cause}")


# Mapping: (current_status, action) → (new_status, frozenset_of_allowed_actors)
TRANSITIONS: dict[tuple[ContractStatus, ContractAction], tuple[ContractStatus, frozenset[Actor]]] = {
    # Seller decision
    (ContractStatus.PENDING_SELLER, ContractAction.APPROVE): (
        ContractStatus.PENDING_BUYER_PAYMENT,
        frozenset({Actor.SELLER}),
    ),
    (ContractStatus.PENDING_SELLER, ContractAction.REJECT): (
        ContractStatus.SELLER_REJECTED,
        frozenset({Actor.SELLER}),
    ),
    # Commission; bank transfers wait for admin, see COMMISSION_TARGETS
    (ContractStatus.PENDING_BUYER_PAYMENT, ContractAction.PAY_COMMISSION): (
        ContractStatus.PENDING_COMMISSION_CONFIRM,
        frozenset({Actor.BUYER}),
    ),
    (ContractStatus.PENDING_COMMISSION_CONFIRM, ContractAction.CONFIRM_COMMISSION): (
        ContractStatus.AWAITING_SELLER_SIGN,
        frozenset({Actor.ADMIN}),
    ),
    # Signature chain: seller → buyer → platform
    (ContractStatus.AWAITING_SELLER_SIGN, ContractAction.SIGN): (
        ContractStatus.AWAITING_BUYER_SIGN,
        frozenset({Actor.SELLER}),
    ),
    (ContractStatus.AWAITING_SELLER_SIGN, ContractAction.REJECT): (
        ContractStatus.SELLER_REJECTED,
        frozenset({Actor.SELLER}),
    ),
    (ContractStatus.AWAITING_BUYER_SIGN, ContractAction.SIGN): (
        ContractStatus.AWAITING_PLATFORM_SIGN,
        frozenset({Actor.BUYER}),
    ),
    (ContractStatus.AWAITING_PLATFORM_SIGN, ContractAction.SIGN): (
        ContractStatus.AWAITING_SELLER_PAYMENT,
        frozenset({Actor.ADMIN}),
    ),
    # Payout
    (ContractStatus.AWAITING_SELLER_PAYMENT, ContractAction.CONFIRM_SELLER_PAYMENT): (
        ContractStatus.COMPLETED,
        frozenset({Actor.BUYER}),
    ),
    # Refund branch
    (ContractStatus.SELLER_REJECTED, ContractAction.REQUEST_REFUND): (
        ContractStatus.REFUND_PENDING,
        frozenset({Actor.BUYER}),
    ),
    (ContractStatus.REFUND_PENDING, ContractAction.COMPLETE_REFUND): (
        ContractStatus.REFUNDED,
        frozenset({Actor.ADMIN}),
    ),
    (ContractStatus.REFUND_PENDING, ContractAction.DENY_REFUND): (
        ContractStatus.CANCELLED,
        frozenset({Actor.ADMIN}),
    ),
    # Seller response deadline
    (ContractStatus.PENDING_SELLER, ContractAction.EXPIRE): (
        ContractStatus.SELLER_REJECTED,
        frozenset({Actor.SYSTEM}),
    ),
    (ContractStatus.AWAITING_SELLER_SIGN, ContractAction.EXPIRE): (
        ContractStatus.SELLER_REJECTED,
        frozenset({Actor.SYSTEM}),
    ),
}

COMMISSION_TARGETS: dict[PaymentMethod, ContractStatus] = {
    PaymentMethod.ONLINE_PAYMENT: ContractStatus.AWAITING_SELLER_SIGN,
    PaymentMethod.BANK_TRANSFER: ContractStatus.PENDING_COMMISSION_CONFIRM,
}

# Which signature slot the current status is waiting for
SIGNATURE_SLOTS: dict[ContractStatus, Actor] = {
    ContractStatus.AWAITING_SELLER_SIGN: Actor.SELLER,
    ContractStatus.AWAITING_BUYER_SIGN: Actor.BUYER,
    ContractStatus.AWAITING_PLATFORM_SIGN: Actor.ADMIN,
}

TERMINAL_STATUSES: frozenset[ContractStatus] = frozenset({
    ContractStatus.COMPLETED,
    ContractStatus.REFUNDED,
    ContractStatus.CANCELLED,
})

# Statuses the seller response deadline applies to
DEADLINE_STATUSES: frozenset[ContractStatus] = frozenset({
    ContractStatus.PENDING_SELLER,
    ContractStatus.AWAITING_SELLER_SIGN,
})

# Statuses that wait on a platform admin
ADMIN_QUEUE_STATUSES: frozenset[ContractStatus] = frozenset({
    ContractStatus.PENDING_COMMISSION_CONFIRM,
    ContractStatus.AWAITING_PLATFORM_SIGN,
    ContractStatus.REFUND_PENDING,
})

# Happy-path order, used for progress display
STAGE_ORDER: tuple[ContractStatus, ...] = (
    ContractStatus.PENDING_SELLER,
    ContractStatus.PENDING_BUYER_PAYMENT,
    ContractStatus.PENDING_COMMISSION_CONFIRM,
    ContractStatus.AWAITING_SELLER_SIGN,
    ContractStatus.AWAITING_BUYER_SIGN,
    ContractStatus.AWAITING_PLATFORM_SIGN,
    ContractStatus.AWAITING_SELLER_PAYMENT,
    ContractStatus.COMPLETED,
)

_WAITING_ON: dict[ContractStatus, Actor] = {
    ContractStatus.PENDING_SELLER: Actor.SELLER,
    ContractStatus.PENDING_BUYER_PAYMENT: Actor.BUYER,
    ContractStatus.PENDING_COMMISSION_CONFIRM: Actor.ADMIN,
    ContractStatus.AWAITING_SELLER_SIGN: Actor.SELLER,
    ContractStatus.AWAITING_BUYER_SIGN: Actor.BUYER,
    ContractStatus.AWAITING_PLATFORM_SIGN: Actor.ADMIN,
    ContractStatus.AWAITING_SELLER_PAYMENT: Actor.BUYER,
    ContractStatus.SELLER_REJECTED: Actor.BUYER,
    ContractStatus.REFUND_PENDING: Actor.ADMIN,
}


def waiting_on(current: str) -> Actor | None:
    """Return the party whose move it is, or None for terminal statuses."""
    try:
        return _WAITING_ON.get(ContractStatus(current))
    except ValueError:
        return None


def validate_transition(
    current: str,
    action: str,
    actor: str,
    *,
    payment_method: str | None = None,
) -> ContractStatus:
    """Validate and return the new status for a transition.

    ``payment_method`` picks the branch of ``pay_commission``.
    Raises InvalidTransitionError if the transition is not allowed.
    """
    try:
        current_status = ContractStatus(current)
        contract_action = ContractAction(action)
        actor_enum = Actor(actor)
    except ValueError:
        raise InvalidTransitionError(current, action, actor)

    key = (current_status, contract_action)
    if key not in TRANSITIONS:
        raise InvalidTransitionError(current, action, actor, _status_hint(current_status))

    new_status, allowed_actors = TRANSITIONS[key]
    if actor_enum not in allowed_actors:
        raise InvalidTransitionError(current, action, actor, _status_hint(current_status))

    if contract_action == ContractAction.PAY_COMMISSION and payment_method is not None:
        try:
            new_status = COMMISSION_TARGETS[PaymentMethod(payment_method)]
        except ValueError:
            raise InvalidTransitionError(current, action, actor, f"unknown payment method {payment_method}")

    return new_status


def get_available_actions(
    current: str,
    actor: str,
    *,
    commission_paid: bool = False,
) -> list[str]:
    """Return the action names the actor may take on a contract in ``current``.

    ``request_refund`` is only offered when a commission was actually paid.
    """
    try:
        current_status = ContractStatus(current)
        actor_enum = Actor(actor)
    except ValueError:
        return []

    if current_status in TERMINAL_STATUSES:
        return []

    actions: list[str] = []
    for (status, action), (_, allowed_actors) in TRANSITIONS.items():
        if status != current_status or actor_enum not in allowed_actors:
            continue
        if action == ContractAction.REQUEST_REFUND and not commission_paid:
            continue
        actions.append(action.value)

    return actions


def _status_hint(status: ContractStatus) -> str | None:
    party = _WAITING_ON.get(status)
    if status in TERMINAL_STATUSES:
        return "contract is closed"
    if party is None:
        return None
    return f"waiting for the {party.value}"
