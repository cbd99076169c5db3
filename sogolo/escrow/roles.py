"""
Actor identity and role checks.

The role claim is resolved once per request by the caller and carried in an
Actor. Every check here is pure: it compares the actor against an already
fetched Transaction and never reads storage.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from sogolo.escrow.models import Transaction, TransactionStatus


class Role(str, Enum):
    """Platform-wide role claim."""

    USER = "user"
    ADMIN = "admin"


class Party(str, Enum):
    """Relationship an actor may hold to a transaction."""

    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


KYC_APPROVED = "approved"


@dataclass(frozen=True)
class Actor:
    """The identified caller of an engine operation."""

    id: str
    role: str = Role.USER.value
    kyc_status: Optional[str] = None

    def __post_init__(self):
        if not self.id:
            raise ValueError("Actor id is required")
        role = self.role.value if isinstance(self.role, Role) else self.role
        if role not in [r.value for r in Role]:
            raise ValueError(f"Invalid role: {self.role}")
        object.__setattr__(self, "role", role)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN.value

    @property
    def kyc_approved(self) -> bool:
        return self.kyc_status == KYC_APPROVED


def is_buyer(actor: Actor, transaction: Transaction) -> bool:
    return actor.id == transaction.buyer_id


def is_seller(actor: Actor, transaction: Transaction) -> bool:
    return transaction.seller_id is not None and actor.id == transaction.seller_id


def is_participant(actor: Actor, transaction: Transaction) -> bool:
    return is_buyer(actor, transaction) or is_seller(actor, transaction)


def can_view(actor: Actor, transaction: Transaction) -> bool:
    """Participants and admins may read a transaction and its records."""
    return actor.is_admin or is_participant(actor, transaction)


def parties_of(actor: Actor, transaction: Transaction) -> FrozenSet[Party]:
    """All relationships the actor holds to the transaction."""
    parties = set()
    if is_buyer(actor, transaction):
        parties.add(Party.BUYER)
    if is_seller(actor, transaction):
        parties.add(Party.SELLER)
    if actor.is_admin:
        parties.add(Party.ADMIN)
    return frozenset(parties)


@dataclass(frozen=True)
class OperationRule:
    """Who may run an operation and from which statuses.

    ``from_statuses`` of None means the operation does not depend on status.
    """

    name: str
    parties: FrozenSet[Party]
    from_statuses: Optional[FrozenSet[TransactionStatus]]
    to_status: Optional[TransactionStatus] = None
    description: str = ""

    def allows_party(self, actor: Actor, transaction: Transaction) -> bool:
        return bool(self.parties & parties_of(actor, transaction))

    def allows_status(self, transaction: Transaction) -> bool:
        if self.from_statuses is None:
            return True
        return transaction.status_enum in self.from_statuses


def _rule(name, parties, from_statuses, to_status=None, description=""):
    return OperationRule(
        name=name,
        parties=frozenset(parties),
        from_statuses=frozenset(from_statuses) if from_statuses is not None else None,
        to_status=to_status,
        description=description,
    )


S = TransactionStatus

# join is absent: it is gated on seller presence, not on a party or status
OPERATION_RULES: Dict[str, OperationRule] = {
    rule.name: rule
    for rule in [
        _rule(
            "submit_product",
            [Party.SELLER],
            [S.CREATED],
            S.PRODUCT_SUBMITTED,
            "Only the seller can submit the product",
        ),
        _rule(
            "approve_product",
            [Party.BUYER],
            [S.PRODUCT_SUBMITTED],
            S.PRODUCT_APPROVED,
            "Only the buyer can approve the product",
        ),
        _rule(
            "reject_product",
            [Party.BUYER],
            [S.PRODUCT_SUBMITTED],
            S.REJECTED,
            "Only the buyer can reject the product",
        ),
        _rule(
            "upload_payment_proof",
            [Party.BUYER],
            [S.PRODUCT_APPROVED, S.PAYMENT_REJECTED],
            S.PAYMENT_UPLOADED,
            "Only the buyer can upload a payment proof",
        ),
        _rule(
            "verify_payment",
            [Party.ADMIN],
            [S.PAYMENT_UPLOADED],
            S.PAYMENT_VERIFIED,
            "Only an admin can verify payments",
        ),
        _rule(
            "reject_payment",
            [Party.ADMIN],
            [S.PAYMENT_UPLOADED],
            S.PAYMENT_REJECTED,
            "Only an admin can reject payments",
        ),
        _rule(
            "set_delivery_details",
            [Party.ADMIN, Party.SELLER],
            None,
            None,
            "Only the seller or an admin can set delivery details",
        ),
        _rule(
            "dispatch",
            [Party.ADMIN, Party.SELLER],
            [S.PAYMENT_VERIFIED],
            S.DISPATCHED,
            "Only the seller or an admin can dispatch",
        ),
        _rule(
            "mark_delivered",
            [Party.BUYER, Party.SELLER, Party.ADMIN],
            [S.DISPATCHED],
            S.PRODUCT_DELIVERED,
            "Only a participant or an admin can mark delivery",
        ),
        _rule(
            "pass_inspection",
            [Party.BUYER, Party.ADMIN],
            [S.PRODUCT_DELIVERED],
            S.INSPECTION_PASSED,
            "Only the buyer or an admin can pass inspection",
        ),
        _rule(
            "fail_inspection",
            [Party.BUYER, Party.ADMIN],
            [S.PRODUCT_DELIVERED],
            S.INSPECTION_FAILED,
            "Only the buyer or an admin can fail inspection",
        ),
        _rule(
            "release_funds",
            [Party.ADMIN],
            [S.INSPECTION_PASSED],
            S.FUNDS_RELEASED,
            "Only an admin can release funds",
        ),
    ]
}

del S


def can_join(actor: Actor, transaction: Transaction) -> bool:
    return not transaction.has_seller and not is_buyer(actor, transaction)


def available_actions(actor: Actor, transaction: Transaction) -> List[str]:
    """Names of the operations the actor could perform right now."""
    actions = []
    if can_join(actor, transaction):
        actions.append("join")
    for rule in OPERATION_RULES.values():
        if rule.allows_party(actor, transaction) and rule.allows_status(transaction):
            actions.append(rule.name)
    return actions
