"""
Manual payments and the approval state machine.

Submission creates a pending Payment. An admin later moves it to approved or
rejected. The decision of what a status change must do is made by
plan_transition(), a pure function of (current status, requested status,
note). PaymentEffectRunner then carries the effects out:

- effects in TRANSACTIONAL_EFFECTS (status write, access grant) commit
  together, so a payment is never left approved without the grant
- INIT_PROGRESS runs next and is retried; it never revokes access
- the remaining effects are best effort (broadcast, notification, email)

Re-applying the status a payment already has produces no effects besides
storing the note. The status write is a compare-and-set on the previous
status, so of two concurrent approvals only one runs the effects.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

from sqlalchemy import func, or_, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .database import utcnow
from .enrollment import UserNotFound, find_user_by_email, grant_course_access, normalize_email
from .errors import (
    CourseNotFoundError,
    DuplicateTransactionError,
    InvalidStatusError,
    PaymentNotFoundError,
    ProgressInitError,
    UserNotFoundError,
)
from .mailer import course_access_email, payment_rejected_email
from .models import Course, NotificationType, Payment, PaymentStatus, Progress, User
from .progress import initialize_progress
from .realtime import ADMIN_ROOM, user_room
from .schemas import PaymentCreate

logger = logging.getLogger(__name__)

SETTABLE_STATUSES = (
    PaymentStatus.APPROVED.value,
    PaymentStatus.REJECTED.value,
    PaymentStatus.PENDING.value,
)
FROZEN_STATUSES = (PaymentStatus.REFUNDED.value, PaymentStatus.CANCELLED.value)

COURSE_ACCESS_EVENT = "courseAccessUpdated"
NEW_PAYMENT_EVENT = "newPayment"


class Effect(str, Enum):
    RECORD_NOTE = "record_note"
    RECORD_STATUS = "record_status"
    GRANT_ACCESS = "grant_access"
    INIT_PROGRESS = "init_progress"
    BROADCAST_ACCESS = "broadcast_access"
    NOTIFY_APPROVED = "notify_approved"
    NOTIFY_REJECTED = "notify_rejected"


TRANSACTIONAL_EFFECTS = frozenset({Effect.RECORD_NOTE, Effect.RECORD_STATUS, Effect.GRANT_ACCESS})
BEST_EFFORT_EFFECTS = frozenset({Effect.BROADCAST_ACCESS, Effect.NOTIFY_APPROVED, Effect.NOTIFY_REJECTED})


@dataclass(frozen=True)
class Transition:
    previous: str
    status: str
    effects: Tuple[Effect, ...]

    @property
    def changed(self) -> bool:
        return self.previous != self.status


def plan_transition(current: str, requested: str, note: Optional[str] = None) -> Transition:
    """Decide the effects of setting a payment from current to requested status."""
    if requested not in SETTABLE_STATUSES:
        raise InvalidStatusError()

    if current == requested:
        return Transition(current, requested, (Effect.RECORD_NOTE,) if note else ())

    if current in FROZEN_STATUSES:
        raise InvalidStatusError(f"A {current} payment cannot be changed")

    effects = [Effect.RECORD_STATUS]
    if requested == PaymentStatus.APPROVED.value:
        effects += [
            Effect.GRANT_ACCESS,
            Effect.INIT_PROGRESS,
            Effect.BROADCAST_ACCESS,
            Effect.NOTIFY_APPROVED,
        ]
    elif requested == PaymentStatus.REJECTED.value:
        effects.append(Effect.NOTIFY_REJECTED)

    return Transition(current, requested, tuple(effects))


class TransitionConflict(Exception):
    """The payment left its previous status before our write landed."""


@dataclass
class EffectContext:
    payment: Payment
    transition: Transition
    admin_note: Optional[str] = None
    admin_name: Optional[str] = None
    user: Optional[User] = None


class PaymentEffectRunner:
    def __init__(
        self,
        db: Session,
        dispatcher,
        allow_user_upsert: Optional[bool] = None,
        progress_attempts: Optional[int] = None,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.allow_user_upsert = config.ALLOW_ENROLLMENT_UPSERT if allow_user_upsert is None else allow_user_upsert
        self.progress_attempts = max(1, progress_attempts or config.PROGRESS_INIT_ATTEMPTS)
        self._handlers = {
            Effect.RECORD_NOTE: self._record_note,
            Effect.RECORD_STATUS: self._record_status,
            Effect.GRANT_ACCESS: self._grant_access,
            Effect.INIT_PROGRESS: self._init_progress,
            Effect.BROADCAST_ACCESS: self._broadcast_access,
            Effect.NOTIFY_APPROVED: self._notify_approved,
            Effect.NOTIFY_REJECTED: self._notify_rejected,
        }

    async def run(self, payment: Payment, transition: Transition, admin_note=None, admin_name=None) -> Payment:
        ctx = EffectContext(payment, transition, admin_note, admin_name)
        transactional = [e for e in transition.effects if e in TRANSACTIONAL_EFFECTS]
        followups = [e for e in transition.effects if e not in TRANSACTIONAL_EFFECTS]

        try:
            for effect in transactional:
                await self._handlers[effect](ctx)
            self.db.commit()
        except TransitionConflict:
            self.db.rollback()
            self.db.refresh(payment)
            logger.info(
                "Payment %s moved to %s concurrently; skipping %s -> %s effects",
                payment.id, payment.status, transition.previous, transition.status,
            )
            return payment
        except Exception:
            self.db.rollback()
            raise

        self.db.refresh(payment)

        progress_error = None
        for effect in followups:
            if effect in BEST_EFFORT_EFFECTS:
                try:
                    await self._handlers[effect](ctx)
                except Exception:
                    logger.exception("Effect %s for payment %s failed", effect.value, payment.id)
            else:
                try:
                    await self._handlers[effect](ctx)
                except SQLAlchemyError as exc:
                    # the approval is committed; the rest still has to go out
                    self.db.rollback()
                    progress_error = exc

        if progress_error is not None:
            logger.error("Payment %s approved but progress init failed: %s", payment.id, progress_error)
            raise ProgressInitError() from progress_error
        return payment

    # -------------------- handlers --------------------

    async def _record_note(self, ctx: EffectContext):
        ctx.payment.admin_note = ctx.admin_note

    async def _record_status(self, ctx: EffectContext):
        now = utcnow()
        values = {"status": ctx.transition.status, "processed_at": now, "updated_at": now}
        if ctx.admin_note is not None:
            values["admin_note"] = ctx.admin_note

        if ctx.transition.status == PaymentStatus.APPROVED.value:
            values.update(approved_by=ctx.admin_name, approved_at=now)
        elif ctx.transition.status == PaymentStatus.REJECTED.value:
            values.update(rejected_by=ctx.admin_name, rejected_at=now, rejection_reason=ctx.admin_note)

        result = self.db.execute(
            update(Payment)
            .where(Payment.id == ctx.payment.id, Payment.status == ctx.transition.previous)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            raise TransitionConflict()

    async def _grant_access(self, ctx: EffectContext):
        payment = ctx.payment
        grant = grant_course_access(
            self.db,
            payment.user_email,
            payment.course_id,
            allow_upsert=self.allow_user_upsert,
            name=payment.user_name,
            phone=payment.user_phone,
        )
        if isinstance(grant, UserNotFound):
            raise UserNotFoundError(f"No account registered for {grant.email}; course access not granted")

        ctx.user = grant.user
        if payment.user_id is None:
            payment.user_id = grant.user.id

    async def _init_progress(self, ctx: EffectContext):
        payment = ctx.payment
        user = ctx.user or find_user_by_email(self.db, payment.user_email)
        if user is None:
            logger.warning("Payment %s: no account for %s, progress not initialized", payment.id, payment.user_email)
            return

        for attempt in range(1, self.progress_attempts + 1):
            try:
                initialize_progress(self.db, user.id, payment.course_id)
                return
            except SQLAlchemyError:
                logger.warning(
                    "Progress init for payment %s failed (attempt %d/%d)",
                    payment.id, attempt, self.progress_attempts, exc_info=True,
                )
                if attempt == self.progress_attempts:
                    raise

    async def _broadcast_access(self, ctx: EffectContext):
        payment = ctx.payment
        payload = {
            "type": COURSE_ACCESS_EVENT,
            "email": payment.user_email,
            "courseId": payment.course_id,
            "courseName": payment.course_title,
            "paymentId": payment.id,
            "userName": payment.user_name,
            "timestamp": utcnow().isoformat() + "Z",
        }
        self.dispatcher.broadcast_event(COURSE_ACCESS_EVENT, payload, [ADMIN_ROOM, user_room(payment.user_email)])

    async def _notify_approved(self, ctx: EffectContext):
        payment = ctx.payment
        user = ctx.user or find_user_by_email(self.db, payment.user_email)
        course = self.db.get(Course, payment.course_id)
        slug = course.slug if course else str(payment.course_id)

        await self.dispatcher.notify(
            user,
            NotificationType.PAYMENT_APPROVED.value,
            "Payment approved!",
            f'Your payment for "{payment.course_title}" has been approved.',
            data={"paymentId": payment.id, "courseId": payment.course_id},
            channels={"email": True},
            priority="high",
            email_message=course_access_email(payment.user_name, payment.course_title, slug),
            email_to=payment.user_email,
        )

    async def _notify_rejected(self, ctx: EffectContext):
        payment = ctx.payment
        email_message = payment_rejected_email(payment.user_name, payment.course_title, ctx.admin_note)
        user = find_user_by_email(self.db, payment.user_email)

        if user is None:
            await self.dispatcher.send_email(payment.user_email, *email_message)
            return

        reason = f" Reason: {ctx.admin_note}" if ctx.admin_note else ""
        await self.dispatcher.notify(
            user,
            NotificationType.PAYMENT_REJECTED.value,
            "Payment rejected",
            f'Your payment for "{payment.course_title}" was not approved.{reason}',
            data={"paymentId": payment.id, "courseId": payment.course_id},
            channels={"email": True},
            email_message=email_message,
        )


# -------------------- OPERATIONS --------------------

async def submit_payment(
    db: Session,
    dispatcher,
    data: PaymentCreate,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Payment:
    course = db.get(Course, data.course.id)
    if course is None:
        raise CourseNotFoundError()

    transaction_id = data.transaction_id.strip()
    if db.query(Payment.id).filter(Payment.transaction_id == transaction_id).first():
        raise DuplicateTransactionError()

    email = normalize_email(data.user.email)
    payer = find_user_by_email(db, email)
    payment = Payment(
        user_id=payer.id if payer else None,
        user_name=data.user.name,
        user_email=email,
        user_phone=data.user.phone,
        course_id=course.id,
        course_title=course.title,
        course_price=course.price,
        amount=data.amount,
        currency=data.currency,
        payment_method=data.payment_method.value,
        transaction_id=transaction_id,
        status=PaymentStatus.PENDING.value,
        notes=data.notes,
        ip_address=ip_address,
        user_agent=(user_agent or "")[:255] or None,
    )

    db.add(payment)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        # lost the race against a concurrent submission with the same id
        if db.query(Payment.id).filter(Payment.transaction_id == transaction_id).first():
            raise DuplicateTransactionError()
        raise
    db.refresh(payment)
    logger.info("Payment %s submitted by %s for course %s", payment.id, email, course.id)

    await dispatcher.notify(
        None,
        NotificationType.NEW_PAYMENT.value,
        "New payment",
        f"{payment.user_name} submitted a payment for \"{payment.course_title}\".",
        data={"paymentId": payment.id, "courseId": course.id},
    )
    dispatcher.broadcast_event(
        NEW_PAYMENT_EVENT,
        {"paymentId": payment.id, "timestamp": utcnow().isoformat() + "Z"},
        [ADMIN_ROOM],
    )
    return payment


def get_payment(db: Session, payment_id: int) -> Payment:
    payment = db.get(Payment, payment_id)
    if payment is None:
        raise PaymentNotFoundError()
    return payment


def list_payments(
    db: Session,
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 10,
    search: Optional[str] = None,
):
    page = max(page, 1)
    limit = min(max(limit, 1), 100)

    query = db.query(Payment)
    if status:
        if status not in {s.value for s in PaymentStatus}:
            raise InvalidStatusError(f"Unknown status filter '{status}'")
        query = query.filter(Payment.status == status)

    if search and search.strip():
        like = f"%{search.strip()}%"
        query = query.filter(or_(
            Payment.user_name.ilike(like),
            Payment.user_email.ilike(like),
            Payment.transaction_id.ilike(like),
        ))

    total = query.with_entities(func.count(Payment.id)).scalar()
    payments = (
        query.order_by(Payment.created_at.desc(), Payment.id.desc())
        .offset((page - 1) * limit)
        .limit(limit)
        .all()
    )

    return {
        "payments": [payment_to_dict(p) for p in payments],
        "total": total,
        "page": page,
        "pagination": {
            "current": page,
            "pages": (total + limit - 1) // limit,
            "total": total,
            "limit": limit,
        },
    }


def progress_missing(db: Session, payment: Payment) -> bool:
    user = find_user_by_email(db, payment.user_email)
    if user is None:
        return False
    return db.query(Progress.id).filter_by(user_id=user.id, course_id=payment.course_id).first() is None


async def set_payment_status(
    db: Session,
    dispatcher,
    payment_id: int,
    new_status: str,
    admin_note: Optional[str] = None,
    admin_name: Optional[str] = None,
    runner: Optional[PaymentEffectRunner] = None,
) -> Payment:
    payment = get_payment(db, payment_id)
    transition = plan_transition(payment.status, new_status, admin_note)

    if (
        not transition.changed
        and transition.status == PaymentStatus.APPROVED.value
        and progress_missing(db, payment)
    ):
        # an earlier approval committed but could not set up progress
        transition = Transition(transition.previous, transition.status, transition.effects + (Effect.INIT_PROGRESS,))

    if not transition.effects:
        return payment

    runner = runner or PaymentEffectRunner(db, dispatcher)
    payment = await runner.run(payment, transition, admin_note, admin_name)

    if transition.changed:
        logger.info("Payment %s: %s -> %s by %s", payment.id, transition.previous, payment.status, admin_name)
    return payment


def payment_stats(db: Session):
    counts = dict(
        db.query(Payment.status, func.count(Payment.id)).group_by(Payment.status).all()
    )
    return {
        "totalPayments": sum(counts.values()),
        "pendingPayments": counts.get(PaymentStatus.PENDING.value, 0),
        "approvedPayments": counts.get(PaymentStatus.APPROVED.value, 0),
        "rejectedPayments": counts.get(PaymentStatus.REJECTED.value, 0),
    }


def payment_to_dict(p: Payment) -> dict:
    return {
        "id": p.id,
        "user": {"id": p.user_id, "name": p.user_name, "email": p.user_email, "phone": p.user_phone},
        "course": {"id": p.course_id, "title": p.course_title, "price": p.course_price},
        "amount": p.amount,
        "currency": p.currency,
        "paymentMethod": p.payment_method,
        "transactionId": p.transaction_id,
        "status": p.status,
        "isApproved": p.status == PaymentStatus.APPROVED.value,
        "isPending": p.status == PaymentStatus.PENDING.value,
        "adminNote": p.admin_note,
        "processedAt": p.processed_at,
        "approvedBy": {"adminName": p.approved_by, "approvedAt": p.approved_at} if p.approved_at else None,
        "rejectedBy": (
            {"adminName": p.rejected_by, "rejectedAt": p.rejected_at, "reason": p.rejection_reason}
            if p.rejected_at else None
        ),
        "notes": p.notes,
        "ipAddress": p.ip_address,
        "userAgent": p.user_agent,
        "createdAt": p.created_at,
        "updatedAt": p.updated_at,
    }
