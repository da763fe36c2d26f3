"""Credit ledger: balance reads, atomic balance mutation and the transaction log."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, NoReturn, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from errors import (
    InsufficientCreditsError,
    LedgerError,
    NotFoundError,
    ServiceUnavailableError,
    ValidationError,
)
from models.credit_package import CreditPackage
from models.credit_transaction import CreditTransaction
from models.user import User

logger = logging.getLogger(__name__)

HISTORY_DEFAULT_LIMIT = 50
HISTORY_MAX_LIMIT = 100

DEFAULT_PACKAGES = (
    {"name": "Starter Pack", "credits": 10, "price": 999, "sort_order": 1},
    {"name": "Pro Pack", "credits": 25, "price": 1999, "sort_order": 2},
    {"name": "Premium Pack", "credits": 50, "price": 3499, "sort_order": 3},
    {"name": "Ultimate Pack", "credits": 100, "price": 5999, "sort_order": 4},
)


def clamp_history_limit(limit: Optional[int]) -> int:
    if limit is None:
        return HISTORY_DEFAULT_LIMIT
    return max(1, min(int(limit), HISTORY_MAX_LIMIT))


def _positive_amount(amount: Any, field: str = "amount") -> int:
    try:
        value = int(amount)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"{field} must be an integer", field=field) from exc
    if value <= 0:
        raise ValidationError(f"{field} must be greater than 0", field=field)
    return value


def serialize_transaction(entry: CreditTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "type": entry.type,
        "amount": entry.amount,
        "balance_after": entry.balance_after,
        "description": entry.description,
        "resume_id": entry.resume_id,
        "payment_id": entry.payment_id,
        "created_at": entry.created_at.isoformat() if entry.created_at else None,
    }


def serialize_package(package: CreditPackage) -> Dict[str, Any]:
    return {
        "id": package.id,
        "name": package.name,
        "credits": package.credits,
        "price": package.price,
        "stripe_price_id": package.stripe_price_id,
        "sort_order": package.sort_order,
    }


class CreditLedger:
    """Spendable balance plus append-only history, bound to one session.

    Mutations are single conditional UPDATE statements so concurrent
    requests for the same user cannot both spend the same credit. The
    balance update and its transaction row are committed together; pass
    ``commit=False`` to stage both inside a caller-owned transaction.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def _read_balance(self, user_id: str) -> Optional[int]:
        result = await self.db.execute(select(User.credits).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def _append_entry(
        self,
        user_id: str,
        *,
        entry_type: str,
        amount: int,
        description: Optional[str],
        resume_id: Optional[str] = None,
        payment_id: Optional[str] = None,
    ) -> int:
        balance_after = await self._read_balance(user_id)
        entry = CreditTransaction(
            user_id=user_id,
            type=entry_type,
            amount=int(amount),
            balance_after=balance_after,
            description=description,
            resume_id=resume_id,
            payment_id=payment_id,
        )
        self.db.add(entry)
        await self.db.flush()
        return int(balance_after or 0)

    async def _fail(self, exc: BaseException, operation: str, user_id: str) -> NoReturn:
        await self.db.rollback()
        if isinstance(exc, (OperationalError, TimeoutError)):
            logger.warning("Ledger %s timed out or lost its connection for user=%s: %s", operation, user_id, exc)
            raise ServiceUnavailableError("Credit ledger is temporarily unavailable. Retry shortly.") from exc
        logger.error("Ledger %s failed for user=%s: %s", operation, user_id, exc)
        raise LedgerError(f"Credit {operation} failed.") from exc

    async def get_balance(self, user_id: str) -> int:
        balance = await self._read_balance(user_id)
        if balance is None:
            raise NotFoundError("User not found")
        return int(balance)

    async def has_sufficient_balance(self, user_id: str, required: int = 1) -> bool:
        return await self.get_balance(user_id) >= int(required)

    async def debit(
        self,
        user_id: str,
        amount: int = 1,
        reason: str = "Resume generation",
        resume_id: Optional[str] = None,
        *,
        commit: bool = True,
    ) -> int:
        """Spend ``amount`` credits and return the post-debit balance."""
        cost = _positive_amount(amount)
        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user_id, User.credits >= cost)
                .values(credits=User.credits - cost, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                available = await self._read_balance(user_id)
                if available is None:
                    raise NotFoundError("User not found")
                raise InsufficientCreditsError(required=cost, available=int(available))

            balance = await self._append_entry(
                user_id,
                entry_type="usage",
                amount=-cost,
                description=reason,
                resume_id=resume_id,
            )
            if commit:
                await self.db.commit()
        except (SQLAlchemyError, TimeoutError) as exc:
            await self._fail(exc, "debit", user_id)

        logger.info("Debited %s credit(s) from user=%s (balance=%s)", cost, user_id, balance)
        return balance

    async def credit(
        self,
        user_id: str,
        amount: int,
        reason: str,
        payment_id: Optional[str] = None,
        *,
        commit: bool = True,
    ) -> int:
        """Add credits; a ``payment_id`` makes the call idempotent per payment."""
        grant = _positive_amount(amount)
        if payment_id and await self.is_payment_applied(payment_id):
            logger.info("Payment %s already applied; skipping credit for user=%s", payment_id, user_id)
            return await self.get_balance(user_id)

        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user_id)
                .values(credits=User.credits + grant, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise NotFoundError("User not found")

            balance = await self._append_entry(
                user_id,
                entry_type="purchase" if payment_id else "bonus",
                amount=grant,
                description=reason,
                payment_id=payment_id,
            )
            if commit:
                await self.db.commit()
        except IntegrityError as exc:
            if not payment_id:
                await self._fail(exc, "credit", user_id)
            if not commit:
                # The caller owns the transaction and its rollback.
                raise
            # A concurrent delivery of the same payment committed first.
            await self.db.rollback()
            logger.info("Payment %s applied concurrently; skipping credit for user=%s", payment_id, user_id)
            return await self.get_balance(user_id)
        except (SQLAlchemyError, TimeoutError) as exc:
            await self._fail(exc, "credit", user_id)

        logger.info("Credited %s credit(s) to user=%s (balance=%s)", grant, user_id, balance)
        return balance

    async def adjust(self, user_id: str, new_balance: int, reason: str = "Admin balance adjustment") -> int:
        """Set the balance to ``new_balance`` through an audited adjustment entry."""
        target = int(new_balance)
        if target < 0:
            raise ValidationError("new_balance must not be negative", field="new_balance")
        current = await self.get_balance(user_id)
        delta = target - current
        if delta == 0:
            return current

        try:
            result = await self.db.execute(
                update(User)
                .where(User.id == user_id, User.credits == current)
                .values(credits=User.credits + delta, updated_at=func.now())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await self.db.rollback()
                raise ServiceUnavailableError("Balance changed during adjustment. Retry.")

            balance = await self._append_entry(
                user_id,
                entry_type="admin_adjustment",
                amount=delta,
                description=reason,
            )
            await self.db.commit()
        except (SQLAlchemyError, TimeoutError) as exc:
            await self._fail(exc, "adjustment", user_id)

        logger.info("Adjusted user=%s balance by %s to %s", user_id, delta, balance)
        return balance

    async def is_payment_applied(self, payment_id: str) -> bool:
        result = await self.db.execute(
            select(CreditTransaction.id).where(CreditTransaction.payment_id == payment_id).limit(1)
        )
        return result.scalar_one_or_none() is not None

    async def history(self, user_id: str, limit: Optional[int] = HISTORY_DEFAULT_LIMIT) -> List[CreditTransaction]:
        result = await self.db.execute(
            select(CreditTransaction)
            .where(CreditTransaction.user_id == user_id)
            .order_by(CreditTransaction.created_at.desc())
            .limit(clamp_history_limit(limit))
        )
        return list(result.scalars().all())

    async def list_packages(self) -> List[CreditPackage]:
        result = await self.db.execute(
            select(CreditPackage)
            .where(CreditPackage.is_active.is_(True))
            .order_by(CreditPackage.sort_order.asc())
        )
        return list(result.scalars().all())

    async def get_package(self, package_id: str) -> CreditPackage:
        result = await self.db.execute(
            select(CreditPackage).where(CreditPackage.id == package_id, CreditPackage.is_active.is_(True))
        )
        package = result.scalar_one_or_none()
        if package is None:
            raise NotFoundError("Credit package not found")
        return package

    async def seed_packages(self) -> bool:
        """Insert the default catalog when the table is empty. Never raises."""
        try:
            existing = await self.db.execute(select(func.count(CreditPackage.id)))
            if int(existing.scalar() or 0) > 0:
                logger.info("Credit packages already exist, skipping seed")
                return False

            price_ids = settings.STRIPE_PRICE_IDS or {}
            for defaults in DEFAULT_PACKAGES:
                self.db.add(
                    CreditPackage(
                        name=defaults["name"],
                        credits=defaults["credits"],
                        price=defaults["price"],
                        sort_order=defaults["sort_order"],
                        stripe_price_id=price_ids.get(defaults["name"]),
                        is_active=True,
                    )
                )
            await self.db.commit()
        except Exception:
            logger.exception("Credit package seeding failed; continuing startup")
            try:
                await self.db.rollback()
            except SQLAlchemyError as rollback_exc:
                logger.warning("Rollback after failed seed also failed: %s", rollback_exc)
            return False

        logger.info("Seeded %s credit packages", len(DEFAULT_PACKAGES))
        return True

    async def stats(self) -> Dict[str, int]:
        result = await self.db.execute(
            select(CreditTransaction.type, func.coalesce(func.sum(CreditTransaction.amount), 0))
            .group_by(CreditTransaction.type)
        )
        totals = {str(row[0]): int(row[1] or 0) for row in result.all()}
        purchased = totals.get("purchase", 0)
        used = totals.get("usage", 0)
        return {
            "total_purchased": purchased,
            "total_used": abs(used),
            "net_credits": purchased + used,
            "total_bonus": totals.get("bonus", 0),
            "total_admin_adjustment": totals.get("admin_adjustment", 0),
        }

    async def reconcile(self, user_id: str) -> Dict[str, int]:
        """Compare the stored balance with the signup grant plus the transaction log."""
        balance = await self.get_balance(user_id)
        result = await self.db.execute(
            select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
        )
        ledger_total = int(result.scalar() or 0)
        expected = int(settings.SIGNUP_CREDITS) + ledger_total
        drift = balance - expected
        if drift:
            logger.warning("Ledger drift for user=%s: balance=%s expected=%s", user_id, balance, expected)
        return {
            "balance": balance,
            "ledger_total": ledger_total,
            "expected_balance": expected,
            "drift": drift,
        }
