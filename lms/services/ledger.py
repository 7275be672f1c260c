"""
Balance Ledger
Authoritative day counts per (user, leave type, year).

Every write is a compare-and-swap on the row's ``revision`` so that approval
finalisation and the scheduled jobs never lose each other's updates.
"""
import logging
from datetime import datetime
from typing import Callable, Optional

from beanie import PydanticObjectId
from beanie.operators import Set
from pydantic import BaseModel
from pymongo.errors import DuplicateKeyError, PyMongoError

from lms.config import settings
from lms.core.exceptions import ConflictingUpdate, InsufficientBalance, InternalError
from lms.models.balance import Balance
from lms.models.leave import LeaveType
from lms.models.policy import PolicyRules
from lms.services.policy import PolicyService, policy_service

logger = logging.getLogger(__name__)

MAX_RETRIES = 5

# Earned Leave above its carry-forward limit spills into this bucket
OVERFLOW_TYPE = LeaveType.SPECIAL


class OverflowResult(BaseModel):
    excess: float = 0.0
    transferred: float = 0.0
    dropped: float = 0.0
    el_after: float = 0.0
    special_after: float = 0.0


class AccrualResult(BaseModel):
    accrued: float = 0.0
    already_accrued: bool = False
    balance_after: float = 0.0
    overflow: Optional[OverflowResult] = None


class LapseResult(BaseModel):
    lapsed: float = 0.0
    balance_before: float = 0.0
    balance_after: float = 0.0
    overflow: Optional[OverflowResult] = None


def _apply(balance: Balance, used: float = 0.0, accrued: float = 0.0) -> None:
    """Move used/accrued and keep closing in step with them"""
    balance.used += used
    balance.accrued += accrued
    if balance.closing_overridden:
        balance.closing += accrued - used
    else:
        balance.closing = balance.computed_closing


def _reopen(balance: Balance, opening: float) -> None:
    """Move the opening figure and carry closing along with it"""
    delta = opening - balance.opening
    if not delta:
        return
    balance.opening = opening
    if balance.closing_overridden:
        balance.closing += delta
    else:
        balance.closing = balance.computed_closing


class BalanceLedger:
    """Reads and conditional writes over the balances collection"""

    def __init__(self, policies: PolicyService = policy_service, special_cap: float = settings.SPECIAL_LEAVE_CAP):
        self.policies = policies
        self.special_cap = special_cap

    async def find(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int) -> Optional[Balance]:
        return await Balance.find_one(
            Balance.user_id == user_id,
            Balance.leave_type == leave_type,
            Balance.year == year,
        )

    async def _carried_forward(self, user_id: PydanticObjectId, rules: PolicyRules, year: int) -> float:
        previous = await self.find(user_id, rules.leave_type, year - 1)
        if previous is None:
            return 0.0
        opening = max(previous.remaining, 0.0)
        if rules.carry_forward_limit is not None:
            opening = min(opening, rules.carry_forward_limit)
        return opening

    async def peek(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int) -> Balance:
        """Current state of a row without writing anything

        A missing row comes back unsaved with the opening it would get. For
        carry-forward types the opening is always derived from the previous
        year's remaining days, so accruals and debits booked against that year
        after this row was opened still flow through.
        """
        rules = await self.policies.get_rules(leave_type)
        balance = await self.find(user_id, leave_type, year)
        if balance is None:
            if rules.carry_forward_eligible:
                opening = await self._carried_forward(user_id, rules, year)
            elif rules.annual_cap is not None and not rules.uncapped:
                opening = float(rules.annual_cap)
            else:
                opening = 0.0
            return Balance(user_id=user_id, leave_type=leave_type, year=year, opening=opening, closing=opening)

        if rules.carry_forward_eligible and not balance.opening_overridden:
            _reopen(balance, await self._carried_forward(user_id, rules, year))
        return balance

    async def ensure_balance(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int) -> Balance:
        """Fetch the row, opening it for the year on first use"""
        balance = await self.peek(user_id, leave_type, year)
        if balance.id is not None:
            return balance

        try:
            await balance.insert()
        except DuplicateKeyError:
            # opened concurrently by another caller
            return await self.peek(user_id, leave_type, year)
        except PyMongoError as e:
            raise InternalError(f"Could not open {leave_type.value} balance for {year}") from e
        logger.debug("Opened %s balance for user %s year %d at %.1f", leave_type.value, user_id, year, balance.opening)
        return balance

    async def get_remaining(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int) -> float:
        balance = await self.peek(user_id, leave_type, year)
        return balance.remaining

    async def _mutate(
        self,
        user_id: PydanticObjectId,
        leave_type: LeaveType,
        year: int,
        mutate: Callable[[Balance], None],
    ) -> Balance:
        for attempt in range(MAX_RETRIES):
            balance = await self.ensure_balance(user_id, leave_type, year)
            expected = balance.revision
            mutate(balance)
            balance.revision = expected + 1
            balance.updated_at = datetime.utcnow()
            try:
                result = await Balance.find_one(
                    Balance.id == balance.id,
                    Balance.revision == expected,
                ).update(Set({
                    "opening": balance.opening,
                    "accrued": balance.accrued,
                    "used": balance.used,
                    "closing": balance.closing,
                    "closing_overridden": balance.closing_overridden,
                    "last_accrual_month": balance.last_accrual_month,
                    "revision": balance.revision,
                    "updated_at": balance.updated_at,
                }))
            except PyMongoError as e:
                logger.exception("Balance write failed for user %s %s %d", user_id, leave_type.value, year)
                raise InternalError("Balance update failed") from e

            if result.matched_count:
                return balance
            logger.warning(
                "Balance %s changed concurrently, retrying (attempt %d)", balance.id, attempt + 1
            )
        raise ConflictingUpdate("Balance kept changing concurrently, retry the operation")

    async def debit(
        self,
        user_id: PydanticObjectId,
        leave_type: LeaveType,
        year: int,
        days: float,
        enforce: bool = True,
    ) -> Balance:
        """Consume days; fails when the balance would go negative unless the type is uncapped

        ``enforce=False`` skips the check; it is only used to put back days
        whose credit has to be undone.
        """
        rules = await self.policies.get_rules(leave_type)

        def mutate(balance: Balance) -> None:
            if enforce and not rules.uncapped and balance.remaining - days < 0:
                raise InsufficientBalance(
                    f"Only {balance.remaining:g} {leave_type.value} days remain",
                    {"requested": days, "remaining": balance.remaining},
                )
            _apply(balance, used=days)

        balance = await self._mutate(user_id, leave_type, year, mutate)
        logger.info("Debited %g %s days from user %s (%d)", days, leave_type.value, user_id, year)
        return balance

    async def credit(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int, days: float) -> Balance:
        """Give back previously used days (cancellation, recall, shortening)

        Earned Leave is not capped here so that a credit can always be undone
        by an unenforced debit; callers run apply_overflow once they commit.
        """

        def mutate(balance: Balance) -> None:
            reversed_days = min(days, balance.used)
            _apply(balance, used=-reversed_days, accrued=days - reversed_days)

        balance = await self._mutate(user_id, leave_type, year, mutate)
        logger.info("Credited %g %s days to user %s (%d)", days, leave_type.value, user_id, year)
        return balance

    async def accrue(
        self,
        user_id: PydanticObjectId,
        year: int,
        month_key: str,
        days: float = settings.EL_ACCRUAL_PER_MONTH,
    ) -> AccrualResult:
        """Add one month's Earned Leave; a month is only ever accrued once"""
        already = False

        def mutate(balance: Balance) -> None:
            nonlocal already
            already = balance.last_accrual_month == month_key
            if already:
                return
            _apply(balance, accrued=days)
            balance.last_accrual_month = month_key

        balance = await self._mutate(user_id, LeaveType.EARNED, year, mutate)
        if already:
            return AccrualResult(already_accrued=True, balance_after=balance.remaining)

        overflow = await self.apply_overflow(user_id, year)
        after = overflow.el_after if overflow else balance.remaining
        return AccrualResult(accrued=days, balance_after=after, overflow=overflow)

    async def apply_overflow(self, user_id: PydanticObjectId, year: int) -> Optional[OverflowResult]:
        """Cap Earned Leave at its carry-forward limit and move the excess to SPECIAL"""
        rules = await self.policies.get_rules(LeaveType.EARNED)
        limit = rules.carry_forward_limit
        if limit is None:
            return None

        excess = 0.0

        def cap(balance: Balance) -> None:
            nonlocal excess
            excess = balance.remaining - limit
            if excess <= 0:
                return
            balance.closing = float(limit)
            balance.closing_overridden = True

        el = await self._mutate(user_id, LeaveType.EARNED, year, cap)
        if excess <= 0:
            return None

        transferred = 0.0

        def receive(balance: Balance) -> None:
            nonlocal transferred
            transferred = max(0.0, min(excess, self.special_cap - balance.remaining))
            if transferred:
                _apply(balance, accrued=transferred)

        special = await self._mutate(user_id, OVERFLOW_TYPE, year, receive)
        result = OverflowResult(
            excess=excess,
            transferred=transferred,
            dropped=excess - transferred,
            el_after=el.remaining,
            special_after=special.remaining,
        )
        logger.info(
            "EL overflow for user %s (%d): %g moved to SPECIAL, %g dropped", user_id, year, transferred, result.dropped
        )
        return result

    async def lapse(self, user_id: PydanticObjectId, leave_type: LeaveType, year: int) -> LapseResult:
        """Year-end processing for one balance row

        Lapsing types are zeroed, carry-forward types are capped (Earned Leave
        excess goes to SPECIAL), anything else is left alone.
        """
        rules = await self.policies.get_rules(leave_type)
        balance = await self.find(user_id, leave_type, year)
        if balance is None:
            return LapseResult()

        if rules.lapses_at_year_end and not rules.carry_forward_eligible:
            before = 0.0

            def zero(row: Balance) -> None:
                nonlocal before
                before = row.remaining
                if before > 0:
                    row.closing = 0.0
                    row.closing_overridden = True

            await self._mutate(user_id, leave_type, year, zero)
            if before <= 0:
                return LapseResult(balance_before=before, balance_after=before)
            logger.info("Lapsed %g %s days for user %s (%d)", before, leave_type.value, user_id, year)
            return LapseResult(lapsed=before, balance_before=before, balance_after=0.0)

        before = (await self.peek(user_id, leave_type, year)).remaining
        if leave_type == LeaveType.EARNED:
            overflow = await self.apply_overflow(user_id, year)
            after = overflow.el_after if overflow else before
            return LapseResult(balance_before=before, balance_after=after, overflow=overflow)

        return LapseResult(balance_before=before, balance_after=before)


ledger = BalanceLedger()
