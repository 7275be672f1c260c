"""
Leave Validator
Decides whether a proposed leave request may enter the approval workflow.

Checks run in a fixed order and the first failing rule is raised:

1. date sanity (range, join date, service eligibility, retirement window),
   then overlap with the requester's other live requests and, for
   standalone types, leave directly before or after
2. day count (inclusive calendar days, or working days for working-days-only types)
3. spell limit
4. notice period, then the backdating window
5. balance (annual cap, then remaining balance unless the type is uncapped)
6. certificate requirement

Nothing in this module touches the database; callers load the balance,
history and holidays and pass them in.
"""
from datetime import date, timedelta
from typing import Dict, Iterable, Optional, Sequence, Tuple

from lms.core.calendar import count_leave_days, months_between
from lms.core.exceptions import InsufficientBalance, ValidationFailed
from lms.models.leave import LeaveType
from lms.models.policy import PolicyRules


def check_dates(
    start: date,
    end: date,
    rules: PolicyRules,
    join_date: Optional[date] = None,
    retirement_date: Optional[date] = None,
) -> None:
    if end < start:
        raise ValidationFailed("invalid_date_range", "End date must not be before start date")

    if join_date and start < join_date:
        raise ValidationFailed(
            "before_join_date",
            "Leave cannot start before your join date",
            {"join_date": join_date.isoformat()},
        )

    if rules.min_service_months and join_date:
        served = months_between(join_date, start)
        if served < rules.min_service_months:
            raise ValidationFailed(
                "service_eligibility",
                f"{rules.leave_type.value} leave requires {rules.min_service_months} months of service",
                {"required_months": rules.min_service_months, "served_months": served},
            )

    if rules.retirement_buffer_days is not None and retirement_date:
        latest_end = retirement_date - timedelta(days=rules.retirement_buffer_days)
        if end > latest_end:
            raise ValidationFailed(
                "retirement_window",
                f"{rules.leave_type.value} leave must end by {latest_end.isoformat()}",
                {"latest_end": latest_end.isoformat()},
            )


def check_overlap(start: date, end: date, booked: Iterable[Tuple[date, date]] = ()) -> None:
    """The requester's other live requests may not share any day with this one"""
    for other_start, other_end in booked:
        if other_start <= end and start <= other_end:
            raise ValidationFailed(
                "overlapping_leave",
                "You already have leave booked on some of these dates",
                {"start_date": other_start.isoformat(), "end_date": other_end.isoformat()},
            )


def check_standalone(start: date, end: date, rules: PolicyRules, booked: Iterable[Tuple[date, date]] = ()) -> None:
    """Standalone types (casual leave) may not be joined to other leave on either side"""
    if not rules.standalone_only:
        return
    day_before, day_after = start - timedelta(days=1), end + timedelta(days=1)
    for other_start, other_end in booked:
        if other_end == day_before or other_start == day_after:
            raise ValidationFailed(
                "adjacent_leave",
                f"{rules.leave_type.value} leave cannot be combined with other leave",
                {"start_date": other_start.isoformat(), "end_date": other_end.isoformat()},
            )


def compute_days(
    start: date,
    end: date,
    rules: PolicyRules,
    weekend_days: Iterable[int] = (),
    holidays: Iterable[date] = (),
) -> int:
    days = count_leave_days(start, end, rules.working_days_only, weekend_days, holidays)
    if days <= 0:
        raise ValidationFailed("no_working_days", "The selected range contains no working days")
    if rules.min_days and days < rules.min_days:
        raise ValidationFailed(
            "below_minimum",
            f"{rules.leave_type.value} leave must be at least {rules.min_days} days",
            {"min_days": rules.min_days, "requested": days},
        )
    return days


def check_spell(days: int, rules: PolicyRules) -> None:
    if rules.max_consecutive_days is not None and days > rules.max_consecutive_days:
        raise ValidationFailed(
            "spell_limit",
            f"{rules.leave_type.value} leave is limited to {rules.max_consecutive_days} consecutive days",
            {"max": rules.max_consecutive_days, "requested": days},
        )


def check_notice(start: date, today: date, rules: PolicyRules) -> None:
    if rules.notice_days_required and not rules.notice_exempt:
        notice = (start - today).days
        if notice < rules.notice_days_required:
            raise ValidationFailed(
                "insufficient_notice",
                f"{rules.leave_type.value} leave requires {rules.notice_days_required} days notice",
                {"required": rules.notice_days_required, "provided": notice},
            )

    if start < today and rules.backdate_limit_days is not None:
        backdated = (today - start).days
        if backdated > rules.backdate_limit_days:
            raise ValidationFailed(
                "backdate_window_exceeded",
                f"{rules.leave_type.value} leave can be backdated by at most {rules.backdate_limit_days} days",
                {"limit": rules.backdate_limit_days, "backdated": backdated},
            )


def check_occasions(start: date, rules: PolicyRules, previous_starts: Iterable[date] = ()) -> None:
    """Career-wide occasion limits (e.g. paternity leave)"""
    previous = sorted(previous_starts)
    if rules.max_occasions is not None and len(previous) >= rules.max_occasions:
        raise ValidationFailed(
            "occasion_limit",
            f"{rules.leave_type.value} leave may be taken at most {rules.max_occasions} times",
            {"max": rules.max_occasions, "taken": len(previous)},
        )
    if rules.min_months_between_occasions and previous:
        gap = months_between(previous[-1], start)
        if gap < rules.min_months_between_occasions:
            raise ValidationFailed(
                "occasion_limit",
                f"{rules.leave_type.value} leave requires {rules.min_months_between_occasions} months between occasions",
                {"required_months": rules.min_months_between_occasions, "months_since_last": gap},
            )


def check_balance(days: float, rules: PolicyRules, remaining: float, used_this_year: float = 0) -> None:
    if rules.annual_cap is not None and used_this_year + days > rules.annual_cap:
        raise ValidationFailed(
            "annual_cap_exceeded",
            f"{rules.leave_type.value} leave is capped at {rules.annual_cap:g} days per year",
            {"cap": rules.annual_cap, "used": used_this_year, "requested": days},
        )
    if not rules.uncapped and days > remaining:
        raise InsufficientBalance(
            f"Requested {days:g} days but only {remaining:g} {rules.leave_type.value} days remain",
            {"requested": days, "remaining": remaining},
        )


def check_certificate(days: int, rules: PolicyRules, certificate_attached: bool) -> None:
    threshold = rules.certificate_required_over_days
    if threshold is not None and days > threshold and not certificate_attached:
        raise ValidationFailed(
            "certificate_required",
            f"{rules.leave_type.value} leave over {threshold} days needs a supporting certificate",
            {"threshold": threshold, "requested": days},
        )


def plan_charges(
    days: float,
    rules: PolicyRules,
    remaining: float,
    targets: Sequence[Tuple[PolicyRules, float]] = (),
) -> Dict[LeaveType, float]:
    """Split a request over its own balance and the type's conversion targets

    At most ``conversion_limit`` days come from the requested type; the rest
    is taken from each target in order, an uncapped target absorbing whatever
    is left. Without a conversion limit the whole request is charged to the
    requested type.
    """
    if rules.conversion_limit is None or days <= rules.conversion_limit:
        return {rules.leave_type: days}

    own = min(days, rules.conversion_limit)
    if not rules.uncapped:
        own = min(own, max(remaining, 0.0))
    charges = {rules.leave_type: own} if own else {}
    left = days - own

    for target, available in targets:
        if left <= 0:
            break
        portion = left if target.uncapped else min(left, max(available, 0.0))
        if portion > 0:
            charges[target.leave_type] = portion
            left -= portion

    if left > 0:
        raise InsufficientBalance(
            f"Requested {days:g} days but only {days - left:g} can be charged to "
            f"{rules.leave_type.value} and its conversion types",
            {"requested": days, "short_by": left, "charges": {k.value: v for k, v in charges.items()}},
        )
    return charges


def validate_leave(
    start: date,
    end: date,
    rules: PolicyRules,
    *,
    today: date,
    remaining: float,
    used_this_year: float = 0,
    join_date: Optional[date] = None,
    retirement_date: Optional[date] = None,
    certificate_attached: bool = False,
    weekend_days: Iterable[int] = (),
    holidays: Iterable[date] = (),
    previous_starts: Iterable[date] = (),
    booked: Iterable[Tuple[date, date]] = (),
    conversion_targets: Optional[Sequence[Tuple[PolicyRules, float]]] = None,
    require_notice: bool = True,
) -> int:
    """Run every check and return the request's day count

    ``conversion_targets`` (set when the requester asked for excess days to be
    converted) replaces the spell and balance checks with plan_charges for
    requests longer than the type's conversion limit.
    """
    booked = list(booked)
    check_dates(start, end, rules, join_date, retirement_date)
    check_overlap(start, end, booked)
    check_standalone(start, end, rules, booked)
    days = compute_days(start, end, rules, weekend_days, holidays)
    converting = (
        conversion_targets is not None
        and rules.conversion_limit is not None
        and days > rules.conversion_limit
    )
    if not converting:
        check_spell(days, rules)
    if require_notice:
        check_notice(start, today, rules)
    check_occasions(start, rules, previous_starts)
    if converting:
        plan_charges(days, rules, remaining, conversion_targets)
    else:
        check_balance(days, rules, remaining, used_this_year)
    check_certificate(days, rules, certificate_attached)
    return days
