"""Trial state machine - pure rules over a CreditAccount"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from tryon_billing.domain.models import (
    CreditAccount,
    TrialCheck,
    TrialEndReason,
    TrialPhase,
    TrialState,
    TrialStatus,
)
from tryon_billing.utils.date_utils import days_elapsed

TRIAL_CREDITS = 100
TRIAL_DAYS = 30
NOTIFICATION_THRESHOLDS = (80, 90, 95, 100)  # percent of trial credits used


def _end_reason(account: CreditAccount, now: datetime) -> Optional[TrialEndReason]:
    """Whichever end condition fires first; elapsed time is checked before usage"""
    if account.trial_start_date is None:
        return None
    if days_elapsed(account.trial_start_date, now) >= TRIAL_DAYS:
        return TrialEndReason.TIME_ELAPSED
    if account.trial_used >= TRIAL_CREDITS:
        return TrialEndReason.CREDITS_EXHAUSTED
    return None


def resolve_trial(account: CreditAccount, now: datetime) -> TrialPhase:
    """
    Collapse the stored flag and the computed conditions into one state.

    NOT_STARTED: no trial start recorded
    IN_TRIAL:    flag set, fewer than 30 days elapsed and fewer than 100 credits used
    ENDED:       an end condition fired, or the trial was already replaced
    """
    if account.trial_start_date is None:
        return TrialPhase(state=TrialState.NOT_STARTED)

    reason = _end_reason(account, now)
    if reason is None and not account.is_trial_period:
        reason = TrialEndReason.REPLACED

    return TrialPhase(
        state=TrialState.ENDED if reason else TrialState.IN_TRIAL,
        started_at=account.trial_start_date,
        used=account.trial_used,
        reason=reason,
    )


def is_in_trial(account: CreditAccount, now: datetime) -> bool:
    return resolve_trial(account, now).state == TrialState.IN_TRIAL


def should_end_trial(account: CreditAccount, now: datetime) -> TrialCheck:
    """Decide whether the trial must transition, without performing it"""
    if not account.is_trial_period:
        return TrialCheck(should_end=False, reason="not in trial period", trial_credits_used=account.trial_used)

    if account.trial_start_date is None:
        return TrialCheck(should_end=False, reason="no trial start date", trial_credits_used=account.trial_used)

    days_since_start = days_elapsed(account.trial_start_date, now)
    reason = _end_reason(account, now)
    if reason is not None:
        return TrialCheck(
            should_end=True,
            reason=reason.value,
            days_since_start=days_since_start,
            trial_credits_used=account.trial_used,
        )

    return TrialCheck(
        should_end=False,
        reason="trial active",
        days_since_start=days_since_start,
        trial_credits_used=account.trial_used,
    )


def trial_status(account: CreditAccount, now: datetime) -> TrialStatus:
    phase = resolve_trial(account, now)

    if phase.state != TrialState.IN_TRIAL:
        return TrialStatus(
            is_trial=False,
            state=phase.state,
            trial_credits_remaining=account.trial_balance,
            trial_credits_used=account.trial_used,
            trial_credits_total=TRIAL_CREDITS,
            days_remaining=0,
            trial_start_date=account.trial_start_date,
        )

    days_since_start = days_elapsed(account.trial_start_date, now)
    return TrialStatus(
        is_trial=True,
        state=phase.state,
        trial_credits_remaining=account.trial_balance,
        trial_credits_used=account.trial_used,
        trial_credits_total=TRIAL_CREDITS,
        days_remaining=max(0, TRIAL_DAYS - days_since_start),
        days_since_start=days_since_start,
        trial_start_date=account.trial_start_date,
    )


def next_notification_threshold(account: CreditAccount, thresholds=NOTIFICATION_THRESHOLDS) -> Optional[int]:
    """
    Highest crossed threshold that has not been notified yet.

    Skipped lower thresholds are not sent afterwards: jumping from 79% to 96%
    notifies 95 only, and 80/90 are recorded alongside it.
    """
    used_percent = account.trial_used * 100 // TRIAL_CREDITS
    crossed = [t for t in thresholds if used_percent >= t]
    if not crossed or max(crossed) in account.notifications_sent:
        return None
    return max(crossed)


def thresholds_to_mark(account: CreditAccount, threshold: int, thresholds=NOTIFICATION_THRESHOLDS) -> List[int]:
    """Notified set after sending threshold; never shrinks"""
    marked = set(account.notifications_sent)
    marked.update(t for t in thresholds if t <= threshold)
    return sorted(marked)


def in_app_notification(threshold: int, used: int, remaining: int) -> Dict[str, Any]:
    """Banner payload shown in the merchant UI"""
    if threshold >= 95:
        kind, title = "urgent", "Trial Credits Almost Exhausted"
    elif threshold >= 90:
        kind, title = "warning", "Trial Credits Running Low"
    else:
        kind, title = "info", "Trial Credits Update"

    return {
        "type": kind,
        "title": title,
        "message": f"You've used {used} out of {TRIAL_CREDITS} free trial credits. {remaining} credits remaining.",
        "threshold": threshold,
        "credits_used": used,
        "credits_remaining": remaining,
    }
