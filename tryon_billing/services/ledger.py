"""Credit ledger: typed CreditAccount over the installation's ledger store entries"""

import asyncio
import json
import logging
from dataclasses import fields
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from tryon_billing.config import settings
from tryon_billing.domain.exceptions import LedgerWriteError
from tryon_billing.domain.models import CouponRedemption, CreditAccount, StoreEntry
from tryon_billing.domain.trial import TRIAL_CREDITS
from tryon_billing.infrastructure.clients.ledger_store import LedgerStoreClient
from tryon_billing.utils.date_utils import format_datetime, parse_datetime, utcnow

INTEGER = "number_integer"
DECIMAL = "number_decimal"
DATE_TIME = "date_time"
TEXT = "single_line_text_field"
JSON = "json"
BOOLEAN = "boolean_text"  # stored as single_line_text_field "true"/"false"

# CreditAccount field -> (store key, value type)
LEDGER_SCHEMA: Dict[str, Tuple[str, str]] = {
    "total_balance": ("credit_balance", INTEGER),
    "trial_balance": ("trial_credits_balance", INTEGER),
    "trial_used": ("trial_credits_used", INTEGER),
    "plan_balance": ("plan_credits_balance", INTEGER),
    "purchased_balance": ("purchased_credits_balance", INTEGER),
    "coupon_balance": ("coupon_credits_balance", INTEGER),
    "included_per_period": ("credits_included", INTEGER),
    "used_this_period": ("credits_used_this_period", INTEGER),
    "last_credit_reset": ("last_credit_reset", DATE_TIME),
    "period_end": ("current_period_end", DATE_TIME),
    "monthly_period_end": ("monthly_period_end", DATE_TIME),
    "subscription_line_item_id": ("subscription_line_item_id", TEXT),
    "subscription_id": ("subscription_id", TEXT),
    "is_trial_period": ("is_trial_period", BOOLEAN),
    "trial_start_date": ("trial_start_date", DATE_TIME),
    "overage_count": ("overage_count", INTEGER),
    "overage_amount": ("overage_amount", DECIMAL),
    "last_overage_billed": ("last_overage_billed", DATE_TIME),
    "coupon_redemptions": ("coupon_redemptions", JSON),
    "notifications_sent": ("trial_notifications_sent", JSON),
}

ACCOUNT_FIELDS = {f.name for f in fields(CreditAccount)}


def _encode_json(field_name: str, value: Any) -> str:
    if field_name == "coupon_redemptions":
        return json.dumps(
            [
                {"code": r.code, "credits": r.credits, "redeemedAt": format_datetime(r.redeemed_at)}
                for r in value
            ]
        )
    return json.dumps(sorted(value))


def serialize_field(field_name: str, value: Any) -> Optional[StoreEntry]:
    """Store entry for one account field; None values are not written"""
    key, value_type = LEDGER_SCHEMA[field_name]
    if value is None:
        return None

    if value_type == INTEGER:
        return StoreEntry(key=key, type=INTEGER, value=str(int(value)))
    if value_type == DECIMAL:
        return StoreEntry(key=key, type=DECIMAL, value=str(Decimal(value)))
    if value_type == DATE_TIME:
        return StoreEntry(key=key, type=DATE_TIME, value=format_datetime(value))
    if value_type == BOOLEAN:
        return StoreEntry(key=key, type=TEXT, value="true" if value else "false")
    if value_type == JSON:
        return StoreEntry(key=key, type=JSON, value=_encode_json(field_name, value))
    return StoreEntry(key=key, type=TEXT, value=str(value))


def _decode(field_name: str, value_type: str, raw: str) -> Any:
    if value_type == INTEGER:
        return int(raw)
    if value_type == DECIMAL:
        return Decimal(raw)
    if value_type == DATE_TIME:
        return parse_datetime(raw)
    if value_type == BOOLEAN:
        return raw.strip().lower() == "true"
    if value_type == JSON:
        data = json.loads(raw) or []
        if field_name == "coupon_redemptions":
            return [
                CouponRedemption(
                    code=item.get("code", ""),
                    credits=int(item.get("credits", 0)),
                    redeemed_at=parse_datetime(item.get("redeemedAt") or item.get("redeemed_at")),
                )
                for item in data
            ]
        return [int(t) for t in data]
    return raw or None


def deserialize_account(entries: Dict[str, StoreEntry]) -> CreditAccount:
    """Build an account from raw entries; unreadable values fall back to defaults"""
    values: Dict[str, Any] = {}
    for field_name, (key, value_type) in LEDGER_SCHEMA.items():
        entry = entries.get(key)
        if entry is None or entry.value is None:
            continue
        try:
            values[field_name] = _decode(field_name, value_type, entry.value)
        except (ValueError, TypeError, InvalidOperation, json.JSONDecodeError) as e:
            logging.warning(
                f"Unreadable ledger entry {key}: {e}",
                extra={"ledger_key": key, "raw_value": entry.value},
            )
    return CreditAccount(**values)


def reconcile_account(installation_id: str, account: CreditAccount) -> CreditAccount:
    """
    Restore the balance partition for ledgers written before typed balances existed.

    Surplus total is attributed to plan credits; a total below the typed sum is
    reset to the sum.
    """
    typed_sum = account.credit_sum()
    if account.total_balance == typed_sum:
        return account

    logging.warning(
        "Ledger total disagrees with typed balances; reconciling",
        extra={
            "installation_id": installation_id,
            "total_balance": account.total_balance,
            "typed_sum": typed_sum,
        },
    )
    if account.total_balance > typed_sum:
        account.plan_balance += account.total_balance - typed_sum
    else:
        account.total_balance = typed_sum
    return account


class InstallationLocks:
    """Per-installation asyncio locks serializing read-modify-write inside one process"""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}

    def get(self, installation_id: str) -> asyncio.Lock:
        lock = self._locks.get(installation_id)
        if lock is None:
            lock = self._locks[installation_id] = asyncio.Lock()
        return lock


class CreditLedger:
    """Reads and writes one installation's credit account"""

    def __init__(
        self,
        store: LedgerStoreClient,
        locks: InstallationLocks | None = None,
        namespace: str | None = None,
    ):
        self.store = store
        self.locks = locks or InstallationLocks()
        self.namespace = namespace or settings.ledger_namespace

    def locked(self, installation_id: str) -> asyncio.Lock:
        """Usage: async with ledger.locked(installation_id): ..."""
        return self.locks.get(installation_id)

    async def read(self, installation_id: str) -> CreditAccount:
        keys = [key for key, _ in LEDGER_SCHEMA.values()]
        entries = await self.store.get(installation_id, self.namespace, keys)
        return reconcile_account(installation_id, deserialize_account(entries))

    async def write(
        self,
        installation_id: str,
        changes: Dict[str, Any],
        account: CreditAccount | None = None,
    ) -> CreditAccount:
        """
        Validate and persist a partial update in one batch-set.

        Args:
            installation_id: Ledger owner
            changes: CreditAccount field -> new value
            account: Account the changes were computed from; read when omitted

        Returns:
            The updated account

        Raises:
            LedgerInvariantError: If the update breaks the balance partition
            LedgerWriteError: If the store rejected all or part of the batch
        """
        unknown = set(changes) - ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"Unknown ledger fields: {', '.join(sorted(unknown))}")

        if account is None:
            account = await self.read(installation_id)
        updated = account.with_updates(changes)

        entries: List[StoreEntry] = []
        for field_name in changes:
            entry = serialize_field(field_name, getattr(updated, field_name))
            if entry is not None:
                entries.append(entry)

        if not entries:
            return updated

        result = await self.store.batch_set(installation_id, self.namespace, entries)
        if not result.success:
            failed = [e.key for e in entries if e.key not in result.written_keys]
            if result.written_keys:
                logging.warning(
                    "Partial ledger write",
                    extra={
                        "installation_id": installation_id,
                        "written_keys": result.written_keys,
                        "failed_keys": failed,
                        "errors": result.errors,
                    },
                )
            else:
                logging.error(
                    f"Ledger write failed: {', '.join(result.errors)}",
                    extra={"installation_id": installation_id, "failed_keys": failed},
                )
            raise LedgerWriteError(
                f"Ledger write failed: {', '.join(result.errors)}",
                errors=result.errors,
                written_keys=result.written_keys,
            )

        return updated

    async def initialize(
        self,
        installation_id: str,
        included_credits: int = 100,
        period_end: Optional[datetime] = None,
        line_item_id: Optional[str] = None,
        subscription_id: Optional[str] = None,
        is_annual: bool = False,
        with_trial: bool = True,
        account: CreditAccount | None = None,
        now: Optional[datetime] = None,
    ) -> CreditAccount:
        """
        Seed a new subscription's ledger.

        Additive: trial credits are added on top of whatever the installation
        already holds, so re-running after a reinstall never lowers a balance.
        Without a trial the first allotment is granted as plan credits instead.
        """
        now = now or utcnow()
        if account is None:
            account = await self.read(installation_id)

        changes: Dict[str, Any] = {
            "included_per_period": included_credits,
            "used_this_period": 0,
            "last_credit_reset": now,
        }
        if subscription_id:
            changes["subscription_id"] = subscription_id
        if line_item_id:
            changes["subscription_line_item_id"] = line_item_id
        if period_end is not None:
            changes["monthly_period_end" if is_annual else "period_end"] = period_end

        if with_trial:
            changes.update(
                trial_balance=account.trial_balance + TRIAL_CREDITS,
                total_balance=account.total_balance + TRIAL_CREDITS,
                is_trial_period=True,
                trial_start_date=now,
            )
        else:
            changes.update(
                plan_balance=account.plan_balance + included_credits,
                total_balance=account.total_balance + included_credits,
                is_trial_period=False,
            )

        updated = await self.write(installation_id, changes, account)
        logging.info(
            "Credit ledger initialized",
            extra={
                "installation_id": installation_id,
                "subscription_id": subscription_id,
                "with_trial": with_trial,
                "total_balance": updated.total_balance,
                "is_annual": is_annual,
            },
        )
        return updated

    async def add_credits_for_period(
        self,
        installation_id: str,
        period_end: datetime,
        is_annual: bool,
        account: CreditAccount | None = None,
        grant: bool = True,
        now: Optional[datetime] = None,
    ) -> CreditAccount:
        """
        Roll the ledger into a new period.

        Unused plan credits carry forward: the allotment is added, never set.
        With grant=False only the watermark and period counters move.
        """
        now = now or utcnow()
        if account is None:
            account = await self.read(installation_id)

        changes: Dict[str, Any] = {
            "used_this_period": 0,
            "last_credit_reset": now,
            "monthly_period_end" if is_annual else "period_end": period_end,
        }

        if grant:
            changes["plan_balance"] = account.plan_balance + account.included_per_period
            changes["total_balance"] = account.total_balance + account.included_per_period

        return await self.write(installation_id, changes, account)
