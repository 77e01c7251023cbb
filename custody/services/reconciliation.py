"""Deposit detection: poll chain balances and credit positive deltas exactly once.

Each allocation is an independent unit of work. A pass computes its delta
against the ``last_observed_balance`` it read and then moves that watermark
with a compare-and-swap; a pass that loses the swap credits nothing. The
credit, its transaction row and the new watermark are committed together or
not at all.
"""
import enum
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError

from custody.core.assets import USD, quantize, to_minor_units
from custody.core.errors import CustodyError, DuplicateEvent, ProviderUnavailable
from custody.models import TransactionType, WalletAllocation
from custody.services import ledger
from custody.services.balance_provider import BalanceProvider
from custody.services.notifications import ConsoleNotificationSink, NotificationSink

logger = logging.getLogger(__name__)

DENOMINATION_IN_KIND = "in_kind"
DENOMINATION_USD = "usd"


class Outcome(str, enum.Enum):
    CREDITED = "credited"
    UNCHANGED = "unchanged"
    UNAVAILABLE = "unavailable"
    DUPLICATE = "duplicate"
    SUPERSEDED = "superseded"
    ABANDONED = "abandoned"
    FAILED = "failed"


@dataclass
class ReconciliationReport:
    checked: int = 0
    outcomes: dict = field(default_factory=dict)

    def record(self, outcome: Outcome) -> None:
        self.checked += 1
        self.outcomes[outcome] = self.outcomes.get(outcome, 0) + 1

    def count(self, outcome: Outcome) -> int:
        return self.outcomes.get(outcome, 0)

    @property
    def credited(self) -> int:
        return self.count(Outcome.CREDITED)

    def __str__(self) -> str:
        parts = ", ".join(f"{k.value}={v}" for k, v in sorted(self.outcomes.items(), key=lambda kv: kv[0].value))
        return f"checked={self.checked}" + (f" ({parts})" if parts else "")


def deposit_dedup_key(asset_id: str, address: str, observed_balance: Decimal) -> str:
    # last_observed_balance only ever increases, so a cumulative balance is
    # credited at most once per address.
    return f"deposit:{asset_id}:{address}:{to_minor_units(asset_id, observed_balance)}"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class DepositReconciler:
    def __init__(
        self,
        session_factory,
        provider: BalanceProvider,
        *,
        notifier: NotificationSink | None = None,
        denomination: str = DENOMINATION_IN_KIND,
        max_workers: int = 8,
        clock=_utcnow,
    ):
        denomination = (denomination or DENOMINATION_IN_KIND).strip().lower()
        if denomination not in (DENOMINATION_IN_KIND, DENOMINATION_USD):
            raise ValueError(f"Unknown ledger denomination: {denomination!r}")
        self.session_factory = session_factory
        self.provider = provider
        self.notifier = notifier or ConsoleNotificationSink()
        self.denomination = denomination
        self.max_workers = max(1, int(max_workers))
        self.clock = clock
        self._stopping = threading.Event()

    def stop(self) -> None:
        """Ask in-flight cycles to abandon allocations they have not started yet."""
        self._stopping.set()

    def _credit_terms(self, asset_id: str, delta: Decimal, price: Decimal | None) -> tuple[str, Decimal, dict]:
        if self.denomination == DENOMINATION_USD:
            usd_amount = quantize(USD, delta * price)
            return USD, usd_amount, {"asset": asset_id, "asset_amount": str(delta), "price_usd": str(price)}
        return asset_id, delta, {"asset": asset_id, "asset_amount": str(delta)}

    def reconcile_allocation(self, allocation_id: int) -> Outcome:
        if self._stopping.is_set():
            return Outcome.ABANDONED

        db = self.session_factory()
        try:
            allocation = db.get(WalletAllocation, allocation_id)
            if allocation is None:
                logger.warning("Allocation %s disappeared before reconciliation", allocation_id)
                return Outcome.FAILED
            user_id, asset_id, address = allocation.user_id, allocation.asset_id, allocation.address
            last_seen = quantize(asset_id, allocation.last_observed_balance)
            # Do not hold a DB transaction open across network calls.
            db.rollback()

            try:
                observed = quantize(asset_id, self.provider.get_balance(address, asset_id))
                price = None
                if self.denomination == DENOMINATION_USD and observed > last_seen:
                    price = self.provider.get_price_usd(asset_id)
            except ProviderUnavailable as exc:
                logger.warning("No %s observation for %s this cycle: %s", asset_id, address, exc.errors or exc.message)
                return Outcome.UNAVAILABLE

            baseline = (
                db.query(WalletAllocation.last_observed_balance)
                .filter(WalletAllocation.id == allocation_id)
                .scalar()
            )
            now = self.clock()
            delta = observed - quantize(asset_id, baseline)
            if delta <= 0:
                self._touch(db, allocation_id, now)
                return Outcome.UNCHANGED

            dedup_key = deposit_dedup_key(asset_id, address, observed)
            if self.denomination == DENOMINATION_USD and price is None:
                # The watermark moved since the price was skipped; retry next tick.
                db.rollback()
                return Outcome.UNAVAILABLE
            credit_asset, credit_amount, meta = self._credit_terms(asset_id, delta, price)
            if credit_amount <= 0:
                # Dust below the ledger's precision; leave it for a later, larger delta.
                self._touch(db, allocation_id, now)
                return Outcome.UNCHANGED

            # Claim the watermark first: only the pass that moves it from the
            # value it read may credit the delta computed against that value.
            if not self._advance_watermark(db, allocation_id, baseline, observed, now):
                db.rollback()
                logger.info("Allocation %s was reconciled concurrently; skipping this pass", allocation_id)
                return Outcome.SUPERSEDED

            meta.update({"address": address, "observed_balance": str(observed)})
            try:
                entry = ledger.credit(
                    db,
                    user_id,
                    credit_asset,
                    credit_amount,
                    TransactionType.DEPOSIT,
                    dedup_key=dedup_key,
                    description=f"{asset_id} deposit to {address}",
                    meta=meta,
                )
            except DuplicateEvent:
                # The key embeds the cumulative balance, so this balance is already credited.
                logger.info("Deposit %s already credited; advancing last observed balance", dedup_key)
                # credit() rolled the session back, watermark included.
                self._advance_watermark(db, allocation_id, baseline, observed, now)
                db.commit()
                return Outcome.DUPLICATE

            db.commit()
            logger.info(
                "Credited %s %s to user %s from %s (observed %s)",
                credit_amount,
                credit_asset,
                user_id,
                address,
                observed,
            )
            self._notify(user_id, entry.reference, asset_id, delta, credit_asset, credit_amount)
            return Outcome.CREDITED
        except (SQLAlchemyError, CustodyError, ValueError) as exc:
            db.rollback()
            logger.error("Reconciliation of allocation %s abandoned: %s", allocation_id, exc)
            return Outcome.FAILED
        finally:
            db.close()

    @staticmethod
    def _advance_watermark(db, allocation_id: int, baseline: Decimal, observed: Decimal, now: datetime) -> bool:
        """Move ``last_observed_balance`` from ``baseline`` to ``observed`` iff it still holds ``baseline``."""
        result = db.execute(
            update(WalletAllocation)
            .where(
                WalletAllocation.id == allocation_id,
                WalletAllocation.last_observed_balance == baseline,
            )
            .values(last_observed_balance=observed, last_checked_at=now)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    @staticmethod
    def _touch(db, allocation_id: int, now: datetime) -> None:
        db.execute(
            update(WalletAllocation)
            .where(WalletAllocation.id == allocation_id)
            .values(last_checked_at=now)
            .execution_options(synchronize_session=False)
        )
        db.commit()

    def _notify(self, user_id, reference, asset_id, delta, credit_asset, credit_amount) -> None:
        payload = {
            "user_id": user_id,
            "reference": reference,
            "asset": asset_id,
            "amount": str(delta),
            "credited_asset": credit_asset,
            "credited_amount": str(credit_amount),
        }
        try:
            self.notifier.notify("deposit.confirmed", payload)
        except Exception as exc:
            # The credit is already committed; delivery is best-effort.
            logger.warning("Deposit notification failed for %s: %s", reference, exc)

    def _allocation_ids(self, user_id: str | None) -> list[int]:
        db = self.session_factory()
        try:
            query = db.query(WalletAllocation.id)
            if user_id is not None:
                query = query.filter(WalletAllocation.user_id == user_id)
            return [row.id for row in query.order_by(WalletAllocation.id).all()]
        finally:
            db.close()

    def run_cycle(self, user_id: str | None = None) -> ReconciliationReport:
        report = ReconciliationReport()
        allocation_ids = self._allocation_ids(user_id)
        if not allocation_ids:
            return report

        workers = min(self.max_workers, len(allocation_ids))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="reconcile") as pool:
            futures = {pool.submit(self.reconcile_allocation, allocation_id): allocation_id for allocation_id in allocation_ids}
            for future in as_completed(futures):
                try:
                    outcome = future.result()
                except Exception:
                    logger.exception("Unexpected error reconciling allocation %s", futures[future])
                    outcome = Outcome.FAILED
                report.record(outcome)

        log = logger.info if report.credited or report.count(Outcome.FAILED) else logger.debug
        log("Reconciliation cycle%s: %s", f" for user {user_id}" if user_id else "", report)
        return report

    def reconcile_user(self, user_id: str) -> int:
        return self.run_cycle(user_id=user_id).credited
