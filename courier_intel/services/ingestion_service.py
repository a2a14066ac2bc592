"""
Ingestion Service

Entry point for order and voucher webhooks. Each call:
  1. validates the payload (before any transaction is opened)
  2. resolves or creates the pseudonymous Customer
  3. upserts the Order / Voucher on its idempotency key (full replace)
  4. recomputes the customer's stats and risk score
  5. commits everything at once, or nothing

Steps 2-5 run under a per-customer fence: an in-process keyed lock plus a
row lock on the Customer row, so concurrent webhooks for the same customer
produce sequential, fully applied recomputes. The record's own idempotency
key is locked as well, so two submissions of one order or voucher that
resolve to different customers still upsert one after the other. Inserts
that lose a race against another process are retried as updates inside a
savepoint (on backends where savepoints are transactional).
"""
import time
from contextlib import ExitStack, contextmanager
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from courier_intel.config import get_settings
from courier_intel.errors import (
    CourierIntelError,
    IngestionTimeoutError,
    NotFoundError,
    TransientStorageError,
)
from courier_intel.models.customer import Customer
from courier_intel.models.order import Order
from courier_intel.models.shop import Shop
from courier_intel.models.voucher import CourierEvent, Voucher
from courier_intel.schemas import CourierEventPayload, OrderPayload, VoucherPayload, parse_payload
from courier_intel.services.customer_hasher import CustomerHasher
from courier_intel.services.stats_aggregator import StatsAggregator
from courier_intel.utils.helpers import redact_payload, utcnow
from courier_intel.utils.locks import KeyedLockRegistry, customer_locks
from courier_intel.utils.logger import log

_EVENT_DATE_FORMATS = ("%Y%m%d", "%Y-%m-%d", "%d/%m/%Y")
_EVENT_TIME_FORMATS = ("%H%M", "%H:%M", "%H:%M:%S")


def parse_event_time(date_str: Optional[str], time_str: Optional[str]) -> Optional[datetime]:
    """Combine a courier checkpoint's date (YYYYMMDD / YYYY-MM-DD) and time (HHMM / HH:MM)."""
    if not date_str:
        return None

    day = None
    for fmt in _EVENT_DATE_FORMATS:
        try:
            day = datetime.strptime(date_str, fmt)
            break
        except ValueError:
            continue
    if day is None:
        return None

    if time_str:
        for fmt in _EVENT_TIME_FORMATS:
            try:
                t = datetime.strptime(time_str, fmt)
                return day.replace(hour=t.hour, minute=t.minute, second=t.second)
            except ValueError:
                continue
    return day


class IngestionService:
    def __init__(
        self,
        db: Session,
        hasher: CustomerHasher,
        aggregator: Optional[StatsAggregator] = None,
        locks: Optional[KeyedLockRegistry] = None,
        timeout_seconds: Optional[float] = None,
    ):
        self.db = db
        self.hasher = hasher
        self.aggregator = aggregator or StatsAggregator(db)
        self.locks = locks or customer_locks
        if timeout_seconds is None:
            timeout_seconds = get_settings().ingest_timeout_seconds
        self.timeout_seconds = timeout_seconds

    # ==================== ORDERS ====================

    def ingest_order(self, shop: Shop, payload: Any) -> Dict[str, Any]:
        """
        Upsert an order by (shop, external_order_id) and refresh the customer's stats.

        Returns:
            Dict with order_id, customer_hash, risk_score, risk_level
        """
        shop_id = shop.id
        data = parse_payload(OrderPayload, payload)

        # Only digests of the raw PII are stored
        hashed = self.hasher.hash_order_pii(data.model_dump())
        customer_hash = hashed["customer_hash"]

        values = {
            "customer_hash": customer_hash,
            "customer_name_hash": hashed.get("customer_name_hash"),
            "customer_phone_hash": hashed.get("customer_phone_hash"),
            "shipping_address_line1_hash": hashed.get("shipping_address_line1_hash"),
            "shipping_address_line2_hash": hashed.get("shipping_address_line2_hash"),
            "shipping_city": data.shipping_city,
            "shipping_postcode": data.shipping_postcode,
            "shipping_country": data.shipping_country,
            "total_amount": data.total_amount,
            "currency": data.currency or "EUR",
            "status": data.status or "pending",
            "payment_method": data.payment_method,
            "payment_method_title": data.payment_method_title,
            "shipping_method": data.shipping_method,
            "items_count": data.items_count,
            "ordered_at": data.ordered_at or utcnow(),
            "completed_at": data.completed_at,
            "meta": data.meta,
        }

        # A resubmission may move the order to another customer; both need a recompute
        previous_hash = self._existing_hash(
            Order, shop_id=shop_id, external_order_id=data.external_order_id
        )
        affected = self._affected_hashes(customer_hash, previous_hash)
        lock_keys = affected + [f"order:{shop_id}:{data.external_order_id}"]

        with self._transaction(shop_id, "order", payload, lock_keys):
            now = utcnow()
            customer = self._upsert_customer(customer_hash, now)
            values["customer_id"] = customer.id

            order = self._upsert(
                Order,
                {"shop_id": shop_id, "external_order_id": data.external_order_id},
                values,
            )
            self._check_deadline()

            self._recompute_others(affected, customer_hash)
            stat = self.aggregator.recompute(customer_hash)
            self._check_deadline()

            result = {
                "order_id": order.id,
                "customer_hash": customer_hash,
                "risk_score": stat.delivery_risk_score,
                "risk_level": stat.risk_level,
            }

        log.info(
            f"Order ingested | shop={shop_id} order_id={result['order_id']} "
            f"external_id={data.external_order_id} risk={result['risk_score']}"
        )
        return result

    def get_order(self, shop: Shop, order_id: int) -> Order:
        order = (
            self.db.query(Order)
            .filter(Order.id == order_id, Order.shop_id == shop.id)
            .first()
        )
        if not order:
            raise NotFoundError("Order not found")
        return order

    # ==================== VOUCHERS ====================

    def ingest_voucher(self, shop: Shop, payload: Any) -> Dict[str, Any]:
        """
        Upsert a voucher by (shop, voucher_number), append its courier events
        and refresh the linked customer's stats (if any).

        Returns:
            Dict with voucher_id and customer_hash (None when unlinked)
        """
        shop_id = shop.id
        data = parse_payload(VoucherPayload, payload)

        # Customer linkage: the order's hash wins over the payload's
        order = None
        if data.external_order_id:
            order = (
                self.db.query(Order)
                .filter(Order.shop_id == shop_id, Order.external_order_id == data.external_order_id)
                .first()
            )
        if order is not None:
            customer_hash = order.customer_hash
        elif data.customer_hash:
            customer_hash = data.customer_hash
        elif data.customer_email:
            customer_hash = self.hasher.hash_email(data.customer_email)
        else:
            customer_hash = None

        previous_hash = self._existing_hash(
            Voucher, shop_id=shop_id, voucher_number=data.voucher_number
        )
        affected = self._affected_hashes(customer_hash, previous_hash)
        lock_keys = affected + [f"voucher:{shop_id}:{data.voucher_number}"]

        with self._transaction(shop_id, "voucher", payload, lock_keys):
            customer = None
            if customer_hash:
                customer = self._upsert_customer(customer_hash, utcnow())

            voucher = self._upsert(
                Voucher,
                {"shop_id": shop_id, "voucher_number": data.voucher_number},
                {
                    "order_id": order.id if order is not None else None,
                    "customer_id": customer.id if customer is not None else None,
                    "customer_hash": customer_hash,
                    "courier_name": data.courier_name,
                    "courier_service": data.courier_service,
                    "tracking_url": data.tracking_url,
                    "status": data.status or "created",
                    "shipped_at": data.shipped_at,
                    "delivered_at": data.delivered_at,
                    "returned_at": data.returned_at,
                    "failed_at": data.failed_at,
                    "meta": data.meta,
                },
            )

            if data.events:
                self._store_events(voucher, data.courier_name, data.events)
            self._check_deadline()

            self._recompute_others(affected, customer_hash)
            if customer_hash:
                self.aggregator.recompute(customer_hash)
            self._check_deadline()

            result = {"voucher_id": voucher.id, "customer_hash": customer_hash}

        log.info(
            f"Voucher ingested | shop={shop_id} voucher_id={result['voucher_id']} "
            f"number={data.voucher_number} status={data.status or 'created'} "
            f"linked={'yes' if customer_hash else 'no'}"
        )
        return result

    def get_voucher(self, shop: Shop, voucher_id: int) -> Voucher:
        voucher = (
            self.db.query(Voucher)
            .filter(Voucher.id == voucher_id, Voucher.shop_id == shop.id)
            .first()
        )
        if not voucher:
            raise NotFoundError("Voucher not found")
        return voucher

    def delete_voucher(self, shop: Shop, voucher_number: str) -> Dict[str, Any]:
        """Remove a voucher and its courier events, then refresh the linked customer's stats."""
        shop_id = shop.id
        existing = (
            self.db.query(Voucher)
            .filter(Voucher.shop_id == shop_id, Voucher.voucher_number == voucher_number)
            .first()
        )
        if not existing:
            raise NotFoundError(f"Voucher with number {voucher_number} not found")

        customer_hash = existing.customer_hash
        lock_keys = [f"voucher:{shop_id}:{voucher_number}"]
        if customer_hash:
            lock_keys.append(customer_hash)

        with self._transaction(shop_id, "voucher_delete", {"voucher_number": voucher_number}, lock_keys):
            voucher = (
                self.db.query(Voucher)
                .filter(Voucher.shop_id == shop_id, Voucher.voucher_number == voucher_number)
                .first()
            )
            if voucher is None:
                raise NotFoundError(f"Voucher with number {voucher_number} not found")
            self.db.delete(voucher)
            self.db.flush()

            if customer_hash and self._customer_exists(customer_hash):
                self.aggregator.recompute(customer_hash)

        log.info(f"Voucher deleted | shop={shop_id} number={voucher_number}")
        return {"voucher_number": voucher_number, "customer_hash": customer_hash}

    # ==================== INTERNALS ====================

    @contextmanager
    def _transaction(self, shop_id: int, kind: str, payload: Any, lock_keys: Iterable[str]):
        """
        Per-customer fenced unit of work. Commits on success, rolls back on any error.
        """
        self._deadline = time.monotonic() + self.timeout_seconds
        with ExitStack() as stack:
            # Sorted so two multi-customer ingestions can't deadlock
            for key in sorted(set(lock_keys)):
                remaining = max(self._deadline - time.monotonic(), 0)
                if not stack.enter_context(self.locks.hold(key, timeout=remaining)):
                    self.db.rollback()
                    raise IngestionTimeoutError(
                        f"Timed out waiting for concurrent {kind} ingestion to finish"
                    )
            try:
                yield
                self._check_deadline()
                self.db.commit()
            except CourierIntelError as e:
                self.db.rollback()
                self._log_failure(shop_id, kind, payload, e.kind, e.message)
                raise
            except IntegrityError as e:
                self.db.rollback()
                self._log_failure(shop_id, kind, payload, "integrity_error", str(e.orig))
                raise TransientStorageError(
                    f"Failed to process {kind}: conflicting concurrent write, safe to retry"
                ) from e
            except SQLAlchemyError as e:
                self.db.rollback()
                self._log_failure(shop_id, kind, payload, "storage_error", str(e))
                raise TransientStorageError(f"Failed to process {kind}: {type(e).__name__}") from e
            except Exception as e:
                self.db.rollback()
                self._log_failure(shop_id, kind, payload, "unexpected_error", repr(e))
                raise

    def _check_deadline(self) -> None:
        if time.monotonic() > self._deadline:
            raise IngestionTimeoutError(
                f"Ingestion exceeded {self.timeout_seconds:.0f}s and was rolled back"
            )

    def _log_failure(self, shop_id: int, kind: str, payload: Any, error_kind: str, message: str) -> None:
        log.error(
            f"{kind.capitalize()} ingestion failed | shop={shop_id} error={error_kind} "
            f"message={message} data={redact_payload(payload)}"
        )

    def _upsert_customer(self, customer_hash: str, now: datetime) -> Customer:
        # Row lock fences concurrent recomputes across processes (ignored by SQLite)
        customer = (
            self.db.query(Customer)
            .filter(Customer.customer_hash == customer_hash)
            .with_for_update()
            .first()
        )
        if customer is None:
            customer = Customer(customer_hash=customer_hash, first_seen_at=now, last_seen_at=now)
            self.db.add(customer)
            self.db.flush()
        else:
            customer.last_seen_at = now
        return customer

    def _upsert(self, model, keys: Dict[str, Any], values: Dict[str, Any]):
        """Insert, or overwrite every column of the row matching the idempotency key."""
        instance = self.db.query(model).filter_by(**keys).first()
        if instance is None:
            if not self._savepoints_supported():
                instance = model(**keys, **values)
                self.db.add(instance)
                self.db.flush()
                return instance
            try:
                with self.db.begin_nested():
                    instance = model(**keys, **values)
                    self.db.add(instance)
                return instance
            except IntegrityError:
                # Another process inserted the same key after our lookup
                log.info(f"Concurrent insert on {model.__tablename__} {keys}, updating instead")
                instance = self.db.query(model).filter_by(**keys).one()

        for column, value in values.items():
            setattr(instance, column, value)
        self.db.flush()
        return instance

    def _savepoints_supported(self) -> bool:
        # pysqlite's SAVEPOINT can open and commit its own transaction; the
        # in-process key lock already serializes writers on SQLite
        return self.db.get_bind().dialect.name != "sqlite"

    def _store_events(self, voucher: Voucher, courier_name: Optional[str],
                      events: List[CourierEventPayload]) -> int:
        """Append checkpoints, updating in place any with the same (time, description)."""
        stored = 0
        for event in events:
            if not event.status_title and not event.station:
                continue

            event_time = parse_event_time(event.date, event.time)
            description = event.status_title or ""

            query = self.db.query(CourierEvent).filter(
                CourierEvent.voucher_id == voucher.id,
                CourierEvent.event_description == description,
            )
            if event_time is None:
                query = query.filter(CourierEvent.event_time.is_(None))
            else:
                query = query.filter(CourierEvent.event_time == event_time)

            values = {
                "courier_name": courier_name,
                "event_code": event.code,
                "location": event.station,
                "raw_payload": event.model_dump(exclude_none=True),
            }
            existing = query.first()
            if existing is None:
                self.db.add(CourierEvent(
                    voucher_id=voucher.id,
                    event_time=event_time,
                    event_description=description,
                    **values,
                ))
            else:
                for column, value in values.items():
                    setattr(existing, column, value)
            self.db.flush()
            stored += 1
        return stored

    def _existing_hash(self, model, **keys) -> Optional[str]:
        row = self.db.query(model.customer_hash).filter_by(**keys).first()
        return row[0] if row else None

    @staticmethod
    def _affected_hashes(current: Optional[str], previous: Optional[str]) -> List[str]:
        return [h for h in dict.fromkeys([current, previous]) if h]

    def _recompute_others(self, affected: List[str], current: Optional[str]) -> None:
        for other in affected:
            if other != current and self._customer_exists(other):
                self.aggregator.recompute(other)

    def _customer_exists(self, customer_hash: str) -> bool:
        return (
            self.db.query(Customer.id)
            .filter(Customer.customer_hash == customer_hash)
            .first()
        ) is not None
