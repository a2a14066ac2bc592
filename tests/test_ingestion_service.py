"""
Order / voucher ingestion: idempotent upserts, customer linkage across shops,
courier event dedup, stats recompute and all-or-nothing commits.
"""
import threading
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker

from courier_intel.errors import (
    IngestionTimeoutError,
    NotFoundError,
    TransientStorageError,
    ValidationError,
)
from courier_intel.models.base import Base, enable_sqlite_foreign_keys
from courier_intel.models.customer import Customer, CustomerStat
from courier_intel.models.order import Order
from courier_intel.models.voucher import CourierEvent, Voucher
from courier_intel.services import shop_service
from courier_intel.services.ingestion_service import IngestionService, parse_event_time
from courier_intel.services.stats_aggregator import StatsAggregator
from courier_intel.utils.locks import KeyedLockRegistry

EMAIL = "maria@example.com"


def _order(external_id="1001", email=EMAIL, **extra):
    payload = {
        "external_order_id": external_id,
        "customer_email": email,
        "customer_name": "Maria Papadopoulou",
        "customer_phone": "+30 691 234 5678",
        "shipping_address_line1": "Ermou 12",
        "shipping_city": "Athens",
        "shipping_postcode": "10563",
        "shipping_country": "GR",
        "total_amount": "59.90",
        "currency": "eur",
        "status": "processing",
        "payment_method": "cod",
        "ordered_at": "2024-03-01T10:00:00Z",
    }
    payload.update(extra)
    return payload


def _voucher(number="ACS100", external_id="1001", **extra):
    payload = {
        "voucher_number": number,
        "external_order_id": external_id,
        "courier_name": "ACS",
        "status": "shipped",
        "shipped_at": "2024-03-02T09:00:00",
    }
    payload.update(extra)
    return payload


def _stat(db, customer_hash):
    db.expire_all()
    return db.query(CustomerStat).filter(CustomerStat.customer_hash == customer_hash).one()


# ────────────────────────────────────────────
# ORDERS
# ────────────────────────────────────────────


class TestIngestOrder:

    def test_creates_order_customer_and_stats(self, db, shop, ingestion, hasher):
        result = ingestion.ingest_order(shop, _order())

        assert result["customer_hash"] == hasher.hash_email(EMAIL)
        assert result["risk_score"] == 0
        assert result["risk_level"] == "green"

        order = db.query(Order).one()
        assert order.id == result["order_id"]
        assert order.shop_id == shop.id
        assert order.currency == "EUR"
        assert float(order.total_amount) == 59.90
        assert order.customer.customer_hash == result["customer_hash"]
        assert _stat(db, result["customer_hash"]).total_orders == 1

    def test_raw_pii_is_never_stored(self, db, shop, ingestion, hasher):
        ingestion.ingest_order(shop, _order())
        order = db.query(Order).one()

        assert order.customer_name_hash == hasher.hash_name("Maria Papadopoulou")
        assert order.customer_phone_hash == hasher.hash_phone("+30 691 234 5678")
        assert order.shipping_address_line1_hash == hasher.hash_address("Ermou 12")
        stored = str(order.to_dict())
        assert "Maria" not in stored
        assert EMAIL not in stored
        assert "Ermou" not in stored

    def test_resubmission_is_idempotent_full_replace(self, db, shop, ingestion):
        first = ingestion.ingest_order(shop, _order())
        second = ingestion.ingest_order(
            shop, _order(total_amount="75.00", status="completed", shipping_city=None)
        )

        assert first["order_id"] == second["order_id"]
        assert db.query(Order).count() == 1
        db.expire_all()
        order = db.query(Order).one()
        assert float(order.total_amount) == 75.0
        assert order.status == "completed"
        assert order.shipping_city is None
        assert _stat(db, first["customer_hash"]).total_orders == 1

    def test_precomputed_hash_accepted(self, db, shop, ingestion):
        digest = "b" * 64
        result = ingestion.ingest_order(shop, {"external_order_id": "2001", "customer_hash": digest})
        assert result["customer_hash"] == digest
        assert db.query(Customer).filter(Customer.customer_hash == digest).count() == 1

    def test_email_wins_over_supplied_hash(self, shop, ingestion, hasher):
        result = ingestion.ingest_order(shop, _order(customer_hash="c" * 64))
        assert result["customer_hash"] == hasher.hash_email(EMAIL)

    def test_supplied_pii_digests_kept_without_raw_values(self, db, shop, ingestion, hasher):
        name_hash = "e" * 64
        ingestion.ingest_order(shop, {
            "external_order_id": "2002",
            "customer_email": EMAIL,
            "customer_name_hash": name_hash,
            "customer_phone": "691 234 5678",
        })
        order = db.query(Order).one()
        assert order.customer_name_hash == name_hash
        assert order.customer_phone_hash == hasher.hash_phone("6912345678")
        assert order.customer_hash == hasher.hash_email(EMAIL)

    def test_same_email_across_shops_is_one_customer(self, db, shop, other_shop, ingestion):
        a = ingestion.ingest_order(shop, _order("1001"))
        b = ingestion.ingest_order(other_shop, _order("1001", email=" MARIA@Example.com "))

        assert a["customer_hash"] == b["customer_hash"]
        assert a["order_id"] != b["order_id"]
        assert db.query(Customer).count() == 1
        assert _stat(db, a["customer_hash"]).total_orders == 2

    def test_reassigned_order_recomputes_previous_customer(self, db, shop, ingestion):
        old = ingestion.ingest_order(shop, _order(email="old@example.com"))
        new = ingestion.ingest_order(shop, _order(email="new@example.com"))

        assert old["order_id"] == new["order_id"]
        assert _stat(db, old["customer_hash"]).total_orders == 0
        assert _stat(db, new["customer_hash"]).total_orders == 1

    def test_order_status_does_not_affect_score(self, shop, ingestion):
        result = ingestion.ingest_order(shop, _order(status="cancelled"))
        assert result["risk_score"] == 0


class TestOrderValidation:

    def test_missing_fields_listed(self, db, shop, ingestion):
        with pytest.raises(ValidationError) as exc:
            ingestion.ingest_order(shop, {"total_amount": "-1"})
        fields = {f["field"] for f in exc.value.fields}
        assert "external_order_id" in fields
        assert "total_amount" in fields
        assert db.query(Order).count() == 0

    def test_identity_required(self, db, shop, ingestion):
        with pytest.raises(ValidationError):
            ingestion.ingest_order(shop, {"external_order_id": "1001"})
        assert db.query(Customer).count() == 0

    def test_malformed_hash_rejected(self, shop, ingestion):
        with pytest.raises(ValidationError) as exc:
            ingestion.ingest_order(shop, {"external_order_id": "1", "customer_hash": "not-a-digest"})
        assert exc.value.fields[0]["field"] == "customer_hash"

    def test_non_object_body_rejected(self, shop, ingestion):
        with pytest.raises(ValidationError):
            ingestion.ingest_order(shop, ["not", "an", "object"])

    def test_numeric_external_id_coerced(self, db, shop, ingestion):
        ingestion.ingest_order(shop, _order(external_id=1001))
        assert db.query(Order).one().external_order_id == "1001"


# ────────────────────────────────────────────
# VOUCHERS
# ────────────────────────────────────────────


class TestIngestVoucher:

    def test_links_to_order_customer(self, db, shop, ingestion):
        order = ingestion.ingest_order(shop, _order())
        result = ingestion.ingest_voucher(shop, _voucher())

        voucher = db.query(Voucher).one()
        assert result["customer_hash"] == order["customer_hash"]
        assert voucher.order_id == order["order_id"]
        assert voucher.customer.customer_hash == order["customer_hash"]

    def test_order_hash_wins_over_payload_hash(self, shop, ingestion):
        order = ingestion.ingest_order(shop, _order())
        result = ingestion.ingest_voucher(shop, _voucher(customer_hash="d" * 64))
        assert result["customer_hash"] == order["customer_hash"]

    def test_resubmission_is_idempotent(self, db, shop, ingestion):
        ingestion.ingest_order(shop, _order())
        first = ingestion.ingest_voucher(shop, _voucher())
        second = ingestion.ingest_voucher(shop, _voucher(status="delivered", delivered_at="2024-03-04T12:00:00"))

        assert first["voucher_id"] == second["voucher_id"]
        assert db.query(Voucher).count() == 1
        db.expire_all()
        assert db.query(Voucher).one().status == "delivered"

    def test_same_number_in_two_shops_are_distinct(self, db, shop, other_shop, ingestion):
        ingestion.ingest_voucher(shop, _voucher(external_id=None))
        ingestion.ingest_voucher(other_shop, _voucher(external_id=None))
        assert db.query(Voucher).count() == 2

    def test_unlinked_voucher_creates_no_customer(self, db, shop, ingestion):
        result = ingestion.ingest_voucher(shop, _voucher(external_id="missing"))
        assert result["customer_hash"] is None
        assert db.query(Customer).count() == 0
        assert db.query(Voucher).one().order_id is None

    def test_orphan_voucher_with_hash_creates_customer(self, db, shop, ingestion):
        digest = "e" * 64
        result = ingestion.ingest_voucher(shop, _voucher(external_id=None, customer_hash=digest, status="returned"))

        assert result["customer_hash"] == digest
        stat = _stat(db, digest)
        assert stat.total_orders == 0
        assert stat.returns == 1
        assert stat.delivery_risk_score == 20

    def test_voucher_email_is_hashed(self, shop, ingestion, hasher):
        result = ingestion.ingest_voucher(shop, _voucher(external_id=None, customer_email=EMAIL))
        assert result["customer_hash"] == hasher.hash_email(EMAIL)

    def test_voucher_before_order_links_on_resubmission(self, db, shop, ingestion):
        first = ingestion.ingest_voucher(shop, _voucher())
        assert first["customer_hash"] is None

        order = ingestion.ingest_order(shop, _order())
        second = ingestion.ingest_voucher(shop, _voucher())

        assert second["customer_hash"] == order["customer_hash"]
        db.expire_all()
        assert db.query(Voucher).one().order_id == order["order_id"]

    def test_invalid_status_rejected(self, db, shop, ingestion):
        with pytest.raises(ValidationError) as exc:
            ingestion.ingest_voucher(shop, _voucher(status="lost_at_sea"))
        assert exc.value.fields[0]["field"] == "status"
        assert db.query(Voucher).count() == 0

    def test_bad_tracking_url_rejected(self, shop, ingestion):
        with pytest.raises(ValidationError):
            ingestion.ingest_voucher(shop, _voucher(tracking_url="javascript:alert(1)"))


class TestCourierEvents:

    EVENTS = [
        {"date": "20240302", "time": "0915", "station": "Athens Hub", "status_title": "Picked up"},
        {"date": "2024-03-03", "time": "14:30", "station": "Athens", "status_title": "Out for delivery"},
        {"date": "20240303", "remarks": "no station or title"},
    ]

    def test_events_stored_and_deduplicated(self, db, shop, ingestion):
        ingestion.ingest_voucher(shop, _voucher(events=self.EVENTS))
        ingestion.ingest_voucher(shop, _voucher(events=self.EVENTS))

        events = db.query(CourierEvent).order_by(CourierEvent.event_time).all()
        assert len(events) == 2
        assert events[0].event_description == "Picked up"
        assert events[0].location == "Athens Hub"
        assert events[0].courier_name == "ACS"
        assert events[1].event_time == parse_event_time("20240303", "1430")

    def test_new_events_appended(self, db, shop, ingestion):
        ingestion.ingest_voucher(shop, _voucher(events=self.EVENTS[:1]))
        ingestion.ingest_voucher(shop, _voucher(events=self.EVENTS[:2]))
        assert db.query(CourierEvent).count() == 2

    def test_events_removed_with_voucher(self, db, shop, ingestion):
        ingestion.ingest_voucher(shop, _voucher(events=self.EVENTS))
        ingestion.delete_voucher(shop, "ACS100")
        assert db.query(CourierEvent).count() == 0


@pytest.mark.parametrize("date_str,time_str,expected", [
    ("20240302", "0915", (2024, 3, 2, 9, 15)),
    ("2024-03-02", "09:15", (2024, 3, 2, 9, 15)),
    ("02/03/2024", None, (2024, 3, 2, 0, 0)),
    ("20240302", "garbage", (2024, 3, 2, 0, 0)),
])
def test_parse_event_time(date_str, time_str, expected):
    parsed = parse_event_time(date_str, time_str)
    assert (parsed.year, parsed.month, parsed.day, parsed.hour, parsed.minute) == expected


def test_parse_event_time_unparseable():
    assert parse_event_time(None, "0915") is None
    assert parse_event_time("yesterday", None) is None


# ────────────────────────────────────────────
# STATS CONSISTENCY
# ────────────────────────────────────────────


def test_stats_match_stored_outcomes(db, shop, ingestion):
    """Three orders, one returned parcel, one delivered ten days after shipping."""
    for external_id in ("1001", "1002", "1003"):
        ingestion.ingest_order(shop, _order(external_id))

    ingestion.ingest_voucher(shop, _voucher("V1", "1001", status="returned", returned_at="2024-03-05T10:00:00"))
    ingestion.ingest_voucher(
        shop, _voucher("V2", "1002", status="delivered", delivered_at="2024-03-12T10:00:00")
    )
    result = ingestion.ingest_voucher(
        shop, _voucher("V3", "1003", status="delivered", delivered_at="2024-03-04T10:00:00")
    )

    stat = _stat(db, result["customer_hash"])
    assert stat.total_orders == 3
    assert stat.returns == 1
    assert stat.late_deliveries == 1
    assert stat.delivery_risk_score == 30
    assert stat.risk_level == "green"


def test_second_return_moves_customer_to_yellow(db, shop, ingestion):
    ingestion.ingest_order(shop, _order("1001"))
    ingestion.ingest_order(shop, _order("1002"))
    ingestion.ingest_voucher(shop, _voucher("V1", "1001", status="returned"))
    ingestion.ingest_voucher(shop, _voucher("V2", "1002", status="returned"))

    result = ingestion.ingest_order(shop, _order("1003"))
    assert result["risk_score"] == 40
    assert result["risk_level"] == "yellow"


def test_status_change_is_not_double_counted(db, shop, ingestion):
    order = ingestion.ingest_order(shop, _order())
    for _ in range(3):
        ingestion.ingest_voucher(shop, _voucher(status="returned"))
    assert _stat(db, order["customer_hash"]).returns == 1

    ingestion.ingest_voucher(shop, _voucher(status="delivered", delivered_at="2024-03-03T10:00:00"))
    stat = _stat(db, order["customer_hash"])
    assert stat.returns == 0
    assert stat.delivery_risk_score == 0


def test_delete_voucher_recomputes(db, shop, ingestion):
    order = ingestion.ingest_order(shop, _order())
    ingestion.ingest_voucher(shop, _voucher(status="returned"))
    assert _stat(db, order["customer_hash"]).returns == 1

    result = ingestion.delete_voucher(shop, "ACS100")

    assert result == {"voucher_number": "ACS100", "customer_hash": order["customer_hash"]}
    assert db.query(Voucher).count() == 0
    assert _stat(db, order["customer_hash"]).returns == 0


def test_delete_unknown_voucher(shop, ingestion):
    with pytest.raises(NotFoundError):
        ingestion.delete_voucher(shop, "NOPE")


# ────────────────────────────────────────────
# LOOKUPS
# ────────────────────────────────────────────


def test_lookups_are_scoped_to_shop(shop, other_shop, ingestion):
    order = ingestion.ingest_order(shop, _order())
    voucher = ingestion.ingest_voucher(shop, _voucher())

    assert ingestion.get_order(shop, order["order_id"]).external_order_id == "1001"
    assert ingestion.get_voucher(shop, voucher["voucher_id"]).voucher_number == "ACS100"
    with pytest.raises(NotFoundError):
        ingestion.get_order(other_shop, order["order_id"])
    with pytest.raises(NotFoundError):
        ingestion.get_voucher(other_shop, voucher["voucher_id"])
    with pytest.raises(NotFoundError):
        ingestion.delete_voucher(other_shop, "ACS100")


# ────────────────────────────────────────────
# FENCING / TIMEOUTS
# ────────────────────────────────────────────


def test_deadline_exceeded_rolls_back(db, shop, hasher):
    service = IngestionService(db, hasher, locks=KeyedLockRegistry(), timeout_seconds=0)
    with pytest.raises(IngestionTimeoutError) as exc:
        service.ingest_order(shop, _order())
    assert exc.value.status_code == 503
    assert db.query(Order).count() == 0
    assert db.query(Customer).count() == 0


def test_waits_for_customer_lock_then_times_out(db, shop, hasher):
    locks = KeyedLockRegistry()
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold(hasher.hash_email(EMAIL)):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(5)
        service = IngestionService(db, hasher, locks=locks, timeout_seconds=0.2)
        with pytest.raises(IngestionTimeoutError):
            service.ingest_order(shop, _order())
    finally:
        release.set()
        thread.join()

    assert db.query(Order).count() == 0
    assert len(locks) == 0


class FailingAggregator(StatsAggregator):
    def recompute(self, customer_hash):
        raise OperationalError("UPDATE customer_stats", {}, Exception("disk I/O error"))


def test_storage_failure_during_recompute_rolls_back_order(db, shop, hasher):
    service = IngestionService(
        db, hasher, aggregator=FailingAggregator(db), locks=KeyedLockRegistry(), timeout_seconds=30
    )
    with pytest.raises(TransientStorageError) as exc:
        service.ingest_order(shop, _order())

    assert exc.value.status_code == 500
    assert db.query(Order).count() == 0
    assert db.query(Customer).count() == 0
    assert db.query(CustomerStat).count() == 0


def test_storage_failure_during_recompute_rolls_back_voucher(db, shop, hasher, ingestion):
    ingestion.ingest_order(shop, _order())
    service = IngestionService(
        db, hasher, aggregator=FailingAggregator(db), locks=KeyedLockRegistry(), timeout_seconds=30
    )
    with pytest.raises(TransientStorageError):
        service.ingest_voucher(shop, _voucher(status="returned", returned_at="2024-03-05T10:00:00"))

    assert db.query(Voucher).count() == 0
    assert db.query(CourierEvent).count() == 0
    assert _stat(db, hasher.hash_email(EMAIL)).returns == 0


# ────────────────────────────────────────────
# CONCURRENCY (file-backed SQLite, one session per thread)
# ────────────────────────────────────────────


@pytest.fixture
def file_sessions(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'ingest.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    enable_sqlite_foreign_keys(engine)
    Base.metadata.create_all(bind=engine)
    yield sessionmaker(autocommit=False, autoflush=False, bind=engine)
    engine.dispose()


@pytest.fixture
def file_shop(file_sessions):
    session = file_sessions()
    try:
        shop = shop_service.create_shop(session, "Gamma Store")
        return SimpleNamespace(id=shop.id)
    finally:
        session.close()


def _run_concurrently(file_sessions, hasher, locks, jobs):
    """Start every job at once, each with its own session; collect results and errors."""
    barrier = threading.Barrier(len(jobs))
    results, errors = [], []

    def worker(job):
        session = file_sessions()
        try:
            service = IngestionService(session, hasher, locks=locks, timeout_seconds=30)
            barrier.wait(5)
            results.append(job(service))
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(job,)) for job in jobs]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(30)
    return results, errors


def test_parallel_orders_for_one_customer_keep_exact_counts(file_sessions, file_shop, hasher):
    locks = KeyedLockRegistry()
    jobs = [
        (lambda service, n=n: service.ingest_order(file_shop, _order(external_id=f"30{n:02d}")))
        for n in range(8)
    ]

    results, errors = _run_concurrently(file_sessions, hasher, locks, jobs)

    assert errors == []
    assert len({r["order_id"] for r in results}) == 8
    session = file_sessions()
    try:
        assert session.query(Order).count() == 8
        assert session.query(Customer).count() == 1
        stat = session.query(CustomerStat).one()
        assert stat.total_orders == 8
    finally:
        session.close()
    assert len(locks) == 0


def test_parallel_linked_and_unlinked_voucher_submissions_share_one_row(file_sessions, file_shop, hasher):
    locks = KeyedLockRegistry()
    jobs = [
        lambda service: service.ingest_voucher(file_shop, _voucher(external_id=None)),
        lambda service: service.ingest_voucher(
            file_shop, _voucher(external_id=None, customer_hash="d" * 64)
        ),
    ]

    results, errors = _run_concurrently(file_sessions, hasher, locks, jobs)

    assert errors == []
    assert len({r["voucher_id"] for r in results}) == 1
    session = file_sessions()
    try:
        assert session.query(Voucher).count() == 1
    finally:
        session.close()


def test_voucher_waits_for_same_number_regardless_of_customer(db, shop, hasher):
    locks = KeyedLockRegistry()
    record_key = f"voucher:{shop.id}:ACS100"
    held = threading.Event()
    release = threading.Event()

    def holder():
        with locks.hold(record_key):
            held.set()
            release.wait(5)

    thread = threading.Thread(target=holder)
    thread.start()
    try:
        assert held.wait(5)
        service = IngestionService(db, hasher, locks=locks, timeout_seconds=0.2)
        with pytest.raises(IngestionTimeoutError):
            service.ingest_voucher(shop, _voucher(external_id=None, customer_hash="d" * 64))
    finally:
        release.set()
        thread.join()

    assert db.query(Voucher).count() == 0
    assert len(locks) == 0
