import os
import tempfile
import threading
import unittest

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError

from helpers import MarketTestCase, Factory, file_engine, ride_payload

from ridemarket.errors import (
    ValidationError, ActiveRequestExists, InvalidTransitionError, PermissionDenied, NotFound,
)
from ridemarket.db import build_sessionmaker, init_db
from ridemarket.models.base import Base
from ridemarket.models.marketplace import RequestKind, RequestStatus, ACTIVE_STATUSES
from ridemarket.models.ride import RideRequest
from ridemarket.services.acceptance import accept_bid
from ridemarket.services.bids import submit_bid
from ridemarket.services.requests import (
    create_ride_request, create_parcel_request, create_service_request,
    transition, cancel_request, start_request, complete_request, is_legal_edge, get_request,
)


class CreateRequestTests(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make.user()
        self.me = self.as_principal(self.client)

    def test_created_searching_without_provider(self):
        req = create_ride_request(self.db, self.me, ride_payload())
        self.assertEqual(req.status, RequestStatus.SEARCHING)
        self.assertIsNone(req.provider_id)
        self.assertIsNone(req.final_price)
        self.assertEqual(req.consumer_id, self.client.id)

    def test_rejects_bad_terms(self):
        for bad in ({"price": "0"}, {"price": "-5"}, {"price": None}, {"pickup_lat": 95},
                    {"pickup_address": ""}):
            with self.subTest(bad=bad):
                with self.assertRaises(ValidationError):
                    create_ride_request(self.db, self.me, ride_payload(**bad))

    def test_one_active_request_per_kind(self):
        first = create_ride_request(self.db, self.me, ride_payload())
        with self.assertRaises(ActiveRequestExists) as ctx:
            create_ride_request(self.db, self.me, ride_payload())
        self.assertEqual(ctx.exception.extra["existing_request_id"], first.id)

        cancel_request(self.db, RequestKind.RIDE, first.id, self.me)
        create_ride_request(self.db, self.me, ride_payload())

    def test_parcel_is_motorbike_only(self):
        payload = {
            "pickup_lat": 43.2, "pickup_lng": 76.9, "pickup_address": "A",
            "delivery_lat": 43.3, "delivery_lng": 76.95, "delivery_address": "B",
            "price": 5,
        }
        with self.assertRaises(ValidationError):
            create_parcel_request(self.db, self.me, dict(payload, vehicle_type="truck"))
        req = create_parcel_request(self.db, self.me, payload)
        self.assertEqual(req.kind, RequestKind.PARCEL)

    def test_service_request_needs_active_service(self):
        payload = {"service_id": 999, "job_description": "Течёт кран", "location": "Дом 1", "budget": 20}
        with self.assertRaises(NotFound):
            create_service_request(self.db, self.me, payload)
        s = self.make.service()
        req = create_service_request(self.db, self.me, dict(payload, service_id=s.id))
        self.assertEqual(req.service_id, s.id)


class TransitionTests(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.client = self.make.user()
        self.me = self.as_principal(self.client)
        self.admin = self.as_principal(self.make.user(role="admin"))
        self.req = create_ride_request(self.db, self.me, ride_payload())

    def test_legal_edges(self):
        self.assertTrue(is_legal_edge(RequestStatus.PENDING, RequestStatus.SEARCHING))
        self.assertTrue(is_legal_edge(RequestStatus.SEARCHING, RequestStatus.BID_RECEIVED))
        self.assertTrue(is_legal_edge(RequestStatus.IN_PROGRESS, RequestStatus.CANCELLED))
        self.assertFalse(is_legal_edge(RequestStatus.COMPLETED, RequestStatus.CANCELLED))
        self.assertFalse(is_legal_edge(RequestStatus.SEARCHING, RequestStatus.COMPLETED))
        self.assertFalse(is_legal_edge(RequestStatus.BID_RECEIVED, RequestStatus.SEARCHING))

    def test_accepted_only_through_acceptance(self):
        with self.assertRaises(InvalidTransitionError):
            transition(self.db, RequestKind.RIDE, self.req.id, RequestStatus.ACCEPTED, self.me)
        self.assertEqual(get_request(self.db, RequestKind.RIDE, self.req.id).status, RequestStatus.SEARCHING)

    def test_cancel_is_idempotent(self):
        first = cancel_request(self.db, RequestKind.RIDE, self.req.id, self.me, reason="передумал")
        again = cancel_request(self.db, RequestKind.RIDE, self.req.id, self.me)
        self.assertEqual(first.status, RequestStatus.CANCELLED)
        self.assertEqual(again.status, RequestStatus.CANCELLED)
        self.assertEqual(again.cancel_reason, "передумал")

    def test_only_owner_cancels(self):
        stranger = self.as_principal(self.make.user())
        with self.assertRaises(PermissionDenied):
            cancel_request(self.db, RequestKind.RIDE, self.req.id, stranger)

    def test_terminal_state_is_final(self):
        cancel_request(self.db, RequestKind.RIDE, self.req.id, self.me)
        with self.assertRaises(InvalidTransitionError):
            transition(self.db, RequestKind.RIDE, self.req.id, RequestStatus.EXPIRED, self.admin)

    def test_admin_expires(self):
        req = transition(self.db, RequestKind.RIDE, self.req.id, RequestStatus.EXPIRED, self.admin)
        self.assertEqual(req.status, RequestStatus.EXPIRED)
        with self.assertRaises(PermissionDenied):
            transition(self.db, RequestKind.RIDE, self.req.id, RequestStatus.EXPIRED, self.me)

    def test_full_lifecycle(self):
        driver, _ = self.make.driver()
        drv = self.as_principal(driver)
        bid, _, _ = submit_bid(self.db, RequestKind.RIDE, self.req.id, drv, 11)
        accept_bid(self.db, RequestKind.RIDE, bid.id, self.me)

        with self.assertRaises(PermissionDenied):
            start_request(self.db, RequestKind.RIDE, self.req.id, self.me)
        req = start_request(self.db, RequestKind.RIDE, self.req.id, drv)
        self.assertEqual(req.status, RequestStatus.IN_PROGRESS)
        req = complete_request(self.db, RequestKind.RIDE, self.req.id, drv)
        self.assertEqual(req.status, RequestStatus.COMPLETED)
        self.assertEqual(req.provider_id, driver.id)

    def test_cancel_after_acceptance_keeps_provider(self):
        driver, _ = self.make.driver()
        bid, _, _ = submit_bid(self.db, RequestKind.RIDE, self.req.id, self.as_principal(driver), 11)
        accept_bid(self.db, RequestKind.RIDE, bid.id, self.me)
        req = cancel_request(self.db, RequestKind.RIDE, self.req.id, self.me)
        self.assertEqual(req.status, RequestStatus.CANCELLED)
        self.assertEqual(req.provider_id, driver.id)
        self.assertEqual(float(req.final_price), 11.0)

    def test_cannot_start_before_acceptance(self):
        driver, _ = self.make.driver()
        with self.assertRaises((PermissionDenied, InvalidTransitionError)):
            start_request(self.db, RequestKind.RIDE, self.req.id, self.as_principal(driver))


class OneActiveRequestIndexTests(MarketTestCase):
    def test_database_rejects_second_active_request(self):
        client = self.make.user()
        create_ride_request(self.db, self.as_principal(client), ride_payload())
        p = ride_payload()
        self.db.add(RideRequest(
            consumer_id=client.id,
            pickup_lat=p["pickup_lat"], pickup_lng=p["pickup_lng"], pickup_address=p["pickup_address"],
            destination_lat=p["destination_lat"], destination_lng=p["destination_lng"],
            destination_address=p["destination_address"],
            price=10, status=RequestStatus.SEARCHING,
        ))
        with self.assertRaises(IntegrityError):
            self.db.commit()
        self.db.rollback()

    def test_finished_requests_do_not_count(self):
        client = self.make.user()
        me = self.as_principal(client)
        for _ in range(3):
            req = create_ride_request(self.db, me, ride_payload())
            cancel_request(self.db, RequestKind.RIDE, req.id, me)
        self.assertIsNotNone(create_ride_request(self.db, me, ride_payload()))


class ConcurrentCreateTests(unittest.TestCase):
    """Параллельные создания от одного клиента оставляют одну активную заявку."""

    THREADS = 5

    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine = file_engine(self.path)
        init_db(self.engine)
        self.Session = build_sessionmaker(self.engine)

        db = self.Session()
        make = Factory(db)
        self.client = make.principal(make.user())
        db.close()

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        os.remove(self.path)

    def test_single_active_request_under_concurrency(self):
        barrier = threading.Barrier(self.THREADS)
        created, refused, unexpected = [], [], []
        lock = threading.Lock()

        def worker():
            db = self.Session()
            try:
                barrier.wait()
                req = create_ride_request(db, self.client, ride_payload())
                with lock:
                    created.append(req.id)
            except ActiveRequestExists:
                with lock:
                    refused.append(True)
            except Exception as e:  # noqa: BLE001
                with lock:
                    unexpected.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker) for _ in range(self.THREADS)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        self.assertEqual(unexpected, [])
        self.assertEqual(len(created), 1)
        self.assertEqual(len(refused), self.THREADS - 1)

        db = self.Session()
        try:
            active = db.execute(
                select(func.count(RideRequest.id)).where(
                    RideRequest.consumer_id == self.client.user_id,
                    RideRequest.status.in_(ACTIVE_STATUSES),
                )
            ).scalar_one()
        finally:
            db.close()
        self.assertEqual(active, 1)


if __name__ == "__main__":
    unittest.main()
