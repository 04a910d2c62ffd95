import datetime as dt
import os
import tempfile
import threading
import unittest

from helpers import MarketTestCase, Factory, file_engine, TODAY, TRAVEL_DAY

from ridemarket.db import build_sessionmaker, init_db
from ridemarket.errors import (
    ValidationError, PermissionDenied, ActiveRequestExists, DriverCapacityFull, SameUserType,
    RouteMismatch, AlreadyMatched,
)
from ridemarket.models.base import Base
from ridemarket.models.city import CityRequestStatus, MatchStatus
from ridemarket.services import city_to_city as c2c


class CityTestCase(MarketTestCase):
    def setUp(self):
        super().setUp()
        self.almaty = self.make.city("Алматы")
        self.astana = self.make.city("Астана")
        self.shymkent = self.make.city("Шымкент")

    def driver_request(self, seats=2, day=TRAVEL_DAY, to_city=None):
        u = self.make.user(verified=True)
        req = c2c.create_city_request(self.db, self.as_principal(u), {
            "user_type": "has-car",
            "from_city_id": self.almaty.id,
            "to_city_id": (to_city or self.astana).id,
            "travel_date": day.isoformat(),
            "price_per_passenger": 5000,
            "number_of_seats": seats,
        }, today=TODAY)
        return u, req

    def passenger_request(self, day=TRAVEL_DAY, to_city=None):
        u = self.make.user(verified=True)
        req = c2c.create_city_request(self.db, self.as_principal(u), {
            "user_type": "needs-car",
            "from_city_id": self.almaty.id,
            "to_city_id": (to_city or self.astana).id,
            "travel_date": day.isoformat(),
            "willing_to_pay": 4500,
        }, today=TODAY)
        return u, req

    def match(self, driver_user, driver_req, passenger_req):
        return c2c.create_match(
            self.db, driver_req.id, passenger_req.id, self.as_principal(driver_user), today=TODAY
        )

    def status(self, req):
        return c2c.get_city_request(self.db, req.id).status


class CreateCityRequestTests(CityTestCase):
    def test_requires_verified_user(self):
        u = self.make.user(verified=False)
        with self.assertRaises(PermissionDenied):
            c2c.create_city_request(self.db, self.as_principal(u), {
                "user_type": "needs-car", "from_city_id": self.almaty.id, "to_city_id": self.astana.id,
                "travel_date": TRAVEL_DAY.isoformat(), "willing_to_pay": 1,
            }, today=TODAY)

    def test_validation(self):
        u = self.make.user(verified=True)
        me = self.as_principal(u)
        base = {
            "user_type": "has-car", "from_city_id": self.almaty.id, "to_city_id": self.astana.id,
            "travel_date": TRAVEL_DAY.isoformat(), "price_per_passenger": 100, "number_of_seats": 3,
        }
        bad_cases = [
            {"user_type": "bus"},
            {"to_city_id": self.almaty.id},
            {"travel_date": (TODAY - dt.timedelta(days=1)).isoformat()},
            {"travel_date": "завтра"},
            {"price_per_passenger": None},
            {"number_of_seats": 0},
        ]
        for bad in bad_cases:
            with self.subTest(bad=bad):
                with self.assertRaises(ValidationError):
                    c2c.create_city_request(self.db, me, dict(base, **bad), today=TODAY)

        req = c2c.create_city_request(self.db, me, base, today=TODAY)
        self.assertEqual(req.status, CityRequestStatus.SEARCHING)
        self.assertEqual(req.active_match_count, 0)

    def test_one_active_request_per_user(self):
        u, req = self.driver_request()
        with self.assertRaises(ActiveRequestExists):
            c2c.create_city_request(self.db, self.as_principal(u), {
                "user_type": "needs-car", "from_city_id": self.almaty.id, "to_city_id": self.shymkent.id,
                "travel_date": TRAVEL_DAY.isoformat(), "willing_to_pay": 1,
            }, today=TODAY)


class MatchingTests(CityTestCase):
    def test_capacity_scenario(self):
        d, dreq = self.driver_request(seats=2)
        passengers = [self.passenger_request()[1] for _ in range(3)]

        self.match(d, dreq, passengers[0])
        dreq = c2c.get_city_request(self.db, dreq.id)
        self.assertEqual(dreq.active_match_count, 1)
        self.assertEqual(dreq.status, CityRequestStatus.SEARCHING)

        self.match(d, dreq, passengers[1])
        dreq = c2c.get_city_request(self.db, dreq.id)
        self.assertEqual(dreq.active_match_count, 2)
        self.assertEqual(dreq.status, CityRequestStatus.MATCHED)

        with self.assertRaises(DriverCapacityFull):
            self.match(d, dreq, passengers[2])
        self.assertEqual(self.status(passengers[2]), CityRequestStatus.SEARCHING)
        self.assertEqual(self.status(passengers[0]), CityRequestStatus.MATCHED)

    def test_search_is_symmetric(self):
        d, dreq = self.driver_request()
        p, preq = self.passenger_request()

        found = c2c.search(self.db, dreq.id, self.as_principal(d), today=TODAY)
        self.assertEqual([r.id for r in found.matches], [preq.id])
        found = c2c.search(self.db, preq.id, self.as_principal(p), today=TODAY)
        self.assertEqual([r.id for r in found.matches], [dreq.id])

    def test_matched_passenger_disappears_from_other_drivers(self):
        d1, dreq1 = self.driver_request()
        d2, dreq2 = self.driver_request()
        _, preq = self.passenger_request()

        self.match(d1, dreq1, preq)
        self.assertEqual(c2c.search(self.db, dreq2.id, self.as_principal(d2), today=TODAY).matches, [])
        self.assertEqual(c2c.search(self.db, dreq1.id, self.as_principal(d1), today=TODAY).matches, [])

        with self.assertRaises(AlreadyMatched):
            self.match(d2, dreq2, preq)

    def test_search_ignores_time_of_day_and_route(self):
        d, dreq = self.driver_request(day=TRAVEL_DAY.replace(hour=23, minute=59))
        _, same_day = self.passenger_request(day=TRAVEL_DAY.replace(hour=0, minute=0))
        self.passenger_request(to_city=self.shymkent)
        found = c2c.search(self.db, dreq.id, self.as_principal(d), today=TODAY)
        self.assertEqual([r.id for r in found.matches], [same_day.id])
        self.assertEqual(found.suggestions, [])

    def test_passenger_gets_neighbour_day_suggestions(self):
        p, preq = self.passenger_request()
        _, before = self.driver_request(day=TRAVEL_DAY - dt.timedelta(days=1))
        _, after = self.driver_request(day=TRAVEL_DAY + dt.timedelta(days=1))
        self.driver_request(day=TRAVEL_DAY + dt.timedelta(days=2))

        found = c2c.search(self.db, preq.id, self.as_principal(p), today=TODAY)
        self.assertEqual(found.matches, [])
        self.assertEqual(
            sorted((r.id, diff) for r, diff in found.suggestions),
            sorted([(before.id, 1), (after.id, 1)]),
        )
        payload = found.to_dict()
        self.assertTrue(all(s["date_difference"] == 1 for s in payload["suggestions"]))

    def test_past_travel_date_expires_on_read(self):
        p, preq = self.passenger_request()
        self.driver_request()
        later = TRAVEL_DAY.date() + dt.timedelta(days=1)
        found = c2c.search(self.db, preq.id, self.as_principal(p), today=later)
        self.assertTrue(found.expired)
        self.assertEqual(found.matches, [])
        self.assertEqual(self.status(preq), CityRequestStatus.EXPIRED)
        self.assertIsNone(c2c.get_active_city_request(self.db, self.as_principal(p), today=later))

    def test_match_preconditions(self):
        d, dreq = self.driver_request()
        d2, dreq2 = self.driver_request()
        p, preq = self.passenger_request()
        _, other_route = self.passenger_request(to_city=self.shymkent)

        with self.assertRaises(SameUserType):
            self.match(d, dreq, dreq2)
        with self.assertRaises(RouteMismatch):
            self.match(d, dreq, other_route)
        with self.assertRaises(PermissionDenied):
            self.match(d2, dreq, preq)
        # пассажир не инициирует матч
        with self.assertRaises(PermissionDenied):
            c2c.create_match(self.db, preq.id, dreq.id, self.as_principal(p), today=TODAY)


class CancelAndCompleteTests(CityTestCase):
    def test_passenger_cancel_releases_seat(self):
        d, dreq = self.driver_request(seats=1)
        p, preq = self.passenger_request()
        self.match(d, dreq, preq)
        self.assertEqual(self.status(dreq), CityRequestStatus.MATCHED)

        c2c.cancel_city_request(self.db, preq.id, self.as_principal(p))
        again = c2c.cancel_city_request(self.db, preq.id, self.as_principal(p))
        self.assertEqual(again.status, CityRequestStatus.CANCELLED)

        dreq = c2c.get_city_request(self.db, dreq.id)
        self.assertEqual(dreq.status, CityRequestStatus.SEARCHING)
        self.assertEqual(dreq.active_match_count, 0)
        self.assertEqual(c2c.list_matches(self.db, self.as_principal(d))[0]["status"], MatchStatus.CANCELLED.value)

        # место снова можно занять
        _, preq2 = self.passenger_request()
        self.match(d, dreq, preq2)

    def test_driver_cancel_returns_passengers_to_search(self):
        d, dreq = self.driver_request(seats=2)
        _, p1 = self.passenger_request()
        _, p2 = self.passenger_request()
        self.match(d, dreq, p1)
        self.match(d, dreq, p2)

        c2c.cancel_city_request(self.db, dreq.id, self.as_principal(d))
        self.assertEqual(self.status(p1), CityRequestStatus.SEARCHING)
        self.assertEqual(self.status(p2), CityRequestStatus.SEARCHING)

    def test_complete_match(self):
        d, dreq = self.driver_request(seats=2)
        p1, preq1 = self.passenger_request()
        _, preq2 = self.passenger_request()
        m1 = self.match(d, dreq, preq1)
        m2 = self.match(d, dreq, preq2)

        stranger = self.make.user()
        with self.assertRaises(PermissionDenied):
            c2c.complete_match(self.db, m1.id, self.as_principal(stranger))

        c2c.complete_match(self.db, m1.id, self.as_principal(p1))
        self.assertEqual(self.status(preq1), CityRequestStatus.COMPLETED)
        self.assertEqual(self.status(dreq), CityRequestStatus.MATCHED)

        c2c.complete_match(self.db, m2.id, self.as_principal(d))
        self.assertEqual(self.status(dreq), CityRequestStatus.COMPLETED)
        with self.assertRaises(ValidationError):
            c2c.complete_match(self.db, m2.id, self.as_principal(d))

    def test_list_matches_from_both_sides(self):
        d, dreq = self.driver_request()
        p, preq = self.passenger_request()
        self.match(d, dreq, preq)

        [as_driver] = c2c.list_matches(self.db, self.as_principal(d))
        [as_passenger] = c2c.list_matches(self.db, self.as_principal(p))
        self.assertEqual(as_driver["role"], "driver")
        self.assertEqual(as_driver["counterpart"]["id"], preq.id)
        self.assertEqual(as_passenger["role"], "passenger")
        self.assertEqual(as_passenger["counterpart"]["id"], dreq.id)


class ConcurrentMatchTests(unittest.TestCase):
    """Параллельные матчи к одному водителю не превышают число мест."""

    SEATS = 2
    PASSENGERS = 5

    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine = file_engine(self.path)
        init_db(self.engine)
        self.Session = build_sessionmaker(self.engine)

        db = self.Session()
        make = Factory(db)
        a, b = make.city("Алматы"), make.city("Астана")

        def create(user_type, **extra):
            u = make.user(verified=True)
            payload = {
                "user_type": user_type, "from_city_id": a.id, "to_city_id": b.id,
                "travel_date": TRAVEL_DAY.isoformat(), **extra,
            }
            return make.principal(u), c2c.create_city_request(db, make.principal(u), payload, today=TODAY).id

        self.driver, self.driver_request_id = create(
            "has-car", price_per_passenger=100, number_of_seats=self.SEATS
        )
        self.passenger_ids = [create("needs-car", willing_to_pay=90)[1] for _ in range(self.PASSENGERS)]
        db.close()

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        os.remove(self.path)

    def test_capacity_holds_under_concurrency(self):
        barrier = threading.Barrier(self.PASSENGERS)
        wins, full, unexpected = [], [], []
        lock = threading.Lock()

        def worker(passenger_id):
            db = self.Session()
            try:
                barrier.wait()
                c2c.create_match(db, self.driver_request_id, passenger_id, self.driver, today=TODAY)
                with lock:
                    wins.append(passenger_id)
            except DriverCapacityFull:
                with lock:
                    full.append(passenger_id)
            except Exception as e:  # noqa: BLE001
                with lock:
                    unexpected.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=worker, args=(p,)) for p in self.passenger_ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=60)

        self.assertEqual(unexpected, [])
        self.assertEqual(len(wins), self.SEATS)
        self.assertEqual(len(full), self.PASSENGERS - self.SEATS)

        db = self.Session()
        try:
            driver = c2c.get_city_request(db, self.driver_request_id)
            self.assertEqual(driver.active_match_count, self.SEATS)
            self.assertEqual(driver.status, CityRequestStatus.MATCHED)
            for pid in self.passenger_ids:
                expected = CityRequestStatus.MATCHED if pid in wins else CityRequestStatus.SEARCHING
                self.assertEqual(c2c.get_city_request(db, pid).status, expected)
        finally:
            db.close()


class ConcurrentCreateCityRequestTests(unittest.TestCase):
    THREADS = 4

    def setUp(self):
        fd, self.path = tempfile.mkstemp(suffix=".db")
        os.close(fd)
        self.engine = file_engine(self.path)
        init_db(self.engine)
        self.Session = build_sessionmaker(self.engine)

        db = self.Session()
        make = Factory(db)
        a, b = make.city("Алматы"), make.city("Астана")
        self.user = make.principal(make.user(verified=True))
        self.payload = {
            "user_type": "needs-car", "from_city_id": a.id, "to_city_id": b.id,
            "travel_date": TRAVEL_DAY.isoformat(), "willing_to_pay": 90,
        }
        db.close()

    def tearDown(self):
        Base.metadata.drop_all(self.engine)
        self.engine.dispose()
        os.remove(self.path)

    def test_one_active_request_under_concurrency(self):
        barrier = threading.Barrier(self.THREADS)
        created, refused, unexpected = [], [], []
        lock = threading.Lock()

        def worker():
            db = self.Session()
            try:
                barrier.wait()
                req = c2c.create_city_request(db, self.user, dict(self.payload), today=TODAY)
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
            t.join(timeout=60)

        self.assertEqual(unexpected, [])
        self.assertEqual(len(created), 1)
        self.assertEqual(len(refused), self.THREADS - 1)

        db = self.Session()
        try:
            active = c2c.get_active_city_request(db, self.user, today=TODAY)
            self.assertEqual(active.id, created[0])
        finally:
            db.close()


if __name__ == "__main__":
    unittest.main()
